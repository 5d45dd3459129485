from __future__ import annotations

from typing import Callable, List, Sequence

import httpx
import pytest

import ocr_module
from ocr_module import ReadClient
from store_module import TextStore, connect_store

ENDPOINT = "https://vision.example.com"
ANALYZE_PATH = "/vision/v3.2/read/analyze"
RESULTS_PATH = "/vision/v3.2/read/analyzeResults/"


def read_payload(status: str, pages: Sequence[Sequence[Sequence[str]]] = ()) -> dict:
    """Build a Read API result body; ``pages`` is a list of pages of lines of words."""
    read_results = []
    for page_no, lines in enumerate(pages, start=1):
        read_results.append(
            {
                "page": page_no,
                "angle": 0,
                "width": 1000,
                "height": 800,
                "unit": "pixel",
                "lines": [
                    {
                        "text": " ".join(words),
                        "boundingBox": [0, 0, 10, 0, 10, 10, 0, 10],
                        "words": [{"text": word, "confidence": 0.99, "boundingBox": []} for word in words],
                    }
                    for words in lines
                ],
            }
        )
    body = {"status": status, "createdDateTime": "2024-01-01T00:00:00Z"}
    if status == "succeeded":
        body["analyzeResult"] = {"version": "3.2.0", "readResults": read_results}
    return body


class FakeReadService:
    """Scripted Read endpoint: serves ``results`` one poll at a time."""

    def __init__(self, results: List[httpx.Response] | None = None, submit_status: int = 202) -> None:
        self.results = list(results or [])
        self.submit_status = submit_status
        self.requests: List[httpx.Request] = []
        self.polls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST" and request.url.path == ANALYZE_PATH:
            if self.submit_status != 202:
                return httpx.Response(
                    self.submit_status,
                    json={"error": {"code": "InvalidImageUrl", "message": "Image URL is badly formatted."}},
                )
            return httpx.Response(
                202, headers={"Operation-Location": f"{ENDPOINT}{RESULTS_PATH}op-123"}
            )
        if request.method == "GET" and request.url.path == f"{RESULTS_PATH}op-123":
            self.polls += 1
            scripted = self.results.pop(0) if len(self.results) > 1 else self.results[0]
            # the last scripted response repeats, so hand out fresh copies
            return httpx.Response(scripted.status_code, headers=scripted.headers, content=scripted.content)
        return httpx.Response(404, json={"error": {"code": "NotFound", "message": "not found"}})


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "VISION_KEY",
        "VISION_ENDPOINT",
        "VISION_LANGUAGE",
        "VISION_POLL_INTERVAL",
        "VISION_POLL_TIMEOUT",
        "VISION_POLL_MAX_ATTEMPTS",
        "OCR_DB_PATH",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def sleeps(monkeypatch: pytest.MonkeyPatch) -> List[float]:
    calls: List[float] = []
    monkeypatch.setattr(ocr_module.time, "sleep", calls.append)
    return calls


@pytest.fixture
def make_client() -> Callable[..., ReadClient]:
    clients: List[ReadClient] = []

    def factory(service: FakeReadService, **kwargs) -> ReadClient:
        kwargs.setdefault("endpoint", ENDPOINT)
        kwargs.setdefault("api_key", "test-key")
        kwargs.setdefault("poll_interval", 1.0)
        kwargs.setdefault("poll_timeout", 0)
        client = ReadClient(transport=httpx.MockTransport(service), **kwargs)
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.close()


@pytest.fixture
def store(tmp_path) -> TextStore:
    opened = connect_store(tmp_path / "ocr_data.db")
    yield opened
    opened.close()
