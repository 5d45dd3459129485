import enum
import io
import logging
import os
import threading
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import List, Optional, Sequence

import httpx
from PIL import Image, ImageOps, UnidentifiedImageError

logger = logging.getLogger(__name__)

API_VERSION = "v3.2"
SUBSCRIPTION_KEY_HEADER = "Ocp-Apim-Subscription-Key"
TRANSIENT_STATUS_CODES = {408, 409, 425, 429, 500, 502, 503, 504}
# Read API rejects images larger than this on either side.
MAX_IMAGE_DIM = 10000


class OcrError(Exception):
    """Base class for failures reported by the OCR client."""


class SubmissionError(OcrError):
    """Raised when the Read API refuses an image (bad URL, auth, quota)."""


class RecognitionFailed(OcrError):
    """Raised when a read operation ends in the ``failed`` state."""


class RecognitionTimeout(RecognitionFailed):
    """Raised when polling gives up before the operation reaches a terminal state."""


class RecognitionCancelled(RecognitionFailed):
    """Raised when the caller cancels an in-flight poll loop."""


class TemporaryOcrError(Exception):
    """Raised when the upstream Read endpoint indicates a transient failure."""


class JobStatus(enum.Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @classmethod
    def from_api(cls, value: str) -> "JobStatus":
        status = (value or "").strip().lower()
        if status == "succeeded":
            return cls.SUCCEEDED
        if status == "failed":
            return cls.FAILED
        # notStarted / running
        return cls.RUNNING

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.RUNNING


@dataclass
class Word:
    text: str
    confidence: Optional[float] = None
    bounding_box: List[float] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "Word":
        return cls(
            text=data.get("text", ""),
            confidence=data.get("confidence"),
            bounding_box=list(data.get("boundingBox") or []),
        )


@dataclass
class Line:
    text: str
    words: List[Word] = field(default_factory=list)
    bounding_box: List[float] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "Line":
        return cls(
            text=data.get("text", ""),
            words=[Word.from_dict(word) for word in data.get("words") or []],
            bounding_box=list(data.get("boundingBox") or []),
        )


@dataclass
class PageResult:
    page: int
    lines: List[Line] = field(default_factory=list)
    angle: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None
    unit: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "PageResult":
        return cls(
            page=int(data.get("page", 1)),
            lines=[Line.from_dict(line) for line in data.get("lines") or []],
            angle=data.get("angle"),
            width=data.get("width"),
            height=data.get("height"),
            unit=data.get("unit"),
        )


@dataclass(frozen=True)
class RecognitionJob:
    source_url: str
    operation_handle: str
    status: JobStatus = JobStatus.RUNNING
    operation_location: Optional[str] = None
    pages: Optional[List[PageResult]] = None


def flatten_read_results(pages: Sequence[PageResult]) -> List[str]:
    """Turn nested page/line/word results into one string per line.

    Lines without words are skipped. Order follows the pages and the lines
    within each page as given.
    """
    texts = []
    for page in pages:
        for line in page.lines:
            if not line.words:
                continue
            texts.append(" ".join(word.text for word in line.words))
    return texts


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


class ReadClient:
    """Thin client around the Azure Computer Vision Read API."""

    def __init__(
        self,
        endpoint: str | None = None,
        api_key: str | None = None,
        api_version: str = API_VERSION,
        language: str | None = None,
        poll_interval: float | None = None,
        poll_timeout: float | None = None,
        max_poll_attempts: int | None = None,
        request_timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.endpoint = (endpoint or os.getenv("VISION_ENDPOINT") or "").rstrip("/")
        self.api_key = api_key or os.getenv("VISION_KEY")
        self.api_version = api_version
        self.language = language or os.getenv("VISION_LANGUAGE") or None
        self.poll_interval = poll_interval if poll_interval is not None else _env_float("VISION_POLL_INTERVAL", 1.0)
        self.poll_timeout = poll_timeout if poll_timeout is not None else _env_float("VISION_POLL_TIMEOUT", 120.0)
        self.max_poll_attempts = (
            max_poll_attempts if max_poll_attempts is not None else _env_int("VISION_POLL_MAX_ATTEMPTS", None)
        )
        timeout = httpx.Timeout(timeout=request_timeout)
        self._client = httpx.Client(timeout=timeout, transport=transport)
        logger.info(
            "Initialized Read client -> endpoint=%s interval=%ss timeout=%ss attempts=%s",
            self.endpoint or "<unset>",
            self.poll_interval,
            self.poll_timeout,
            self.max_poll_attempts or "unlimited",
        )

    def __enter__(self) -> "ReadClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def submit(self, image_url: str) -> RecognitionJob:
        """Ask the service to read the image at ``image_url``."""
        logger.info("Read printed text from URL... %s", image_url.rstrip("/").split("/")[-1])
        return self._submit(image_url, json={"url": image_url})

    def submit_file(self, path: str | Path) -> RecognitionJob:
        """Ask the service to read a local image file."""
        path = Path(path)
        try:
            payload = self._prepare_image_bytes(path)
        except (OSError, UnidentifiedImageError, Image.DecompressionBombError) as exc:
            raise SubmissionError(f"Cannot load image {path}: {exc}") from exc
        logger.info("Read printed text from file... %s (%s bytes)", path.name, len(payload))
        return self._submit(
            path.resolve().as_uri(),
            content=payload,
            headers={"Content-Type": "application/octet-stream"},
        )

    def poll(self, job: RecognitionJob) -> RecognitionJob:
        """Query the operation once and return the job with its new status."""
        url = f"{self._base_url()}/read/analyzeResults/{job.operation_handle}"
        try:
            response = self._client.get(url, headers=self._auth_headers())
        except httpx.TransportError as exc:
            raise TemporaryOcrError(str(exc)) from exc

        if response.status_code in TRANSIENT_STATUS_CODES:
            raise TemporaryOcrError(f"{response.status_code} {response.text}")
        if response.is_error:
            raise RecognitionFailed(
                f"Polling operation {job.operation_handle} failed: {self._error_message(response)}"
            )

        body = response.json()
        status = JobStatus.from_api(body.get("status", ""))
        pages = None
        if status is JobStatus.SUCCEEDED:
            read_results = (body.get("analyzeResult") or {}).get("readResults") or []
            pages = [PageResult.from_dict(page) for page in read_results]
        return replace(job, status=status, pages=pages)

    def await_completion(
        self,
        job: RecognitionJob,
        cancel_event: threading.Event | None = None,
    ) -> List[PageResult]:
        """Poll ``job`` until it succeeds, fails, times out or is cancelled."""
        deadline = time.monotonic() + self.poll_timeout if self.poll_timeout else None
        attempt = 0

        while True:
            if job.status is JobStatus.SUCCEEDED:
                return job.pages or []
            if job.status is JobStatus.FAILED:
                raise RecognitionFailed(f"Read operation {job.operation_handle} failed")
            if cancel_event is not None and cancel_event.is_set():
                raise RecognitionCancelled(f"Polling of {job.operation_handle} was cancelled")

            attempt += 1
            try:
                job = self.poll(job)
            except TemporaryOcrError as exc:
                logger.warning("Temporary Read API error (%s) on attempt %s", exc, attempt)
            else:
                logger.debug("Operation %s status=%s (attempt %s)", job.operation_handle, job.status.value, attempt)
                if job.status.is_terminal:
                    continue

            if self.max_poll_attempts is not None and attempt >= self.max_poll_attempts:
                raise RecognitionTimeout(
                    f"Operation {job.operation_handle} still running after {attempt} attempts"
                )
            if deadline is not None and time.monotonic() + self.poll_interval > deadline:
                raise RecognitionTimeout(
                    f"Operation {job.operation_handle} still running after {self.poll_timeout}s"
                )
            time.sleep(self.poll_interval)

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    def _base_url(self) -> str:
        return f"{self.endpoint}/vision/{self.api_version}"

    def _auth_headers(self) -> dict:
        return {SUBSCRIPTION_KEY_HEADER: self.api_key or ""}

    def _submit(self, source: str, headers: dict | None = None, **request_kwargs) -> RecognitionJob:
        if not self.endpoint or not self.api_key:
            raise SubmissionError(
                "Authentication failed: VISION_KEY and VISION_ENDPOINT must both be set"
            )

        params = {"language": self.language} if self.language else None
        request_headers = self._auth_headers()
        request_headers.update(headers or {})
        try:
            response = self._client.post(
                f"{self._base_url()}/read/analyze",
                headers=request_headers,
                params=params,
                **request_kwargs,
            )
        except httpx.HTTPError as exc:
            raise SubmissionError(f"Read request for {source} failed: {exc}") from exc

        if response.status_code != 202:
            raise SubmissionError(
                f"Read request for {source} rejected ({response.status_code}): {self._error_message(response)}"
            )

        operation_location = response.headers.get("Operation-Location")
        if not operation_location:
            raise SubmissionError("Read response missing Operation-Location header")

        handle = operation_location.rstrip("/").split("/")[-1]
        logger.info("Submitted %s -> operation %s", source, handle)
        return RecognitionJob(
            source_url=source,
            operation_handle=handle,
            operation_location=operation_location,
        )

    def _prepare_image_bytes(self, path: Path) -> bytes:
        with Image.open(path) as opened:
            image = ImageOps.exif_transpose(opened).convert("RGB")
        longest_dim = max(image.width, image.height)
        if longest_dim > MAX_IMAGE_DIM:
            scale = MAX_IMAGE_DIM / float(longest_dim)
            new_size = (max(1, int(round(image.width * scale))), max(1, int(round(image.height * scale))))
            image = image.resize(new_size, Image.Resampling.LANCZOS)

        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
        return buffer.getvalue()

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            return f"{error.get('code', 'Error')}: {error.get('message', '')}".strip()
        return response.text
