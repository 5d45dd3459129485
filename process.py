import argparse
import enum
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from ocr_module import OcrError, ReadClient, RecognitionJob, flatten_read_results
from shell_module import prompt_and_maybe_dump
from store_module import DEFAULT_DB_PATH, StoreError, TextStore, connect_store

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("ocr-runner")

SAMPLE_IMAGE_URL = (
    "https://raw.githubusercontent.com/Azure-Samples/cognitive-services-sample-data-files/"
    "master/ComputerVision/Images/printed_text.jpg"
)


class PipelineStage(enum.Enum):
    SUBMITTED = "submitted"
    POLLING = "polling"
    FLATTENED = "flattened"
    STORED = "stored"


@dataclass
class PipelineResult:
    """Outcome of one pipeline run.

    ``stage`` is the last stage entered; when ``error`` is set the run was
    abandoned there. Rows already inserted stay in the store either way.
    """

    source: str
    stage: Optional[PipelineStage] = None
    lines: List[str] = field(default_factory=list)
    inserted_ids: List[int] = field(default_factory=list)
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.stage is PipelineStage.STORED

    @property
    def error_kind(self) -> Optional[str]:
        return type(self.error).__name__ if self.error is not None else None


def is_url(source: str) -> bool:
    return source.lower().startswith(("http://", "https://"))


def submit_source(client: ReadClient, source: str) -> RecognitionJob:
    if not is_url(source) and Path(source).exists():
        return client.submit_file(source)
    return client.submit(source)


def run_pipeline(
    client: ReadClient,
    store: TextStore,
    source: str,
    cancel_event: threading.Event | None = None,
) -> PipelineResult:
    """Read ``source`` through the OCR service and store every recognised line."""
    result = PipelineResult(source=source)
    try:
        job = submit_source(client, source)
        result.stage = PipelineStage.SUBMITTED
        logger.info("Waiting for operation %s", job.operation_handle)

        result.stage = PipelineStage.POLLING
        pages = client.await_completion(job, cancel_event=cancel_event)

        result.lines = flatten_read_results(pages)
        result.stage = PipelineStage.FLATTENED
        logger.info("Recognised %s lines across %s pages", len(result.lines), len(pages))

        for text in result.lines:
            row_id = store.insert(text)
            result.inserted_ids.append(row_id)
            logger.info("OCR text inserted into database: %s", text)
        result.stage = PipelineStage.STORED
    except (OcrError, StoreError) as exc:
        logger.error("Pipeline stage %s failed: %s", result.stage.value if result.stage else "submit", exc)
        result.error = exc
    return result


def handle_result(result: PipelineResult) -> None:
    """Report a pipeline result. The query shell runs afterwards either way."""
    if result.ok:
        logger.info(
            "OCR and database operations completed successfully (%s rows stored).",
            len(result.inserted_ids),
        )
        return

    logger.error(
        "OCR run for %s abandoned at stage %s (%s): %s",
        result.source,
        result.stage.value if result.stage else "submit",
        result.error_kind,
        result.error,
    )
    if result.inserted_ids:
        logger.info("%s rows were stored before the failure", len(result.inserted_ids))


def _optional_int(value: str | None) -> int | None:
    return int(value) if value else None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Read text from an image with the Azure Read API and store it in SQLite."
    )
    parser.add_argument(
        "source",
        nargs="?",
        default=SAMPLE_IMAGE_URL,
        help="Image URL or local image path (defaults to the Azure printed_text.jpg sample).",
    )
    parser.add_argument("--db", default=os.getenv("OCR_DB_PATH", DEFAULT_DB_PATH), help="SQLite database file.")
    parser.add_argument("--poll-interval", type=float, help="Seconds between status polls.")
    parser.add_argument("--poll-timeout", type=float, help="Give up polling after this many seconds (0 disables).")
    parser.add_argument("--max-attempts", type=_optional_int, help="Give up polling after this many polls.")
    parser.add_argument("--language", help="BCP-47 language hint for the Read API.")
    return parser


def main(argv: List[str] | None = None) -> None:
    load_dotenv()
    args = build_parser().parse_args(argv)

    try:
        store = connect_store(args.db)
    except StoreError:
        logger.exception("Failed to prepare database %s", args.db)
        return

    with store:
        try:
            client = ReadClient(
                language=args.language,
                poll_interval=args.poll_interval,
                poll_timeout=args.poll_timeout,
                max_poll_attempts=args.max_attempts,
            )
        except ValueError:
            logger.exception("Invalid Read client configuration")
        else:
            with client:
                handle_result(run_pipeline(client, store, args.source))
        prompt_and_maybe_dump(store)


if __name__ == "__main__":
    main()
