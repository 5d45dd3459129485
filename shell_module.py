import json
import logging
import sys
from typing import List, Optional, TextIO

from store_module import StoreError, TextRow, TextStore

logger = logging.getLogger(__name__)

FETCH_QUESTION = "Do you want to fetch OCR data from the database? (yes/no) "


class ConsolePrompt:
    """Console session used for a single question/answer exchange."""

    def __init__(self, stdin: TextIO | None = None, stdout: TextIO | None = None) -> None:
        self.stdin = stdin or sys.stdin
        self.stdout = stdout or sys.stdout
        self.closed = False

    def __enter__(self) -> "ConsolePrompt":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def ask(self, question: str) -> str:
        if self.closed:
            raise ValueError("Console session is closed")
        self.stdout.write(question)
        self.stdout.flush()
        # readline() returns "" once the stream is exhausted
        return self.stdin.readline()

    def say(self, *parts) -> None:
        print(*parts, file=self.stdout)

    def close(self) -> None:
        """Flush output and end the session; stdin is left open for the caller."""
        if not self.closed:
            self.stdout.flush()
            self.closed = True


def format_rows(rows: List[TextRow]) -> str:
    return json.dumps([row.to_dict() for row in rows], ensure_ascii=False, indent=2)


def prompt_and_maybe_dump(store: TextStore, console: ConsolePrompt | None = None) -> Optional[List[TextRow]]:
    """Ask whether to dump the store and print every row when the answer is "yes".

    Returns the fetched rows, or ``None`` when nothing was read.
    """
    with console or ConsolePrompt() as session:
        answer = session.ask(FETCH_QUESTION)
        if answer.rstrip("\r\n").lower() != "yes":
            session.say("No data fetched. Exiting...")
            return None

        try:
            rows = store.fetch_all()
        except StoreError as exc:
            logger.error("Error fetching data: %s", exc)
            return None

        session.say("OCR data fetched from the database:")
        session.say(format_rows(rows))
        return rows
