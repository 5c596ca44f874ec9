"""
Change Stream Consumer

Feeds a JSON-lines change stream into the ingestion pipeline from a
background thread.

Each line is one envelope:
    {"action": "create", "owner": "did:plc:...", "collection": "com.linkedclaims.claim",
     "recordKey": "3k...", "digest": "bafy...", "record": {...}}

Malformed lines are dropped and counted. The consumer stops on its own if
ingestion halts.

CONFIGURATION:
- CLAIMVIEW_EVENTS_FILE: JSON-lines file replayed at startup (default: unset)
- CLAIMVIEW_EVENTS_FOLLOW: Keep reading lines appended to the file (default: false)
- CLAIMVIEW_EVENTS_POLL_SECONDS: Poll interval when following (default: 1.0)

USAGE:
    consumer = StreamConsumer(pipeline, StreamConfig.from_env())
    consumer.start()
    ...
    consumer.stop()
"""

import json
import os
import threading
from dataclasses import dataclass
from typing import IO, Any, Iterable, Iterator, Optional

from ..observability import get_logger
from .ingest import IngestionHalted, IngestionPipeline


logger = get_logger(__name__)


@dataclass
class StreamConfig:
    """Configuration for the stream consumer."""
    events_file: Optional[str] = None
    follow: bool = False
    poll_seconds: float = 1.0

    @classmethod
    def from_env(cls) -> "StreamConfig":
        """Load configuration from environment variables."""
        return cls(
            events_file=os.environ.get("CLAIMVIEW_EVENTS_FILE") or None,
            follow=os.environ.get("CLAIMVIEW_EVENTS_FOLLOW", "").lower() in ("1", "true", "yes"),
            poll_seconds=float(os.environ.get("CLAIMVIEW_EVENTS_POLL_SECONDS", "1.0")),
        )

    @property
    def enabled(self) -> bool:
        return self.events_file is not None


def parse_lines(lines: Iterable[str]) -> Iterator[Optional[dict[str, Any]]]:
    """
    Decode JSON lines.

    Yields a dict per envelope and None per malformed line; blank lines
    are skipped.
    """
    for number, line in enumerate(lines, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            value = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning("Malformed stream line", line_number=number, error=str(e))
            yield None
            continue
        if not isinstance(value, dict):
            logger.warning("Stream line is not an object", line_number=number)
            yield None
            continue
        yield value


class StreamConsumer:
    """
    Background reader for a JSON-lines change stream.

    The consumer only submits; per-locator ordering is the pipeline's job.
    """

    def __init__(self, pipeline: IngestionPipeline, config: Optional[StreamConfig] = None):
        self._pipeline = pipeline
        self._config = config or StreamConfig.from_env()

        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        self.submitted = 0
        self.malformed = 0

    @property
    def config(self) -> StreamConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start reading the configured file in the background."""
        if not self._config.enabled:
            logger.info("Stream consumer disabled (set CLAIMVIEW_EVENTS_FILE to enable)")
            return

        if self._running:
            logger.warning("Stream consumer already running")
            return

        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="claimview-stream", daemon=True)
        self._thread.start()
        logger.info(
            "Stream consumer started",
            events_file=self._config.events_file,
            follow=self._config.follow,
        )

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the background reader."""
        if not self._running:
            return

        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)

        self._running = False
        logger.info("Stream consumer stopped", submitted=self.submitted, malformed=self.malformed)

    def _run(self) -> None:
        try:
            with open(self._config.events_file, "r", encoding="utf-8") as f:
                self.consume(self._lines(f))
        except OSError as e:
            logger.error("Cannot read change stream", events_file=self._config.events_file, error=str(e))
        finally:
            self._running = False

    def _lines(self, f: IO[str]) -> Iterator[str]:
        """
        Complete lines of f; when following, keep polling for appended lines.

        A line is only yielded once its newline has been read, so an envelope
        the writer appends in several pieces arrives whole. Without follow,
        a final unterminated line is yielded at EOF.
        """
        partial = ""
        while not self._stop_event.is_set():
            chunk = f.readline()
            if chunk:
                partial += chunk
                if partial.endswith("\n"):
                    yield partial
                    partial = ""
            elif self._config.follow:
                self._stop_event.wait(timeout=self._config.poll_seconds)
            else:
                break
        if partial:
            if self._config.follow:
                logger.warning("Discarding unterminated line at shutdown", length=len(partial))
            else:
                yield partial

    def consume(self, lines: Iterable[str]) -> int:
        """
        Submit every envelope in lines, in order.

        Returns:
            Number of envelopes submitted
        """
        count = 0
        for envelope in parse_lines(lines):
            if self._stop_event.is_set():
                break
            if envelope is None:
                self.malformed += 1
                continue
            try:
                self._pipeline.submit(envelope)
            except IngestionHalted as e:
                logger.error("Ingestion halted, stream consumer stopping", error=str(e))
                break
            count += 1
            self.submitted += 1
        return count
