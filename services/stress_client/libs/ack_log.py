"""Append-only acknowledgment log shared by the send and receive paths.

Each sent-and-confirmed or received message produces exactly one line:

    Message acknowledged: Id = 0; DateTime = 2025-01-01T00:00:00.000000Z; Instant = 1735689600
    Message received: Id = 0; DateTime = 2025-01-01T00:00:00.000000Z; Instant = 1735689600

Writes are serialized with a lock and flushed immediately, so lines never
interleave and a crash loses at most the record being written. Write
failures are reported and the record is dropped; the stress loop keeps going.

Example:
    >>> with AcknowledgmentLog.open("./sender.log") as log:
    ...     log.write(LogRecord.now(RecordKind.ACKNOWLEDGED, "0"))
"""
from __future__ import annotations

import datetime as _dt
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Optional, Union

from libs.metrics import ACK_LOG_WRITE_FAILED_TOTAL


logger = logging.getLogger(__name__)


class RecordKind(str, Enum):
    ACKNOWLEDGED = "acknowledged"
    RECEIVED = "received"


def _utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


@dataclass(frozen=True)
class LogRecord:
    """One acknowledgment event. Both timestamp renderings share one instant."""
    kind: RecordKind
    message_id: str
    timestamp: _dt.datetime = field(default_factory=_utcnow)

    @classmethod
    def now(cls, kind: RecordKind, message_id: str) -> "LogRecord":
        return cls(kind=kind, message_id=str(message_id), timestamp=_utcnow())

    @property
    def iso_timestamp(self) -> str:
        ts = self.timestamp.astimezone(_dt.timezone.utc)
        return ts.strftime("%Y-%m-%dT%H:%M:%S.%fZ")

    @property
    def epoch_seconds(self) -> int:
        return int(self.timestamp.timestamp())

    def render(self) -> str:
        return (
            f"Message {self.kind.value}: Id = {self.message_id}; "
            f"DateTime = {self.iso_timestamp}; Instant = {self.epoch_seconds}\n"
        )


class AcknowledgmentLog:
    """Thread-safe line sink over a single text file.

    Properties:
    - `path`: file being written
    - `closed`: True once `close()` ran (further writes are dropped)
    """

    def __init__(self, path: Path, stream: IO[str]) -> None:
        self.path = path
        self._stream: Optional[IO[str]] = stream
        self._lock = threading.Lock()

    @classmethod
    def open(cls, path: Union[str, Path]) -> "AcknowledgmentLog":
        """Create or truncate ``path`` and return a log writing to it.

        Raises ``OSError`` if the file cannot be opened; that is a startup failure.
        """
        log_path = Path(path)
        stream = open(log_path, "w", encoding="utf-8")
        logger.info("Opened acknowledgment log %s", log_path)
        return cls(log_path, stream)

    @property
    def closed(self) -> bool:
        return self._stream is None

    def write(self, record: LogRecord) -> bool:
        """Append one rendered record and flush. Returns False if it was dropped."""
        line = record.render()
        with self._lock:
            if self._stream is None:
                logger.warning("Acknowledgment log closed; dropping record for message %s", record.message_id)
                ACK_LOG_WRITE_FAILED_TOTAL.inc()
                return False
            try:
                self._stream.write(line)
                self._stream.flush()
            except (OSError, ValueError) as exc:
                logger.error("Failed to write record for message %s: %s", record.message_id, exc, exc_info=True)
                ACK_LOG_WRITE_FAILED_TOTAL.inc()
                return False
        return True

    def close(self) -> None:
        """Flush and release the file. Safe to call repeatedly and from exit hooks."""
        with self._lock:
            stream, self._stream = self._stream, None
            if stream is None:
                return
            logger.info("Closing acknowledgment log %s", self.path)
            try:
                stream.flush()
            except (OSError, ValueError) as exc:
                logger.error("Failed to flush acknowledgment log %s: %s", self.path, exc, exc_info=True)
            finally:
                try:
                    stream.close()
                except OSError as exc:
                    logger.error("Failed to close acknowledgment log %s: %s", self.path, exc, exc_info=True)

    def __enter__(self) -> "AcknowledgmentLog":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
