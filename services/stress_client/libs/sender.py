"""Fixed-cadence sender.

Submits messages ``"0"``, ``"1"``, ``"2"``... one per interval without waiting
for the broker. Each send runs as its own task; when the broker confirms, the
task writes an ``acknowledged`` record. Confirmations may land out of order
and the log keeps the order they arrived in.
"""
from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Optional, Protocol

from aio_pika import Message

from libs.ack_log import AcknowledgmentLog, LogRecord, RecordKind
from libs.config import DEFAULT_SEND_INTERVAL_SECONDS
from libs.metrics import (
    STRESS_ACK_LATENCY_SECONDS,
    STRESS_ACKNOWLEDGED_TOTAL,
    STRESS_SEND_FAILED_TOTAL,
    STRESS_SENT_TOTAL,
)
from libs.rabbit import build_message
from libs.tracing import outgoing_headers, tracer_for


logger = logging.getLogger(__name__)


class SupportsSend(Protocol):
    def send(self, message: Message) -> Awaitable[None]: ...


class SenderState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    TERMINATED = "terminated"


class Sender:
    """Drives an unbounded sequence of sends at a fixed interval.

    The loop never awaits a confirmation, so network latency overlaps with
    the next interval. It ends when ``stop()`` is called or, if ``limit`` is
    set, after that many sends.

    Example:
    ```python
    sender = Sender(client, log, interval=30.0)
    loop.add_signal_handler(signal.SIGTERM, sender.stop)
    await sender.run()
    await sender.drain()
    ```
    """

    def __init__(
        self,
        client: SupportsSend,
        log: AcknowledgmentLog,
        interval: float = DEFAULT_SEND_INTERVAL_SECONDS,
        limit: Optional[int] = None,
    ) -> None:
        self.client = client
        self.log = log
        self.interval = interval
        self.limit = limit
        self.state = SenderState.IDLE
        self.sent = 0
        self._stopping = asyncio.Event()
        self._pending: set[asyncio.Task[None]] = set()
        self._tracer = tracer_for("sender")

    @property
    def in_flight(self) -> int:
        return len(self._pending)

    async def run(self) -> None:
        """Send until stopped. Returns after the current interval wait."""
        self.state = SenderState.SENDING
        counter = 0
        logger.info("Sending one message every %.1fs", self.interval)
        try:
            while not self._stopping.is_set():
                if self.limit is not None and counter >= self.limit:
                    logger.info("Message limit %d reached", self.limit)
                    break
                self._submit(str(counter))
                counter += 1
                self.sent = counter
                if self.limit is None or counter < self.limit:
                    await self._wait_interval()
        finally:
            self.state = SenderState.TERMINATED

    async def _wait_interval(self) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            pass

    def _submit(self, message_id: str) -> None:
        task = asyncio.create_task(self._send_and_record(message_id), name=f"send-{message_id}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        STRESS_SENT_TOTAL.inc()

    async def _send_and_record(self, message_id: str) -> None:
        started = time.perf_counter()
        with self._tracer.start_as_current_span("send") as span:
            span.set_attribute("message_id", message_id)
            message = build_message(message_id, headers=outgoing_headers())
            try:
                await self.client.send(message)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                # No retry: a lost send shows up as a gap in the log
                STRESS_SEND_FAILED_TOTAL.labels(reason=exc.__class__.__name__).inc()
                span.record_exception(exc)
                logger.error("Send of message %s failed: %s", message_id, exc, exc_info=True)
                return
        STRESS_ACKNOWLEDGED_TOTAL.inc()
        STRESS_ACK_LATENCY_SECONDS.observe(time.perf_counter() - started)
        self.log.write(LogRecord.now(RecordKind.ACKNOWLEDGED, message_id))

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight sends so confirmed ones are logged before shutdown."""
        if not self._pending:
            return
        logger.info("Waiting for %d in-flight sends", len(self._pending))
        _done, pending = await asyncio.wait(set(self._pending), timeout=timeout)
        if pending:
            logger.warning("%d sends still unconfirmed at shutdown", len(pending))

    def stop(self) -> None:
        """Signal the send loop to stop (used by signal handlers)."""
        self._stopping.set()
