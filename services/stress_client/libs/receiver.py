"""Queue receiver.

Registers one handler with the transport. For every delivery it writes a
``received`` record and then settles the message with the broker. Handler
failures are reported through ``notify_exception`` and the message is
abandoned: requeued on its first failure, rejected for good once it fails
again as a redelivery, so one bad message cannot hold the single dispatch
worker. A delivery without a message id is logged as ``null``. Redeliveries
are logged again; deduplication is left to whoever analyses the log.
"""
from __future__ import annotations

import logging
from typing import Awaitable, Protocol

from aio_pika.abc import AbstractIncomingMessage

from libs.ack_log import AcknowledgmentLog, LogRecord, RecordKind
from libs.metrics import STRESS_HANDLER_ERRORS_TOTAL, STRESS_RECEIVED_TOTAL
from libs.rabbit import ExceptionPhase, MessageHandler
from libs.tracing import delivery_context, tracer_for


logger = logging.getLogger(__name__)

MISSING_MESSAGE_ID = "null"


class SupportsSubscribe(Protocol):
    def subscribe(self, handler: MessageHandler) -> Awaitable[str]: ...


class Receiver:
    """Logs and settles each delivered message.

    Example:
    ```python
    client = await QueueClient.create(settings, router, on_error=receiver.notify_exception)
    await receiver.start(client)
    ```
    """

    def __init__(self, log: AcknowledgmentLog) -> None:
        self.log = log
        self.received = 0
        self._tracer = tracer_for("receiver")

    async def start(self, client: SupportsSubscribe) -> str:
        """Register ``handle`` with the transport; deliveries arrive on its dispatch worker."""
        return await client.subscribe(self.handle)

    async def handle(self, message: AbstractIncomingMessage) -> None:
        """Core lifecycle for a single delivery: log, then settle exactly once."""
        try:
            self._process(message)
        except Exception as exc:  # noqa: BLE001
            self.notify_exception(exc, ExceptionPhase.USER_CALLBACK)
            try:
                await message.reject(requeue=not message.redelivered)
            except Exception as settle_exc:  # noqa: BLE001
                self.notify_exception(settle_exc, ExceptionPhase.ABANDON)
            return

        try:
            await message.ack()
        except Exception as exc:  # noqa: BLE001
            self.notify_exception(exc, ExceptionPhase.COMPLETE)

    def _process(self, message: AbstractIncomingMessage) -> None:
        with delivery_context(message.headers), self._tracer.start_as_current_span("receive") as span:
            message_id = message.message_id
            if message_id is None:
                logger.warning("Delivery %s has no message id", message.delivery_tag)
                message_id = MISSING_MESSAGE_ID
            span.set_attribute("message_id", message_id)
            record = LogRecord.now(RecordKind.RECEIVED, message_id)
            self.log.write(record)
            self.received += 1
            STRESS_RECEIVED_TOTAL.inc()

    def notify_exception(self, exc: BaseException, phase: ExceptionPhase) -> None:
        """Report an exception raised outside the normal flow; never re-raises."""
        STRESS_HANDLER_ERRORS_TOTAL.labels(phase=phase.value).inc()
        logger.error("%s-%s", phase.value, exc, exc_info=exc)
