"""RabbitMQ transport client for the stress client.

This module wraps ``aio_pika`` to provide the two operations the stress loops
need from the broker:
- ``QueueClient.send(message)``: publish and wait for the broker's confirm
- ``QueueClient.subscribe(handler)``: consume with explicit settlement

Connections are routed through a ``ProxyRouter``. When the router picks an
HTTP proxy, ``connect`` starts a loopback ``TunnelRelay`` and points
``aio_pika`` at it, so every (re)connection is tunnelled with HTTP CONNECT.
For ``amqps`` the relay owns the TLS session with the broker and ``aio_pika``
speaks plain ``amqp`` to the relay.

Example:
    >>> client = await QueueClient.create(settings, router)
    >>> await client.send(build_message("0"))
    >>> await client.close()
"""

import asyncio
import logging
import ssl
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlsplit, urlunsplit

import aio_pika
from aio_pika import DeliveryMode, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustConnection,
)

from libs.config import Settings, TransportType
from libs.proxy import ProxyRouter, ProxyType
from libs.tunnel import RELAY_HOST, TunnelRelay


logger = logging.getLogger(__name__)

_DEFAULT_PORTS = {"amqp": 5672, "amqps": 5671}


class ExceptionPhase(str, Enum):
    """Where an asynchronously reported exception happened."""
    RECEIVE = "receive"
    USER_CALLBACK = "user_callback"
    COMPLETE = "complete"
    ABANDON = "abandon"
    CONNECTION = "connection"


MessageHandler = Callable[[AbstractIncomingMessage], Awaitable[None]]
ErrorHandler = Callable[[BaseException, ExceptionPhase], None]


def _build_ssl_context(settings: Settings) -> Optional[ssl.SSLContext]:
    """Return an ``ssl.SSLContext`` for TLS/mTLS if configured, else ``None``.

    Honors ``RABBITMQ_SSL_*`` flags in ``Settings``.
    """
    scheme = urlsplit(settings.connection_string).scheme.lower()
    wants_tls = scheme == "amqps" or any(
        [
            bool(settings.rabbitmq_ssl_ca_path),
            bool(settings.rabbitmq_ssl_cert_path),
            bool(settings.rabbitmq_ssl_key_path),
        ]
    )
    if not wants_tls:
        return None

    cafile = settings.rabbitmq_ssl_ca_path or None
    context = ssl.create_default_context(cafile=cafile)

    # Client certs for mTLS if provided
    if settings.rabbitmq_ssl_cert_path and settings.rabbitmq_ssl_key_path:
        context.load_cert_chain(settings.rabbitmq_ssl_cert_path, settings.rabbitmq_ssl_key_path)

    if not settings.rabbitmq_ssl_verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    else:
        context.check_hostname = bool(settings.rabbitmq_ssl_check_hostname)
        context.verify_mode = ssl.CERT_REQUIRED

    return context


def _relay_url(url: str, port: int, scheme: Optional[str] = None) -> str:
    """Return ``url`` with its host and port replaced by the loopback relay."""
    parts = urlsplit(url)
    userinfo, sep, _ = parts.netloc.rpartition("@")
    netloc = f"{userinfo}{sep}{RELAY_HOST}:{port}"
    return urlunsplit((scheme or parts.scheme, netloc, parts.path, parts.query, parts.fragment))


async def _start_relay(
    settings: Settings,
    router: ProxyRouter,
    ssl_context: Optional[ssl.SSLContext] = None,
) -> Optional[TunnelRelay]:
    """Start a tunnel relay if the router sends the broker through an HTTP proxy.

    ``ssl_context`` is handed to the relay, which then verifies the broker's
    certificate against its real hostname.
    """
    if settings.transport_type is not TransportType.AMQP_HTTP_TUNNEL:
        return None
    parts = urlsplit(settings.connection_string)
    scheme = parts.scheme.lower()
    if not parts.hostname:
        return None
    destination = (parts.hostname, parts.port or _DEFAULT_PORTS.get(scheme, 5672))
    relay = TunnelRelay(router, destination, scheme=scheme, ssl_context=ssl_context)
    routes = router.select(relay.uri)
    if not routes or routes[0].type is not ProxyType.HTTP:
        return None
    await relay.start()
    return relay


async def connect(settings: Settings, router: ProxyRouter) -> tuple[AbstractRobustConnection, Optional[TunnelRelay]]:
    """Create a robust AMQP connection along the router's route, with retry/backoff.

    Returns the connection and the tunnel relay (``None`` for direct routes);
    the caller closes both.

    Environment overrides (via ``Settings``):
    - ``RABBITMQ_CONNECT_ATTEMPTS`` (default: 12)
    - ``RABBITMQ_CONNECT_BASE_DELAY_MS`` (default: 500)
    - ``RABBITMQ_CONNECT_MAX_DELAY_MS`` (default: 3000)
    """
    ssl_context = _build_ssl_context(settings)
    relay = await _start_relay(settings, router, ssl_context)
    url = settings.connection_string
    if relay is not None and relay.port is not None:
        url = _relay_url(url, relay.port, scheme="amqp")
        ssl_context = None

    max_attempts = max(1, settings.connect_attempts)
    delay_ms = settings.connect_base_delay_ms
    max_delay_ms = settings.connect_max_delay_ms

    last_exc: Exception | None = None
    try:
        for attempt in range(1, max_attempts + 1):
            try:
                if ssl_context is not None:
                    # Underlying aiormq expects SSLOptions-type; our context aligns but stubs complain
                    connection = await aio_pika.connect_robust(url, ssl=True, ssl_options=ssl_context)  # type: ignore[arg-type]
                else:
                    connection = await aio_pika.connect_robust(url)
                return connection, relay
            except Exception as exc:  # noqa: BLE001
                last_exc = exc
                logger.warning("Connect attempt %d/%d failed: %s", attempt, max_attempts, exc)
                if attempt == max_attempts:
                    break
                await asyncio.sleep(delay_ms / 1000.0)
                delay_ms = min(int(delay_ms * 2), max_delay_ms)
    except BaseException:
        if relay is not None:
            await relay.close()
        raise
    if relay is not None:
        await relay.close()
    assert last_exc is not None
    raise last_exc


def build_message(message_id: str, headers: Optional[Dict[str, Any]] = None) -> Message:
    """Build an empty-bodied persistent message carrying only its id."""
    return Message(
        body=b"",
        message_id=message_id,
        delivery_mode=DeliveryMode.PERSISTENT,
        headers=dict(headers) if headers else {},
    )


class QueueClient:
    """Send/receive client bound to a single durable queue.

    Properties:
    - `connection`, `channel`, `queue`: underlying ``aio_pika`` objects
    - `relay`: tunnel relay when proxied, else None
    - `on_error`: notification path for transport-level faults
    """

    def __init__(
        self,
        connection: AbstractRobustConnection,
        channel: AbstractChannel,
        queue: AbstractQueue,
        relay: Optional[TunnelRelay] = None,
        on_error: Optional[ErrorHandler] = None,
    ) -> None:
        self.connection = connection
        self.channel = channel
        self.queue = queue
        self.relay = relay
        self.on_error = on_error
        self._closing = False
        self._consumer_tag: Optional[str] = None
        connection.close_callbacks.add(self._on_connection_closed)
        connection.reconnect_callbacks.add(self._on_reconnected)

    @classmethod
    async def create(
        cls,
        settings: Settings,
        router: ProxyRouter,
        on_error: Optional[ErrorHandler] = None,
        prefetch_count: int = 1,
    ) -> "QueueClient":
        """Connect, open a confirming channel and declare the queue."""
        connection, relay = await connect(settings, router)
        try:
            channel = await connection.channel(publisher_confirms=True)
            await channel.set_qos(prefetch_count=prefetch_count)
            queue = await channel.declare_queue(settings.queue_name, durable=True)
        except BaseException:
            await connection.close()
            if relay is not None:
                await relay.close()
            raise
        logger.info("Connected to queue %s", settings.queue_name)
        return cls(connection, channel, queue, relay=relay, on_error=on_error)

    async def send(self, message: Message) -> None:
        """Publish ``message`` and return once the broker confirms it.

        Raises ``aio_pika.exceptions.DeliveryError`` on a nack or unroutable message.
        """
        await self.channel.default_exchange.publish(message, routing_key=self.queue.name, mandatory=True)

    async def subscribe(self, handler: MessageHandler) -> str:
        """Start consuming with manual settlement; ``handler`` must settle each message."""
        self._consumer_tag = await self.queue.consume(handler, no_ack=False)
        logger.info("Subscribed to queue %s (consumer %s)", self.queue.name, self._consumer_tag)
        return self._consumer_tag

    def _notify(self, exc: BaseException, phase: ExceptionPhase) -> None:
        if self.on_error is not None:
            self.on_error(exc, phase)
        else:
            logger.warning("%s - %s", phase.value, exc)

    def _on_connection_closed(self, _sender: Any, exc: Optional[BaseException] = None) -> None:
        if self._closing or exc is None or isinstance(exc, asyncio.CancelledError):
            return
        self._notify(exc, ExceptionPhase.CONNECTION)

    def _on_reconnected(self, _sender: Any, *_args: Any) -> None:
        logger.info("Transport reconnected")

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        try:
            if self._consumer_tag is not None and not self.channel.is_closed:
                await self.queue.cancel(self._consumer_tag)
            await self.connection.close()
        finally:
            if self.relay is not None:
                await self.relay.close()
        logger.info("Transport closed")
