import os

import pytest


_STRESS_ENV_VARS = (
    "STRESS_CONNECTION_STRING",
    "STRESS_QUEUE_NAME",
    "STRESS_MESSAGE_LIMIT",
    "SEND_INTERVAL_SECONDS",
    "PROXY_HOSTNAME",
    "PROXY_PORT",
    "METRICS_PORT",
    "TRACING_ENABLED",
)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Keep the developer's shell configuration out of the tests."""
    for name in _STRESS_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    # Environment proxies would change default routing decisions
    for name in list(os.environ):
        if name.lower().endswith("_proxy"):
            monkeypatch.delenv(name, raising=False)
    yield


class FakeIncomingMessage:
    """Stand-in for ``aio_pika.IncomingMessage`` that counts settlements."""

    def __init__(self, message_id, headers=None, delivery_tag=1, fail_ack=False, redelivered=False):
        self.message_id = message_id
        self.redelivered = redelivered
        self.headers = headers or {}
        self.delivery_tag = delivery_tag
        self.fail_ack = fail_ack
        self.acks = 0
        self.rejects = []

    async def ack(self, multiple=False):
        if self.fail_ack:
            raise ConnectionError("channel closed")
        self.acks += 1

    async def reject(self, requeue=False):
        self.rejects.append(requeue)

    @property
    def settlements(self):
        return self.acks + len(self.rejects)
