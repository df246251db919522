"""Internal libraries for the message-queue stress client.

Modules include configuration, proxy routing and HTTP CONNECT tunnelling,
the RabbitMQ transport client, the acknowledgment log, the sender and
receiver loops, metrics, tracing and logging setup.
"""
