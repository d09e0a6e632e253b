"""
Connection Correlation for log records.

Every WebSocket handler runs in its own task, so a ContextVar bound at the
start of the handler tags all log lines emitted while serving that connection.
"""

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

# Context variable for the connection id (task-local)
connection_id_var: ContextVar[str] = ContextVar("connection_id", default="")


def get_connection_id() -> str:
    """Get the connection id bound to the current task."""
    return connection_id_var.get()


@contextmanager
def bind_connection_id(connection_id: str) -> Iterator[None]:
    """
    Bind a connection id for the duration of the block.

    Usage:
        with bind_connection_id(connection.connection_id):
            await self._message_loop()
    """
    token = connection_id_var.set(connection_id)
    try:
        yield
    finally:
        connection_id_var.reset(token)


class CorrelationIdFilter(logging.Filter):
    """
    Logging filter that adds connection_id to log records.

    Usage:
        handler = logging.StreamHandler()
        handler.addFilter(CorrelationIdFilter())
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.connection_id = connection_id_var.get() or "-"
        return True
