"""Correlation IDs for log lines.

HTTP requests take theirs from the X-Request-ID header (or get a fresh
one); Celery task runs open a ``correlation_scope`` so every sync started
by the scheduler logs under one ``task-...`` ID.
"""

import re
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

MAX_REQUEST_ID_LENGTH = 128
_SAFE_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:\-]+$")


def generate_request_id(prefix: Optional[str] = None) -> str:
    value = str(uuid.uuid4())
    return f"{prefix}-{value}" if prefix else value


def normalize_request_id(header_value: Optional[str]) -> str:
    """Accept a client supplied ID only if it is short and log-safe."""
    if header_value:
        candidate = header_value.strip()
        if len(candidate) <= MAX_REQUEST_ID_LENGTH and _SAFE_REQUEST_ID.match(candidate):
            return candidate
    return generate_request_id()


def get_request_id() -> str:
    """Current request ID, or "no-request-id" outside a request."""
    return request_id_var.get() or "no-request-id"


def set_request_id(request_id: str) -> None:
    request_id_var.set(request_id)


@contextmanager
def correlation_scope(prefix: str) -> Iterator[str]:
    token = request_id_var.set(generate_request_id(prefix))
    try:
        yield request_id_var.get()
    finally:
        request_id_var.reset(token)
