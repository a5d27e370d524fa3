from __future__ import annotations

import contextvars
import re
import uuid

request_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("request_id", default=None)

# Correlates all log lines of one background sync run (peg scan / federation audit).
sync_run_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("sync_run_id", default=None)


# X-Request-ID validation: ASCII only, length 1..64, charset [A-Za-z0-9._-].
_REQUEST_ID_ALLOWED_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$", flags=re.ASCII)


def validate_request_id(value: str | None) -> str | None:
    """Return value if it is a safe/valid request id, otherwise None."""

    if value is None or not isinstance(value, str):
        return None
    if len(value) < 1 or len(value) > 64:
        return None
    if _REQUEST_ID_ALLOWED_RE.fullmatch(value) is None:
        return None
    return value


def new_request_id() -> str:
    return uuid.uuid4().hex


def new_sync_run_id(engine: str) -> str:
    return f"{engine}-{uuid.uuid4().hex[:12]}"


def current_correlation_id() -> str | None:
    return request_id_var.get() or sync_run_id_var.get()
