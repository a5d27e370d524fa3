from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Any, Iterator

from pegledger.utils.request_id import current_correlation_id


def format_fields(**fields: object) -> str:
    return " ".join(f"{k}={v}" for k, v in fields.items())


@contextmanager
def log_duration(logger: Any, operation: str, **fields: object) -> Iterator[None]:
    """Log duration of an operation.

    Uses logger.debug with a stable key=value format so lines stay parseable
    without a JSON formatter. HTTP request ids and sync run ids are attached
    when present.
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        cid = current_correlation_id()
        if cid and "correlation_id" not in fields:
            fields = {"correlation_id": cid, **fields}
        extras = format_fields(**fields)
        if extras:
            logger.debug("op=%s duration_ms=%.2f %s", operation, elapsed_ms, extras)
        else:
            logger.debug("op=%s duration_ms=%.2f", operation, elapsed_ms)
