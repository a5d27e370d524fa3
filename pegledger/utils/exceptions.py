from __future__ import annotations

from typing import Any, Optional

from pegledger.utils.error_codes import ErrorCode, ERROR_MESSAGES


def _normalize_error_code(value: ErrorCode | str | None) -> ErrorCode:
    if value is None:
        return ErrorCode.E010
    if isinstance(value, ErrorCode):
        return value
    try:
        return ErrorCode(str(value))
    except ValueError:
        return ErrorCode.E010


class PegLedgerException(Exception):
    """Base exception for the peg ledger service.

    API response format is handled by the global exception handler.
    """

    def __init__(
        self,
        message: str | None = None,
        *,
        code: ErrorCode | str = ErrorCode.E010,
        details: Optional[dict[str, Any]] = None,
        status_code: int = 500,
    ):
        normalized = _normalize_error_code(code)
        if message is None:
            message = ERROR_MESSAGES.get(normalized, ERROR_MESSAGES[ErrorCode.E010])

        self.message = message
        self.code = normalized.value
        self.details = details or {}
        self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": {"code": self.code, "message": self.message, "details": self.details}}


class ForbiddenException(PegLedgerException):
    def __init__(self, message: str | None = None, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message or "Forbidden", code=ErrorCode.E006, details=details, status_code=403)


class ConflictException(PegLedgerException):
    def __init__(self, message: str | None = None, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message, code=ErrorCode.E008, details=details, status_code=409)


class TooManyRequestsException(PegLedgerException):
    def __init__(self, message: str | None = None, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message or "Too many requests", code=ErrorCode.E009, details=details, status_code=429)


class ChainClientError(PegLedgerException):
    """RPC failure, timeout or JSON-RPC error reported by a chain node."""

    def __init__(
        self,
        message: str | None = None,
        *,
        chain: str = "",
        method: str = "",
        rpc_code: int | None = None,
        details: Optional[dict[str, Any]] = None,
    ):
        merged = {"chain": chain, "method": method, **(details or {})}
        if rpc_code is not None:
            merged["rpc_code"] = rpc_code
        self.chain = chain
        self.method = method
        self.rpc_code = rpc_code
        super().__init__(message, code=ErrorCode.E002, details=merged, status_code=502)


class StoreError(PegLedgerException):
    """A ledger unit of work failed and was rolled back."""

    def __init__(self, message: str | None = None, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message, code=ErrorCode.E004, details=details, status_code=500)
