from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes returned in the API error envelope."""

    E002 = "E002"  # Chain: RPC call failed
    E003 = "E003"  # Chain: Node not ready
    E004 = "E004"  # Store: Ledger write failed
    E006 = "E006"  # Auth: Insufficient permissions
    E008 = "E008"  # Conflict: State conflict
    E009 = "E009"  # Validation: Invalid input
    E010 = "E010"  # Internal: Internal error


ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.E002: "Chain RPC call failed",
    ErrorCode.E003: "Chain node not ready",
    ErrorCode.E004: "Ledger write failed",
    ErrorCode.E006: "Insufficient permissions",
    ErrorCode.E008: "State conflict",
    ErrorCode.E009: "Validation error",
    ErrorCode.E010: "Internal server error",
}
