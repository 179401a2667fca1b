"""Trust escrow error codes and exceptions."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum


class ErrorCategory(IntEnum):
    SUCCESS = 0x00
    VALIDATION = 0x01
    AUTHORIZATION = 0x02
    STATE = 0x04
    PROCESSOR = 0x05
    INTERNAL = 0xFF


class ErrorCode(IntEnum):
    # Success
    SUCCESS = 0x0000

    # Validation
    INVALID_INPUT = 0x0100
    INVALID_AMOUNT = 0x0105
    SELF_DEALING = 0x0109

    # Authorization
    UNAUTHORIZED = 0x0200
    LIMIT_EXCEEDED = 0x0202

    # State
    NOT_FOUND = 0x0400
    STATE_CONFLICT = 0x0403

    # Processor
    PROCESSOR_FAILURE = 0x0500
    PAYMENT_DECLINED = 0x0501

    # Internal
    INTERNAL_ERROR = 0xFF00

    @property
    def category(self) -> ErrorCategory:
        return ErrorCategory(self.value >> 8)


# Caller-facing error kinds. StateConflict means "try a different operation",
# ProcessorFailure means "retry the same one".
_KINDS = {
    ErrorCategory.VALIDATION: "InvalidInput",
    ErrorCategory.PROCESSOR: "ProcessorFailure",
    ErrorCategory.INTERNAL: "Internal",
}

_CODE_KINDS = {
    ErrorCode.UNAUTHORIZED: "Unauthorized",
    ErrorCode.LIMIT_EXCEEDED: "LimitExceeded",
    ErrorCode.NOT_FOUND: "NotFound",
    ErrorCode.STATE_CONFLICT: "StateConflict",
}


@dataclass(frozen=True)
class EscrowError(Exception):
    code: ErrorCode
    message: str

    def __str__(self) -> str:
        return f"{self.code.name}({self.code:#06x}): {self.message}"

    @property
    def kind(self) -> str:
        if self.code in _CODE_KINDS:
            return _CODE_KINDS[self.code]
        return _KINDS.get(self.code.category, "Internal")

    @property
    def retryable(self) -> bool:
        return self.code.category == ErrorCategory.PROCESSOR


# Allow Python's Exception machinery to set __traceback__/__context__/__cause__
# while keeping dataclass fields frozen.
_EXCEPTION_ATTRS = frozenset((
    "__traceback__", "__context__", "__cause__", "__suppress_context__", "__notes__",
))
_frozen_setattr = EscrowError.__setattr__


def _escrow_error_setattr(self: EscrowError, name: str, value: object) -> None:
    if name in _EXCEPTION_ATTRS:
        object.__setattr__(self, name, value)
    else:
        _frozen_setattr(self, name, value)


EscrowError.__setattr__ = _escrow_error_setattr  # type: ignore[method-assign]


def err(code: ErrorCode, message: str) -> EscrowError:
    return EscrowError(code=code, message=message)
