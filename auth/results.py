"""
auth/results.py -- Explicit success / declined results and the error taxonomy.

Security failures (bad password, bad code, expired temp token) are expected
outcomes, not faults. Every AuthOrchestrator operation returns a Result so a
caller cannot accidentally let a declined login escape as an unhandled
exception. Exceptions are reserved for infrastructure failures (StoreError),
which the orchestrator logs and turns into an INTERNAL result.

The numeric codes travel to clients as error.internalCode in the response
envelope. Authentication failures share 4001 on purpose: the message and code
must not reveal whether the email, the password or the code was wrong.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Generic, TypeVar

T = TypeVar("T")


class ErrorCode(IntEnum):
    VALIDATION = 4000
    AUTHENTICATION = 4001
    NOT_FOUND = 4004
    TWO_FACTOR_STATE = 4005
    LOCKED = 4029
    INTERNAL = 5000


@dataclass(frozen=True)
class Failure:
    message: str
    code: ErrorCode


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either ok=True with data, or ok=False with an error."""

    ok: bool
    data: T | None = None
    error: Failure | None = None

    @classmethod
    def success(cls, data: T) -> Result[T]:
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, message: str, code: ErrorCode) -> Result[T]:
        return cls(ok=False, error=Failure(message=message, code=code))


# ---------------------------------------------------------------------------
# Infrastructure exceptions
# ---------------------------------------------------------------------------


class StoreError(Exception):
    """Persistence failed (connection lost, constraint violated, disk full).

    Store implementations wrap driver exceptions in StoreError with
    `raise StoreError(...) from exc` so the orchestrator handles a single type
    regardless of backend.
    """


class DuplicateEmailError(StoreError):
    """create_account() hit the unique email constraint."""
