"""
Typed result returned across the engine boundary.

Inside the kernel, services raise typed exceptions.  ``BillingEngine``
converts them into ``Result`` values so nothing escapes the component as
an uncaught exception.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

from billing_kernel.exceptions import BillingKernelError

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    ok: bool
    value: T | None = None
    error: BillingKernelError | None = None

    @classmethod
    def success(cls, value: T | None = None) -> "Result[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: BillingKernelError) -> "Result[T]":
        return cls(ok=False, error=error)

    @property
    def error_code(self) -> str | None:
        return self.error.code if self.error is not None else None

    @property
    def message(self) -> str | None:
        return str(self.error) if self.error is not None else None

    def unwrap(self) -> T:
        """Return the value or re-raise the captured error."""
        if not self.ok:
            raise self.error
        return self.value
