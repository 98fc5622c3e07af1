"""
Operation result types.

WHAT: Values returned by the state machine and purchase orchestrator
WHY: Failures are returned to the caller instead of escaping the core
HOW: Small generic dataclass plus the purchase outcome record
"""

import enum
from dataclasses import dataclass
from decimal import Decimal
from typing import Generic, Optional, TypeVar

from ..utils.exceptions import BusinessException, ErrorCategory, ErrorKind

T = TypeVar("T")


@dataclass
class OperationResult(Generic[T]):
    """Either a value or the business error that prevented it."""
    value: Optional[T] = None
    error: Optional[BusinessException] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        return self.error.code if self.error else None

    @classmethod
    def success(cls, value: T) -> "OperationResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: BusinessException) -> "OperationResult[T]":
        return cls(error=error)


class PurchasePhase(str, enum.Enum):
    """Purchase orchestration phases."""
    IDLE = "idle"
    PENDING = "pending"  # resolving and validating, nothing submitted yet
    CONFIRMING = "confirming"  # submitted, awaiting the receipt
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class PurchaseOutcome:
    """Result of one purchase attempt for a thread."""
    thread_id: Optional[int]
    phase: PurchasePhase
    property_id: Optional[int] = None
    amount: Optional[Decimal] = None  # ether
    amount_wei: Optional[int] = None
    tx_hash: Optional[str] = None
    error: Optional[BusinessException] = None
    reconciled: bool = False  # thread closed in the store
    warning: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.phase == PurchasePhase.SUCCESS

    @property
    def needs_verification(self) -> bool:
        return self.error is not None and self.error.category == ErrorCategory.AMBIGUOUS

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        return self.error.code if self.error else None
