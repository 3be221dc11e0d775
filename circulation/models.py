from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


class Role(str, Enum):
    MEMBER = "member"
    LIBRARIAN = "librarian"
    ADMIN = "admin"

    @property
    def is_staff(self) -> bool:
        return self in (Role.LIBRARIAN, Role.ADMIN)


class LoanStatus(str, Enum):
    ACTIVE = "active"
    PENDING_RETURN = "pending_return"
    OVERDUE = "overdue"
    RETURNED = "returned"

    @property
    def is_outstanding(self) -> bool:
        return self in OUTSTANDING_STATUSES

    def can_become(self, target: "LoanStatus") -> bool:
        return target in TRANSITIONS[self]


OUTSTANDING_STATUSES: FrozenSet[LoanStatus] = frozenset(
    {LoanStatus.ACTIVE, LoanStatus.PENDING_RETURN, LoanStatus.OVERDUE}
)

# Every permitted status change. Anything not listed here is rejected.
TRANSITIONS: Dict[LoanStatus, FrozenSet[LoanStatus]] = {
    LoanStatus.ACTIVE: frozenset({LoanStatus.PENDING_RETURN, LoanStatus.OVERDUE, LoanStatus.RETURNED}),
    LoanStatus.PENDING_RETURN: frozenset({LoanStatus.RETURNED}),
    LoanStatus.OVERDUE: frozenset({LoanStatus.RETURNED}),
    LoanStatus.RETURNED: frozenset(),
}


class LoanError(str, Enum):
    """Expected failures of loan operations. Callers branch on these."""

    ITEM_UNAVAILABLE = "item_unavailable"
    NOT_OWNER = "not_owner"
    FORBIDDEN = "forbidden"
    INVALID_STATE = "invalid_state"


class ReserveOutcome(str, Enum):
    RESERVED = "reserved"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class Actor:
    """Caller identity as supplied by the session provider."""

    id: str
    role: Role

    @property
    def is_staff(self) -> bool:
        return self.role.is_staff


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Aware UTC datetime; naive values are taken to be UTC already."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_timestamp(value: datetime) -> str:
    """Serialize a datetime so that stored values sort chronologically as text."""
    return as_utc(value).isoformat(timespec="microseconds")


def from_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


@dataclass
class CatalogItem:
    id: str
    total_copies: int
    copies_on_loan: int = 0
    title: str = ""

    @property
    def available_copies(self) -> int:
        return self.total_copies - self.copies_on_loan

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "total_copies": self.total_copies,
            "copies_on_loan": self.copies_on_loan,
            "available_copies": self.available_copies,
        }

    @staticmethod
    def from_row(row: Any) -> "CatalogItem":
        data = dict(row)
        return CatalogItem(
            id=data["id"],
            title=data.get("title") or "",
            total_copies=int(data["total_copies"]),
            copies_on_loan=int(data["copies_on_loan"]),
        )


@dataclass
class Loan:
    id: int
    item_id: str
    borrower_id: str
    borrowed_at: datetime
    due_at: datetime
    status: LoanStatus = LoanStatus.ACTIVE
    returned_at: Optional[datetime] = None
    fine_amount: Decimal = field(default_factory=lambda: Decimal("0.00"))

    @property
    def is_outstanding(self) -> bool:
        return self.status.is_outstanding

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "borrower_id": self.borrower_id,
            "borrowed_at": self.borrowed_at.isoformat(),
            "due_at": self.due_at.isoformat(),
            "returned_at": self.returned_at.isoformat() if self.returned_at else None,
            "status": self.status.value,
            "fine_amount": str(self.fine_amount),
        }

    @staticmethod
    def from_row(row: Any) -> "Loan":
        data = dict(row)
        return Loan(
            id=int(data["id"]),
            item_id=data["item_id"],
            borrower_id=data["borrower_id"],
            borrowed_at=from_timestamp(data["borrowed_at"]),
            due_at=from_timestamp(data["due_at"]),
            returned_at=from_timestamp(data.get("returned_at")),
            status=LoanStatus(data["status"]),
            fine_amount=Decimal(data.get("fine_amount") or "0.00"),
        )


@dataclass(frozen=True)
class LoanResult:
    """Outcome of a loan operation: either a loan or a ``LoanError``."""

    loan: Optional[Loan] = None
    error: Optional[LoanError] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @staticmethod
    def success(loan: Loan) -> "LoanResult":
        return LoanResult(loan=loan)

    @staticmethod
    def failure(error: LoanError, detail: str) -> "LoanResult":
        return LoanResult(error=error, detail=detail)
