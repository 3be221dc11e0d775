import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from circulation.config import settings
from circulation.database import get_db_connection, initialize_database, transaction
from circulation.exceptions import StorageError
from circulation.fines import compute_fine
from circulation.inventory import InventoryLedger
from circulation.models import (
    OUTSTANDING_STATUSES,
    Actor,
    Loan,
    LoanError,
    LoanResult,
    LoanStatus,
    ReserveOutcome,
    Role,
    as_utc,
    to_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

_LOAN_COLUMNS = "id, item_id, borrower_id, borrowed_at, due_at, returned_at, status, fine_amount"


class LoanLifecycle:
    """Borrowing records from checkout to return.

    Each operation checks the caller's role first, then applies one
    transition from ``models.TRANSITIONS`` inside a single transaction
    together with the matching ``InventoryLedger`` call.
    """

    def __init__(
        self,
        db_file: Optional[str] = None,
        ledger: Optional[InventoryLedger] = None,
        clock: Callable[[], datetime] = utcnow,
        daily_rate=None,
    ) -> None:
        self.db_file = db_file
        self.ledger = ledger or InventoryLedger(db_file)
        self.clock = clock
        self.daily_rate = settings.daily_fine_rate if daily_rate is None else daily_rate
        initialize_database(db_file)

    # ------------------------- Borrowing ------------------------- #
    def create_loan(
        self,
        item_id: str,
        borrower: Actor,
        loan_period_days: Optional[int] = None,
        initiator: Optional[Actor] = None,
    ) -> LoanResult:
        """Lend one copy of ``item_id`` to ``borrower``.

        Staff may pass themselves as ``initiator`` to borrow on behalf of a
        member. The copy reservation and the loan insert commit together.
        """
        if loan_period_days is None:
            loan_period_days = settings.default_loan_period_days
        if loan_period_days < 1 or loan_period_days > settings.max_loan_period_days:
            raise ValueError(
                f"loan_period_days must be between 1 and {settings.max_loan_period_days}."
            )

        if borrower.role is not Role.MEMBER:
            return LoanResult.failure(LoanError.FORBIDDEN, "Only members can borrow items.")
        if initiator is not None and initiator.id != borrower.id and not initiator.is_staff:
            return LoanResult.failure(
                LoanError.FORBIDDEN, "Only staff can create loans on behalf of another member."
            )

        now = as_utc(self.clock())
        due_at = now + timedelta(days=loan_period_days)

        conn = get_db_connection(self.db_file)
        try:
            with transaction(conn):
                if self.ledger.try_reserve(item_id, conn=conn) is ReserveOutcome.UNAVAILABLE:
                    return LoanResult.failure(
                        LoanError.ITEM_UNAVAILABLE, f"No copies of {item_id} are available."
                    )
                cursor = conn.execute(
                    """
                    INSERT INTO loans (item_id, borrower_id, borrowed_at, due_at, status, fine_amount)
                    VALUES (?, ?, ?, ?, ?, '0.00')
                    """,
                    (item_id, borrower.id, to_timestamp(now), to_timestamp(due_at), LoanStatus.ACTIVE.value),
                )
                loan_id = cursor.lastrowid
                loan = self._fetch(conn, loan_id)
        finally:
            conn.close()

        by = f" by {initiator.id}" if initiator is not None and initiator.id != borrower.id else ""
        logger.info(f"Loan {loan.id} created: {item_id} -> {borrower.id}{by}, due {loan.due_at.isoformat()}")
        return LoanResult.success(loan)

    # ------------------------- Returns ------------------------- #
    def request_return(self, loan_id: int, requester: Actor) -> LoanResult:
        """Borrower marks an active loan as handed back, awaiting staff approval."""
        conn = get_db_connection(self.db_file)
        try:
            with transaction(conn):
                loan = self._fetch(conn, loan_id)
                if loan is None:
                    return LoanResult.failure(LoanError.INVALID_STATE, f"Loan {loan_id} does not exist.")
                if loan.borrower_id != requester.id:
                    return LoanResult.failure(
                        LoanError.NOT_OWNER, "You can only request a return for your own loans."
                    )
                if not loan.status.can_become(LoanStatus.PENDING_RETURN):
                    return LoanResult.failure(
                        LoanError.INVALID_STATE,
                        f"Loan {loan_id} is {loan.status.value}; only active loans can be returned.",
                    )
                self._set_status(conn, loan_id, loan.status, LoanStatus.PENDING_RETURN)
                loan = self._fetch(conn, loan_id)
        finally:
            conn.close()

        logger.info(f"Return requested for loan {loan_id} by {requester.id}")
        return LoanResult.success(loan)

    def approve_return(self, loan_id: int, approver: Actor) -> LoanResult:
        """Staff confirm the copy is back on the shelf."""
        return self._complete_return(loan_id, approver, "approve")

    def direct_return(self, loan_id: int, approver: Actor) -> LoanResult:
        """Staff check a copy in without a prior return request."""
        return self._complete_return(loan_id, approver, "direct")

    def _complete_return(self, loan_id: int, approver: Actor, kind: str) -> LoanResult:
        if not approver.is_staff:
            return LoanResult.failure(LoanError.FORBIDDEN, "Only staff can approve returns.")

        now = as_utc(self.clock())
        conn = get_db_connection(self.db_file)
        try:
            with transaction(conn):
                loan = self._fetch(conn, loan_id)
                if loan is None:
                    return LoanResult.failure(LoanError.INVALID_STATE, f"Loan {loan_id} does not exist.")
                if not loan.status.can_become(LoanStatus.RETURNED):
                    return LoanResult.failure(
                        LoanError.INVALID_STATE, f"Loan {loan_id} is already {loan.status.value}."
                    )
                fine = compute_fine(loan.due_at, now, returned_at=now, daily_rate=self.daily_rate)
                self._set_status(
                    conn, loan_id, loan.status, LoanStatus.RETURNED,
                    returned_at=to_timestamp(now), fine=fine,
                )
                # Exactly one release per loan: the status guard above only lets
                # an outstanding loan through, and the UPDATE is conditioned on it.
                self.ledger.release(loan.item_id, conn=conn)
                loan = self._fetch(conn, loan_id)
        finally:
            conn.close()

        logger.info(f"Loan {loan_id} returned ({kind}) by {approver.id}, fine {loan.fine_amount}")
        return LoanResult.success(loan)

    # ------------------------- Overdue sweep ------------------------- #
    def recompute_overdue(self, now: Optional[datetime] = None) -> int:
        """Move active loans past their due date to overdue. Returns how many moved.

        Loans that are already overdue keep their status; their provisional
        fine is brought up to date and never lowered.
        """
        now = as_utc(now or self.clock())
        conn = get_db_connection(self.db_file)
        try:
            with transaction(conn):
                rows = conn.execute(
                    f"SELECT {_LOAN_COLUMNS} FROM loans WHERE status = ? AND due_at < ?",
                    (LoanStatus.ACTIVE.value, to_timestamp(now)),
                ).fetchall()
                for row in rows:
                    loan = Loan.from_row(row)
                    fine = compute_fine(loan.due_at, now, daily_rate=self.daily_rate)
                    self._set_status(conn, loan.id, LoanStatus.ACTIVE, LoanStatus.OVERDUE, fine=fine)

                moved = {row["id"] for row in rows}
                for row in conn.execute(
                    f"SELECT {_LOAN_COLUMNS} FROM loans WHERE status = ?",
                    (LoanStatus.OVERDUE.value,),
                ).fetchall():
                    loan = Loan.from_row(row)
                    if loan.id in moved:
                        continue
                    fine = compute_fine(loan.due_at, now, daily_rate=self.daily_rate)
                    if fine > loan.fine_amount:
                        conn.execute(
                            "UPDATE loans SET fine_amount = ? WHERE id = ? AND status = ?",
                            (str(fine), loan.id, LoanStatus.OVERDUE.value),
                        )
        finally:
            conn.close()

        if rows:
            logger.info(f"{len(rows)} loan(s) marked overdue")
        return len(rows)

    # ------------------------- Queries ------------------------- #
    def get_loan(self, loan_id: int) -> Optional[Loan]:
        conn = get_db_connection(self.db_file)
        try:
            return self._fetch(conn, loan_id)
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e
        finally:
            conn.close()

    def list_loans(
        self,
        borrower_id: Optional[str] = None,
        item_id: Optional[str] = None,
        status: Optional[LoanStatus] = None,
    ) -> List[Loan]:
        """Loans matching every given filter, newest first."""
        if settings.refresh_overdue_on_read:
            self.recompute_overdue()

        clauses, params = [], []
        if borrower_id is not None:
            clauses.append("borrower_id = ?")
            params.append(borrower_id)
        if item_id is not None:
            clauses.append("item_id = ?")
            params.append(item_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(LoanStatus(status).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(
                f"SELECT {_LOAN_COLUMNS} FROM loans {where} ORDER BY borrowed_at DESC, id DESC",
                params,
            ).fetchall()
            return [Loan.from_row(row) for row in rows]
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e
        finally:
            conn.close()

    def count_outstanding(self, item_id: str) -> int:
        conn = get_db_connection(self.db_file)
        try:
            placeholders = ", ".join("?" for _ in OUTSTANDING_STATUSES)
            row = conn.execute(
                f"SELECT COUNT(*) FROM loans WHERE item_id = ? AND status IN ({placeholders})",
                (item_id, *(s.value for s in OUTSTANDING_STATUSES)),
            ).fetchone()
            return row[0]
        finally:
            conn.close()

    # ------------------------- Persistence helpers ------------------------- #
    @staticmethod
    def _fetch(conn: sqlite3.Connection, loan_id: int) -> Optional[Loan]:
        row = conn.execute(f"SELECT {_LOAN_COLUMNS} FROM loans WHERE id = ?", (loan_id,)).fetchone()
        return Loan.from_row(row) if row else None

    @staticmethod
    def _set_status(
        conn: sqlite3.Connection,
        loan_id: int,
        source: LoanStatus,
        target: LoanStatus,
        returned_at: Optional[str] = None,
        fine=None,
    ) -> None:
        if not source.can_become(target):
            raise ValueError(f"Transition {source.value} -> {target.value} is not allowed.")
        assignments = ["status = ?"]
        params: list = [target.value]
        if returned_at is not None:
            assignments.append("returned_at = ?")
            params.append(returned_at)
        if fine is not None:
            assignments.append("fine_amount = ?")
            params.append(str(fine))
        params.extend([loan_id, source.value])
        cursor = conn.execute(
            f"UPDATE loans SET {', '.join(assignments)} WHERE id = ? AND status = ?",
            params,
        )
        if cursor.rowcount != 1:
            # The write lock is held, so a changed status here means storage is corrupt.
            raise StorageError(f"Loan {loan_id} changed state during {source.value} -> {target.value}")
