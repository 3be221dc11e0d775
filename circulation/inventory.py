import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator, List, Optional

from circulation.database import get_db_connection, transaction
from circulation.exceptions import InventoryInvariantError, StorageError
from circulation.models import OUTSTANDING_STATUSES, ReserveOutcome

logger = logging.getLogger(__name__)

_OUTSTANDING = tuple(sorted(s.value for s in OUTSTANDING_STATUSES))


class InventoryLedger:
    """Sole owner of ``copies_on_loan``.

    Every method accepts an optional connection that already has a
    transaction open. When one is given the ledger joins it, so a caller can
    commit the count change together with its own writes. Without one the
    ledger runs its own short transaction.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file

    @contextmanager
    def _unit_of_work(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        own = get_db_connection(self.db_file)
        try:
            with transaction(own):
                yield own
        finally:
            own.close()

    # ------------------------- Reservation ------------------------- #
    def try_reserve(self, item_id: str, conn: Optional[sqlite3.Connection] = None) -> ReserveOutcome:
        """Claim one copy of ``item_id`` if any is free.

        The check and the increment are one conditional UPDATE, so two
        callers racing for the last copy cannot both succeed.
        """
        with self._unit_of_work(conn) as c:
            cursor = c.execute(
                """
                UPDATE catalog_items
                SET copies_on_loan = copies_on_loan + 1
                WHERE id = ? AND copies_on_loan < total_copies
                """,
                (item_id,),
            )
            if cursor.rowcount == 1:
                logger.debug(f"Reserved a copy of {item_id}")
                return ReserveOutcome.RESERVED
        logger.warning(f"No free copies of {item_id}")
        return ReserveOutcome.UNAVAILABLE

    def release(self, item_id: str, conn: Optional[sqlite3.Connection] = None) -> None:
        """Give one copy of ``item_id`` back. The count never drops below zero."""
        with self._unit_of_work(conn) as c:
            cursor = c.execute(
                """
                UPDATE catalog_items
                SET copies_on_loan = copies_on_loan - 1
                WHERE id = ? AND copies_on_loan > 0
                """,
                (item_id,),
            )
            if cursor.rowcount == 0:
                logger.warning(f"Release of {item_id} ignored: no copies on loan or unknown item")

    # ------------------------- Queries ------------------------- #
    def available(self, item_id: str) -> Optional[int]:
        """Free copies of ``item_id``, or None when the item does not exist."""
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(
                "SELECT total_copies, copies_on_loan FROM catalog_items WHERE id = ?",
                (item_id,),
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e
        finally:
            conn.close()
        if row is None:
            return None
        return row["total_copies"] - row["copies_on_loan"]

    def verify(self, item_id: Optional[str] = None, against_loans: bool = True) -> List[str]:
        """Check stored counts and return the ids that were checked.

        Raises ``InventoryInvariantError`` on the first inconsistent item.
        With ``against_loans`` the stored count must also equal the number of
        outstanding loans for the item.
        """
        placeholders = ", ".join("?" for _ in _OUTSTANDING)
        query = f"""
            SELECT i.id, i.total_copies, i.copies_on_loan, COUNT(l.id) AS outstanding
            FROM catalog_items i
            LEFT JOIN loans l ON l.item_id = i.id AND l.status IN ({placeholders})
        """
        params: list = list(_OUTSTANDING)
        if item_id is not None:
            query += " WHERE i.id = ?"
            params.append(item_id)
        query += " GROUP BY i.id, i.total_copies, i.copies_on_loan ORDER BY i.id"

        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e
        finally:
            conn.close()

        checked = []
        for row in rows:
            total, on_loan, outstanding = row["total_copies"], row["copies_on_loan"], row["outstanding"]
            problem = None
            if on_loan < 0 or on_loan > total:
                problem = f"copies_on_loan={on_loan} outside 0..{total}"
            elif against_loans and on_loan != outstanding:
                problem = f"copies_on_loan={on_loan} but {outstanding} outstanding loans"
            if problem:
                logger.error(f"Inventory invariant violated for {row['id']}: {problem}")
                raise InventoryInvariantError(row["id"], problem)
            checked.append(row["id"])
        return checked
