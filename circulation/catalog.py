import logging
import sqlite3
from typing import List, Optional

from circulation.database import get_db_connection, initialize_database, transaction
from circulation.exceptions import StorageError
from circulation.models import CatalogItem

logger = logging.getLogger(__name__)


class Catalog:
    """Catalog items and their total copy counts.

    Only ``total_copies`` and display data live here; the number of copies
    on loan belongs to ``InventoryLedger``.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file
        initialize_database(db_file)

    def add_item(self, item_id: str, total_copies: int, title: str = "") -> CatalogItem:
        item_id = (item_id or "").strip()
        if not item_id:
            raise ValueError("Item id cannot be empty.")
        if total_copies < 0:
            raise ValueError("total_copies cannot be negative.")

        conn = get_db_connection(self.db_file)
        try:
            with transaction(conn):
                conn.execute(
                    "INSERT INTO catalog_items (id, title, total_copies, copies_on_loan) VALUES (?, ?, ?, 0)",
                    (item_id, title.strip(), total_copies),
                )
        except StorageError as e:
            if isinstance(e.__cause__, sqlite3.IntegrityError):
                raise ValueError(f"Item {item_id} already exists.") from e
            raise
        finally:
            conn.close()
        logger.info(f"Catalog item added: {item_id} ({total_copies} copies)")
        return CatalogItem(id=item_id, title=title.strip(), total_copies=total_copies)

    def find_item(self, item_id: str) -> Optional[CatalogItem]:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(
                "SELECT id, title, total_copies, copies_on_loan FROM catalog_items WHERE id = ?",
                (item_id,),
            ).fetchone()
            return CatalogItem.from_row(row) if row else None
        finally:
            conn.close()

    def list_items(self) -> List[CatalogItem]:
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(
                "SELECT id, title, total_copies, copies_on_loan FROM catalog_items ORDER BY id"
            ).fetchall()
            return [CatalogItem.from_row(row) for row in rows]
        finally:
            conn.close()

    def set_total_copies(self, item_id: str, total_copies: int) -> Optional[CatalogItem]:
        """Change the number of copies owned. Returns None if the item is unknown.

        The new total may not be lower than the copies currently on loan.
        """
        if total_copies < 0:
            raise ValueError("total_copies cannot be negative.")
        conn = get_db_connection(self.db_file)
        try:
            with transaction(conn):
                row = conn.execute(
                    "SELECT copies_on_loan FROM catalog_items WHERE id = ?", (item_id,)
                ).fetchone()
                if row is None:
                    return None
                if total_copies < row["copies_on_loan"]:
                    raise ValueError(
                        f"Item {item_id} has {row['copies_on_loan']} copies on loan; "
                        f"total cannot be set to {total_copies}."
                    )
                conn.execute(
                    "UPDATE catalog_items SET total_copies = ? WHERE id = ?",
                    (total_copies, item_id),
                )
        finally:
            conn.close()
        logger.info(f"Total copies of {item_id} set to {total_copies}")
        return self.find_item(item_id)
