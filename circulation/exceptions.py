class CirculationError(Exception):
    """Base class for errors raised by the circulation core."""


class StorageError(CirculationError):
    """The backing store failed; no partial state was written."""


class TransientStorageError(StorageError):
    """Lock timeout or connection problem. The operation can be retried."""


class InventoryInvariantError(CirculationError):
    """Stored copy counts are inconsistent. This indicates a bug, not user error."""

    def __init__(self, item_id: str, message: str) -> None:
        super().__init__(f"Item {item_id}: {message}")
        self.item_id = item_id
