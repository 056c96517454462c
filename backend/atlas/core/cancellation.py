"""Cooperative cancellation shared by every row of an enrichment batch"""
import uuid
from typing import Optional


class BatchCancelled(Exception):
    """Raised inside a row task when its batch has been stopped"""


class CancellationToken:
    """One token per batch; cancelling it stops all of the batch's rows"""

    def __init__(self, sheet_id: Optional[str] = None):
        self.id = str(uuid.uuid4())
        self.sheet_id = sheet_id
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self):
        self._cancelled = True

    def raise_if_cancelled(self):
        if self._cancelled:
            raise BatchCancelled(f"Batch {self.id} cancelled")

    def __repr__(self):
        return f"<CancellationToken(id={self.id}, sheet={self.sheet_id}, cancelled={self._cancelled})>"
