"""Resource store layer.

This package is the single source of truth for slots, drivers, cars,
QR tokens, conversation sessions and the event log. Only transactions
opened on :class:`ResourceStore` may change it.
"""

from pyvalet.store.store import CommitInfo, ResourceStore, StoreView, Transaction

__all__ = ["CommitInfo", "ResourceStore", "StoreView", "Transaction"]
