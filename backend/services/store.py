import logging
from typing import Optional, Union

from config import settings
from services.memory_store import MemoryStore

logger = logging.getLogger(__name__)

Store = Union["FirestoreService", MemoryStore]

_store: Optional[Store] = None


def get_store() -> Store:
    """Lazy singleton — initialised on first call, not at import time.
    This prevents credential errors from crashing the app before FastAPI boots.
    Use as a FastAPI dependency: Depends(get_store)
    """
    global _store
    if _store is None:
        if settings.storage_backend == "memory":
            logger.info("Using in-memory store (STORAGE_BACKEND=memory)")
            _store = MemoryStore()
        else:
            from services.firestore_service import FirestoreService
            _store = FirestoreService()
    return _store


def set_store(store: Optional[Store]) -> None:
    """Swap the process-wide store (tests, scripts)."""
    global _store
    _store = store
