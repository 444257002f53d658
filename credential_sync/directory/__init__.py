"""Users, backing-store enrollments and the audit log."""

from .cache import TTLCache
from .storage import DocumentStorage, MemoryStorage, JSONFileStorage
from .records import DirectoryStore, record_audit

__all__ = [
    "TTLCache",
    "DocumentStorage",
    "MemoryStorage",
    "JSONFileStorage",
    "DirectoryStore",
    "record_audit",
]
