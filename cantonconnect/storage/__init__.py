"""
Persistence: key/value backends, encryption and the session store.
"""

from .backends import FileStorage, KeyValueStorage, MemoryStorage, OriginScopedStorage
from .crypto import AesGcmCryptoProvider, CryptoProvider, DecryptionError
from .session_store import SessionStore

__all__ = [
    "KeyValueStorage",
    "MemoryStorage",
    "FileStorage",
    "OriginScopedStorage",
    "CryptoProvider",
    "AesGcmCryptoProvider",
    "DecryptionError",
    "SessionStore",
]
