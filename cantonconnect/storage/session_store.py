"""
Encrypted session persistence.

At-rest record (JSON, one per origin):

    {"v": 1, "sessionId": ..., "walletId": ..., "origin": ..., "encrypted": ...}

``encrypted`` holds the full session, AES-GCM encrypted with the origin as
associated data, so a record copied to another origin fails to decrypt even
with the right key. The clear-text fields exist only for diagnostics and are
cross-checked against the decrypted payload.

Key source, in order: the configured key; a key kept in ``key_storage``;
otherwise a key generated into the session backend itself. The last case
keeps key and ciphertext side by side, which protects against nothing an
attacker with read access to that backend could not undo.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

from ..core.models import PersistedSession, Session
from .backends import KeyValueStorage
from .crypto import AesGcmCryptoProvider, CryptoProvider, DecryptionError

logger = logging.getLogger(__name__)

RECORD_VERSION = 1
SESSION_KEY = "cantonconnect.session"
KEY_SLOT = "cantonconnect.session_key"


class SessionStore:
    """Saves, loads and clears the single persisted session for an origin."""

    def __init__(
        self,
        storage: KeyValueStorage,
        origin: str,
        crypto: Optional[CryptoProvider] = None,
        encryption_key: Optional[str] = None,
        key_storage: Optional[KeyValueStorage] = None,
    ):
        self.storage = storage
        self.origin = origin
        self.crypto = crypto or AesGcmCryptoProvider()
        self.key_storage = key_storage or storage
        self._configured_key = encryption_key
        self._encryption_key = encryption_key

    @property
    def key_colocated(self) -> bool:
        """True when a generated key would sit in the same backend as the sessions."""
        return self._configured_key is None and self.key_storage is self.storage

    async def _key(self) -> str:
        if self._encryption_key:
            return self._encryption_key
        stored = await self.key_storage.get(KEY_SLOT)
        if not stored:
            stored = self.crypto.generate_key()
            await self.key_storage.set(KEY_SLOT, stored)
            if self.key_colocated:
                logger.warning(
                    "Generated session encryption key is stored next to the sessions; "
                    "configure an encryption key or a separate key storage"
                )
            else:
                logger.info("Generated new session encryption key")
        self._encryption_key = stored
        return stored

    def _aad(self) -> bytes:
        return self.origin.encode("utf-8")

    async def save(self, session: Session) -> PersistedSession:
        if session.origin != self.origin:
            raise ValueError(f"Session origin {session.origin} does not match store origin {self.origin}")

        key = await self._key()
        encrypted = self.crypto.encrypt(json.dumps(session.to_dict()), key, self._aad())
        record = {
            "v": RECORD_VERSION,
            "sessionId": str(session.session_id),
            "walletId": str(session.wallet_id),
            "origin": self.origin,
            "encrypted": encrypted,
        }
        await self.storage.set(SESSION_KEY, json.dumps(record))
        logger.debug(f"Persisted session {session.session_id} for {session.wallet_id}")
        return PersistedSession(session=session, encrypted=encrypted)

    async def load(self) -> Optional[PersistedSession]:
        """
        Return the persisted session, or None.

        Never raises for bad data: unreadable records are removed, records for
        another origin are ignored and left in place.
        """
        value = await self.storage.get(SESSION_KEY)
        if not value:
            return None

        try:
            record = json.loads(value)
        except ValueError:
            return await self._discard("record is not valid JSON")
        if not isinstance(record, dict) or record.get("v") != RECORD_VERSION:
            return await self._discard("unrecognized record format")

        if record.get("origin") != self.origin:
            logger.info(f"Ignoring persisted session for origin {record.get('origin')!r}")
            return None

        encrypted = record.get("encrypted")
        if not isinstance(encrypted, str):
            return await self._discard("record has no ciphertext")

        session = await self._try_decrypt(encrypted)
        if session is None:
            return await self._discard("record could not be decrypted")

        if session.origin != self.origin or str(session.session_id) != record.get("sessionId"):
            return await self._discard("record envelope does not match payload")

        return PersistedSession(session=session, encrypted=encrypted)

    async def _try_decrypt(self, encrypted: str) -> Optional[Session]:
        key = await self._key()
        try:
            plaintext = self.crypto.decrypt(encrypted, key, self._aad())
            return Session.from_dict(json.loads(plaintext))
        except (DecryptionError, ValueError, KeyError, TypeError) as e:
            logger.debug(f"Session decrypt failed: {type(e).__name__}")
            return None

    async def _discard(self, reason: str) -> None:
        logger.warning(f"Discarding persisted session: {reason}")
        await self.storage.remove(SESSION_KEY)
        return None

    async def clear(self) -> None:
        await self.storage.remove(SESSION_KEY)
