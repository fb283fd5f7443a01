"""Audit signing key storage.

The active key lives in a single file holding exactly 32 raw bytes.
Rotation archives the outgoing key under ``keys/<key_id>.key`` so entries
signed before a rotation still verify.
"""

import hashlib
import re
import secrets
from pathlib import Path
from typing import Dict, Optional, Tuple

import structlog

from ..exceptions import KeyStorageError
from ..utils.constants import KEY_ID_LENGTH, SECURE_FILE_MODE, SIGNING_KEY_BYTES
from .file_guard import atomic_write_bytes, harden_permissions
from .primitives import sanitize_for_log

logger = structlog.get_logger()

ARCHIVED_KEY_NAME = re.compile(r"[0-9a-f]{%d}\.key" % KEY_ID_LENGTH)


def key_id_for(key: bytes) -> str:
    """Stable public identifier for a key (prefix of its SHA-256)."""
    return hashlib.sha256(key).hexdigest()[:KEY_ID_LENGTH]


def _read_key(path: Path) -> Optional[bytes]:
    if not path.exists():
        return None
    key = path.read_bytes()
    if len(key) != SIGNING_KEY_BYTES:
        raise KeyStorageError(
            f"Signing key {path.name} has {len(key)} bytes, "
            f"expected {SIGNING_KEY_BYTES}"
        )
    return key


class SigningKeyRing:
    """Active signing key plus archived predecessors."""

    def __init__(self, key_file: Path, archive_dir: Path):
        self.key_file = key_file
        self.archive_dir = archive_dir
        self.permission_mismatch: Optional[int] = None
        self._active: Optional[bytes] = None

    def get_active_key(self) -> bytes:
        """Return the active key, creating and persisting one if absent.

        Raises:
            KeyStorageError: If an existing key file is malformed
        """
        if self._active is not None:
            return self._active

        key = _read_key(self.key_file)
        if key is not None:
            ok, actual = harden_permissions(self.key_file)
            if not ok:
                self.permission_mismatch = actual
                logger.warning(
                    "Signing key permissions could not be restricted",
                    file=sanitize_for_log(str(self.key_file), 200),
                    expected_mode=oct(SECURE_FILE_MODE),
                    actual_mode=oct(actual),
                )
            self._active = key
            return key

        key = secrets.token_bytes(SIGNING_KEY_BYTES)
        try:
            atomic_write_bytes(self.key_file, key)
            logger.info("Generated audit signing key", key_id=key_id_for(key))
        except OSError as e:
            # Keep signing with an in-memory key rather than not signing at all
            logger.error(
                "Failed to persist signing key",
                error=sanitize_for_log(str(e), 200),
            )
        self._active = key
        return key

    @property
    def active_key_id(self) -> str:
        return key_id_for(self.get_active_key())

    def archived_keys(self) -> Dict[str, bytes]:
        """Archived keys indexed by key id; unreadable files are skipped."""
        keys: Dict[str, bytes] = {}
        if not self.archive_dir.is_dir():
            return keys

        for path in sorted(self.archive_dir.iterdir()):
            if not ARCHIVED_KEY_NAME.fullmatch(path.name):
                continue
            try:
                key = _read_key(path)
            except (OSError, KeyStorageError) as e:
                logger.warning(
                    "Skipping unreadable archived key",
                    file=path.name,
                    error=sanitize_for_log(str(e), 200),
                )
                continue
            if key is not None and key_id_for(key) == path.stem:
                keys[path.stem] = key
        return keys

    def all_keys(self) -> Dict[str, bytes]:
        """Every key that may have signed an entry, active key included."""
        keys = self.archived_keys()
        active = self.get_active_key()
        keys[key_id_for(active)] = active
        return keys

    def find(self, key_id: str) -> Optional[bytes]:
        """Look up a key by id."""
        return self.all_keys().get(key_id)

    def rotate(self) -> Tuple[Optional[str], str]:
        """Archive the current key and install a fresh one.

        Returns:
            Tuple of (previous_key_id, new_key_id)
        """
        try:
            previous = self._active or _read_key(self.key_file)
        except KeyStorageError as e:
            logger.warning(
                "Replacing malformed signing key", error=sanitize_for_log(str(e), 200)
            )
            previous = None

        previous_id = None
        if previous is not None:
            previous_id = key_id_for(previous)
            atomic_write_bytes(self.archive_dir / f"{previous_id}.key", previous)

        key = secrets.token_bytes(SIGNING_KEY_BYTES)
        atomic_write_bytes(self.key_file, key)
        self._active = key
        self.permission_mismatch = None

        new_id = key_id_for(key)
        logger.info(
            "Rotated audit signing key", previous_key_id=previous_id, key_id=new_id
        )
        return previous_id, new_id
