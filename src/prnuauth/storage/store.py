"""Keyed fingerprint persistence.

Stores map camera IDs to CameraFingerprint records. A missing key is never
an error (``load`` returns None and ``delete`` is a no-op); every other
fault is raised as StorageError.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from prnuauth.errors import StorageError
from prnuauth.storage.codec import decode_fingerprint, encode_fingerprint

if TYPE_CHECKING:
    from prnuauth.config import Settings
    from prnuauth.models import CameraFingerprint

logger = logging.getLogger(__name__)

RECORD_SUFFIX = ".fp"
SALT_FILENAME = ".salt"
PBKDF2_ITERATIONS = 480_000


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class FingerprintStore(Protocol):
    """Protocol for fingerprint persistence."""

    def save(self, fingerprint: CameraFingerprint) -> None:
        """Insert or replace the record for ``fingerprint.camera_id``."""
        ...

    def load(self, camera_id: str) -> CameraFingerprint | None:
        """Return the record for ``camera_id``, or None if none is stored."""
        ...

    def delete(self, camera_id: str) -> None:
        """Remove the record for ``camera_id``; absent keys are ignored."""
        ...

    def list_ids(self) -> list[str]:
        """Return the stored camera IDs, sorted."""
        ...


def _check_camera_id(camera_id: str) -> None:
    if not isinstance(camera_id, str) or not camera_id.strip():
        raise StorageError("camera ID must be a non-empty string")


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class MemoryFingerprintStore:
    """Process-local store; contents are lost on exit."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, CameraFingerprint] = {}

    def save(self, fingerprint: CameraFingerprint) -> None:
        _check_camera_id(fingerprint.camera_id)
        with self._lock:
            self._records[fingerprint.camera_id] = fingerprint

    def load(self, camera_id: str) -> CameraFingerprint | None:
        _check_camera_id(camera_id)
        with self._lock:
            return self._records.get(camera_id)

    def delete(self, camera_id: str) -> None:
        _check_camera_id(camera_id)
        with self._lock:
            self._records.pop(camera_id, None)

    def list_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._records)


# ---------------------------------------------------------------------------
# Encrypted file store
# ---------------------------------------------------------------------------


def derive_key(passphrase: str, salt: bytes) -> bytes:
    """Stretch a passphrase into a Fernet key with PBKDF2-HMAC-SHA256."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))


class EncryptedFileStore:
    """One Fernet-encrypted file per camera under ``root/namespace``.

    The store is unlock-gated: until a key is supplied (at construction or
    via ``unlock``) every operation raises StorageError.
    """

    def __init__(self, root: str | Path, namespace: str = "default", key: bytes | str | None = None) -> None:
        self._dir = Path(root) / namespace
        self._lock = threading.Lock()
        self._fernet: Fernet | None = None
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"cannot create {self._dir}: {exc}") from exc
        if key is not None:
            self.unlock(key)

    # -- Lock state ---------------------------------------------------------

    @property
    def directory(self) -> Path:
        return self._dir

    @property
    def is_locked(self) -> bool:
        return self._fernet is None

    def unlock(self, key: bytes | str) -> None:
        """Enable access with a urlsafe-base64 Fernet key."""
        try:
            fernet = Fernet(key)
        except (ValueError, TypeError) as exc:
            raise StorageError(f"invalid storage key: {exc}") from exc
        with self._lock:
            self._fernet = fernet

    def unlock_with_passphrase(self, passphrase: str) -> None:
        self.unlock(derive_key(passphrase, self._salt()))

    def lock(self) -> None:
        with self._lock:
            self._fernet = None

    # -- Public API ---------------------------------------------------------

    def save(self, fingerprint: CameraFingerprint) -> None:
        _check_camera_id(fingerprint.camera_id)
        path = self._path_for(fingerprint.camera_id)
        with self._lock:
            token = self._require_fernet().encrypt(encode_fingerprint(fingerprint))
            try:
                self._atomic_write(path, token)
            except OSError as exc:
                logger.warning("Failed to write fingerprint for %s: %s", fingerprint.camera_id, exc)
                raise StorageError(f"save failed: {exc}") from exc
        logger.info("Saved fingerprint for %s", fingerprint.camera_id)

    def load(self, camera_id: str) -> CameraFingerprint | None:
        _check_camera_id(camera_id)
        path = self._path_for(camera_id)
        with self._lock:
            fernet = self._require_fernet()
            try:
                token = path.read_bytes()
            except FileNotFoundError:
                return None
            except OSError as exc:
                raise StorageError(f"load failed: {exc}") from exc
            fingerprint = self._decrypt(fernet, token, path)
        if fingerprint.camera_id != camera_id:
            raise StorageError(f"record at {path.name} belongs to {fingerprint.camera_id!r}")
        return fingerprint

    def delete(self, camera_id: str) -> None:
        _check_camera_id(camera_id)
        path = self._path_for(camera_id)
        with self._lock:
            self._require_fernet()
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                raise StorageError(f"delete failed: {exc}") from exc
        logger.info("Deleted fingerprint for %s", camera_id)

    def list_ids(self) -> list[str]:
        with self._lock:
            fernet = self._require_fernet()
            try:
                paths = sorted(self._dir.glob(f"*{RECORD_SUFFIX}"))
                ids = [self._decrypt(fernet, path.read_bytes(), path).camera_id for path in paths]
            except OSError as exc:
                raise StorageError(f"listing failed: {exc}") from exc
        return sorted(ids)

    # -- Internal -----------------------------------------------------------

    def _require_fernet(self) -> Fernet:
        if self._fernet is None:
            raise StorageError("store is locked")
        return self._fernet

    def _path_for(self, camera_id: str) -> Path:
        digest = hashlib.sha256(camera_id.encode("utf-8")).hexdigest()
        return self._dir / f"{digest}{RECORD_SUFFIX}"

    @staticmethod
    def _decrypt(fernet: Fernet, token: bytes, path: Path) -> CameraFingerprint:
        try:
            data = fernet.decrypt(token)
        except InvalidToken:
            raise StorageError(f"cannot decrypt {path.name}: wrong key or corrupted record") from None
        return decode_fingerprint(data)

    def _atomic_write(self, path: Path, data: bytes) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=self._dir, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _salt(self) -> bytes:
        salt_path = self._dir / SALT_FILENAME
        with self._lock:
            try:
                if salt_path.exists():
                    return salt_path.read_bytes()
                salt = os.urandom(16)
                self._atomic_write(salt_path, salt)
                return salt
            except OSError as exc:
                raise StorageError(f"cannot read salt: {exc}") from exc


def build_store(settings: Settings) -> FingerprintStore:
    """Create the store selected by the settings.

    With secure storage disabled the store is in-memory only. Otherwise an
    EncryptedFileStore is unlocked with the configured key or passphrase; if
    neither is set it starts locked.
    """
    if not settings.enable_secure_storage:
        logger.warning("Secure storage disabled; fingerprints are kept in memory only")
        return MemoryFingerprintStore()

    store = EncryptedFileStore(settings.storage_dir, settings.storage_namespace)
    if settings.storage_key is not None:
        store.unlock(settings.storage_key.get_secret_value())
    elif settings.storage_passphrase is not None:
        store.unlock_with_passphrase(settings.storage_passphrase.get_secret_value())
    else:
        logger.warning("No storage key configured; fingerprint store at %s is locked", store.directory)
    return store
