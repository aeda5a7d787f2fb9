"""
Local key/value persistence for tokens, the case cache and the sync queue.

FileKeyValueStore keeps every key in one JSON document, optionally
encrypted with Fernet. The encryption key lives in the system keyring when
one is usable, otherwise in a 0600 key file next to the data.
"""

import os
import json
import base64
import logging
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import keyring
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from caseflow.exceptions import PersistenceError, ErrorCode
from caseflow.interfaces import KeyValueStore

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "caseflow-client"
KEYRING_KEY_NAME = "storage_encryption_key"


class MemoryKeyValueStore(KeyValueStore):
    """Process-local store, used in tests and for throwaway sessions."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = {}
        for key, value in (initial or {}).items():
            self.set(key, value)

    def get(self, key: str) -> Optional[Any]:
        value = self._data.get(key)
        # Hand out copies so callers cannot mutate stored state in place
        return json.loads(value) if value is not None else None

    def set(self, key: str, value: Any) -> None:
        try:
            self._data[key] = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Value for {key} is not serialisable", cause=e) from e

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data)

    def clear(self) -> None:
        self._data.clear()


class FileKeyValueStore(KeyValueStore):
    """
    JSON document on disk with atomic replace and 0600 permissions.

    The document is loaded once and kept in memory; every mutation rewrites
    the whole file through a temporary file and os.replace.
    """

    def __init__(
        self,
        data_dir: str,
        filename: str = "store.json",
        encrypt: bool = True,
        service_name: str = KEYRING_SERVICE
    ):
        self.data_dir = Path(data_dir)
        self.encrypt = encrypt
        self.service_name = service_name
        self.storage_path = self.data_dir / (filename + ('.enc' if encrypt else ''))
        self.key_path = self.data_dir / '.storage.key'

        self._encryption_key: Optional[bytes] = None
        self._data: Optional[Dict[str, Any]] = None
        self.keyring_available = self._check_keyring_availability() if encrypt else False

        logger.info(
            f"File store initialized at {self.storage_path} "
            f"(encrypted: {encrypt}, keyring: {self.keyring_available})"
        )

    def _check_keyring_availability(self) -> bool:
        """Check if the system keyring actually round-trips a value."""
        test_key = f"{self.service_name}_test"
        try:
            keyring.set_password(self.service_name, test_key, "test")
            result = keyring.get_password(self.service_name, test_key)
            keyring.delete_password(self.service_name, test_key)
            return result == "test"
        except Exception as e:
            logger.debug(f"Keyring not available: {e}")
            return False

    def _get_encryption_key(self) -> bytes:
        """Get or create the Fernet key for the data file."""
        if self._encryption_key:
            return self._encryption_key

        if self.keyring_available:
            try:
                stored_key = keyring.get_password(self.service_name, KEYRING_KEY_NAME)
                if stored_key:
                    self._encryption_key = base64.b64decode(stored_key.encode())
                    return self._encryption_key
            except Exception as e:
                logger.warning(f"Failed to get encryption key from keyring: {e}")

        # A key file from a run without a usable keyring still owns the data
        if self.key_path.exists():
            self._encryption_key = self.key_path.read_bytes().strip()
            return self._encryption_key

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=os.urandom(16),
            iterations=100000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(os.urandom(32)))

        stored = False
        if self.keyring_available:
            try:
                keyring.set_password(self.service_name, KEYRING_KEY_NAME, base64.b64encode(key).decode())
                stored = True
            except Exception as e:
                logger.warning(f"Failed to store encryption key in keyring: {e}")

        if not stored:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self.key_path.write_bytes(key)
            os.chmod(self.key_path, 0o600)

        self._encryption_key = key
        return key

    def _load(self) -> Dict[str, Any]:
        if self._data is not None:
            return self._data

        if not self.storage_path.exists():
            self._data = {}
            return self._data

        try:
            raw = self.storage_path.read_bytes()
            if self.encrypt:
                raw = Fernet(self._get_encryption_key()).decrypt(raw)
            data = json.loads(raw.decode('utf-8'))
        except InvalidToken as e:
            raise PersistenceError(
                f"Cannot decrypt {self.storage_path}; encryption key does not match",
                error_code=ErrorCode.STORAGE_ENCRYPTION_FAILED,
                cause=e
            ) from e
        except (OSError, ValueError) as e:
            raise PersistenceError(
                f"Cannot read {self.storage_path}",
                error_code=ErrorCode.STORAGE_READ_FAILED,
                cause=e
            ) from e

        if not isinstance(data, dict):
            raise PersistenceError(
                f"Unexpected document in {self.storage_path}",
                error_code=ErrorCode.STORAGE_READ_FAILED
            )

        self._data = data
        return self._data

    def _flush(self, data: Dict[str, Any]) -> None:
        try:
            payload = json.dumps(data).encode('utf-8')
        except (TypeError, ValueError) as e:
            raise PersistenceError("Value is not serialisable", cause=e) from e

        if self.encrypt:
            payload = Fernet(self._get_encryption_key()).encrypt(payload)

        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(self.data_dir), prefix='.store-')
            try:
                with os.fdopen(fd, 'wb') as f:
                    f.write(payload)
                os.chmod(tmp_path, 0o600)
                os.replace(tmp_path, self.storage_path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise PersistenceError(f"Cannot write {self.storage_path}", cause=e) from e

        self._data = data

    def get(self, key: str) -> Optional[Any]:
        value = self._load().get(key)
        return json.loads(json.dumps(value)) if value is not None else None

    def set(self, key: str, value: Any) -> None:
        self.set_many({key: value})

    def set_many(self, items: Dict[str, Any]) -> None:
        data = dict(self._load())
        data.update(items)
        self._flush(data)

    def remove(self, key: str) -> None:
        self.remove_many([key])

    def remove_many(self, keys: Iterable[str]) -> None:
        data = dict(self._load())
        removed = False
        for key in keys:
            if key in data:
                del data[key]
                removed = True
        if removed:
            self._flush(data)

    def keys(self) -> List[str]:
        return list(self._load())

    def clear(self) -> None:
        self._flush({})
