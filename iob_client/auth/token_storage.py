"""
Token Storage for the IoB client SDK.

This module provides pluggable persistence for the authentication bundle:
an in-memory store, encrypted file stores for session-scoped and durable
persistence, and the ``TokenStorage`` adapter that gives the auth manager a
uniform contract with expiry cleanup and cross-process change notification.
"""

import os
import json
import getpass
import asyncio
import logging
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Dict, Callable, Hashable

from cryptography.fernet import Fernet, InvalidToken

from iob_client.config import AuthConfig, StorageBackend
from iob_shared.exceptions import (
    ErrorCode, MalformedStoredDataError, StorageUnavailableError
)
from iob_shared.logging_config import log_structured_error
from iob_shared.models import StoredBundle

logger = logging.getLogger(__name__)

AUTH_DATA_STORAGE_KEY = "iob-sdk-auth-data"
SENTINEL_KEY = "__iob_storage_test__"

ChangeListener = Callable[[Optional[StoredBundle]], None]


def serialize_bundle(bundle: StoredBundle) -> str:
    return json.dumps(bundle.to_dict())


def deserialize_bundle(raw: str) -> StoredBundle:
    """
    Parse a serialized bundle.

    Raises:
        MalformedStoredDataError: If the value is not a well-formed bundle
    """
    try:
        return StoredBundle.from_dict(json.loads(raw))
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise MalformedStoredDataError(f"Stored auth data is malformed: {e}", cause=e)


class TokenStore(ABC):
    """Key-value backend holding serialized auth bundles."""

    supports_change_detection = False

    @abstractmethod
    def read(self, key: str) -> Optional[str]:
        """Return the stored value or None if absent."""

    @abstractmethod
    def write(self, key: str, value: str) -> None:
        """Store a value, replacing any previous one."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a value; removing a missing key is not an error."""

    def fingerprint(self, key: str) -> Optional[Hashable]:
        """Cheap marker that changes whenever the value for ``key`` changes."""
        return None

    def is_available(self) -> bool:
        """Check the backend by writing and deleting a sentinel key. Never raises."""
        try:
            self.write(SENTINEL_KEY, "test")
            result = self.read(SENTINEL_KEY)
            self.delete(SENTINEL_KEY)
            return result == "test"
        except Exception as e:
            logger.debug(f"{type(self).__name__} not available: {e}")
            return False


class MemoryTokenStore(TokenStore):
    """Process-local store; nothing survives a restart."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def read(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def write(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class FileTokenStore(TokenStore):
    """
    Encrypted file storage, one file per key.

    The Fernet key lives in the system keyring when it is usable, otherwise
    in a key file beside the data with owner-only permissions.
    """

    supports_change_detection = True

    def __init__(
        self,
        directory: os.PathLike,
        encryption_key: Optional[bytes] = None,
        service_name: str = "iob-sdk",
        use_keyring: bool = True
    ):
        self.directory = Path(directory)
        self.service_name = service_name
        self.use_keyring = use_keyring
        self._encryption_key = encryption_key
        self._keyring_available: Optional[bool] = None

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.enc"

    @property
    def key_file(self) -> Path:
        return self.directory / ".key"

    def _ensure_directory(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        os.chmod(self.directory, 0o700)

    def _check_keyring_availability(self) -> bool:
        """Check if system keyring is available."""
        if self._keyring_available is not None:
            return self._keyring_available

        self._keyring_available = False
        if self.use_keyring:
            try:
                import keyring
                test_key = f"{self.service_name}_test"
                keyring.set_password(self.service_name, test_key, "test")
                result = keyring.get_password(self.service_name, test_key)
                keyring.delete_password(self.service_name, test_key)
                self._keyring_available = result == "test"
            except Exception as e:
                logger.debug(f"Keyring not available: {e}")

        return self._keyring_available

    def _get_encryption_key(self) -> bytes:
        """Get or create the encryption key for file storage."""
        if self._encryption_key:
            return self._encryption_key

        if self._check_keyring_availability():
            try:
                import keyring
                stored_key = keyring.get_password(self.service_name, "encryption_key")
                if stored_key:
                    self._encryption_key = stored_key.encode()
                    return self._encryption_key
            except Exception as e:
                logger.warning(f"Failed to get encryption key from keyring: {e}")

        if self.key_file.exists():
            self._encryption_key = self.key_file.read_bytes().strip()
            return self._encryption_key

        key = Fernet.generate_key()

        stored = False
        if self._check_keyring_availability():
            try:
                import keyring
                keyring.set_password(self.service_name, "encryption_key", key.decode())
                stored = True
            except Exception as e:
                logger.warning(f"Failed to store encryption key in keyring: {e}")

        if not stored:
            self._ensure_directory()
            self.key_file.write_bytes(key)
            os.chmod(self.key_file, 0o600)

        self._encryption_key = key
        return key

    def read(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            if not path.exists():
                return None
            encrypted_data = path.read_bytes()
            fernet = Fernet(self._get_encryption_key())
        except (OSError, ValueError) as e:
            raise StorageUnavailableError(f"Failed to read {path}: {e}", cause=e)

        try:
            return fernet.decrypt(encrypted_data).decode()
        except (InvalidToken, UnicodeDecodeError) as e:
            raise MalformedStoredDataError(f"Failed to decrypt {path}", cause=e)

    def write(self, key: str, value: str) -> None:
        path = self._path(key)
        try:
            self._ensure_directory()
            encrypted_data = Fernet(self._get_encryption_key()).encrypt(value.encode())

            # Replace atomically so readers in other processes never see a partial file
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.")
            try:
                with os.fdopen(fd, 'wb') as f:
                    f.write(encrypted_data)
                os.chmod(tmp_name, 0o600)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except (OSError, ValueError) as e:
            raise StorageUnavailableError(
                f"Failed to write {path}: {e}",
                error_code=ErrorCode.STORAGE_WRITE_FAILED,
                cause=e
            )

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageUnavailableError(f"Failed to remove {path}: {e}", cause=e)

    def fingerprint(self, key: str) -> Optional[Hashable]:
        try:
            stat = self._path(key).stat()
        except FileNotFoundError:
            return None
        return (stat.st_ino, stat.st_mtime_ns, stat.st_size)


class TokenStorage:
    """
    Uniform persistence contract used by the auth manager.

    Storage failures are absorbed here: reads degrade to "absent" and failed
    writes are logged, so callers never see storage exceptions.
    """

    def __init__(
        self,
        store: TokenStore,
        cleanup_interval_seconds: float = 60,
        enable_change_notification: bool = False,
        watch_interval_seconds: float = 1.0,
        storage_key: str = AUTH_DATA_STORAGE_KEY
    ):
        self.store = store
        self.storage_key = storage_key
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.watch_interval_seconds = watch_interval_seconds
        self.change_notification_enabled = enable_change_notification and store.supports_change_detection

        self._listeners: Dict[int, ChangeListener] = {}
        self._next_listener_id = 0
        self._cleanup_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._closed = False
        self._last_fingerprint = self._safe_fingerprint()

        logger.info(
            f"Token storage initialized ({type(store).__name__}, "
            f"change notification: {self.change_notification_enabled})"
        )

    def is_available(self) -> bool:
        return self.store.is_available()

    def start(self) -> None:
        """Arm the cleanup task and change watcher on the running event loop."""
        if self._closed:
            return

        if self.cleanup_interval_seconds > 0 and (self._cleanup_task is None or self._cleanup_task.done()):
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

        if self.change_notification_enabled and (self._watch_task is None or self._watch_task.done()):
            self._watch_task = asyncio.create_task(self._watch_loop())

    def close(self) -> None:
        """Cancel background tasks and drop change listeners."""
        self._closed = True
        for task in (self._cleanup_task, self._watch_task):
            if task and not task.done():
                task.cancel()
        self._cleanup_task = None
        self._watch_task = None
        self._listeners.clear()

    def _read_bundle(self) -> Optional[StoredBundle]:
        try:
            raw = self.store.read(self.storage_key)
            if raw is None:
                return None
            return deserialize_bundle(raw)
        except MalformedStoredDataError as e:
            log_structured_error(logger, e, level=logging.WARNING)
            return None
        except StorageUnavailableError as e:
            log_structured_error(logger, e, level=logging.WARNING)
            return None

    def _safe_fingerprint(self) -> Optional[Hashable]:
        try:
            return self.store.fingerprint(self.storage_key)
        except OSError as e:
            logger.debug(f"Failed to fingerprint token storage: {e}")
            return None

    async def get(self) -> Optional[StoredBundle]:
        """
        Retrieve the stored bundle.

        Returns:
            The bundle, or None if absent, unreadable, malformed or expired
        """
        bundle = self._read_bundle()
        if bundle and bundle.token.is_expired():
            logger.info("Stored token has expired, removing it")
            await self.remove()
            return None
        return bundle

    async def set(self, bundle: StoredBundle) -> None:
        try:
            self.store.write(self.storage_key, serialize_bundle(bundle))
        except StorageUnavailableError as e:
            log_structured_error(logger, e, level=logging.WARNING)
            return
        self._last_fingerprint = self._safe_fingerprint()
        logger.debug("Auth data stored")

    async def remove(self) -> None:
        try:
            self.store.delete(self.storage_key)
        except StorageUnavailableError as e:
            log_structured_error(logger, e, level=logging.WARNING)
            return
        self._last_fingerprint = self._safe_fingerprint()
        logger.debug("Auth data removed")

    async def cleanup(self) -> bool:
        """
        Remove the stored bundle if its token has expired. Best effort.

        Returns:
            True if an expired bundle was removed
        """
        try:
            bundle = self._read_bundle()
            if bundle and bundle.token.is_expired():
                await self.remove()
                logger.info("Removed expired token from storage")
                return True
        except Exception as e:
            logger.debug(f"Token cleanup failed: {e}")
        return False

    async def _cleanup_loop(self) -> None:
        try:
            while not self._closed:
                await asyncio.sleep(self.cleanup_interval_seconds)
                await self.cleanup()
        except asyncio.CancelledError:
            logger.debug("Token cleanup task cancelled")

    def on_change(self, listener: ChangeListener) -> Optional[Callable[[], None]]:
        """
        Register a listener for writes made by other processes.

        Args:
            listener: Called with the new bundle, or None when it was removed

        Returns:
            An unsubscribe function, or None if the backend cannot notify
        """
        if not self.change_notification_enabled or self._closed:
            return None

        listener_id = self._next_listener_id
        self._next_listener_id += 1
        self._listeners[listener_id] = listener

        def unsubscribe() -> None:
            self._listeners.pop(listener_id, None)

        return unsubscribe

    async def check_for_external_change(self) -> bool:
        """
        Compare the store fingerprint with the last one this adapter saw.

        Returns:
            True if listeners were notified of a change
        """
        fingerprint = self._safe_fingerprint()
        if fingerprint == self._last_fingerprint:
            return False
        self._last_fingerprint = fingerprint

        bundle = self._read_bundle() if fingerprint is not None else None
        if bundle and bundle.token.is_expired():
            bundle = None

        logger.info(f"Auth data changed in another process ({'updated' if bundle else 'removed'})")
        for listener in list(self._listeners.values()):
            try:
                listener(bundle)
            except Exception as e:
                logger.error(f"Error in token change listener: {e}")
        return True

    async def _watch_loop(self) -> None:
        try:
            while not self._closed:
                await asyncio.sleep(self.watch_interval_seconds)
                await self.check_for_external_change()
        except asyncio.CancelledError:
            logger.debug("Token change watcher cancelled")


def default_storage_dir(backend: StorageBackend, service_name: str = "iob-sdk") -> Path:
    """Directory used by a file-backed storage backend."""
    if backend == StorageBackend.SESSION:
        runtime_dir = os.environ.get('XDG_RUNTIME_DIR')
        if runtime_dir:
            return Path(runtime_dir) / service_name
        return Path(tempfile.gettempdir()) / f"{service_name}-{getpass.getuser()}"

    xdg_config = os.environ.get('XDG_CONFIG_HOME')
    if xdg_config:
        return Path(xdg_config) / service_name
    return Path.home() / '.config' / service_name


def create_token_storage(config: Optional[AuthConfig] = None) -> TokenStorage:
    """
    Create token storage for the configured backend.

    File backends that fail their availability check fall back to memory.
    """
    config = config or AuthConfig()
    backend = config.storage_backend

    store: TokenStore
    if backend == StorageBackend.MEMORY:
        store = MemoryTokenStore()
    else:
        directory = Path(config.storage_dir) if config.storage_dir else default_storage_dir(backend, config.service_name)
        store = FileTokenStore(
            directory,
            service_name=config.service_name,
            # Session keys must not outlive the session directory
            use_keyring=backend == StorageBackend.DURABLE
        )
        if not store.is_available():
            logger.warning(f"{backend.value} storage not available, falling back to memory storage")
            store = MemoryTokenStore()

    return TokenStorage(
        store,
        cleanup_interval_seconds=config.cleanup_interval_seconds,
        enable_change_notification=config.cross_tab_sync and backend == StorageBackend.DURABLE,
        watch_interval_seconds=config.watch_interval_seconds
    )
