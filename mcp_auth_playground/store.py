"""Encrypted persistence for the flow state.

The whole ``FlowState`` is stored as one JSON blob under a single storage
key, encrypted with:
- Fernet symmetric encryption (AES-128-CBC + HMAC)
- OS keyring for encryption key storage (Keychain, libsecret, DPAPI)
- File permissions and file locking around reads and writes

Persistence is best effort. Load problems fall back to defaults and a
failed write switches the store to memory-only mode; neither stops a flow.
"""

import base64
import hashlib
import json
import logging
import os
import stat
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

import keyring
from cryptography.fernet import Fernet, InvalidToken

from .platform import DEFAULT_STATE_DIR
from .state import FlowState

logger = logging.getLogger(__name__)

if sys.platform != "win32":
    import fcntl

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Acquire a file lock (Unix implementation using fcntl)."""
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r") as lock_file:
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
else:
    import msvcrt

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Acquire a file lock (Windows implementation using msvcrt).

        msvcrt has no shared locks, so every lock is exclusive.
        """
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r+") as lock_file:
            msvcrt.locking(lock_file.fileno(), msvcrt.LK_LOCK, 1)
            try:
                yield
            finally:
                msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)


# Storage key of the persisted flow state
STORAGE_KEY = "mcp-auth-playground-state"

KEYRING_SERVICE = "mcp-auth-playground"
KEYRING_USERNAME = "state-encryption-key"


class StoreError(Exception):
    """Error in state storage operations."""

    pass


class StateDecryptionError(StoreError):
    """The saved state could not be decrypted or parsed.

    Usually the encryption key changed (keyring cleared, different
    machine). Run 'mcpap reset' to discard the saved state.
    """

    pass


def _derive_fallback_key() -> bytes:
    """Derive a Fernet key from machine-specific data.

    Used when no keyring backend is available. Still encrypts at rest,
    but anyone with access to the machine can derive the same key.
    """
    components = []

    machine_id_path = Path("/etc/machine-id")
    if machine_id_path.exists():
        components.append(machine_id_path.read_text().strip())

    components.append(str(Path.home()))
    components.append(os.environ.get("USER", os.environ.get("USERNAME", "mcpap")))

    key_bytes = hashlib.sha256(":".join(components).encode()).digest()
    return base64.urlsafe_b64encode(key_bytes)


class StateStore:
    """Encrypted, file-backed store for one ``FlowState``.

    The blob lives at ``{state_dir}/mcp-auth-playground-state.enc`` with
    0600 permissions inside a 0700 directory.
    """

    def __init__(self, state_dir: Path | None = None):
        """Initialize the store.

        Args:
            state_dir: Optional custom storage directory
        """
        self.state_dir = state_dir or DEFAULT_STATE_DIR
        self.path = self.state_dir / f"{STORAGE_KEY}.enc"
        self._cipher: Fernet | None = None
        self._using_keyring = False
        self._memory_only = False

        self._init_storage()
        self._init_encryption()

    @property
    def persistent(self) -> bool:
        """False once the store has fallen back to memory-only mode."""
        return not self._memory_only

    def _init_storage(self) -> None:
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(
                f"Cannot create state directory {self.state_dir}: {e}. "
                f"Flow state will only be kept in memory."
            )
            self._memory_only = True
            return

        try:
            self.state_dir.chmod(stat.S_IRWXU)
        except OSError as e:
            logger.warning(f"Could not set directory permissions: {e}")

    def _init_encryption(self) -> None:
        """Initialize encryption using keyring or fallback."""
        try:
            key = keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)
            if key is None:
                key = Fernet.generate_key().decode("ascii")
                keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, key)
                logger.debug("Generated new encryption key in keyring")

            self._cipher = Fernet(key.encode("ascii"))
            self._using_keyring = True
            logger.debug("Using keyring for encryption key storage")

        except Exception as e:
            # Any keyring backend failure falls back to the derived key
            logger.warning(
                f"Keyring not available: {type(e).__name__}: {e}. "
                f"Using fallback encryption (machine-derived key)."
            )
            self._cipher = Fernet(_derive_fallback_key())
            self._using_keyring = False

    def is_using_keyring(self) -> bool:
        """Check if the encryption key lives in the OS keyring."""
        return self._using_keyring

    def _encrypt(self, data: str) -> str:
        if self._cipher is None:
            raise StoreError("Encryption not initialized")
        return self._cipher.encrypt(data.encode("utf-8")).decode("ascii")

    def _decrypt(self, data: str) -> str:
        if self._cipher is None:
            raise StoreError("Encryption not initialized")
        try:
            return self._cipher.decrypt(data.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise StateDecryptionError(
                "Failed to decrypt saved state. The encryption key may have changed. "
                "Run 'mcpap reset' to start over."
            ) from e

    def read_raw(self) -> dict[str, Any] | None:
        """Read and decrypt the saved blob.

        Returns:
            The saved dict, or None if nothing is saved

        Raises:
            StateDecryptionError: If the blob cannot be decrypted or parsed
        """
        if self._memory_only or not self.path.exists():
            return None

        with _file_lock(self.path, exclusive=False):
            encrypted = self.path.read_text()

        try:
            data = json.loads(self._decrypt(encrypted))
        except json.JSONDecodeError as e:
            raise StateDecryptionError(
                "Saved state is corrupted. Run 'mcpap reset' to start over."
            ) from e

        if not isinstance(data, dict):
            raise StateDecryptionError("Saved state is not a JSON object")
        return data

    def load(self, defaults: FlowState | None = None) -> FlowState:
        """Load the saved state merged over ``defaults``.

        Never raises: unreadable state is logged and the defaults returned.
        """
        defaults = defaults if defaults is not None else FlowState()
        try:
            data = self.read_raw()
        except (StoreError, OSError) as e:
            logger.warning(f"Could not load saved flow state, starting fresh: {e}")
            return defaults

        if data is None:
            return defaults
        return FlowState.from_dict(data, defaults)

    def save(self, state: FlowState) -> bool:
        """Encrypt and write the state.

        Returns:
            True if written; False if the store is (or just became) memory-only
        """
        if self._memory_only:
            return False

        try:
            encrypted = self._encrypt(json.dumps(state.to_dict()))
            with _file_lock(self.path, exclusive=True):
                self.path.write_text(encrypted)
                try:
                    self.path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0600
                except OSError as e:
                    logger.warning(f"Could not set file permissions: {e}")
        except (OSError, StoreError, TypeError, ValueError) as e:
            logger.warning(
                f"Could not save flow state to {self.path}: {e}. "
                f"Continuing with in-memory state only."
            )
            self._memory_only = True
            return False

        return True

    def clear(self) -> None:
        """Delete the saved state."""
        for path in (self.path, self.path.with_suffix(self.path.suffix + ".lock")):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Could not delete {path}: {e}")
        logger.info("Cleared saved flow state")
