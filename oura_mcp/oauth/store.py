"""On-disk storage for the OAuth credential record.

The record lives in a single JSON file under a per-user directory:
- Directory created with owner-only permissions (0700)
- File written with owner-only read/write permissions (0600)
- Writes go to a temporary file that is atomically renamed into place
- A missing, unreadable or corrupt file reads as "no credentials"

Only one writer process is assumed; there is no cross-process locking.
"""

import json
import logging
import os
import stat
import tempfile
from pathlib import Path

from ..config import DEFAULT_TOKEN_DIR
from .errors import StorageCorruptError, TokenStoreError
from .tokens import CredentialRecord

logger = logging.getLogger(__name__)

TOKENS_FILE = "tokens.json"


class TokenStore:
    """Persists a single :class:`CredentialRecord` as JSON.

    Usage:
        store = TokenStore()
        record = store.load()  # None when nothing usable is stored
        store.save(new_record)
        store.clear()
    """

    def __init__(self, store_dir: Path | None = None):
        """Initialize token store.

        Args:
            store_dir: Optional custom storage directory
        """
        self.store_dir = store_dir or DEFAULT_TOKEN_DIR

    @property
    def path(self) -> Path:
        """Path of the credential file."""
        return self.store_dir / TOKENS_FILE

    def _ensure_dir(self) -> None:
        """Create the storage directory with owner-only permissions."""
        self.store_dir.mkdir(mode=stat.S_IRWXU, parents=True, exist_ok=True)

        # mkdir's mode is filtered by the umask and ignored for existing dirs
        try:
            self.store_dir.chmod(stat.S_IRWXU)
        except OSError as e:
            logger.warning(f"Could not set directory permissions: {e}")

    def _read(self) -> CredentialRecord:
        """Read and validate the credential file.

        Raises:
            StorageCorruptError: If the file is missing, unreadable, not JSON
                or not a complete record
        """
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise StorageCorruptError(f"No credential file at {self.path}") from e
        except (OSError, UnicodeDecodeError) as e:
            raise StorageCorruptError(f"Cannot read {self.path}: {e}") from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StorageCorruptError(f"{self.path} is not valid JSON: {e}") from e

        try:
            return CredentialRecord.from_dict(data)
        except ValueError as e:
            raise StorageCorruptError(f"{self.path} holds an incomplete record: {e}") from e

    def load(self) -> CredentialRecord | None:
        """Load the stored credential record.

        Returns:
            The record, or None if nothing usable is stored. Never raises:
            a corrupt cache is treated the same as an empty one.
        """
        try:
            record = self._read()
        except StorageCorruptError as e:
            if isinstance(e.__cause__, FileNotFoundError):
                logger.debug(f"No stored credentials: {e}")
            else:
                logger.warning(f"Ignoring stored credentials: {e}")
            return None

        logger.debug(f"Loaded credentials from {self.path}")
        return record

    def save(self, record: CredentialRecord) -> None:
        """Write the record atomically with secure permissions.

        The JSON is written to a temporary file in the same directory, synced
        to disk and renamed over the credential file, so a crash can never
        leave a truncated file in place.

        Args:
            record: The record to persist

        Raises:
            TokenStoreError: If the record could not be written. The
                previously stored file, if any, is left untouched.
        """
        tmp_path: str | None = None
        try:
            self._ensure_dir()

            # mkstemp creates the file 0600
            tmp_fd, tmp_path = tempfile.mkstemp(
                dir=self.store_dir, prefix=".tokens.", suffix=".tmp", text=True
            )
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                json.dump(record.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())

            os.chmod(tmp_path, stat.S_IRUSR | stat.S_IWUSR)
            os.replace(tmp_path, self.path)
            tmp_path = None
        except OSError as e:
            raise TokenStoreError(f"Could not save credentials to {self.path}: {e}") from e
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass

        logger.debug(f"Saved credentials to {self.path}")

    def clear(self) -> bool:
        """Remove the stored credential file.

        Returns:
            True if a file was removed, False if there was none

        Raises:
            TokenStoreError: If the file exists but cannot be removed
        """
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise TokenStoreError(f"Could not remove {self.path}: {e}") from e

        logger.info(f"Removed stored credentials at {self.path}")
        return True
