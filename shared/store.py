"""
JSON key-value store with backup-before-overwrite.

Every store file holds one JSON object mapping a stock code to its payload.

Provides:
- First-run tolerant loading (missing file -> empty mapping)
- Typed loading (payloads converted through a record's from_dict)
- Backup of the previous file to <path>_backup before each write
- Atomic replace of the main file (write temp file, then os.replace)

Usage:
    from shared.store import JsonStore

    store = JsonStore(indent=2)
    data = store.load("data/basic_finance.json")
    data["600000"] = {...}
    store.commit("data/basic_finance.json", data)
"""
import json
import logging
import os
import shutil
import stat
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Type

logger = logging.getLogger(__name__)

# Backup file name = original file name + BACKUP_SUFFIX
BACKUP_SUFFIX = "_backup"


def _file_mode(path: Path) -> int:
    """Permissions for a rewritten file: keep the existing ones, else honor the umask."""
    try:
        return stat.S_IMODE(os.stat(path).st_mode)
    except FileNotFoundError:
        umask = os.umask(0)
        os.umask(umask)
        return 0o666 & ~umask


class StoreError(Exception):
    """Base class for persistence failures."""

    def __init__(self, message: str, path: Optional[Path] = None):
        super().__init__(message)
        self.path = path


class StoreNotFoundError(StoreError):
    """Store file is absent where it was expected to exist."""


class StoreDecodeError(StoreError):
    """Store file exists but its content is malformed or has the wrong shape."""


class BackupError(StoreError):
    """Existing file could not be copied aside; the write was not attempted."""


class CommitError(StoreError):
    """New content could not be written."""


class JsonSerializer:
    """Encodes and decodes store documents."""

    def __init__(self, indent: Optional[int] = 2, ensure_ascii: bool = False):
        self.indent = indent
        self.ensure_ascii = ensure_ascii

    def dumps(self, content: Any) -> str:
        return json.dumps(
            content,
            indent=self.indent,
            ensure_ascii=self.ensure_ascii,
            default=_encode_record,
        )

    def loads(self, text: str) -> Any:
        return json.loads(text)


def _encode_record(obj: Any) -> Any:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class JsonStore:
    """Loads and commits code -> payload mappings."""

    def __init__(self, serializer: Optional[JsonSerializer] = None, indent: Optional[int] = 2):
        """
        Initialize store.

        Args:
            serializer: Serializer used for every read and write
                (default: JsonSerializer with the given indent)
            indent: JSON indent when no serializer is passed
        """
        self.serializer = serializer or JsonSerializer(indent=indent)

    def load(
        self,
        path,
        missing_ok: bool = True,
        record_type: Optional[Type] = None,
    ) -> Dict[str, Any]:
        """
        Load a store file.

        Args:
            path: Store file path
            missing_ok: Return {} when the file does not exist (first run);
                otherwise raise StoreNotFoundError
            record_type: Optional class with a from_dict classmethod applied
                to every payload

        Returns:
            Dict mapping stock code to payload

        Raises:
            StoreNotFoundError: File absent and missing_ok is False
            StoreDecodeError: Malformed JSON, non-object document, or a
                payload rejected by record_type.from_dict
        """
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            if missing_ok:
                logger.info(f"Store file {path} does not exist yet, starting empty")
                return {}
            raise StoreNotFoundError(f"Store file not found: {path}", path)
        except OSError as e:
            raise StoreError(f"Could not read store file {path}: {e}", path) from e

        try:
            data = self.serializer.loads(text)
        except ValueError as e:
            raise StoreDecodeError(f"Malformed store file {path}: {e}", path) from e

        if not isinstance(data, dict):
            raise StoreDecodeError(
                f"Store file {path} must hold an object, got {type(data).__name__}", path
            )

        if record_type is None:
            return data

        records = {}
        for key, value in data.items():
            try:
                records[key] = record_type.from_dict(value)
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                raise StoreDecodeError(
                    f"Entry {key!r} in {path} is not a valid {record_type.__name__}: {e}", path
                ) from e
        return records

    def backup(self, path) -> Optional[Path]:
        """
        Copy the current file to <path>_backup.

        Returns:
            Backup path, or None when there was nothing to back up

        Raises:
            BackupError: Copy failed for any reason other than a missing source
        """
        path = Path(path)
        backup_path = Path(str(path) + BACKUP_SUFFIX)
        try:
            shutil.copyfile(path, backup_path)
        except FileNotFoundError:
            if path.exists():
                raise BackupError(f"Could not create backup {backup_path}", path)
            logger.warning(f"File not found, nothing to back up: {path}")
            return None
        except OSError as e:
            logger.error(f"Backup failed, source file: {path}")
            raise BackupError(f"Could not back up {path}: {e}", path) from e
        return backup_path

    def commit(self, path, content: Dict[str, Any]) -> None:
        """
        Back up the existing file, then replace it with content.

        The main file is left untouched when the backup fails.

        Raises:
            BackupError: Existing file could not be backed up
            CommitError: Serialization or write failed
        """
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CommitError(f"Could not create directory for {path}: {e}", path) from e

        self.backup(path)

        try:
            text = self.serializer.dumps(content)
        except (TypeError, ValueError) as e:
            raise CommitError(f"Could not serialize content for {path}: {e}", path) from e

        tmp_name = None
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.chmod(tmp_name, _file_mode(path))
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.remove(tmp_name)
            logger.error(f"Writing store file failed: {path}")
            raise CommitError(f"Could not write {path}: {e}", path) from e

        logger.debug(f"Wrote {len(content)} entries to {path}")
