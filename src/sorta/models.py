import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class FileRecord:
    """
    Persisted metadata for one source file.

    Records are keyed by `path`. They are created by the scan pass and
    mutated in place by the organize pass (`copied`, `filename`); the
    engine never deletes them.
    """
    path: str
    filename: str
    timestamp: str
    copied: bool = False
    hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "filename": self.filename,
            "path": self.path,
            "timestamp": self.timestamp,
            "copied": self.copied,
        }
        if self.hash:
            data["hash"] = self.hash
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileRecord":
        """
        Builds a record from one entry of the metadata document.

        Raises:
            ValueError: If `path` or `timestamp` is missing or not a string.
        """
        path = data.get("path")
        timestamp = data.get("timestamp")
        if not isinstance(path, str) or not path:
            raise ValueError(f"Entry has no valid 'path': {data!r}")
        if not isinstance(timestamp, str) or not timestamp:
            raise ValueError(f"Entry for '{path}' has no valid 'timestamp'")
        copied = data.get("copied", False)
        if not isinstance(copied, bool):
            logger.warning(f"Entry for '{path}' has a non-boolean 'copied' value {copied!r}. Treating it as not copied.")
            copied = False
        return cls(
            path=path,
            filename=str(data.get("filename") or Path(path).name),
            timestamp=timestamp,
            copied=copied,
            hash=data.get("hash") or None,
        )


@dataclass(frozen=True)
class Category:
    """A logical grouping and the destination subfolder it maps to."""
    name: str
    folder: str  # relative to the destination root, e.g. "images/jpg"


class ConflictAction(Enum):
    SKIP = "skip"
    REPLACE = "replace"
    SUFFIX = "suffix"


@dataclass(frozen=True)
class Conflict:
    source: Path
    destination: Path


@dataclass(frozen=True)
class Resolution:
    """Final destination for a transfer.

    `reserved` is True when the path was claimed with an empty placeholder
    that must be removed again if the transfer does not happen.
    """
    path: Path
    reserved: bool = False


@dataclass
class Summary:
    total: int = 0
    processed: int = 0
    skipped: int = 0
    duplicates: int = 0
    bytes_saved: int = 0
    missing_metadata: int = 0
    conflicts_skipped: int = 0
    failed: List[Tuple[str, str]] = field(default_factory=list)

    def snapshot(self) -> "Summary":
        return replace(self, failed=list(self.failed))

    @property
    def settled(self) -> int:
        """Files that reached a terminal state, used for progress rendering."""
        return (
            self.processed + self.skipped + self.duplicates
            + self.missing_metadata + self.conflicts_skipped + len(self.failed)
        )
