import hashlib
import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from .collector import DirectoryCollector
from .models import FileRecord

logger = logging.getLogger(__name__)


def format_timestamp(moment: datetime) -> str:
    """Formats an aware datetime as an ISO-8601 UTC instant, e.g. '2022-03-01T10:15:00.000Z'."""
    moment = moment.astimezone(timezone.utc)
    return moment.strftime('%Y-%m-%dT%H:%M:%S.') + f"{moment.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> datetime:
    """
    Parses a stored timestamp back into an aware datetime.

    Raises:
        ValueError: If the value is not an ISO-8601 instant.
    """
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def file_timestamp(stat_result: os.stat_result) -> str:
    """
    Returns the creation time of a file if the platform reports one,
    otherwise its modification time.
    """
    birth_time = getattr(stat_result, 'st_birthtime', None)
    seconds = birth_time if birth_time else stat_result.st_mtime
    return format_timestamp(datetime.fromtimestamp(seconds, tz=timezone.utc))


def calculate_file_hash(file_path: Path, hash_algo: str = "sha256", buffer_size: int = 65536) -> Optional[str]:
    """
    Calculates the hash of a file, reading it in chunks.

    Returns:
        The hex digest of the hash as a string, or None if the file could not be read.
    """
    hasher = hashlib.new(hash_algo)
    try:
        with file_path.open('rb') as f:
            while chunk := f.read(buffer_size):
                hasher.update(chunk)
        return hasher.hexdigest()
    except OSError as e:
        logger.error(f"Could not calculate hash for {file_path}: {e}")
        return None


class MetadataStore:
    """
    The persisted metadata index: an ordered list of `FileRecord`s in a JSON
    document of the form `{"files": [...]}`. In memory the records are held
    in insertion order, keyed by path; the keying is rebuilt on every load.

    All reads and writes of records go through a store-level lock so that
    transfer workers can update distinct records concurrently.
    """

    def __init__(self, path: Path):
        self.path = path
        self._index: Dict[str, FileRecord] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._index)

    def __contains__(self, path: object) -> bool:
        with self._lock:
            return str(path) in self._index

    def load(self) -> Dict[str, FileRecord]:
        """
        Reads the metadata document from disk, replacing anything in memory.

        Never raises: a missing file means no metadata yet, and an unreadable
        or corrupt file is reported and treated as empty.

        Returns:
            The loaded records keyed by path.
        """
        with self._lock:
            self._index = {}

            if not self.path.is_file():
                logger.info(f"No metadata file found at {self.path}. Starting with empty metadata.")
                return dict(self._index)

            try:
                with self.path.open('r', encoding='utf-8') as f:
                    document = json.load(f)
            except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
                logger.warning(f"Error reading metadata file {self.path}: {e}. Proceeding with empty metadata.")
                return dict(self._index)

            for record in self._parse_document(document):
                self._index[record.path] = record

            logger.info(f"Loaded {len(self._index)} metadata records from {self.path}")
            return dict(self._index)

    def _parse_document(self, document: Any) -> List[FileRecord]:
        if isinstance(document, dict) and isinstance(document.get("files"), list):
            records = []
            for entry in document["files"]:
                if not isinstance(entry, dict):
                    logger.warning(f"Skipping malformed metadata entry: {entry!r}")
                    continue
                try:
                    records.append(FileRecord.from_dict(entry))
                except ValueError as e:
                    logger.warning(f"Skipping malformed metadata entry: {e}")
            return records

        # Older documents were a flat {path: timestamp} mapping.
        if isinstance(document, dict) and document and all(
            isinstance(k, str) and isinstance(v, str) for k, v in document.items()
        ):
            logger.info(f"Converting legacy path-to-timestamp metadata in {self.path}")
            return [
                FileRecord(path=path, filename=Path(path).name, timestamp=timestamp)
                for path, timestamp in document.items()
            ]

        logger.warning(f"Metadata file {self.path} has an unexpected structure. Proceeding with empty metadata.")
        return []

    def persist(self) -> None:
        """
        Writes the full document atomically: the data goes to a temporary
        file next to the target, which then replaces the target.

        Raises:
            OSError: If the document cannot be written.
        """
        with self._lock:
            document = {"files": [record.to_dict() for record in self._index.values()]}
            parent = self.path.parent
            parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                'w', encoding='utf-8', dir=parent, prefix=f".{self.path.name}.", suffix='.tmp', delete=False
            ) as tmp:
                json.dump(document, tmp, indent=4)
                tmp.write('\n')
                tmp_path = Path(tmp.name)
            try:
                tmp_path.replace(self.path)
            except OSError:
                tmp_path.unlink(missing_ok=True)
                raise
            logger.debug(f"Metadata saved to {self.path} ({len(self._index)} records)")

    def get(self, path: object) -> Optional[FileRecord]:
        with self._lock:
            return self._index.get(str(path))

    def records(self) -> List[FileRecord]:
        with self._lock:
            return list(self._index.values())

    def upsert(self, record: FileRecord) -> FileRecord:
        """
        Adds a record, or replaces the record with the same path in place.

        A record that is replaced keeps its content hash and its copied flag.
        """
        with self._lock:
            existing = self._index.get(record.path)
            if existing is not None:
                record.hash = existing.hash or record.hash
                record.copied = existing.copied
            # Replacing the value of an existing key keeps its position.
            self._index[record.path] = record
            return record

    def mark_copied(self, path: object, filename: str) -> None:
        with self._lock:
            record = self._index[str(path)]
            record.copied = True
            record.filename = filename

    def duplicate_index(self) -> Set[str]:
        """Content hashes of every record already settled at its destination."""
        with self._lock:
            return {record.hash for record in self._index.values() if record.copied and record.hash}

    def generate(self, source_dir: Path, collector: Optional[DirectoryCollector] = None,
                 hash_files: bool = True) -> int:
        """
        The metadata generation pass: walks `source_dir` once, records a
        timestamp (and optionally a content hash) for every visible file,
        and persists the document.

        Returns:
            The number of records written or refreshed.
        """
        collector = collector or DirectoryCollector()
        paths = collector.collect(source_dir)
        logger.info(f"Found {len(paths)} files under '{source_dir}'. Generating metadata...")

        written = 0
        for file_path in paths:
            record = build_record(file_path, hash_files and not self._has_hash(file_path))
            if record is None:
                continue
            self.upsert(record)
            written += 1

        self.persist()
        logger.info(f"Metadata for {written} files saved to {self.path}")
        return written

    def _has_hash(self, path: Path) -> bool:
        existing = self.get(path)
        return bool(existing and existing.hash)


def build_record(file_path: Path, hash_file: bool = True) -> Optional[FileRecord]:
    """Stats (and optionally hashes) one file. Returns None if it cannot be read."""
    try:
        stat_result = file_path.stat()
    except OSError as e:
        logger.warning(f"Failed to read file: {file_path} - {e}")
        return None

    timestamp = file_timestamp(stat_result)
    logger.debug(f"Checking file: {file_path} (timestamp {timestamp})")
    content_hash = calculate_file_hash(file_path) if hash_file else None
    return FileRecord(path=str(file_path), filename=file_path.name, timestamp=timestamp, hash=content_hash)
