import logging
import shutil
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from .config import DEFAULT_INVALID_TIMESTAMPS, TRANSFER_MODES
from .conflicts import ConflictResolver
from .errors import ConfigurationError, ConflictError
from .metadata import MetadataStore, parse_timestamp
from .models import Category, FileRecord, Summary
from .reporting import ProgressReporter

logger = logging.getLogger(__name__)


def _parse_sentinels(values: Iterable[str]) -> List[datetime]:
    sentinels = []
    for value in values:
        try:
            sentinels.append(parse_timestamp(value))
        except ValueError:
            logger.warning(f"Ignoring invalid timestamp sentinel: '{value}'")
    return sentinels


def destination_date(timestamp: str, sentinels: Sequence[datetime] = (), today: Optional[date] = None) -> str:
    """
    Formats a record timestamp as the local calendar date `YYYY-MM-DD`.

    Timestamps that match a known-bad sentinel, or cannot be parsed, are
    replaced with the current processing date.
    """
    today = today or date.today()
    try:
        moment = parse_timestamp(timestamp)
    except ValueError:
        logger.warning(f"Invalid timestamp: {timestamp}. Using current date.")
        return today.isoformat()

    if moment in sentinels:
        logger.warning(f"Invalid timestamp: {timestamp}. Using current date.")
        return today.isoformat()
    return moment.astimezone().strftime('%Y-%m-%d')


def destination_name(record: FileRecord, source: Path, sentinels: Sequence[datetime] = (),
                     today: Optional[date] = None) -> str:
    """Builds `{date}_{basename}{ext}` for a source file."""
    return f"{destination_date(record.timestamp, sentinels, today)}_{source.stem}{source.suffix.lower()}"


class TransferExecutor:
    """
    Moves or copies eligible files to their destinations on a bounded
    worker pool, keeping the metadata store up to date.

    For each file: no metadata means skip; already copied means skip; a
    content hash already organized in this run (or in an earlier one)
    means skip as a duplicate. While a twin is still being transferred,
    the worker waits for its outcome before deciding. Everything else is transferred to
    `<dest_root>/<category folder>/<date>_<name>` after conflict
    resolution. A failure is logged and recorded in the summary, and the
    batch carries on.

    The store is flushed every `flush_every` successful transfers and once
    more at the end of the batch.
    """

    def __init__(self, store: MetadataStore, resolver: ConflictResolver, mode: str = "move",
                 hash_files: bool = True, concurrency: int = 10, flush_every: int = 10,
                 invalid_timestamps: Iterable[str] = DEFAULT_INVALID_TIMESTAMPS,
                 dry_run: bool = False, reporter: Optional[ProgressReporter] = None):
        if mode not in TRANSFER_MODES:
            raise ConfigurationError(f"Invalid transfer mode: '{mode}'")
        self.store = store
        self.resolver = resolver
        self.mode = mode
        self.hash_files = hash_files
        self.concurrency = concurrency
        self.flush_every = flush_every
        self.sentinels = _parse_sentinels(invalid_timestamps)
        self.dry_run = dry_run
        self.reporter = reporter or ProgressReporter()

        self._lock = threading.Lock()
        # Signalled whenever an in-flight hash settles.
        self._hash_settled = threading.Condition(self._lock)
        self._summary = Summary()
        self._organized_hashes: Set[str] = set()
        self._in_flight_hashes: Set[str] = set()
        self._since_flush = 0

    def run(self, eligible: Sequence[Tuple[Path, Category]], dest_root: Path,
            concurrency: Optional[int] = None) -> Summary:
        """
        Transfers every eligible file.

        Args:
            eligible: (source path, category) pairs from the classifier.
            dest_root: The destination root directory.
            concurrency: Worker count; defaults to the executor's setting.

        Returns:
            The summary of the batch.
        """
        workers = concurrency or self.concurrency
        self._summary = Summary(total=len(eligible))
        self._organized_hashes = self.store.duplicate_index() if self.hash_files else set()
        self._in_flight_hashes = set()
        self._since_flush = 0

        self.reporter.start(len(eligible))
        logger.info(f"Found {len(eligible)} eligible files. Starting organization with {workers} workers...")

        with ThreadPoolExecutor(max_workers=workers) as pool:
            list(pool.map(lambda item: self._worker(item[0], item[1], dest_root), eligible))

        summary = self._snapshot()
        # Only successful transfers change the store.
        if not self.dry_run and summary.processed:
            self._flush()

        self.reporter.finish(summary)
        return summary

    def _worker(self, source: Path, category: Category, dest_root: Path) -> None:
        self._process(source, category, dest_root)
        self.reporter.update(self._snapshot())

    def _process(self, source: Path, category: Category, dest_root: Path) -> None:
        record = self.store.get(source)
        if record is None:
            logger.info(f"No metadata for file: {source}")
            self._count("missing_metadata")
            return

        if record.copied:
            logger.info(f"File already organized: {source}")
            self._count("skipped")
            return

        content_hash = record.hash if self.hash_files else None
        if content_hash and not self._claim_hash(content_hash):
            size = self._file_size(source)
            logger.info(f"Duplicate content, skipping: {source} ({size} bytes saved)")
            with self._lock:
                self._summary.duplicates += 1
                self._summary.bytes_saved += size
            return

        try:
            final_path = self._transfer(source, category, record, dest_root)
        except (shutil.Error, OSError, ConflictError) as e:
            logger.error(f"Error processing file '{source}': {e}")
            self._record_failure(source, e, content_hash)
            return
        except Exception as e:
            logger.error(f"Unexpected error processing file '{source}': {e}", exc_info=True)
            self._record_failure(source, e, content_hash)
            return

        if final_path is None:
            with self._lock:
                self._release_hash(content_hash)
                self._summary.conflicts_skipped += 1
            return

        if not self.dry_run:
            self.store.mark_copied(source, final_path.name)

        with self._lock:
            if content_hash:
                self._organized_hashes.add(content_hash)
            self._release_hash(content_hash)
            self._summary.processed += 1
            self._since_flush += 1
            flush_now = not self.dry_run and self._since_flush >= self.flush_every
            if flush_now:
                self._since_flush = 0

        if flush_now:
            self._flush()

    def _transfer(self, source: Path, category: Category, record: FileRecord, dest_root: Path) -> Optional[Path]:
        dest_folder = dest_root / category.folder
        if not self.dry_run:
            dest_folder.mkdir(parents=True, exist_ok=True)

        destination = dest_folder / destination_name(record, source, self.sentinels)
        resolution = self.resolver.resolve(source, destination)
        if resolution is None:
            logger.info(f"Skipped file: {source}")
            return None

        if self.dry_run:
            logger.info(f"[DRY RUN] Would {self.mode} '{source}' to '{resolution.path}'")
            return resolution.path

        try:
            if self.mode == "copy":
                shutil.copy2(str(source), str(resolution.path))
            else:
                # Renames on the same volume, copies then deletes across volumes.
                shutil.move(str(source), str(resolution.path))
        except Exception:
            self.resolver.release(resolution)
            raise

        action = "Copied" if self.mode == "copy" else "Moved"
        logger.info(f"{action}: '{source}' -> '{resolution.path}'")
        return resolution.path

    def _claim_hash(self, content_hash: str) -> bool:
        """
        Claims a content hash for transfer. Returns False if the content is
        already organized. A hash held by another worker is waited on: if
        that transfer succeeds this file is a duplicate, otherwise it takes
        over the claim.
        """
        with self._hash_settled:
            while content_hash in self._in_flight_hashes:
                self._hash_settled.wait()
            if content_hash in self._organized_hashes:
                return False
            self._in_flight_hashes.add(content_hash)
            return True

    def _release_hash(self, content_hash: Optional[str]) -> None:
        # Caller holds self._lock.
        if content_hash:
            self._in_flight_hashes.discard(content_hash)
            self._hash_settled.notify_all()

    def _record_failure(self, source: Path, error: Exception, content_hash: Optional[str]) -> None:
        with self._lock:
            self._release_hash(content_hash)
            self._summary.failed.append((str(source), str(error)))

    def _count(self, counter: str) -> None:
        with self._lock:
            setattr(self._summary, counter, getattr(self._summary, counter) + 1)

    def _snapshot(self) -> Summary:
        with self._lock:
            return self._summary.snapshot()

    def _flush(self) -> None:
        try:
            self.store.persist()
        except OSError as e:
            logger.error(f"Could not save metadata to {self.store.path}: {e}")

    @staticmethod
    def _file_size(path: Path) -> int:
        try:
            return path.stat().st_size
        except OSError as e:
            logger.warning(f"Could not read size of {path}: {e}")
            return 0
