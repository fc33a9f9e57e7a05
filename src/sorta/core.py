import logging
import os
from pathlib import Path
from typing import Optional

from .classifier import select_eligible
from .collector import DirectoryCollector
from .config import Settings
from .conflicts import ConflictResolver
from .metadata import MetadataStore
from .models import Summary
from .reporting import ProgressReporter, log_summary
from .transfer import TransferExecutor

logger = logging.getLogger(__name__)


class FileOrganizer:
    """
    Encapsulates the organize pass: collect the source tree, classify each
    file, and hand the eligible ones to the transfer executor.

    The metadata store is expected to be loaded by the caller; the
    organizer only reads and updates it. Configuration loading and user
    interaction live elsewhere.
    """

    def __init__(self, source_dir: Path, dest_dir: Path, store: MetadataStore,
                 settings: Optional[Settings] = None, collector: Optional[DirectoryCollector] = None):
        """
        Initializes the FileOrganizer with source and destination paths.

        Args:
            source_dir: The directory to scan for files.
            dest_dir: The root directory where categorized subfolders will be created.
            store: The loaded metadata store.
            settings: Run settings; defaults are used when omitted.
            collector: The directory walker; a default one is created when omitted.

        Raises:
            ValueError: If the source directory does not exist or the destination
                        path exists and is not a directory.
        """
        if not source_dir.is_dir():
            raise ValueError(f"Source directory does not exist or is not a directory: {source_dir}")
        if dest_dir.exists() and not dest_dir.is_dir():
            raise ValueError(f"Destination path exists but is not a directory: {dest_dir}")

        self.source_dir = Path(os.path.abspath(source_dir))
        self.dest_dir = Path(os.path.abspath(dest_dir))
        self.store = store
        self.settings = settings or Settings()
        self.collector = collector or DirectoryCollector()
        self.last_summary: Optional[Summary] = None

        if self.dest_dir == self.source_dir or self.source_dir in self.dest_dir.parents:
            logger.warning(
                f"Destination '{self.dest_dir}' is inside the source tree. "
                f"Organized files will be seen again on the next run."
            )

        logger.info(f"Core organizer initialized. Source: '{self.source_dir}', Destination: '{self.dest_dir}'")

    def organize(self, classifier, resolver: ConflictResolver, dry_run: bool = False,
                 reporter: Optional[ProgressReporter] = None) -> Summary:
        """
        Executes the organize pass.

        Args:
            classifier: Maps a path to a `Category`, or None for ineligible files.
            resolver: Resolves destination conflicts for this run.
            dry_run: If True, logs what would happen without touching the disk.
            reporter: Receives progress updates.

        Returns:
            The summary of the batch.

        Raises:
            SourceUnreadableError: If the source root cannot be listed.
        """
        logger.info("Starting file organization process...")
        paths = self.collector.collect(self.source_dir)
        eligible, ignored = select_eligible(classifier, paths)
        logger.debug(f"{len(eligible)} of {len(paths)} files are eligible")

        if not eligible:
            logger.info("No files to organize.")

        executor = TransferExecutor(
            self.store,
            resolver,
            mode=self.settings.transfer_mode,
            hash_files=self.settings.hash_files,
            concurrency=self.settings.concurrency,
            flush_every=self.settings.flush_every,
            invalid_timestamps=self.settings.invalid_timestamps,
            dry_run=dry_run,
            reporter=reporter,
        )
        summary = executor.run(eligible, self.dest_dir)

        log_summary(summary, len(paths), ignored, dry_run)
        self.last_summary = summary
        return summary
