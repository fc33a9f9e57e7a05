import logging

from .models import Summary

logger = logging.getLogger(__name__)


class ProgressReporter:
    """
    Receives progress from the engine. The base class renders nothing;
    presentation layers override the hooks they need.
    """

    def start(self, total: int) -> None:
        pass

    def update(self, summary: Summary) -> None:
        pass

    def finish(self, summary: Summary) -> None:
        pass


def log_summary(summary: Summary, total_scanned: int, ignored: int, dry_run: bool = False) -> None:
    """Logs a final summary of the organization process."""
    log_prefix = "Dry run finished." if dry_run else "Organization finished."
    logger.info(f"--- {log_prefix} ---")
    logger.info(f"Total files scanned: {total_scanned}")
    logger.info(f"Files ignored by classification rules: {ignored}")
    logger.info(f"Eligible files: {summary.total}")
    if dry_run:
        logger.info(f"Files that would be moved or copied: {summary.processed}")
    else:
        logger.info(f"Files successfully moved or copied: {summary.processed}")
    logger.info(f"Files already organized (skipped): {summary.skipped}")
    logger.info(f"Duplicate files skipped: {summary.duplicates} ({summary.bytes_saved} bytes saved)")
    logger.info(f"Files without metadata: {summary.missing_metadata}")
    logger.info(f"Files skipped on conflict: {summary.conflicts_skipped}")
    if summary.failed:
        logger.error(f"Files that failed: {len(summary.failed)}")
        for path, message in summary.failed:
            logger.error(f"  {path}: {message}")
