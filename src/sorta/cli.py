import argparse
import dataclasses
import logging
import sys
from pathlib import Path
from typing import List, Optional

from tqdm import tqdm

from . import config
from .classifier import ExtensionClassifier, NameSubstringClassifier
from .conflicts import ConflictResolver, InteractivePrompt
from .core import FileOrganizer
from .errors import ConfigurationError, SourceUnreadableError
from .metadata import MetadataStore
from .models import ConflictAction, Summary
from .reporting import ProgressReporter

logger = logging.getLogger(__name__)


def setup_logging(level: int):
    """Sets up basic logging for the application."""
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


class TqdmReporter(ProgressReporter):
    """Renders organize progress as a tqdm bar on stderr."""

    def __init__(self):
        self._bar: Optional[tqdm] = None

    def start(self, total: int) -> None:
        self._bar = tqdm(total=total, desc="Organizing", unit="file")

    def update(self, summary: Summary) -> None:
        if self._bar is None:
            return
        self._bar.n = summary.settled
        self._bar.set_postfix(done=summary.processed, dup=summary.duplicates, failed=len(summary.failed), refresh=False)
        self._bar.refresh()

    def finish(self, summary: Summary) -> None:
        if self._bar is not None:
            self.update(summary)
            self._bar.close()
            self._bar = None


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-v", "--verbose", action="store_const", dest="loglevel", const=logging.DEBUG,
                        default=logging.INFO, help="Increase output verbosity to DEBUG level.")
    common.add_argument("--no-hash", action="store_true",
                        help="Do not use content hashes (no duplicate detection).")

    parser = argparse.ArgumentParser(
        prog="sorta",
        description="Organizes photos and videos into a dated, per-type destination tree "
                    "using a resumable metadata index."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    scan = subparsers.add_parser("scan", parents=[common],
                                 help="Record timestamps and content hashes for every file in a source tree.")
    scan.add_argument("source_dir", type=Path, help="The source directory to scan.")
    scan.add_argument("metadata_file", type=Path, nargs="?", default=None,
                      help=f"Where to write the metadata (default: {config.DEFAULT_METADATA_FILE}).")

    organize = subparsers.add_parser("organize", parents=[common],
                                     help="Move or copy scanned files into the destination tree.")
    organize.add_argument("source_dir", type=Path, help="The source directory containing files to organize.")
    organize.add_argument("dest_dir", type=Path, help="The base destination directory for organized sub-folders.")
    organize.add_argument("--metadata", type=Path, default=None,
                          help=f"The metadata file written by 'scan' (default: {config.DEFAULT_METADATA_FILE}).")
    organize.add_argument("--media", choices=config.MEDIA_CHOICES, default="all",
                          help="Which media classes to organize by extension. 'any' organizes every "
                               "file that has an extension into a folder named after it.")
    organize.add_argument("--by-name", metavar="SUBSTRING", default=None,
                          help="Organize files whose name contains SUBSTRING instead of by extension.")
    organize.add_argument("--folder", default=None,
                          help="Destination folder for --by-name matches.")
    organize.add_argument("--ignore-case", action="store_true", help="Match --by-name case-insensitively.")
    organize.add_argument("--mode", choices=config.TRANSFER_MODES, default=None,
                          help="Move files (default) or copy them, keeping the source.")
    organize.add_argument("--on-conflict", choices=[action.value for action in ConflictAction], default=None,
                          help="Resolve every destination conflict this way instead of asking.")
    organize.add_argument("--workers", type=int, default=None, help="Number of concurrent transfers.")
    organize.add_argument("--dry-run", action="store_true",
                          help="Simulates the organization process without moving files.")
    organize.add_argument("--no-progress", action="store_true", help="Do not render a progress bar.")
    return parser


def apply_overrides(settings: config.Settings, args: argparse.Namespace) -> config.Settings:
    """Returns a copy of `settings` with the command-line flags applied."""
    overrides = {}
    if args.no_hash:
        overrides["hash_files"] = False
    if args.command == "organize":
        if args.metadata is not None:
            overrides["metadata_file"] = str(args.metadata)
        if args.mode is not None:
            overrides["transfer_mode"] = args.mode
        if args.on_conflict is not None:
            overrides["on_conflict"] = ConflictAction(args.on_conflict)
        if args.workers is not None:
            overrides["concurrency"] = args.workers
        if args.by_name is not None:
            overrides["name_substring"] = args.by_name
        if args.folder is not None:
            overrides["name_folder"] = args.folder
        if args.ignore_case:
            overrides["case_sensitive"] = False
    settings = dataclasses.replace(settings, **overrides)
    settings.validate()
    return settings


def build_classifier(args: argparse.Namespace, settings: config.Settings):
    if args.by_name is not None:
        return NameSubstringClassifier(settings.name_substring, settings.name_folder, settings.case_sensitive)
    return ExtensionClassifier(settings.media_map(args.media))


def build_resolver(settings: config.Settings, dry_run: bool, interactive: Optional[bool] = None) -> ConflictResolver:
    """
    Chooses how conflicts are decided: the configured default if there is
    one, the terminal if stdin is interactive, otherwise fail.
    """
    if settings.on_conflict is not None:
        return ConflictResolver(default=settings.on_conflict, dry_run=dry_run)
    if interactive is None:
        interactive = sys.stdin.isatty()
    if interactive:
        return ConflictResolver(provider=InteractivePrompt(), dry_run=dry_run)
    return ConflictResolver(dry_run=dry_run)


def run_scan(args: argparse.Namespace, settings: config.Settings) -> None:
    if not args.source_dir.is_dir():
        raise ConfigurationError(f"Source directory does not exist or is not a directory: {args.source_dir}")
    metadata_path = args.metadata_file or Path(settings.metadata_file)
    store = MetadataStore(metadata_path)
    store.load()
    store.generate(args.source_dir, hash_files=settings.hash_files)


def run_organize(args: argparse.Namespace, settings: config.Settings) -> Summary:
    # Everything that can reject the invocation happens before the disk is touched.
    resolver = build_resolver(settings, args.dry_run)
    classifier = build_classifier(args, settings)

    store = MetadataStore(Path(settings.metadata_file))
    store.load()
    organizer = FileOrganizer(args.source_dir, args.dest_dir, store, settings)
    reporter = ProgressReporter() if args.no_progress else TqdmReporter()
    return organizer.organize(classifier, resolver, dry_run=args.dry_run, reporter=reporter)


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point of the CLI application."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.loglevel)

    try:
        settings = apply_overrides(config.load_settings(), args)
        if args.command == "scan":
            run_scan(args, settings)
        else:
            run_organize(args, settings)
    except SourceUnreadableError as e:
        logger.critical(f"Source Error: {e}")
        sys.exit(1)
    except (ValueError, FileNotFoundError) as e:
        logger.critical(f"Configuration Error: {e}")
        sys.exit(1)
    except Exception as e:
        logger.critical(f"An unexpected critical error occurred: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
