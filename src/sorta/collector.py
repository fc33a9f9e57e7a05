import logging
import os
from pathlib import Path
from typing import List, Set, Tuple

from .errors import SourceUnreadableError

logger = logging.getLogger(__name__)

HIDDEN_PREFIX = '.'


class DirectoryCollector:
    """
    Walks a source tree depth-first and returns every visible file.

    Hidden entries (names starting with a dot) are neither descended into
    nor collected. Directories that cannot be listed are reported and
    skipped; their siblings are still walked. Symbolic links to directories
    are followed once, and a directory already visited through another
    link is not walked again.
    """

    def __init__(self, hidden_prefix: str = HIDDEN_PREFIX):
        self.hidden_prefix = hidden_prefix

    def collect(self, root: Path) -> List[Path]:
        """
        Collects all candidate files below `root`.

        Args:
            root: The directory to walk.

        Returns:
            A list of absolute file paths. Ordering follows the walk and
            carries no meaning.

        Raises:
            SourceUnreadableError: If `root` itself cannot be listed.
        """
        root = Path(os.path.abspath(root))
        try:
            root_stat = root.stat()
            with os.scandir(root):
                pass
        except OSError as e:
            raise SourceUnreadableError(f"Cannot read source directory '{root}': {e}") from e

        files: List[Path] = []
        visited: Set[Tuple[int, int]] = {(root_stat.st_dev, root_stat.st_ino)}
        stack: List[Path] = [root]

        while stack:
            current = stack.pop()
            try:
                with os.scandir(current) as it:
                    entries = sorted(it, key=lambda entry: entry.name, reverse=True)
            except PermissionError:
                logger.warning(f"Permission denied, skipping directory: {current}")
                continue
            except OSError as e:
                logger.error(f"Error accessing directory '{current}': {e}")
                continue

            for entry in entries:
                entry_path = current / entry.name
                if entry.name.startswith(self.hidden_prefix):
                    logger.warning(f"Skipping hidden or system entry: {entry_path}")
                    continue

                try:
                    is_dir = entry.is_dir()
                except OSError as e:
                    logger.error(f"Could not inspect '{entry_path}': {e}")
                    continue

                if is_dir:
                    try:
                        st = entry.stat()
                    except OSError as e:
                        logger.error(f"Could not inspect '{entry_path}': {e}")
                        continue
                    key = (st.st_dev, st.st_ino)
                    if key in visited:
                        logger.warning(f"Skipping already visited directory (link cycle?): {entry_path}")
                        continue
                    visited.add(key)
                    stack.append(entry_path)
                else:
                    files.append(entry_path)

        logger.debug(f"Collected {len(files)} files under '{root}'")
        return files
