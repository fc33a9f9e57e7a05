from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .models import Category


class ExtensionClassifier:
    """
    Sorts files into `<media class>/<extension>` folders, e.g. `images/jpg`.

    Without a media map every file that has an extension is eligible and
    goes to a folder named after the extension alone, e.g. `pdf`.
    """

    def __init__(self, media_map: Optional[Mapping[str, Iterable[str]]] = None):
        self.any_extension = media_map is None
        self.by_extension: Dict[str, str] = {}
        for media_folder, extensions in (media_map or {}).items():
            for ext in extensions:
                # First media class wins for an extension listed twice.
                self.by_extension.setdefault(ext.lower(), media_folder)

    def classify(self, path: Path) -> Optional[Category]:
        extension = path.suffix.lower()
        if not extension:
            return None
        if self.any_extension:
            return Category(name=extension[1:], folder=extension[1:])
        media_folder = self.by_extension.get(extension)
        if media_folder is None:
            return None
        return Category(name=media_folder, folder=f"{media_folder}/{extension[1:]}")


class NameSubstringClassifier:
    """Sorts files whose name contains a marker (e.g. 'Screenshot') into one folder."""

    def __init__(self, substring: str, folder: str, case_sensitive: bool = True):
        if not substring:
            raise ValueError("The name substring must not be empty.")
        self.substring = substring if case_sensitive else substring.casefold()
        self.folder = folder
        self.case_sensitive = case_sensitive

    def classify(self, path: Path) -> Optional[Category]:
        name = path.name if self.case_sensitive else path.name.casefold()
        if self.substring in name:
            return Category(name=self.folder, folder=self.folder)
        return None


def select_eligible(classifier, paths: Iterable[Path]) -> Tuple[List[Tuple[Path, Category]], int]:
    """
    Pairs every eligible path with its category.

    Returns:
        The eligible (path, category) pairs and the number of ignored paths.
    """
    eligible: List[Tuple[Path, Category]] = []
    ignored = 0
    for path in paths:
        category = classifier.classify(path)
        if category is None:
            ignored += 1
            continue
        eligible.append((path, category))
    return eligible, ignored
