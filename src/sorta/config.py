import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional, Tuple

from platformdirs import user_config_dir

from .errors import ConfigurationError
from .models import ConflictAction

logger = logging.getLogger(__name__)

# --- Application Constants ---
APP_NAME = "sorta"
APP_AUTHOR = "sorta"
CONFIG_FILE_NAME = "settings.json"
DEFAULT_METADATA_FILE = "file_metadata.json"

TRANSFER_MODES = ("move", "copy")
# "any" sorts every file that has an extension into a folder named after it.
MEDIA_CHOICES = ("images", "videos", "all", "any")

# --- Default Media Classes ---
# Extensions are lowercase with a leading dot. The media class name is the
# first level of the destination tree, the extension (without the dot) the second.
DEFAULT_IMAGE_EXTENSIONS = frozenset({
    '.jpg', '.jpeg', '.png', '.gif', '.bmp', '.tiff', '.tif', '.webp',
    '.ico', '.heic', '.heif', '.raw', '.cr2', '.nef', '.orf', '.arw',
    '.sr2', '.dng', '.raf', '.rw2', '.pef', '.svg', '.img', '.psd',
    '.xcf', '.pcx', '.jp2',
})

DEFAULT_VIDEO_EXTENSIONS = frozenset({
    '.mp4', '.m4v', '.mov', '.avi', '.wmv', '.flv', '.mkv', '.webm',
    '.mpg', '.mpeg', '.hevc', '.h265', '.rm', '.rmvb', '.3gp', '.asf',
    '.vob', '.dat', '.swf', '.ts', '.m2ts', '.f4v', '.mxf', '.ogv',
    '.yuv', '.mjpg', '.mjpeg', '.divx', '.xvid', '.amv', '.vid', '.scm',
})

# Some filesystems (FAT/exFAT volumes written by cameras) report this instant
# when no real birth time is stored.
DEFAULT_INVALID_TIMESTAMPS = ("1980-01-01T05:00:00.000Z",)


@dataclass
class Settings:
    """
    Run configuration. Built from defaults, then the user settings file,
    then command-line overrides.
    """
    image_extensions: FrozenSet[str] = DEFAULT_IMAGE_EXTENSIONS
    video_extensions: FrozenSet[str] = DEFAULT_VIDEO_EXTENSIONS
    concurrency: int = 10
    flush_every: int = 10
    invalid_timestamps: Tuple[str, ...] = DEFAULT_INVALID_TIMESTAMPS
    transfer_mode: str = "move"
    hash_files: bool = True
    on_conflict: Optional[ConflictAction] = None
    metadata_file: str = DEFAULT_METADATA_FILE
    name_substring: str = "Screenshot"
    name_folder: str = "screenshots"
    case_sensitive: bool = True
    extra: Dict[str, Any] = field(default_factory=dict, repr=False)

    def media_map(self, media: str = "all") -> Optional[Dict[str, FrozenSet[str]]]:
        """
        Maps destination media folders to the extension sets to sort into
        them. Returns None for "any", meaning no restriction by extension.
        """
        if media == "any":
            return None
        media_map = {"images": self.image_extensions, "videos": self.video_extensions}
        if media == "all":
            return media_map
        if media not in media_map:
            raise ConfigurationError(f"Unknown media class: '{media}'")
        return {media: media_map[media]}

    def validate(self) -> None:
        if self.transfer_mode not in TRANSFER_MODES:
            raise ConfigurationError(
                f"Invalid transfer mode '{self.transfer_mode}'. Expected one of: {', '.join(TRANSFER_MODES)}"
            )
        if self.concurrency < 1:
            raise ConfigurationError(f"Concurrency must be at least 1, got {self.concurrency}")
        if self.flush_every < 1:
            raise ConfigurationError(f"Flush interval must be at least 1, got {self.flush_every}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        """
        Creates settings from a user dictionary, falling back to defaults for
        every key that is absent. Unknown keys are kept in `extra`.

        Raises:
            ConfigurationError: If a known key holds a value of the wrong shape.
        """
        known = {f.name for f in fields(cls)} - {"extra"}
        kwargs: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                extra[key] = value
                continue
            try:
                kwargs[key] = _coerce(key, value)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"Invalid value for setting '{key}': {e}") from e
        settings = cls(**kwargs, extra=extra)
        settings.validate()
        return settings


def _coerce(key: str, value: Any) -> Any:
    if key in ("image_extensions", "video_extensions"):
        if not isinstance(value, (list, tuple, set, frozenset)):
            raise TypeError("expected a list of extensions")
        return frozenset(_normalize_extension(ext) for ext in value)
    if key == "invalid_timestamps":
        if isinstance(value, str):
            return (value,)
        return tuple(str(item) for item in value)
    if key in ("concurrency", "flush_every"):
        return int(value)
    if key in ("hash_files", "case_sensitive"):
        if not isinstance(value, bool):
            raise TypeError("expected true or false")
        return value
    if key == "on_conflict":
        return ConflictAction(value) if value is not None else None
    return str(value)


def _normalize_extension(ext: str) -> str:
    ext = str(ext).strip().lower()
    if not ext.startswith('.'):
        ext = '.' + ext
    return ext


def get_config_file_path() -> Path:
    """
    Determines the cross-platform path for the user's settings file.

    Uses `platformdirs` to find the appropriate user-specific config
    directory and ensures that this directory exists.

    Returns:
        A pathlib.Path object representing the full path to the settings file.
    """
    config_dir = Path(user_config_dir(APP_NAME, APP_AUTHOR, roaming=True))
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir / CONFIG_FILE_NAME


def load_settings() -> Settings:
    """
    Loads the run settings, merging the user settings file over the defaults.

    A missing file is normal and yields the defaults. A file that cannot be
    read, is not a JSON object, or holds invalid values is reported and
    ignored.
    """
    config_path = get_config_file_path()
    if not config_path.is_file():
        logger.info("No custom settings file found. Using default settings.")
        return Settings()

    try:
        with config_path.open('r', encoding='utf-8') as f:
            user_settings = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.error(f"Error reading or decoding settings from {config_path}: {e}. Using default settings.")
        return Settings()

    if not isinstance(user_settings, dict):
        logger.warning(f"Settings file {config_path} is not a valid JSON object. Using default settings.")
        return Settings()

    try:
        settings = Settings.from_dict(user_settings)
    except ConfigurationError as e:
        logger.error(f"Invalid settings in {config_path}: {e}. Using default settings.")
        return Settings()

    logger.info(f"Loaded custom settings from {config_path}")
    if settings.extra:
        logger.warning(f"Ignoring unknown settings: {', '.join(sorted(settings.extra))}")
    return settings
