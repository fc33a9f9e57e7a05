class SortaError(Exception):
    """Base error for the project."""


class ConfigurationError(SortaError, ValueError):
    """Invalid invocation or settings. Raised before anything is touched on disk."""


class SourceUnreadableError(SortaError):
    """The source root itself cannot be listed."""


class ConflictError(SortaError):
    """A destination conflict could not be resolved to a free path."""
