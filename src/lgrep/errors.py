"""Exception hierarchy for lgrep.

Only per-file input errors (UnsupportedFileError) are recovered locally by
the sync engine. Everything else propagates to the caller with enough detail
to choose between rebuilding, retrying and aborting.
"""


class LgrepError(Exception):
    """Base class for all lgrep errors."""


class ConfigError(LgrepError, ValueError):
    """Invalid configuration value (unknown model, bad number, ...)."""


class UnsupportedFileError(LgrepError):
    """A file is binary, not valid UTF-8, or otherwise unreadable."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Cannot index {path}: {reason}")
        self.path = path
        self.reason = reason


class IndexNotFoundError(LgrepError):
    """The project has never been indexed."""

    def __init__(self, index_dir: str):
        super().__init__(f"No index found at {index_dir}. Run `lgrep index` first.")
        self.index_dir = index_dir


class IndexCorruptedError(LgrepError):
    """Index files exist but cannot be read back."""


class IndexInconsistentError(IndexCorruptedError):
    """Manifest and vector index disagree about the set of live fragments."""


class ModelMismatchError(LgrepError):
    """Index and query/sync were produced by different embedding models."""

    def __init__(
        self,
        index_model: str,
        index_dimension: int,
        requested_model: str | None,
        requested_dimension: int,
    ):
        if requested_model is None:
            message = (
                f"Index was built with model '{index_model}' ({index_dimension} dims) "
                f"but received a {requested_dimension}-dimensional vector."
            )
        else:
            message = (
                f"Index was built with model '{index_model}' ({index_dimension} dims) "
                f"but '{requested_model}' ({requested_dimension} dims) was requested. "
                f"Rebuild with `lgrep index --force --model {requested_model}` "
                f"or search with `--model {index_model}`."
            )
        super().__init__(message)
        self.index_model = index_model
        self.index_dimension = index_dimension
        self.requested_model = requested_model
        self.requested_dimension = requested_dimension


class IndexLockedError(LgrepError):
    """Another process is already writing to the index."""

    def __init__(self, lock_path: str):
        super().__init__(
            f"Index is locked by another sync ({lock_path}). "
            "Wait for it to finish and retry."
        )
        self.lock_path = lock_path


class EmbeddingError(LgrepError):
    """The embedding provider failed or returned malformed vectors."""


class WatchError(LgrepError):
    """The file watcher could not be started."""
