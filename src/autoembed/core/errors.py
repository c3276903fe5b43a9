class AutoEmbedError(Exception):
    """Base error for all user-facing autoembed exceptions."""


class ConfigurationError(AutoEmbedError):
    """Raised when configuration is invalid or incomplete."""


class ValidationError(AutoEmbedError):
    """Raised when model invariants fail."""


class ModelServerError(AutoEmbedError):
    """Raised when the embedding model server rejects or fails a request."""


class TransientModelError(ModelServerError):
    """Raised for model server failures that are worth retrying."""


class StorageError(AutoEmbedError):
    """Raised when a vector storage backend operation fails."""


class CacheError(AutoEmbedError):
    """Raised when the embedding cache cannot be read or written."""


class EmbeddingFailedError(AutoEmbedError):
    """Raised when a pipeline attempt fails to produce an embedding."""


class ServiceUnavailableError(AutoEmbedError):
    """Raised when neither the model server nor any vector backend could be started."""
