"""Exception types raised by the memory store."""


class RecallError(Exception):
    """Base class for all memory store errors."""


class ValidationError(RecallError, ValueError):
    """Caller passed an empty content/query/embedding or a non-positive top_k."""


class OperationCancelled(RecallError):
    """The cancel token fired (or its deadline passed) before the operation finished."""


class StorageError(RecallError):
    """The underlying database failed."""


class QuerySyntaxError(StorageError):
    """The full-text engine rejected the query string."""


class CorruptEmbeddingError(StorageError):
    """A stored embedding blob could not be decoded."""
