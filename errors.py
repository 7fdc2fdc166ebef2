"""
Data layer errors

Every error raised by the session, repository, index manager and aggregation
engine derives from DataLayerError. Driver errors from pymongo are translated
into these at the boundary and chained with ``raise ... from``.
"""


class DataLayerError(Exception):
    """Base class for data layer errors."""
    pass


class StoreConnectionError(DataLayerError):
    """Raised when the store connection cannot be established or authenticated."""
    pass


class StoreUnavailableError(DataLayerError):
    """Raised when an operation runs without an open session."""
    pass


class DuplicateKeyError(DataLayerError):
    """Raised when an insert or upsert violates a unique index."""
    pass


class IndexConflictError(DataLayerError):
    """Raised when an index declaration is incompatible with existing data or indexes."""
    pass


class QueryError(DataLayerError):
    """Raised when a filter, projection, mutation or pipeline is malformed."""
    pass


class InvalidRecordError(QueryError):
    """Raised when a record fails model validation before it reaches the store."""
    pass
