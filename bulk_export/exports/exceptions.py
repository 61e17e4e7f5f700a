# bulk_export/exports/exceptions.py

class ExportError(Exception):
    """Base exception for all export pipeline errors."""
    pass

class SourceQueryError(ExportError):
    """Raised when a count, schema or page query against the source fails."""
    def __init__(self, source_name: str, reason: str):
        self.source_name = source_name
        self.reason = reason
        super().__init__(f"Query against source '{source_name}' failed: {reason}")

class SourceUnavailableError(SourceQueryError):
    """Raised when the source cannot be reached at all."""
    pass

class SourceNotFoundError(SourceQueryError):
    """Raised when the requested source does not exist."""
    def __init__(self, source_name: str):
        super().__init__(source_name, "source does not exist")

class SchemaMismatchError(ExportError):
    """Raised when the source key field cannot drive keyset pagination."""
    def __init__(self, source_name: str, reason: str):
        self.source_name = source_name
        self.reason = reason
        super().__init__(f"Source '{source_name}' has no usable key field: {reason}")

class SinkWriteError(ExportError):
    """Raised when serialized output cannot be delivered to the transport."""
    pass
