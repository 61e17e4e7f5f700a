"""
Domain models for the export pipeline.

Plain dataclasses and enums shared by the pager, projector, sinks and the
streaming export service. Nothing here touches I/O.
"""

from dataclasses import dataclass
from enum import Enum as PyEnum
from typing import Any, Dict, List, Optional, Union

Record = Dict[str, Any]
Page = List[Record]
KeyValue = Union[int, str]

ALL_FIELDS = "*"


class ExportFormat(str, PyEnum):
    """Export file format enumeration"""
    CSV = "csv"
    JSON = "json"

    @classmethod
    def from_filename(cls, filename: str) -> "ExportFormat":
        """Pick the format from the filename suffix, JSON unless it ends in .csv"""
        if filename.lower().endswith(".csv"):
            return cls.CSV
        return cls.JSON

    @property
    def media_type(self) -> str:
        if self is ExportFormat.CSV:
            return "text/csv"
        return "application/json"


class KeyKind(str, PyEnum):
    """Key field kinds that keyset pagination can bound on"""
    INTEGER = "Integer"
    STRING = "String"


class ExportStatus(str, PyEnum):
    """Export state machine positions"""
    INIT = "INIT"
    COUNTING = "COUNTING"
    DISCOVERING_KEY = "DISCOVERING_KEY"
    PAGING = "PAGING"
    CLOSING = "CLOSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (ExportStatus.COMPLETED, ExportStatus.FAILED)


class ProgressPhase(str, PyEnum):
    """Progress notification phases"""
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"


@dataclass(frozen=True)
class KeyDescriptor:
    """
    Key field of a source.

    ``field_name`` is how the key appears in returned rows; ``filter_name``
    is the identifier as it must be written in filter expressions (quoted
    when the name is a reserved word). Sources that need no quoting leave
    it unset.
    """
    field_name: str
    kind: KeyKind
    filter_name: Optional[str] = None

    @property
    def filter_identifier(self) -> str:
        return self.filter_name or self.field_name

    @property
    def initial_value(self) -> KeyValue:
        return 0 if self.kind is KeyKind.INTEGER else ""

    def format_bound(self, value: KeyValue) -> str:
        """Render a bound as a filter literal: quoted for strings, bare for integers."""
        if self.kind is KeyKind.STRING:
            escaped = str(value).replace("'", "''")
            return f"'{escaped}'"
        return str(int(value))


@dataclass
class ExportRequest:
    source_name: str
    output_fields: List[str]
    filename: str
    filter_expression: Optional[str] = None
    page_size: int = 512

    def __post_init__(self):
        if not self.output_fields:
            raise ValueError("output_fields must not be empty")
        if self.page_size <= 0:
            raise ValueError("page_size must be a positive integer")

    @property
    def format(self) -> ExportFormat:
        return ExportFormat.from_filename(self.filename)

    @property
    def exports_all_fields(self) -> bool:
        return ALL_FIELDS in self.output_fields


@dataclass
class ExportState:
    format: ExportFormat
    total_target: int = 0
    rows_emitted: int = 0
    last_key_value: KeyValue = 0
    pages_fetched: int = 0
    status: ExportStatus = ExportStatus.INIT

    @property
    def remaining(self) -> int:
        return max(self.total_target - self.rows_emitted, 0)

    @property
    def is_satisfied(self) -> bool:
        return self.rows_emitted >= self.total_target


@dataclass(frozen=True)
class ProgressEvent:
    phase: ProgressPhase
    filename: str
    rows_emitted: Optional[int] = None
    total_target: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "filename": self.filename,
            "rows_emitted": self.rows_emitted,
            "total_target": self.total_target,
        }
