"""
Row projection for exports.

Reduces a raw source record to the requested output fields and coerces values
the target format cannot carry natively.
"""

import json
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, List
from uuid import UUID

from bulk_export.exports.models import ALL_FIELDS, ExportFormat, Record


def project(record: Record, output_fields: List[str], export_format: ExportFormat) -> Record:
    """
    Project a record onto the allow-listed output fields.

    Fields not listed are dropped (including the key field the pager adds on
    its own). The result follows the order of ``output_fields``; with ``"*"``
    every field is kept in record order. The input mapping is never mutated.

    Args:
        record: Raw record as returned by the source
        output_fields: Requested fields, ``["*"]`` for all
        export_format: Target format, decides how composite values are rendered

    Returns:
        A new record
    """
    if ALL_FIELDS in output_fields:
        fields = list(record.keys())
    else:
        fields = [name for name in output_fields if name in record]

    return {name: _coerce_value(record[name], export_format) for name in fields}


def _coerce_value(value: Any, export_format: ExportFormat) -> Any:
    """
    Coerce values that are not JSON native, flatten composites for CSV.
    """
    if isinstance(value, bool):
        if export_format is ExportFormat.CSV:
            return "true" if value else "false"
        return value
    elif isinstance(value, (datetime, date, time)):
        return value.isoformat()
    elif isinstance(value, Decimal):
        if value.is_finite() and value == value.to_integral_value():
            return int(value)
        return float(value)
    elif isinstance(value, UUID):
        return str(value)
    elif isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    elif isinstance(value, (list, tuple, dict)):
        if export_format is ExportFormat.CSV:
            return to_json_text(value)
        return _coerce_composite(value)
    return value


def _coerce_composite(value: Any) -> Any:
    # Nested scalars still need to be JSON native
    if isinstance(value, dict):
        return {str(k): _coerce_composite(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_coerce_composite(v) for v in value]
    return _coerce_value(value, ExportFormat.JSON)


def to_json_text(value: Any) -> str:
    """Compact JSON text, the canonical rendering of a composite in a CSV cell."""
    return json.dumps(
        _coerce_composite(value), separators=(",", ":"), ensure_ascii=False
    )
