"""
Keyset pager - bounded successive scans over a source ordered by its key.

Offset pagination is not available on the sources we export from, only
filtered scans. Each page is therefore requested as ``<key> > <last key>``
with a row limit, and the last row of a page becomes the next exclusive bound.
"""

import time
from typing import List, Optional

from bulk_export.exports.exceptions import SourceQueryError
from bulk_export.exports.models import (
    ALL_FIELDS,
    ExportRequest,
    ExportState,
    KeyDescriptor,
    KeyKind,
    KeyValue,
    Page,
)
from bulk_export.exports.sources import SourceQueryService
from bulk_export.utils.logger import get_logger

logger = get_logger(__name__)


class KeysetPager:
    """
    Drives page queries for one export.

    The pager never mutates the export state; the caller advances
    ``last_key_value`` and ``rows_emitted`` after the page is written.
    """

    def __init__(self, source: SourceQueryService, request: ExportRequest, key: KeyDescriptor):
        self.source = source
        self.request = request
        self.key = key
        self.fetch_fields = self._fetch_fields(request.output_fields, key.field_name)

    @staticmethod
    def _fetch_fields(output_fields: List[str], key_field: str) -> List[str]:
        """Requested fields plus the key field, which every page must carry."""
        if ALL_FIELDS in output_fields or key_field in output_fields:
            return list(output_fields)
        return list(output_fields) + [key_field]

    def build_filter(self, last_key_value: KeyValue) -> str:
        """Filter expression selecting rows strictly after the bound."""
        bound = f"{self.key.filter_identifier} > {self.key.format_bound(last_key_value)}"
        if self.request.filter_expression:
            return f"({self.request.filter_expression}) and {bound}"
        return bound

    def page_limit(self, state: ExportState) -> int:
        """Rows to ask for: a full page, or whatever is left of the target."""
        return min(self.request.page_size, state.remaining)

    async def next_page(self, state: ExportState) -> Page:
        """
        Fetch the page following ``state.last_key_value``.

        Args:
            state: Current export state (read only)

        Returns:
            Records ordered by key ascending. Fewer than the limit means the
            source is exhausted; an empty page means nothing is left.

        Raises:
            SourceQueryError: the query failed or the source broke key order
        """
        limit = self.page_limit(state)
        if limit <= 0:
            return []

        expression = self.build_filter(state.last_key_value)
        started = time.perf_counter()
        page = await self.source.query(
            self.request.source_name, expression, limit, self.fetch_fields
        )
        logger.debug(
            "Fetched page",
            source=self.request.source_name,
            expr=expression,
            limit=limit,
            rows=len(page),
            elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
        )

        if len(page) > limit:
            raise SourceQueryError(
                self.request.source_name,
                f"source returned {len(page)} rows for a limit of {limit}",
            )
        if page:
            self._check_ordering(page, state.last_key_value)
        return page

    def last_key(self, page: Page) -> Optional[KeyValue]:
        """Key value of the last row, the next page's exclusive bound."""
        if not page:
            return None
        return page[-1][self.key.field_name]

    def _check_ordering(self, page: Page, bound: KeyValue) -> None:
        """
        Reject pages that would stall or repeat the export.

        String keys follow the store's collation, which need not match
        Python's code point order, so only a key that fails to move past
        its predecessor is refused.
        """
        previous = bound
        for record in page:
            if self.key.field_name not in record:
                raise SourceQueryError(
                    self.request.source_name,
                    f"page row is missing key field '{self.key.field_name}'",
                )
            current = record[self.key.field_name]
            if not _advances(self.key.kind, current, previous):
                raise SourceQueryError(
                    self.request.source_name,
                    f"rows are not strictly ordered by '{self.key.field_name}' "
                    f"({current!r} after {previous!r})",
                )
            previous = current


def _advances(kind: KeyKind, current: KeyValue, previous: KeyValue) -> bool:
    if kind is KeyKind.INTEGER:
        return int(current) > int(previous)
    return str(current) != str(previous)
