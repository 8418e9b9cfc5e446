"""URL query string as the single source of truth for the table view.

ViewState is never cached: every read parses the current location, and every
change writes one complete replacement query string.
"""

import logging
from typing import Dict, FrozenSet, Iterable, List, Mapping, Protocol, Sequence, Union
from urllib.parse import parse_qsl, urlencode

from .models import (
    DEFAULT_PAGE,
    DEFAULT_PAGE_SIZE,
    PAGE_SIZE_OPTIONS,
    SortSpec,
    TablePagination,
    ViewState,
)

logger = logging.getLogger(__name__)

PAGE = "page"
PAGE_SIZE = "pageSize"
SEARCH = "search"
SORT_FIELD = "sortField"
SORT_ORDER = "sortOrder"

DEFAULT_FILTER_KEYS = ("country", "status", "crop_name")

SORT_ORDERS = ("ascend", "descend")

TableFilters = Mapping[str, Union[Iterable[str], None]]
TableSort = Union[SortSpec, Sequence[SortSpec], None]


def parse_query(query: str) -> Dict[str, str]:
    """Decode a query string (with or without leading '?'); last value wins."""
    return dict(parse_qsl(query.lstrip("?"), keep_blank_values=True))


def encode_query(params: Mapping[str, str]) -> str:
    """Encode params keeping commas readable, e.g. country=USA,Canada."""
    return urlencode(list(params.items()), safe=",")


def _parse_int(raw: str | None, default: int) -> int:
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def read_view_state(
    params: Mapping[str, str],
    filter_keys: Iterable[str] = DEFAULT_FILTER_KEYS,
) -> ViewState:
    """Derive the ViewState from decoded query parameters."""
    page = _parse_int(params.get(PAGE), DEFAULT_PAGE)
    if page < 1:
        page = DEFAULT_PAGE
    page_size = _parse_int(params.get(PAGE_SIZE), DEFAULT_PAGE_SIZE)
    if page_size not in PAGE_SIZE_OPTIONS:
        page_size = DEFAULT_PAGE_SIZE

    sort_field = params.get(SORT_FIELD) or None
    sort_order = params.get(SORT_ORDER) or None
    if sort_field is None or sort_order not in SORT_ORDERS:
        sort_field, sort_order = None, None

    filters: Dict[str, FrozenSet[str]] = {}
    for key in filter_keys:
        raw = params.get(key)
        if raw:
            values = frozenset(v for v in raw.split(",") if v)
            if values:
                filters[key] = values

    return ViewState(
        page=page,
        page_size=page_size,
        search_term=params.get(SEARCH, ""),
        sort_field=sort_field,
        sort_order=sort_order,
        filters=filters,
    )


def _primary_sort(sort: TableSort) -> SortSpec | None:
    if sort is None or isinstance(sort, SortSpec):
        return sort
    if not sort:
        return None
    if len(sort) > 1:
        logger.debug("Multi-column sort reported; honoring %s only", sort[0].field)
    return sort[0]


def apply_table_change(
    params: Mapping[str, str],
    pagination: TablePagination,
    filters: TableFilters,
    sort: TableSort = None,
    filter_keys: Iterable[str] = DEFAULT_FILTER_KEYS,
) -> Dict[str, str]:
    """Return new query parameters after a table pagination/filter/sort event."""
    updated = dict(params)
    updated[PAGE] = str(pagination.current or DEFAULT_PAGE)
    updated[PAGE_SIZE] = str(pagination.page_size or DEFAULT_PAGE_SIZE)

    primary = _primary_sort(sort)
    if primary is not None and primary.field:
        if primary.order:
            updated[SORT_FIELD] = primary.field
            updated[SORT_ORDER] = primary.order
        else:
            updated.pop(SORT_FIELD, None)
            updated.pop(SORT_ORDER, None)

    keys = tuple(filter_keys)
    for key in keys:
        updated.pop(key, None)
    for key, values in filters.items():
        if key not in keys:
            logger.debug("Ignoring unknown filter key %s", key)
            continue
        selected: List[str] = list(dict.fromkeys(values or ()))
        if selected:
            updated[key] = ",".join(selected)
    return updated


def apply_search(params: Mapping[str, str], term: str) -> Dict[str, str]:
    """Return new query parameters for a free-text search.

    A non-empty term resets to the first page; clearing the term leaves the
    page alone.
    """
    updated = dict(params)
    if term:
        updated[SEARCH] = term
        updated[PAGE] = str(DEFAULT_PAGE)
    else:
        updated.pop(SEARCH, None)
    return updated


class Location(Protocol):
    """Address-bar backend: read the query string, replace it in one step."""

    def get_query(self) -> str: ...

    def replace_query(self, query: str) -> None: ...


class MemoryLocation:
    """Location kept in a string; used headless and in tests."""

    def __init__(self, query: str = "") -> None:
        self._query = query.lstrip("?")
        self.history: List[str] = []

    def get_query(self) -> str:
        return self._query

    def replace_query(self, query: str) -> None:
        self.history.append(query)
        self._query = query


class QueryStateStore:
    """Reads and writes the table ViewState through a Location."""

    def __init__(self, location: Location, filter_keys: Iterable[str] = DEFAULT_FILTER_KEYS) -> None:
        self._location = location
        self._filter_keys = tuple(filter_keys)

    @property
    def filter_keys(self) -> tuple:
        return self._filter_keys

    def params(self) -> Dict[str, str]:
        return parse_query(self._location.get_query())

    def read(self) -> ViewState:
        return read_view_state(self.params(), self._filter_keys)

    def apply_table_change(
        self,
        pagination: TablePagination,
        filters: TableFilters,
        sort: TableSort = None,
    ) -> ViewState:
        updated = apply_table_change(self.params(), pagination, filters, sort, self._filter_keys)
        self._location.replace_query(encode_query(updated))
        return self.read()

    def apply_search(self, term: str) -> ViewState:
        updated = apply_search(self.params(), term)
        self._location.replace_query(encode_query(updated))
        return self.read()
