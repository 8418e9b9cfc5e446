import logging
from typing import Any, Dict, Iterable, List

import httpx

from .. import endpoints
from ..errors import ApiError
from ..models import CropDetail, CropPage, FilterOptions, ViewState
from .api_client import ApiClient

logger = logging.getLogger(__name__)

FILTER_OPTIONS_PAGE_SIZE = 100


def build_table_params(view: ViewState) -> Dict[str, str]:
    """Translate a ViewState into the table endpoint's query parameters.

    Ordering is sent only when both field and order are known; a leading '-'
    means descending. Empty filter sets are omitted.
    """
    params: Dict[str, str] = {
        "page": str(view.page),
        "page_size": str(view.page_size),
    }
    if view.search_term:
        params["search"] = view.search_term
    if view.sort_field and view.sort_order:
        prefix = "-" if view.sort_order == "descend" else ""
        params["ordering"] = f"{prefix}{view.sort_field}"
    for key, values in view.filters.items():
        if values:
            params[key] = ",".join(sorted(values))
    return params


def _unique(values: Iterable[Any]) -> List[str]:
    """Distinct non-empty values in first-seen order."""
    return [str(v) for v in dict.fromkeys(values) if v]


class CropService:
    """Yield table reads against the remote API."""

    def __init__(self, client: ApiClient) -> None:
        self._client = client

    async def fetch_crops(self, view: ViewState) -> CropPage:
        data = await self._client.get(endpoints.TABLE_DATA, params=build_table_params(view))
        return CropPage.model_validate(data)

    async def get_crop(self, crop_id: str | int) -> CropDetail:
        data = await self._client.get(endpoints.crop_detail(crop_id))
        return CropDetail.model_validate(data)

    async def fetch_filter_options(self) -> FilterOptions:
        """Derive filter choices from the first page of 100 rows.

        Options are a convenience; any failure yields empty lists.
        """
        try:
            data = await self._client.get(
                endpoints.TABLE_DATA,
                params={"page_size": str(FILTER_OPTIONS_PAGE_SIZE)},
            )
        except (ApiError, httpx.RequestError) as e:
            logger.warning("Failed to fetch filter options: %s", e)
            return FilterOptions()

        if isinstance(data, list):
            rows = data
        elif isinstance(data, dict):
            rows = data.get("results") or []
        else:
            rows = []
        rows = [r for r in rows if isinstance(r, dict)]
        return FilterOptions(
            countries=_unique(r.get("country") for r in rows),
            crops=_unique(r.get("crop_name") for r in rows),
            statuses=_unique(r.get("status") for r in rows),
        )
