import logging
from typing import Awaitable, Callable

import httpx
from pydantic import ValidationError

from ..errors import ApiError
from ..models import CropPage, TableState, ViewState

logger = logging.getLogger(__name__)

LOAD_ERROR_MESSAGE = "Failed to load data"

FetchPage = Callable[[ViewState], Awaitable[CropPage]]


class TableLoader:
    """Applies table fetch results in issue order, dropping superseded ones.

    Every load takes the next sequence number. When a fetch settles, its
    result, its error and the loading flag are applied only if no newer
    load has been issued meanwhile.
    """

    def __init__(self, fetch: FetchPage) -> None:
        self._fetch = fetch
        self._sequence = 0
        self.state = TableState()

    @property
    def sequence(self) -> int:
        return self._sequence

    def _is_latest(self, request_id: int) -> bool:
        return request_id == self._sequence

    async def load(self, view: ViewState) -> bool:
        """Fetch the page for view. Returns True if the result was displayed."""
        self._sequence += 1
        request_id = self._sequence
        self.state.loading = True
        try:
            page = await self._fetch(view)
        except (ApiError, httpx.RequestError, ValidationError) as e:
            if self._is_latest(request_id):
                logger.warning("Table load %d failed: %s", request_id, e)
                self.state.error = LOAD_ERROR_MESSAGE
            else:
                logger.debug("Dropping error from stale table load %d", request_id)
            return False
        finally:
            if self._is_latest(request_id):
                self.state.loading = False

        if not self._is_latest(request_id):
            logger.debug("Dropping stale table load %d (latest is %d)", request_id, self._sequence)
            return False
        self.state.rows = list(page.results)
        self.state.total = page.count
        self.state.error = None
        return True
