import asyncio
from typing import Awaitable, Callable, Optional

from starlight.config import settings
from starlight.obs.logger import log_event
from starlight.search.query_client import QueryClient
from starlight.types import ApiResponse


class AutocompleteSession:
    """Debounced autocomplete for a single input field.

    Each new query cancels the pending (or in-flight) lookup, so a slow
    answer for "Ber" can never land after the answer for "Berlin".
    """

    def __init__(
        self,
        client: QueryClient,
        debounce_ms: Optional[int] = None,
        on_result: Optional[Callable[[str, ApiResponse], Awaitable[None]]] = None,
        **query_options,
    ):
        self.client = client
        self.debounce_ms = settings.AUTOCOMPLETE_DEBOUNCE_MS if debounce_ms is None else debounce_ms
        self.on_result = on_result
        self.query_options = query_options
        self.result: Optional[ApiResponse] = None
        self.last_query: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    def update(self, query: str) -> asyncio.Task:
        """Schedule a lookup for ``query``, superseding any earlier one."""
        if self._closed:
            raise RuntimeError("autocomplete session is closed")
        self._cancel_pending()
        self._task = asyncio.create_task(self._run(query))
        return self._task

    async def search(self, query: str) -> Optional[ApiResponse]:
        """Update and wait. None when a newer query superseded this one."""
        task = self.update(query)
        try:
            return await task
        except asyncio.CancelledError:
            if self._task is not task:
                return None
            raise

    async def _run(self, query: str) -> ApiResponse:
        if self.debounce_ms:
            await asyncio.sleep(self.debounce_ms / 1000.0)
        response = await self.client.autocomplete(query, **self.query_options)
        # reaching here means no newer query cancelled us
        self.result = response
        self.last_query = query
        if self.on_result is not None:
            await self.on_result(query, response)
        return response

    def _cancel_pending(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            log_event("autocomplete_superseded")
        self._task = None

    async def close(self) -> None:
        """Cancel timers and in-flight lookups on teardown."""
        self._closed = True
        task = self._task
        self._cancel_pending()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
