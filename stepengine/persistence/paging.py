"""Restartable keyset-paged cursor over query results."""

from __future__ import annotations

from typing import AsyncIterator, Awaitable, Callable, Generic, Optional, TypeVar

T = TypeVar("T")
K = TypeVar("K")


class PagedCursor(Generic[T]):
    """Lazily fetch results page by page.

    Every ``async for`` restarts from the first page, so a cursor can be
    iterated again to pick up rows that became eligible in the meantime.
    ``fetch_page`` receives the key of the last row seen (``None`` for the
    first page) and the page size.
    """

    def __init__(
        self,
        fetch_page: Callable[[Optional[K], int], Awaitable[list[T]]],
        key: Callable[[T], K],
        page_size: int = 100,
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be positive")
        self._fetch_page = fetch_page
        self._key = key
        self.page_size = page_size

    def __aiter__(self) -> AsyncIterator[T]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[T]:
        after: Optional[K] = None
        while True:
            page = await self._fetch_page(after, self.page_size)
            for item in page:
                yield item
            if len(page) < self.page_size:
                return
            after = self._key(page[-1])

    async def to_list(self) -> list[T]:
        return [item async for item in self]
