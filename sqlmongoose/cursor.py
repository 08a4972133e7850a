"""
Lazy result cursor returned by ``Model.find``.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional

Loader = Callable[[], Awaitable[List[Dict[str, Any]]]]


class RecordCursor:
    """
    Finite, non-restartable sequence of records.

    No statement runs until the cursor is first iterated or awaited; the
    whole result is then loaded on one connection which is released before
    the first record is yielded.

    Usage:
        async for user in User.find({'age': {'gte': 18}}):
            ...
        adults = await User.find({'age': {'gte': 18}})
    """

    def __init__(self, loader: Loader):
        self._loader = loader
        self._records: Optional[List[Dict[str, Any]]] = None
        self._position = 0

    def __repr__(self) -> str:
        if self._records is None:
            return "RecordCursor(pending)"
        return f"RecordCursor({self._position}/{len(self._records)})"

    async def _load(self) -> List[Dict[str, Any]]:
        if self._records is None:
            self._records = await self._loader()
        return self._records

    def __aiter__(self) -> 'RecordCursor':
        return self

    async def __anext__(self) -> Dict[str, Any]:
        records = await self._load()
        if self._position >= len(records):
            raise StopAsyncIteration
        record = records[self._position]
        self._position += 1
        return record

    async def to_list(self) -> List[Dict[str, Any]]:
        """Consume and return the remaining records."""
        records = await self._load()
        remaining = records[self._position:]
        self._position = len(records)
        return remaining

    async def first(self) -> Optional[Dict[str, Any]]:
        """Consume the next record, or None when exhausted."""
        try:
            return await self.__anext__()
        except StopAsyncIteration:
            return None

    def __await__(self):
        return self.to_list().__await__()
