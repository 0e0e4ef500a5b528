import asyncio
from typing import Callable, Protocol

from collectors import claude, codex
from models import UsageQueryResult


class UsageSource(Protocol):
    """Asks one provider's usage oracle for its current reading.

    Implementations normalise every failure to ``ok=False``; they do not raise.
    """

    provider_id: str

    async def has_valid_token(self) -> bool: ...

    async def query_usage(self) -> UsageQueryResult: ...


class CollectorSource:
    """Runs a collector's blocking functions in a worker thread."""

    def __init__(
        self,
        provider_id: str,
        query: Callable[[], UsageQueryResult],
        has_token: Callable[[], bool],
    ):
        self.provider_id = provider_id
        self._query = query
        self._has_token = has_token

    async def has_valid_token(self) -> bool:
        return await asyncio.to_thread(self._has_token)

    async def query_usage(self) -> UsageQueryResult:
        return await asyncio.to_thread(self._query)


_COLLECTORS = {
    "claude": claude,
    "codex": codex,
}


def default_sources() -> dict[str, UsageSource]:
    return {
        name: CollectorSource(name, module.query_usage, module.has_valid_token)
        for name, module in _COLLECTORS.items()
    }
