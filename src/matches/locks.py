from typing import Dict
import asyncio


class MatchLockRegistry:
    """One asyncio.Lock per key ("<slug>" for matches, "tournament:<id>" for brackets).

    Lock order is always match before tournament.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def for_match(self, slug: str) -> asyncio.Lock:
        return self._locks.setdefault(slug, asyncio.Lock())

    def for_tournament(self, tournament_id) -> asyncio.Lock:
        return self._locks.setdefault(f"tournament:{tournament_id}", asyncio.Lock())
