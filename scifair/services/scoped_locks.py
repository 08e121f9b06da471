"""
Per-scope mutual exclusion for mutating engine operations.

Scopes:
- allocation: ("allocation", judge_id, category, level), plus ("judge", judge_id, level)
  for cross-category section rules and the (category, level) cohort scope so an
  allocation never interleaves with a publish of the same cohort
- score submission: ("assignment", assignment_id)
- publish / unpublish: ("cohort", category, level) for every category touched

Locks for several scopes are always acquired in sorted order so two
operations over overlapping scope sets cannot deadlock. These locks serialize
writers inside one process; row locks (SELECT ... FOR UPDATE) and the
transactional re-checks cover multi-process deployments on PostgreSQL.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Hashable, Iterable, Tuple

from scifair.orm.competition import CompetitionLevel

ScopeKey = Tuple[Hashable, ...]


class ScopedLocks:
    """
    Registry of asyncio locks keyed by scope tuples.

    A key's lock lives only while some operation holds or waits for it; the
    last user to leave removes it, so the registry stays bounded by the number
    of operations in flight.
    """

    def __init__(self):
        self._locks: Dict[ScopeKey, asyncio.Lock] = {}
        self._users: Dict[ScopeKey, int] = {}

    def _checkout(self, key: ScopeKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        return lock

    def _checkin(self, key: ScopeKey) -> None:
        self._users[key] -= 1
        if self._users[key] == 0:
            del self._users[key]
            del self._locks[key]

    @asynccontextmanager
    async def hold(self, *keys: ScopeKey):
        """Acquire every lock in `keys` (deduplicated, sorted), release in reverse."""
        ordered = sorted(set(keys), key=lambda k: tuple(str(part) for part in k))
        acquired = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                try:
                    await lock.acquire()
                except BaseException:
                    self._checkin(key)
                    raise
                acquired.append((key, lock))
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)

    def is_locked(self, key: ScopeKey) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def is_idle(self) -> bool:
        """True when no operation holds or waits for any scope."""
        return not self._locks


def allocation_scope(judge_id: int, category: str, level: CompetitionLevel) -> ScopeKey:
    return ("allocation", judge_id, category, level.value)


def judge_level_scope(judge_id: int, level: CompetitionLevel) -> ScopeKey:
    return ("judge", judge_id, level.value)


def assignment_scope(assignment_id: int) -> ScopeKey:
    return ("assignment", assignment_id)


def cohort_scope(category: str, level: CompetitionLevel) -> ScopeKey:
    return ("cohort", category, level.value)


def cohort_scopes(categories: Iterable[str], level: CompetitionLevel) -> Tuple[ScopeKey, ...]:
    return tuple(cohort_scope(c, level) for c in categories)


# Process-wide registry shared by the services
engine_locks = ScopedLocks()
