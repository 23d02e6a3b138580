"""Per-learner async locks.

Every read-modify-write of one learner's state runs under that learner's lock;
different learners never contend. A lock lives only while someone holds or
waits for it.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class LearnerLocks:
    __slots__ = ("_locks", "_users")

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, learner_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(learner_id, asyncio.Lock())
        self._users[learner_id] = self._users.get(learner_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[learner_id] -= 1
            if self._users[learner_id] == 0:
                del self._users[learner_id]
                del self._locks[learner_id]

    def is_locked(self, learner_id: str) -> bool:
        lock = self._locks.get(learner_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
