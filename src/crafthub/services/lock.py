"""Per-instance lock for lifecycle operations."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

_instance_locks: dict[str, asyncio.Lock] = {}
_lock_users: dict[str, int] = {}


@asynccontextmanager
async def instance_lock(instance_id: str) -> AsyncIterator[None]:
    """Hold the instance's lock for the duration of the block.

    Start, stop, restart and delete of one instance run one at a time, so a
    delete cannot interleave with a start that is still waiting on the
    runtime. Different instances never contend.

    The entry is dropped once no caller holds or waits on it.
    """
    lock = _instance_locks.setdefault(instance_id, asyncio.Lock())
    _lock_users[instance_id] = _lock_users.get(instance_id, 0) + 1
    try:
        async with lock:
            yield
    finally:
        _lock_users[instance_id] -= 1
        if _lock_users[instance_id] == 0:
            del _lock_users[instance_id]
            del _instance_locks[instance_id]
