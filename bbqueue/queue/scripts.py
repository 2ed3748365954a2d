"""Server-side atomic routines for a bounded queue.

Every routine that touches the list, the capacity counter and the
notification channel together runs as one Lua script, so no client ever sees
an intermediate state. Release-side routines only adjust the counter when it
exists: the counter is created by ``try_set_capacity`` and nothing else.

Key order is fixed for all queue routines: KEYS[1] queue, KEYS[2] counter,
KEYS[3] channel.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from bbqueue.queue.naming import QueueKeys

# Values returned by TRY_ACQUIRE.
ACQUIRED = 1
NOT_ACQUIRED = 0
CAPACITY_NOT_SET = -1

POLL_ONE = """
local res = redis.call('lpop', KEYS[1]);
if res ~= false and redis.call('exists', KEYS[2]) == 1 then
    local value = redis.call('incrby', KEYS[2], 1);
    redis.call('publish', KEYS[3], value);
end;
return res;
"""

REMOVE_ALL = """
local count = 0;
for i = 1, #ARGV, 1 do
    if redis.call('lrem', KEYS[1], 1, ARGV[i]) == 1 then
        count = count + 1;
    end;
end;
if count > 0 then
    if redis.call('exists', KEYS[2]) == 1 then
        local value = redis.call('incrby', KEYS[2], count);
        redis.call('publish', KEYS[3], value);
    end;
    return 1;
end;
return 0;
"""

DRAIN_ALL = """
local vals = redis.call('lrange', KEYS[1], 0, -1);
redis.call('del', KEYS[1]);
if #vals > 0 and redis.call('exists', KEYS[2]) == 1 then
    local value = redis.call('incrby', KEYS[2], #vals);
    redis.call('publish', KEYS[3], value);
end;
return vals;
"""

DRAIN_N = """
local last = math.min(tonumber(ARGV[1]), redis.call('llen', KEYS[1])) - 1;
local vals = redis.call('lrange', KEYS[1], 0, last);
redis.call('ltrim', KEYS[1], last + 1, -1);
if #vals > 0 and redis.call('exists', KEYS[2]) == 1 then
    local value = redis.call('incrby', KEYS[2], #vals);
    redis.call('publish', KEYS[3], value);
end;
return vals;
"""

CLEAR = """
local len = redis.call('llen', KEYS[1]);
if len > 0 then
    redis.call('del', KEYS[1]);
    if redis.call('exists', KEYS[2]) == 1 then
        local value = redis.call('incrby', KEYS[2], len);
        redis.call('publish', KEYS[3], value);
    end;
end;
return len;
"""

# KEYS[1] counter, KEYS[2] channel.
TRY_SET_CAPACITY = """
if redis.call('exists', KEYS[1]) == 0 then
    redis.call('set', KEYS[1], ARGV[1]);
    redis.call('publish', KEYS[2], ARGV[1]);
    return 1;
end;
return 0;
"""

# KEYS[1] counter, KEYS[2] queue (only read when values are given).
# ARGV[1] permits, ARGV[2..] values to push with the permits.
TRY_ACQUIRE = """
local value = redis.call('get', KEYS[1]);
if value == false then
    return -1;
end;
if tonumber(value) >= tonumber(ARGV[1]) then
    redis.call('decrby', KEYS[1], ARGV[1]);
    for i = 2, #ARGV, 1 do
        redis.call('rpush', KEYS[2], ARGV[i]);
    end;
    return 1;
end;
return 0;
"""

# KEYS[1] counter, KEYS[2] channel. Returns the new count, or nil when unset.
RELEASE = """
if redis.call('exists', KEYS[1]) == 0 then
    return false;
end;
local value = redis.call('incrby', KEYS[1], ARGV[1]);
redis.call('publish', KEYS[2], value);
return value;
"""


class QueueScripts:
    """Registered scripts bound to one client.

    ``Redis.register_script`` runs each script with EVALSHA and falls back
    to EVAL when the server has not cached it yet.
    """

    def __init__(self, client: Redis) -> None:
        self._poll_one = client.register_script(POLL_ONE)
        self._remove_all = client.register_script(REMOVE_ALL)
        self._drain_all = client.register_script(DRAIN_ALL)
        self._drain_n = client.register_script(DRAIN_N)
        self._clear = client.register_script(CLEAR)
        self._try_set_capacity = client.register_script(TRY_SET_CAPACITY)
        self._try_acquire = client.register_script(TRY_ACQUIRE)
        self._release = client.register_script(RELEASE)

    async def poll_one(self, keys: QueueKeys) -> Any:
        """Pop the head and release its permit. ``None`` when empty.

        Not safe to retry: a lost reply would consume a second element.
        """
        return await self._poll_one(keys=[keys.queue, keys.counter, keys.channel])

    async def remove_all(self, keys: QueueKeys, encoded: list[bytes]) -> bool:
        result = await self._remove_all(
            keys=[keys.queue, keys.counter, keys.channel], args=encoded,
        )
        return result == 1

    async def drain(self, keys: QueueKeys, max_elements: int | None = None) -> list[Any]:
        """Remove up to ``max_elements`` (all when ``None``) from the head."""
        if max_elements is None:
            return await self._drain_all(keys=[keys.queue, keys.counter, keys.channel])
        return await self._drain_n(
            keys=[keys.queue, keys.counter, keys.channel], args=[max_elements],
        )

    async def clear(self, keys: QueueKeys) -> int:
        return await self._clear(keys=[keys.queue, keys.counter, keys.channel])

    async def try_set_capacity(self, keys: QueueKeys, capacity: int) -> bool:
        result = await self._try_set_capacity(
            keys=[keys.counter, keys.channel], args=[capacity],
        )
        return result == 1

    async def try_acquire(
        self, counter: str, permits: int, queue: str | None = None, values: list[bytes] | None = None,
    ) -> int:
        """One decrement-if-available attempt; pushes ``values`` on success."""
        args: list[Any] = [permits]
        if values:
            args.extend(values)
        return await self._try_acquire(keys=[counter, queue or counter], args=args)

    async def release(self, counter: str, channel: str, permits: int) -> int | None:
        return await self._release(keys=[counter, channel], args=[permits])
