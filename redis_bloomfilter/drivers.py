"""Bit array drivers.

A driver owns the storage of one filter generation: the bit array at
``config.key_name`` and the element counter at ``config.count_key``. The
coordinator only hands it lists of bit positions.

Drivers are looked up by name in :data:`DRIVERS`:

- ``atomic`` (alias ``lua``): one server-side Lua script per check-and-set
- ``naive`` (alias ``ruby``): read, then write, in two round trips
- ``memory``: a process-local bitarray, for tests and single-process use
"""
import logging
import re
import time
from datetime import timedelta

import bitarray

logger = logging.getLogger(__name__)

# Redis 2.6.0 introduced EVAL.
LUA_MIN_VERSION = (2, 6, 0)

TEST_AND_SET_SCRIPT = """
local added = false
for i = 2, #ARGV do
    if redis.call('SETBIT', KEYS[1], ARGV[i], 1) == 0 then
        added = true
    end
end
if added then
    redis.call('INCR', KEYS[2])
end
local ttl = tonumber(ARGV[1])
if ttl > 0 then
    redis.call('EXPIRE', KEYS[1], ttl)
    redis.call('EXPIRE', KEYS[2], ttl)
end
if added then
    return 0
end
return 1
"""


def expire_seconds(expire):
    """Normalize a TTL to whole seconds.

    Args:
        expire (int, timedelta or None): The TTL. None means no TTL.

    Returns:
        int or None: The TTL in seconds, or None.

    Raises:
        ValueError: If the TTL is not a positive whole number of seconds.
    """
    if expire is None:
        return None
    if isinstance(expire, timedelta):
        seconds = expire.total_seconds()
        if seconds != int(seconds):
            raise ValueError("expire must be a positive whole number of seconds")
        expire = int(seconds)
    if isinstance(expire, bool) or not isinstance(expire, int) or expire <= 0:
        raise ValueError("expire must be a positive whole number of seconds")
    return expire


class BaseDriver:
    """Storage of one filter generation.

    Subclasses implement the bit operations; all of them block on the store
    and let its errors propagate.
    """
    name = None
    requires_redis = True

    def __init__(self, redis, config):
        self.redis = redis
        self.config = config
        self.bits_key = config.key_name
        self.count_key = config.count_key

    def test_and_set_all(self, positions, expire=None):
        """Set all ``positions`` and return True if they were all set already.

        The counter is incremented only when at least one bit went from 0 to 1.
        """
        raise NotImplementedError

    def set_all(self, positions, expire=None):
        """Set all ``positions`` without touching the counter.

        Args:
            positions (iterable of int): Bit offsets in ``[0, num_bits)``.
            expire (int or timedelta, optional): TTL reapplied to both keys.
        """
        raise NotImplementedError

    def count(self):
        """Return the element counter, 0 when the key does not exist."""
        value = self.redis.get(self.count_key)
        return int(value) if value is not None else 0

    def exists(self):
        """Return True if the bit array is present in the store."""
        return self.redis.exists(self.bits_key) > 0

    def clear(self):
        """Delete the bit array and the counter."""
        self.redis.delete(self.bits_key, self.count_key)

    def _set_pipeline(self, pipe, positions, ttl):
        """Queue SETBIT for every position, then EXPIRE on both keys if ``ttl``."""
        for position in positions:
            pipe.setbit(self.bits_key, position, 1)
        if ttl:
            pipe.expire(self.bits_key, ttl)
            pipe.expire(self.count_key, ttl)

    def test_all(self, positions):
        """Return True if every position is set.

        All GETBITs go out in one pipelined round trip.

        Args:
            positions (iterable of int): Bit offsets in ``[0, num_bits)``.

        Returns:
            bool: True only if no position reads 0.
        """
        pipe = self.redis.pipeline(transaction=False)
        for position in positions:
            pipe.getbit(self.bits_key, position)
        return all(pipe.execute())

    def __repr__(self):
        return '<%s %r>' % (self.__class__.__name__, self.bits_key)


class AtomicDriver(BaseDriver):
    """Check-and-set through a Lua script.

    All ``k`` bits are set, the counter is bumped and the TTL is applied in
    one EVALSHA, so concurrent inserts of the same value are serialized by
    Redis and exactly one of them sees the value as new.
    """
    name = 'atomic'

    def __init__(self, redis, config):
        super().__init__(redis, config)
        self._test_and_set = redis.register_script(TEST_AND_SET_SCRIPT)

    def test_and_set_all(self, positions, expire=None):
        ttl = expire_seconds(expire) or 0
        result = self._test_and_set(
            keys=[self.bits_key, self.count_key],
            args=[ttl] + list(positions))
        return int(result) == 1

    def set_all(self, positions, expire=None):
        """Set all positions in one MULTI/EXEC transaction."""
        ttl = expire_seconds(expire)
        pipe = self.redis.pipeline(transaction=True)
        self._set_pipeline(pipe, positions, ttl)
        pipe.execute()


class NaiveDriver(BaseDriver):
    """Check-and-set as a read followed by a separate write.

    For servers without scripting. Nothing locks the bits between the read
    and the write: two clients inserting overlapping values at the same time
    may both report them as new and both bump the counter, and a failed write
    may leave some bits set.
    """
    name = 'naive'

    def test_and_set_all(self, positions, expire=None):
        ttl = expire_seconds(expire)
        positions = list(positions)
        already_set = self.test_all(positions)
        pipe = self.redis.pipeline(transaction=False)
        if not already_set:
            pipe.incr(self.count_key)
        self._set_pipeline(pipe, positions, ttl)
        pipe.execute()
        return already_set

    def set_all(self, positions, expire=None):
        ttl = expire_seconds(expire)
        pipe = self.redis.pipeline(transaction=False)
        self._set_pipeline(pipe, positions, ttl)
        pipe.execute()


class MemoryDriver(BaseDriver):
    """Process-local storage in a :class:`bitarray.bitarray`.

    Nothing is shared between processes or between driver instances. TTLs
    are honored against :func:`time.monotonic`.
    """
    name = 'memory'
    requires_redis = False

    def __init__(self, redis, config):
        super().__init__(redis, config)
        self._reset()

    def _reset(self):
        """Drop all bits and the counter, as DEL or an expired TTL would."""
        self.bitarray = bitarray.bitarray(self.config.num_bits, endian='little')
        self.bitarray.setall(False)
        self._count = 0
        self._deadline = None

    def _check_expired(self):
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._reset()

    def _touch(self, ttl):
        if ttl:
            self._deadline = time.monotonic() + ttl

    def test_and_set_all(self, positions, expire=None):
        """Set all positions in a single pass, counting the key if any bit was 0."""
        ttl = expire_seconds(expire)
        self._check_expired()
        bits = self.bitarray
        found_all_bits = True
        for position in positions:
            if found_all_bits and not bits[position]:
                found_all_bits = False
            bits[position] = True
        if not found_all_bits:
            self._count += 1
        self._touch(ttl)
        return found_all_bits

    def set_all(self, positions, expire=None):
        ttl = expire_seconds(expire)
        self._check_expired()
        bits = self.bitarray
        for position in positions:
            bits[position] = True
        self._touch(ttl)

    def test_all(self, positions):
        """Return True if every position is set; short-circuits on the first 0."""
        self._check_expired()
        bits = self.bitarray
        return all(bits[position] for position in positions)

    def count(self):
        self._check_expired()
        return self._count

    def exists(self):
        """Return True if any bit is set; an empty array counts as absent."""
        self._check_expired()
        return self.bitarray.any()

    def clear(self):
        self._reset()


DRIVERS = {
    'atomic': AtomicDriver,
    'lua': AtomicDriver,
    'naive': NaiveDriver,
    'ruby': NaiveDriver,
    'memory': MemoryDriver,
}


def get_driver_class(name):
    """Return the driver class registered under ``name`` (case-insensitive).

    Raises:
        ValueError: If no driver is registered under that name.
    """
    try:
        return DRIVERS[name.lower()]
    except (KeyError, AttributeError):
        raise ValueError("Unknown driver %r, expected one of: %s" % (
            name, ', '.join(sorted(DRIVERS))))


def _parse_version(version):
    parts = []
    for part in str(version).split('.')[:3]:
        match = re.match(r'\d+', part)
        parts.append(int(match.group()) if match else 0)
    return tuple(parts + [0] * (3 - len(parts)))


def select_driver(redis):
    """Pick a driver name from the server version.

    Returns ``'atomic'`` when the server supports Lua scripting and
    ``'naive'`` otherwise.
    """
    version = redis.info().get('redis_version', '0.0.0')
    name = 'atomic' if _parse_version(version) >= LUA_MIN_VERSION else 'naive'
    logger.debug("Redis %s detected, using the %s driver", version, name)
    return name
