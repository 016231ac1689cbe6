"""Redis-backed scaling Bloom filter.

This module holds the parts of the filter that never talk to Redis directly:

1. Parameter calculation: capacity and error rate to bit count and hash count
2. Bit coordinate hashing: a value to ``k`` positions in ``[0, m)``
3. FilterConfig: the immutable parameters of one filter generation
4. BloomFilter: the public coordinator wiring the above to a driver

The bit arrays and element counters themselves live in Redis and are only
touched through a driver from :mod:`redis_bloomfilter.drivers`, so any number
of processes pointing at the same ``key_name`` share one filter.

Mathematical Foundation:
    - Optimal bit count: m = round(-n × ln(P) / (ln(2)²))
    - Optimal hash count: k = round(ln(2) × m / n), at least 1
    - False positive probability: P ≈ (1 - e^(-kn/m))^k
"""
import hashlib
import logging
import math
from collections import namedtuple
from struct import pack, unpack

import xxhash

from redis_bloomfilter.drivers import expire_seconds, get_driver_class, select_driver

logger = logging.getLogger(__name__)

DEFAULT_KEY_NAME = 'redis-bloomfilter'
DEFAULT_HASH_ENGINE = 'md5'

HASH_ENGINES = {
    'md5': hashlib.md5,
    'sha1': hashlib.sha1,
    'sha256': hashlib.sha256,
    'sha512': hashlib.sha512,
    'xxh64': xxhash.xxh64,
    'xxh128': xxhash.xxh128,
}


def _round_half_up(x):
    return int(math.floor(x + 0.5))


def optimal_bits(capacity, error_rate=0.01):
    """Return the bit array length for ``capacity`` items at ``error_rate``.

    Args:
        capacity (int): Number of elements the filter should hold. Must be > 0.
        error_rate (float): Target false positive probability in (0, 1).

    Returns:
        int: m = round(-n × ln(P) / (ln(2)²)), at least 1

    Raises:
        ValueError: If capacity is not positive or error_rate is out of range.

    Example:
        >>> optimal_bits(1000, 0.01)
        9585
    """
    if not capacity > 0:
        raise ValueError("Capacity must be > 0")
    if not (0 < error_rate < 1):
        raise ValueError("Error_Rate must be between 0 and 1.")
    return max(1, _round_half_up(-capacity * math.log(error_rate) / (math.log(2) ** 2)))


def optimal_hashes(capacity, num_bits):
    """Return the number of hash functions for ``num_bits`` bits and ``capacity`` items.

    Example:
        >>> optimal_hashes(1000, 9585)
        7
    """
    if not capacity > 0:
        raise ValueError("Capacity must be > 0")
    if not num_bits > 0:
        raise ValueError("Number of bits must be > 0")
    return max(1, _round_half_up(math.log(2) * num_bits / capacity))


def make_hashfuncs(num_hashes, num_bits, hash_engine=DEFAULT_HASH_ENGINE):
    """Create the bit coordinate generator for a filter generation.

    One digest is computed per salt and unpacked into fixed-width unsigned
    integers, each reduced modulo ``num_bits``. When a single digest does not
    hold ``num_hashes`` integers, further salted digests are computed.

    Args:
        num_hashes (int): Number of positions to yield per key (k).
        num_bits (int): Length of the bit array (m).
        hash_engine (str): Name of a digest in :data:`HASH_ENGINES`.

    Returns:
        tuple: A 2-tuple containing:
            - hash_maker (callable): Generator function yielding positions
            - hashfn (callable): The digest constructor in use

    Raises:
        ValueError: If hash_engine is not registered.
    """
    try:
        hashfn = HASH_ENGINES[hash_engine]
    except KeyError:
        raise ValueError("Unknown hash engine %r, expected one of: %s" % (
            hash_engine, ', '.join(sorted(HASH_ENGINES))))

    if num_bits >= (1 << 31):
        fmt_code, chunk_size = 'Q', 8
    elif num_bits >= (1 << 15):
        fmt_code, chunk_size = 'I', 4
    else:
        fmt_code, chunk_size = 'H', 2

    fmt = '>' + fmt_code * (hashfn().digest_size // chunk_size)
    per_digest = len(fmt) - 1

    num_salts, extra = divmod(num_hashes, per_digest)
    if extra:
        num_salts += 1

    salts = tuple(hashfn(hashfn(pack('I', i)).digest()) for i in range(num_salts))

    def _hash_maker(key):
        if isinstance(key, str):
            key = key.encode('utf-8')
        elif not isinstance(key, bytes):
            key = str(key).encode('utf-8')

        i = 0
        for salt in salts:
            h = salt.copy()
            h.update(key)
            for uint in unpack(fmt, h.digest()):
                yield uint % num_bits
                i += 1
                if i >= num_hashes:
                    return

    return _hash_maker, hashfn


_ConfigFields = namedtuple('FilterConfig', [
    'capacity', 'error_rate', 'num_bits', 'num_hashes',
    'key_name', 'hash_engine', 'default_expire'])


class FilterConfig(_ConfigFields):
    """Immutable parameters of one filter generation.

    ``num_bits`` and ``num_hashes`` are always derived from ``capacity`` and
    ``error_rate``; use :meth:`create` rather than passing them yourself.
    """
    __slots__ = ()

    @classmethod
    def create(cls, capacity, error_rate=0.01, key_name=DEFAULT_KEY_NAME,
               hash_engine=DEFAULT_HASH_ENGINE, default_expire=None):
        if capacity is None or error_rate is None:
            raise ValueError("size and error_rate cannot be None")
        if isinstance(capacity, bool) or not isinstance(capacity, int):
            raise ValueError("Capacity must be an integer")
        if hash_engine not in HASH_ENGINES:
            raise ValueError("Unknown hash engine %r, expected one of: %s" % (
                hash_engine, ', '.join(sorted(HASH_ENGINES))))
        if not key_name:
            raise ValueError("key_name cannot be empty")
        default_expire = expire_seconds(default_expire)

        num_bits = optimal_bits(capacity, error_rate)
        num_hashes = optimal_hashes(capacity, num_bits)
        return cls(capacity, error_rate, num_bits, num_hashes,
                   key_name, hash_engine, default_expire)

    @property
    def count_key(self):
        return self.key_name + ':count'

    def scaled(self, key_name, scale, ratio):
        """Return the config of the generation following this one."""
        return FilterConfig.create(
            capacity=self.capacity * scale,
            error_rate=self.error_rate * ratio,
            key_name=key_name,
            hash_engine=self.hash_engine,
            default_expire=self.default_expire)


class _Generation:
    """One generation of the filter: its config, its driver and its hasher.

    Args:
        config (FilterConfig): Parameters of this generation.
        driver (BaseDriver): Storage of this generation's bits and counter.
    """
    __slots__ = ('config', 'driver', 'make_hashes')

    def __init__(self, config, driver):
        self.config = config
        self.driver = driver
        self.make_hashes, _ = make_hashfuncs(
            config.num_hashes, config.num_bits, config.hash_engine)

    def positions(self, key):
        """Return the bit positions of ``key`` in this generation as a list."""
        return list(self.make_hashes(key))


class BloomFilter:
    """A scaling Bloom filter stored in Redis.

    The filter starts with a single generation sized for ``size`` elements.
    When the newest generation's element counter reaches its capacity, the
    next :meth:`insert` appends a generation with ``scale`` times the
    capacity and an error rate tightened by ``ratio``, following "Scalable
    Bloom Filters" by Almeida et al. Membership is the OR of all generations.

    Generation 0 is stored under ``key_name``, generation ``i`` under
    ``key_name:i``, each with its counter at ``<generation key>:count``.

    Class Attributes:
        SMALL_SET_GROWTH (int): Growth factor of 2, the default
        LARGE_SET_GROWTH (int): Growth factor of 4
        DISCOVERY_WINDOW (int): Generation keys checked per discovery round trip
    """
    SMALL_SET_GROWTH = 2
    LARGE_SET_GROWTH = 4
    DISCOVERY_WINDOW = 4

    def __init__(self, redis=None, size=None, error_rate=0.01,
                 key_name=DEFAULT_KEY_NAME, hash_engine=DEFAULT_HASH_ENGINE,
                 default_expire=None, driver=None, scale=SMALL_SET_GROWTH,
                 ratio=0.9, max_generations=None):
        """Initialize the filter and discover generations already in Redis.

        Args:
            redis: A connected ``redis.Redis`` client. Required unless
                ``driver='memory'``.
            size (int): Capacity of the first generation. Required.
            error_rate (float, optional): Target false positive probability of
                the first generation. Default is 0.01 (1%).
            key_name (str, optional): Redis key namespace of this filter.
            hash_engine (str, optional): Digest used for bit positions, one of
                :data:`HASH_ENGINES`. Must never change for a given key_name.
            default_expire (int or timedelta, optional): TTL in seconds applied
                on every write that does not pass its own.
            driver (str, optional): Driver name (``atomic``, ``naive``,
                ``memory``). When None, chosen from the Redis server version.
            scale (int, optional): Capacity multiplier between generations.
            ratio (float, optional): Error rate multiplier between generations.
            max_generations (int, optional): Stop growing after this many
                generations. None means unbounded.

        Raises:
            ValueError: If size or error_rate is missing or invalid, if the
                hash engine or driver is unknown, or if no Redis client was
                given for a Redis-backed driver.

        Example:
            >>> bf = BloomFilter(redis.Redis(), size=1000, error_rate=0.01)
            >>> bf.insert("apple")
            False
            >>> bf.insert("apple")
            True
            >>> "apple" in bf
            True
        """
        self.config = FilterConfig.create(
            capacity=size,
            error_rate=error_rate,
            key_name=key_name,
            hash_engine=hash_engine,
            default_expire=default_expire)

        if not (isinstance(scale, int) and scale >= 1):
            raise ValueError("Scale must be an integer >= 1")
        if not (0 < ratio <= 1):
            raise ValueError("Ratio must be between 0 (exclusive) and 1")
        if max_generations is not None and max_generations < 1:
            raise ValueError("max_generations must be >= 1")

        if driver is None:
            if redis is None:
                raise ValueError("A redis client is required to select a driver")
            driver = select_driver(redis)
        self.driver_class = get_driver_class(driver)
        if self.driver_class.requires_redis and redis is None:
            raise ValueError("Driver %r requires a redis client" % driver)

        self.redis = redis
        self.scale = scale
        self.ratio = ratio
        self.max_generations = max_generations
        self._generations = [self._make_generation(self.config)]
        self._discover()

    def _make_generation(self, config):
        return _Generation(config, self.driver_class(self.redis, config))

    def _config_after(self, config, index):
        return config.scaled('%s:%d' % (self.config.key_name, index), self.scale, self.ratio)

    def _next_config(self):
        return self._config_after(self._generations[-1].config, len(self._generations))

    def _can_grow(self):
        return self.max_generations is None or len(self._generations) < self.max_generations

    def _discover(self):
        """Append generations that other clients created in Redis.

        The next :attr:`DISCOVERY_WINDOW` generation keys are checked in one
        pipelined round trip and every generation up to the last existing one
        is adopted, so an expired generation in the middle does not hide the
        live ones after it. Process-local drivers share nothing and are
        skipped.
        """
        if not self.driver_class.requires_redis:
            return
        while self._can_grow():
            configs = []
            config = self._generations[-1].config
            index = len(self._generations)
            while len(configs) < self.DISCOVERY_WINDOW and (
                    self.max_generations is None or index < self.max_generations):
                config = self._config_after(config, index)
                configs.append(config)
                index += 1

            pipe = self.redis.pipeline(transaction=False)
            for config in configs:
                pipe.exists(config.key_name)
            found = [i for i, exists in enumerate(pipe.execute()) if exists]
            if not found:
                return

            for config in configs[:found[-1] + 1]:
                self._generations.append(self._make_generation(config))
                logger.debug("Discovered generation %s (capacity=%d)",
                             config.key_name, config.capacity)
            if found[-1] < len(configs) - 1:
                return

    def refresh(self):
        """Pick up generations appended by other clients since the last call.

        Every operation below calls this first, so one extra round trip is
        spent per operation on Redis-backed drivers.
        """
        self._discover()

    def _grow_if_full(self):
        newest = self._generations[-1]
        if newest.driver.count() < newest.config.capacity:
            return newest
        if not self._can_grow():
            return newest
        generation = self._make_generation(self._next_config())
        self._generations.append(generation)
        logger.debug("Generation %s is full, appended %s (capacity=%d, error_rate=%g)",
                     newest.config.key_name, generation.config.key_name,
                     generation.config.capacity, generation.config.error_rate)
        return generation

    def _expire(self, expire):
        if expire is None:
            return self.config.default_expire
        return expire_seconds(expire)

    def insert(self, key, expire=None):
        """Check-and-set insertion.

        Returns True when ``key`` was already a member (every bit set in some
        generation), in which case nothing is written and no counter moves.
        Otherwise the bits are set in the newest generation, its counter is
        incremented once, and False is returned. With the atomic driver this
        is race free for concurrent inserts of the same key.

        Using only ``insert`` keeps the counters an accurate count of the
        distinct elements added, which is also what drives scaling.

        Args:
            key: The element to add (str, bytes, or anything with __str__)
            expire (int or timedelta, optional): TTL in whole seconds for this
                write. Defaults to ``default_expire``.

        Returns:
            bool: True if ``key`` was already present, False if it was added.

        Raises:
            ValueError: If expire is not a positive whole number of seconds.
        """
        expire = self._expire(expire)
        self.refresh()
        newest = self._generations[-1]
        for generation in self._generations[:-1]:
            if generation.driver.test_all(generation.positions(key)):
                return True
        generation = self._grow_if_full()
        if generation is not newest and newest.driver.test_all(newest.positions(key)):
            return True
        return generation.driver.test_and_set_all(generation.positions(key), expire)

    def force_insert(self, key, expire=None):
        """Unconditionally set the bits of ``key`` in the newest generation.

        No presence check is made and counters are not updated, so the key
        may end up in several generations at once.
        """
        expire = self._expire(expire)
        self.refresh()
        generation = self._generations[-1]
        generation.driver.set_all(generation.positions(key), expire)

    def include(self, key):
        """Return True if ``key`` might be in the filter, False if it is not."""
        self.refresh()
        for generation in reversed(self._generations):
            if generation.driver.test_all(generation.positions(key)):
                return True
        return False

    def __contains__(self, key):
        return self.include(key)

    def clear(self):
        """Delete every generation from Redis and start over with one empty one."""
        self.refresh()
        for generation in self._generations:
            generation.driver.clear()
        self._generations = [self._make_generation(self.config)]

    @property
    def generations(self):
        return tuple(g.config for g in self._generations)

    @property
    def capacity(self):
        self.refresh()
        return sum(g.config.capacity for g in self._generations)

    @property
    def count(self):
        return len(self)

    def __len__(self):
        self.refresh()
        return sum(g.driver.count() for g in self._generations)

    def __repr__(self):
        return '<%s key_name=%r generations=%d driver=%s>' % (
            self.__class__.__name__, self.config.key_name,
            len(self._generations), self.driver_class.name)
