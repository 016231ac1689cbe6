"""Scaling Bloom filter stored in Redis and shared between processes."""
from redis_bloomfilter.bloomfilter import (
    HASH_ENGINES,
    BloomFilter,
    FilterConfig,
    make_hashfuncs,
    optimal_bits,
    optimal_hashes,
)
from redis_bloomfilter.drivers import (
    DRIVERS,
    AtomicDriver,
    MemoryDriver,
    NaiveDriver,
    expire_seconds,
    get_driver_class,
    select_driver,
)

__version__ = '1.0.0'

__all__ = [
    'AtomicDriver',
    'BloomFilter',
    'DRIVERS',
    'FilterConfig',
    'HASH_ENGINES',
    'MemoryDriver',
    'NaiveDriver',
    'expire_seconds',
    'get_driver_class',
    'make_hashfuncs',
    'optimal_bits',
    'optimal_hashes',
    'select_driver',
]
