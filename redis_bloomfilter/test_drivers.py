"""Tests for the bit array drivers, the driver registry and driver selection."""
import threading
from datetime import timedelta

import fakeredis
import pytest

from redis_bloomfilter import drivers
from redis_bloomfilter.bloomfilter import FilterConfig
from redis_bloomfilter.drivers import (
    DRIVERS,
    AtomicDriver,
    MemoryDriver,
    NaiveDriver,
    expire_seconds,
    get_driver_class,
    select_driver,
)


@pytest.fixture
def server():
    return fakeredis.FakeServer()


@pytest.fixture
def client(server):
    return fakeredis.FakeRedis(server=server)


@pytest.fixture
def config():
    return FilterConfig.create(100, 0.01, key_name='bits')


@pytest.fixture(params=[AtomicDriver, NaiveDriver, MemoryDriver])
def driver(request, client, config):
    return request.param(client, config)


class FakeClock:

    def __init__(self):
        self.now = 1000.0

    def monotonic(self):
        return self.now


class VersionedRedis:
    """Stands in for a client; only INFO is needed to pick a driver."""

    def __init__(self, version):
        self.version = version

    def info(self):
        return {'redis_version': self.version}


# =============================================================================
# Driver Contract Tests
# =============================================================================

class TestDriverContract:
    """Run every driver through the same bit operations."""

    def test_test_and_set_all(self, driver):
        """Test check-and-set on fresh and already set positions.

        Expected:
            First call reports False and counts once, repeating it reports
            True and leaves the counter alone.
        """
        assert driver.test_and_set_all([1, 5, 42]) is False
        assert driver.count() == 1
        assert driver.test_and_set_all([1, 5, 42]) is True
        assert driver.count() == 1

    def test_partial_overlap_counts(self, driver):
        driver.test_and_set_all([1, 5])
        assert driver.test_and_set_all([1, 5, 6]) is False
        assert driver.count() == 2

    def test_set_all_does_not_count(self, driver):
        driver.set_all([3, 4])
        assert driver.count() == 0
        assert driver.test_all([3, 4]) is True
        assert driver.test_and_set_all([3, 4]) is True
        assert driver.count() == 0

    def test_test_all(self, driver):
        assert driver.test_all([7, 8]) is False
        driver.set_all([7])
        assert driver.test_all([7, 8]) is False
        driver.set_all([8])
        assert driver.test_all([7, 8]) is True

    def test_exists(self, driver):
        assert driver.exists() is False
        driver.set_all([0])
        assert driver.exists() is True

    def test_clear(self, driver):
        driver.test_and_set_all([1, 2, 3])
        driver.clear()
        assert driver.count() == 0
        assert driver.test_all([1]) is False
        assert driver.exists() is False

    def test_positions_as_generator(self, driver):
        assert driver.test_and_set_all(p for p in [9, 10]) is False
        assert driver.test_all(p for p in [9, 10]) is True


# =============================================================================
# Redis Driver Tests
# =============================================================================

@pytest.mark.parametrize("driver_class", [AtomicDriver, NaiveDriver])
class TestRedisDrivers:

    def test_keys(self, client, config, driver_class):
        driver = driver_class(client, config)
        driver.test_and_set_all([0, 9])
        assert client.getbit('bits', 0) == 1
        assert client.getbit('bits', 9) == 1
        assert client.getbit('bits', 1) == 0
        assert int(client.get('bits:count')) == 1

    def test_expire(self, client, config, driver_class):
        driver = driver_class(client, config)
        driver.test_and_set_all([1], expire=100)
        assert 0 < client.ttl('bits') <= 100
        assert 0 < client.ttl('bits:count') <= 100

    def test_set_all_expire(self, client, config, driver_class):
        driver = driver_class(client, config)
        driver.set_all([1], expire=50)
        assert 0 < client.ttl('bits') <= 50

    def test_expire_is_refreshed(self, client, config, driver_class):
        driver = driver_class(client, config)
        driver.test_and_set_all([1], expire=10)
        driver.test_and_set_all([1], expire=500)
        assert client.ttl('bits') > 10

    @pytest.mark.parametrize("expire", [-1, 2.5])
    def test_invalid_expire_leaves_keys(self, client, config, driver_class, expire):
        driver = driver_class(client, config)
        driver.test_and_set_all([1])
        with pytest.raises(ValueError, match="positive whole number of seconds"):
            driver.test_and_set_all([2], expire=expire)
        with pytest.raises(ValueError, match="positive whole number of seconds"):
            driver.set_all([2], expire=expire)
        assert client.exists('bits') == 1
        assert client.getbit('bits', 2) == 0
        assert client.ttl('bits') == -1

    def test_shares_state_across_clients(self, server, config, driver_class):
        first = driver_class(fakeredis.FakeRedis(server=server), config)
        second = driver_class(fakeredis.FakeRedis(server=server), config)
        first.test_and_set_all([4, 5])
        assert second.test_and_set_all([4, 5]) is True
        assert second.count() == 1


class TestAtomicDriverConcurrency:

    def test_concurrent_inserts_of_same_value(self, server, config):
        """Test that exactly one of N concurrent check-and-sets sees the value as new.

        Purpose:
            Each thread has its own connection, as separate processes would,
            and all of them are released at once.

        Expected:
            One False, N - 1 True, and the counter at 1.
        """
        threads_count = 16
        barrier = threading.Barrier(threads_count)
        results = []
        lock = threading.Lock()
        positions = [3, 17, 29, 64, 88, 91, 95]

        def worker():
            driver = AtomicDriver(fakeredis.FakeRedis(server=server), config)
            barrier.wait()
            result = driver.test_and_set_all(positions)
            with lock:
                results.append(result)

        threads = [threading.Thread(target=worker) for _ in range(threads_count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(False) == 1
        assert results.count(True) == threads_count - 1
        assert AtomicDriver(fakeredis.FakeRedis(server=server), config).count() == 1


# =============================================================================
# Memory Driver Tests
# =============================================================================

class TestMemoryDriver:

    def test_no_redis_needed(self, config):
        driver = MemoryDriver(None, config)
        assert driver.test_and_set_all([1]) is False
        assert len(driver.bitarray) == config.num_bits

    def test_expiry(self, config, monkeypatch):
        """Test that the TTL resets the filter once it has passed."""
        clock = FakeClock()
        monkeypatch.setattr(drivers, 'time', clock)
        driver = MemoryDriver(None, config)
        driver.test_and_set_all([1, 2], expire=10)

        clock.now += 9
        assert driver.test_all([1, 2]) is True
        assert driver.count() == 1

        clock.now += 1
        assert driver.test_all([1, 2]) is False
        assert driver.count() == 0

    def test_no_expiry_without_ttl(self, config, monkeypatch):
        clock = FakeClock()
        monkeypatch.setattr(drivers, 'time', clock)
        driver = MemoryDriver(None, config)
        driver.set_all([1])
        clock.now += 10 ** 6
        assert driver.test_all([1]) is True


# =============================================================================
# Registry and Selection Tests
# =============================================================================

class TestRegistry:

    @pytest.mark.parametrize("name,expected", [
        ('atomic', AtomicDriver),
        ('lua', AtomicDriver),
        ('naive', NaiveDriver),
        ('ruby', NaiveDriver),
        ('memory', MemoryDriver),
        ('ATOMIC', AtomicDriver),
    ])
    def test_lookup(self, name, expected):
        assert get_driver_class(name) is expected

    @pytest.mark.parametrize("name", ['bogus', '', None])
    def test_unknown(self, name):
        with pytest.raises(ValueError, match="Unknown driver"):
            get_driver_class(name)

    def test_names(self):
        assert {cls.name for cls in DRIVERS.values()} == {'atomic', 'naive', 'memory'}
        assert MemoryDriver.requires_redis is False
        assert AtomicDriver.requires_redis is True


class TestSelectDriver:

    @pytest.mark.parametrize("version,expected", [
        ('7.2.4', 'atomic'),
        ('2.6.0', 'atomic'),
        ('2.6.0-rc1', 'atomic'),
        ('3', 'atomic'),
        ('2.4.18', 'naive'),
        ('2.5.99', 'naive'),
    ])
    def test_version(self, version, expected):
        assert select_driver(VersionedRedis(version)) == expected


class TestExpireSeconds:

    @pytest.mark.parametrize("expire,expected", [
        (None, None), (30, 30), (timedelta(minutes=2), 120),
    ])
    def test_valid(self, expire, expected):
        assert expire_seconds(expire) == expected

    @pytest.mark.parametrize("expire", [0, -5, 1.0, '10', False, timedelta(seconds=1.5)])
    def test_invalid(self, expire):
        with pytest.raises(ValueError, match="positive whole number of seconds"):
            expire_seconds(expire)
