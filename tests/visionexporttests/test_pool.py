import threading
import time

import pytest

from visionexport.export.pool import ConcurrencyPool


class InFlightCounter:
    def __init__(self):
        self.current = 0
        self.maximum = 0
        self.lock = threading.Lock()

    def __call__(self, item):
        with self.lock:
            self.current += 1
            self.maximum = max(self.maximum, self.current)
        time.sleep(0.01)
        with self.lock:
            self.current -= 1
        return item


def test_concurrency_is_bounded():
    counter = InFlightCounter()
    result = ConcurrencyPool(3).run_queue(list(range(20)), counter)

    assert result.completed == 20
    assert result.failed == 0
    assert 1 <= counter.maximum <= 3


def test_producer_is_drained():
    units = [lambda: 1, lambda: 2]

    def producer():
        return units.pop() if units else None

    result = ConcurrencyPool(5).run(producer)
    assert result.completed == 2
    assert units == []


def test_failures_are_isolated():
    done = []

    def worker(item):
        if item == 3:
            raise RuntimeError("unit 3 failed")
        done.append(item)

    result = ConcurrencyPool(2).run_queue(list(range(6)), worker)

    assert result.completed == 5
    assert result.failed == 1
    assert isinstance(result.errors[0], RuntimeError)
    assert sorted(done) == [0, 1, 2, 4, 5]


def test_raise_errors_reraises_first_failure():
    def worker(item):
        raise ValueError(f"bad item {item}")

    with pytest.raises(ValueError, match="bad item"):
        ConcurrencyPool(1, raise_errors=True).run_queue([1, 2, 3], worker)


def test_raise_errors_stops_pulling_work():
    pulled = []

    def worker(item):
        pulled.append(item)
        raise ValueError("stop")

    with pytest.raises(ValueError):
        ConcurrencyPool(1, raise_errors=True).run_queue(list(range(10)), worker)
    assert pulled == [0]


def test_run_id_ranges():
    ranges = []
    lock = threading.Lock()

    def method(start, end):
        with lock:
            ranges.append((start, end))

    ConcurrencyPool(2).run_id_ranges(method, 0, 2500, 1000)
    assert sorted(ranges) == [(0, 1000), (1000, 2000), (2000, 3000)]


def test_concurrency_must_be_positive():
    with pytest.raises(ValueError):
        ConcurrencyPool(0)
