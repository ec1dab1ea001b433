import os

import pytest


def pytest_sessionstart(session):
    """app.main を import する前にプロセス内ストアとメモリキャッシュを選ぶ。"""
    os.environ["DATABASE_URL"] = "memory://"
    os.environ["CACHE_BACKEND"] = "memory"


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def cache(clock):
    from app.cache import MemoryCache

    return MemoryCache(clock=clock)


@pytest.fixture()
def database():
    from app.memory import MemoryDatabase

    return MemoryDatabase()
