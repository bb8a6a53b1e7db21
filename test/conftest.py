import pytest

from _helper import FakePool, FakeStore


@pytest.fixture
def store(monkeypatch):
    fake = FakeStore()
    fake.install(monkeypatch)
    return fake


@pytest.fixture
def pool():
    return FakePool()
