import asyncio
import unittest.mock as mock
from typing import Generator

import httpx
import pytest

import smithery.main
from smithery.dtypes import Config, K8sConfig
from smithery.restmapper import RESTMapper

from .test_helpers import FAKE_URL, FakeCluster


def pytest_configure(*args, **kwargs):
    """Pytest calls this hook on startup."""
    # Set log level to DEBUG for all unit tests.
    smithery.main.setup_logging(9)


@pytest.fixture
def k8sconfig() -> Generator[K8sConfig, None, None]:
    """Return a `K8sConfig` for tests that mock the web requests with `respx`."""
    cfg = K8sConfig(url=FAKE_URL, name="test", version="1.30", client=httpx.AsyncClient())

    # Short-circuit the `async.sleep` function.
    with mock.patch.object(asyncio, "sleep"):
        yield cfg


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def fake_k8sconfig(cluster) -> K8sConfig:
    """Return a `K8sConfig` whose client talks to the in-memory `cluster`."""
    return cluster.k8sconfig()


@pytest.fixture
def mapper() -> RESTMapper:
    return RESTMapper()


@pytest.fixture
def config() -> Config:
    """Return the default configuration."""
    return Config()
