"""Pytest configuration and shared fixtures."""

import pytest
from fakes import FakeLXD, FakeSession, release_routes
from hypothesis import Verbosity, settings

from kubedee.cache import ArtifactCache
from kubedee.cluster import K8S_BINARIES, ClusterOrchestrator
from kubedee.config import KubedeeConfig

# Configure Hypothesis for property-based testing
settings.register_profile("default", max_examples=100, verbosity=Verbosity.normal)
settings.register_profile("ci", max_examples=1000, verbosity=Verbosity.verbose)
settings.register_profile("dev", max_examples=10, verbosity=Verbosity.verbose)

# Load the default profile
settings.load_profile("default")


class FakeClock:
    """Monotonic clock advanced only by the fake sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    """Configuration rooted in a temporary data directory."""
    return KubedeeConfig(data_dir=tmp_path / "data", poll_interval=3.0, wait_timeout=60.0)


@pytest.fixture
def bin_dir(tmp_path):
    """Directory with stand-ins for the Kubernetes binaries."""
    path = tmp_path / "_output" / "bin"
    path.mkdir(parents=True)
    for binary in K8S_BINARIES:
        (path / binary).write_bytes(f"#!/bin/sh\necho {binary}\n".encode())
        (path / binary).chmod(0o755)
    return path


@pytest.fixture
def driver():
    return FakeLXD()


@pytest.fixture
def session(config):
    return FakeSession(release_routes(config))


@pytest.fixture
def orchestrator(config, driver, session, clock):
    cache = ArtifactCache(config.cache_config(), session=session)
    suffixes = iter(["aaaaa", "bbbbb", "ccccc", "ddddd"])
    return ClusterOrchestrator(
        config,
        driver=driver,
        cache=cache,
        sleep=clock.sleep,
        clock=clock,
        suffix_factory=lambda: next(suffixes),
    )
