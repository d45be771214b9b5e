import threading
from datetime import datetime, timedelta

import pytest

from engine.config import Settings
from engine.services import build_services
from sources.base import DiscoveryPage, DiscoverySource, RawItem, SourceRegistry


class FakeClock:
    def __init__(self, start=datetime(2026, 1, 1, 12, 0, 0)):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            return self.now

    def advance(self, seconds):
        with self._lock:
            self.now = self.now + timedelta(seconds=seconds)


class ScriptedSource(DiscoverySource):
    """
    Replays a script: each call takes the next entry, raising it if it is an exception and
    returning it otherwise. The last entry repeats once the script runs out.
    """

    def __init__(self, name, *script):
        self.name = name
        self.script = list(script) or [DiscoveryPage()]
        self.calls = []

    def discover(self, credentials, cursor=None):
        self.calls.append({"credentials": credentials, "cursor": cursor})
        step = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(step, BaseException):
            raise step
        return step


def items(count, prefix="item"):
    return [RawItem(content=f"{prefix} {i}", external_id=f"{prefix}-{i}") for i in range(count)]


def page(count, next_cursor=None, prefix="item"):
    return DiscoveryPage(items=items(count, prefix), next_cursor=next_cursor)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'hunter.db'}",
        lease_seconds=60,
        discovery_timeout_seconds=2.0,
        max_attempts=3,
        retry_base_delay_seconds=10.0,
        retry_max_delay_seconds=40.0,
        max_pages_per_platform=3,
        max_running_scans_per_project=1,
        max_concurrent_jobs_per_project=0,
        max_global_concurrent_jobs=0,
        poll_seconds=0.01,
        store_retry_delay_seconds=0.01,
        store_retry_max_delay_seconds=0.05,
        classification_queue_size=10,
    )


@pytest.fixture
def registry():
    return SourceRegistry()


@pytest.fixture
def services(settings, registry, clock):
    services = build_services(settings, registry=registry, clock=clock)
    services.init_db()
    yield services
    services.dispatcher.stop(timeout=1.0)
    services.engine.dispose()


@pytest.fixture
def job_store(services):
    return services.job_store


@pytest.fixture
def scan_store(services):
    return services.scan_store


@pytest.fixture
def scan_manager(services):
    return services.scan_manager


@pytest.fixture
def two_sources(registry):
    reddit = registry.register(ScriptedSource("reddit", page(5)))
    twitter = registry.register(ScriptedSource("twitter", page(2)))
    return reddit, twitter


def demo_sources():
    return [ScriptedSource("reddit", page(1)), ScriptedSource("hackernews", page(1))]
