# src/engine/services.py
"""
Wiring: builds the stores, manager, aggregator and dispatcher from Settings.
"""
import importlib
import logging
import signal
from dataclasses import dataclass
from typing import Any, Optional

from engine.circuit import CircuitBreaker
from engine.classification import ClassificationQueue
from engine.config import Settings
from engine.db import build_engine, build_session_factory, init_db
from engine.dispatcher import WorkerDispatcher
from engine.job_store import JobStore
from engine.scan_manager import ScanManager
from engine.scan_store import ScanStore
from engine.status import StatusAggregator
from sources.base import SourceRegistry
from sources.integrations import RegistryIntegrations
from utils.timeutils import utc_now


def load_registry(factory_path):
    """
    Build a SourceRegistry from a "package.module:callable" path. An empty registry when unset.
    """
    if not factory_path:
        return SourceRegistry()
    module_name, _, attr = factory_path.partition(":")
    if not attr:
        raise ValueError(f"source_factory must look like 'module:callable', got {factory_path!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    registry = factory()
    if not isinstance(registry, SourceRegistry):
        registry = SourceRegistry(registry)
    return registry


@dataclass
class Services:
    settings: Settings
    engine: Any
    session_factory: Any
    registry: SourceRegistry
    scan_store: ScanStore
    job_store: JobStore
    scan_manager: ScanManager
    status: StatusAggregator
    dispatcher: WorkerDispatcher
    breaker: Optional[CircuitBreaker] = None
    classification: Optional[ClassificationQueue] = None

    def init_db(self):
        init_db(self.engine)

    def start(self):
        if self.classification is not None:
            self.classification.start()
        self.dispatcher.start(self.settings.worker_count)

    def stop(self):
        self.dispatcher.stop()
        if self.classification is not None:
            self.classification.stop()


def build_services(settings=None, registry=None, integrations=None, classifier=None, sink=None, clock=utc_now):
    settings = settings or Settings()
    registry = registry if registry is not None else load_registry(settings.source_factory)
    integrations = integrations or RegistryIntegrations(registry)

    engine = build_engine(settings.database_url)
    session_factory = build_session_factory(engine)
    scan_store = ScanStore(session_factory, clock=clock)
    job_store = JobStore(
        session_factory,
        scan_store,
        clock=clock,
        base_delay=settings.retry_base_delay_seconds,
        max_delay=settings.retry_max_delay_seconds,
        max_pages=settings.max_pages_per_platform,
        max_concurrent_per_project=settings.max_concurrent_jobs_per_project,
        max_concurrent_total=settings.max_global_concurrent_jobs,
    )
    scan_manager = ScanManager(
        session_factory,
        scan_store,
        job_store,
        registry,
        integrations,
        max_attempts=settings.max_attempts,
        max_running_scans_per_project=settings.max_running_scans_per_project,
    )
    classification = None
    if classifier is not None:
        classification = ClassificationQueue(classifier, scan_store, maxsize=settings.classification_queue_size)
    breaker = CircuitBreaker(
        threshold=settings.circuit_breaker_threshold,
        reset_seconds=settings.circuit_breaker_reset_seconds,
        clock=clock,
    )
    dispatcher = WorkerDispatcher(
        job_store,
        registry,
        integrations,
        classification=classification,
        sink=sink,
        breaker=breaker,
        lease_seconds=settings.lease_seconds,
        discovery_timeout=settings.discovery_timeout_seconds,
        poll_seconds=settings.poll_seconds,
        store_retry_delay=settings.store_retry_delay_seconds,
        store_retry_max_delay=settings.store_retry_max_delay_seconds,
        clock=clock,
    )
    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        registry=registry,
        scan_store=scan_store,
        job_store=job_store,
        scan_manager=scan_manager,
        status=StatusAggregator(session_factory, scan_store, job_store),
        dispatcher=dispatcher,
        breaker=breaker,
        classification=classification,
    )


def run_worker():
    """Entry point for standalone worker processes sharing the API's database."""
    settings = Settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s %(message)s',
    )
    services = build_services(settings)
    services.init_db()
    if not len(services.registry):
        logging.warning("No discovery sources registered; set HUNTER_SOURCE_FACTORY")
    services.job_store.recover_expired()
    services.start()

    def _shutdown(signum, frame):
        logging.info(f"Received signal {signum}, shutting down workers")
        services.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    try:
        while not services.dispatcher.wait(1.0):
            pass
    except KeyboardInterrupt:
        services.stop()


if __name__ == "__main__":
    run_worker()
