import pytest

from engine.errors import ScanNotFound
from conftest import ScriptedSource


@pytest.fixture
def three_platform_scan(scan_manager, registry):
    for name in ("reddit", "twitter", "hackernews"):
        registry.register(ScriptedSource(name))
    scan, jobs = scan_manager.create_scan("p1")
    return scan, {job.platform: job for job in jobs}


def test_fresh_scan_reports_zero_progress(services, three_platform_scan):
    scan, jobs = three_platform_scan
    status = services.status.get_scan_status(scan.scan_id)

    assert status.progress_percent == 0
    assert status.all_complete is False
    assert status.scan["status"] == "running"
    assert [p.platform for p in status.per_platform] == ["reddit", "twitter", "hackernews"]
    assert {p.status for p in status.per_platform} == {"running"}


def test_progress_counts_terminal_platforms(services, job_store, three_platform_scan):
    scan, jobs = three_platform_scan
    job = job_store.claim_next("w1", 60)
    job_store.ack(job.job_id, 4)

    status = services.status.get_scan_status(scan.scan_id)
    assert status.progress_percent == 33
    assert status.all_complete is False
    assert status.scan["total_discovered"] == 4
    reddit = status.per_platform[0]
    assert (reddit.platform, reddit.status, reddit.discovered) == ("reddit", "complete", 4)


def test_partial_failure_still_completes(services, job_store, three_platform_scan):
    scan, jobs = three_platform_scan
    for _ in range(3):
        job = job_store.claim_next("w1", 60)
        if job.platform == "twitter":
            job_store.fail_or_retry(job.job_id, "account suspended", retryable=False, worker_id="w1")
        else:
            job_store.ack(job.job_id, 2)

    status = services.status.get_scan_status(scan.scan_id)
    assert status.all_complete is True
    assert status.progress_percent == 100
    assert status.scan["status"] == "complete"
    assert status.scan["completed_at"] is not None
    assert status.scan["total_discovered"] == 4
    twitter = next(p for p in status.per_platform if p.platform == "twitter")
    assert twitter.status == "failed"
    assert twitter.error == "account suspended"
    assert twitter.attempts == 1


def test_leased_job_keeps_scan_running(services, job_store, three_platform_scan, clock):
    scan, jobs = three_platform_scan
    claimed = [job_store.claim_next("w1", 30) for _ in range(3)]
    for job in claimed[:2]:
        job_store.ack(job.job_id, 1)

    clock.advance(31)  # lease expired but not yet reclaimed
    status = services.status.get_scan_status(scan.scan_id)
    assert status.all_complete is False
    assert status.progress_percent == 66


def test_status_read_writes_nothing(services, job_store, three_platform_scan):
    scan, jobs = three_platform_scan
    job_store.claim_next("w1", 60)
    before = [job.to_dict() for job in job_store.list_by_scan(scan.scan_id)]
    scan_before = services.scan_store.get(scan.scan_id).to_dict()

    for _ in range(5):
        services.status.get_scan_status(scan.scan_id)

    assert [job.to_dict() for job in job_store.list_by_scan(scan.scan_id)] == before
    assert services.scan_store.get(scan.scan_id).to_dict() == scan_before


def test_pagination_keeps_platform_running(services, job_store, three_platform_scan):
    scan, jobs = three_platform_scan
    job = job_store.claim_next("w1", 60)
    job_store.ack(job.job_id, 5, next_cursor="page-2")

    status = services.status.get_scan_status(scan.scan_id)
    reddit = status.per_platform[0]
    assert reddit.status == "running"
    assert reddit.jobs == 2
    assert reddit.discovered == 5
    assert status.progress_percent == 0


def test_unknown_scan(services):
    with pytest.raises(ScanNotFound):
        services.status.get_scan_status("does-not-exist")
