import threading

from vaultgram.core.scheduler import OverlapGuard, PeriodicJob, Scheduler, backoff_ms


def test_backoff_grows_and_caps() -> None:
    no_jitter = lambda: 0.0  # noqa: E731
    assert backoff_ms(0, no_jitter) == 1000
    assert backoff_ms(1, no_jitter) == 2000
    assert backoff_ms(4, no_jitter) == 16000
    assert backoff_ms(10, no_jitter) == 16000
    assert backoff_ms(4, lambda: 0.999) == 16499


def test_backoff_cap() -> None:
    for streak in range(20):
        assert backoff_ms(streak) <= 30000


def test_overlap_guard_skips_second_entry() -> None:
    guard = OverlapGuard("send")
    with guard as first:
        assert first is True
        assert guard.busy
        with guard as second:
            assert second is False
        # the skipped entry must not release the outer hold
        assert guard.busy
    assert not guard.busy


def test_periodic_job_tick_runs_and_survives_errors() -> None:
    calls: list[int] = []

    def boom() -> None:
        calls.append(1)
        raise RuntimeError("fail")

    job = PeriodicJob(name="boom", interval=60, func=boom)
    assert job.tick() is True
    assert job.tick() is True
    assert len(calls) == 2


def test_periodic_job_skips_overlapping_tick() -> None:
    results: list[bool] = []
    job: PeriodicJob

    def reentrant() -> None:
        results.append(job.tick())

    job = PeriodicJob(name="reentrant", interval=60, func=reentrant)
    assert job.tick() is True
    assert results == [False]


def test_periodic_job_thread_runs_immediately() -> None:
    ran = threading.Event()
    job = PeriodicJob(name="now", interval=60, func=ran.set, run_immediately=True)
    job.start()
    try:
        assert ran.wait(5)
        assert job.running
    finally:
        job.stop()


def test_scheduler_run_once_after() -> None:
    ran = threading.Event()
    sched = Scheduler()
    sched.run_once_after(0, ran.set, name="startup")
    assert ran.wait(5)
    sched.stop()


def test_scheduler_replaces_job_by_name() -> None:
    sched = Scheduler()
    first = sched.every("sweep", 60, lambda: None)
    second = sched.every("sweep", 30, lambda: None)
    assert sched.get("sweep") is second
    assert first is not second
    assert second.interval == 30
