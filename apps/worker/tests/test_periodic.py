import threading

from commonhall_worker.periodic import PeriodicWorker


def test_failures_are_logged_and_loop_continues_until_stopped() -> None:
    stop = threading.Event()
    calls: list[int] = []

    def _run() -> None:
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("store unreachable")
        if len(calls) == 3:
            stop.set()

    PeriodicWorker("flaky", 0.01, _run, stop).run_forever()

    assert calls == [0, 1, 2]


def test_run_immediately_fires_before_first_wait() -> None:
    stop = threading.Event()
    calls: list[str] = []

    def _run() -> None:
        calls.append("run")
        stop.set()

    PeriodicWorker("eager", 3600, _run, stop, run_immediately=True).run_forever()

    assert calls == ["run"]


def test_stop_before_start_never_runs() -> None:
    stop = threading.Event()
    stop.set()
    calls: list[str] = []

    worker = PeriodicWorker("idle", 3600, lambda: calls.append("run"), stop, run_immediately=True)
    worker.start()
    worker.join(timeout=2)

    assert calls == []


def test_stop_event_interrupts_long_interval() -> None:
    stop = threading.Event()
    worker = PeriodicWorker("slow", 3600, lambda: None, stop)
    thread = worker.start()
    stop.set()
    worker.join(timeout=2)
    assert not thread.is_alive()
