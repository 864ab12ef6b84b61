import threading
import uuid

from commonhall_worker.dispatcher import NewsletterDispatcher


def test_jobs_are_processed_in_fifo_order() -> None:
    seen: list[uuid.UUID] = []
    dispatcher = NewsletterDispatcher(seen.append, threading.Event())
    ids = [uuid.uuid4() for _ in range(3)]
    for newsletter_id in ids:
        dispatcher.enqueue(newsletter_id)

    while dispatcher.run_once():
        pass

    assert seen == ids
    assert dispatcher.pending() == 0


def test_failing_job_does_not_stop_the_next_one() -> None:
    seen: list[uuid.UUID] = []
    broken = uuid.uuid4()
    healthy = uuid.uuid4()

    def _process(newsletter_id: uuid.UUID) -> None:
        if newsletter_id == broken:
            raise RuntimeError("render failed")
        seen.append(newsletter_id)

    dispatcher = NewsletterDispatcher(_process, threading.Event())
    dispatcher.enqueue(broken)
    dispatcher.enqueue(healthy)

    assert dispatcher.run_once() is True
    assert dispatcher.run_once() is True
    assert dispatcher.run_once() is False
    assert seen == [healthy]


def test_run_forever_drains_until_stop_is_requested() -> None:
    stop = threading.Event()
    seen: list[uuid.UUID] = []

    def _process(newsletter_id: uuid.UUID) -> None:
        seen.append(newsletter_id)
        if len(seen) == 2:
            stop.set()

    dispatcher = NewsletterDispatcher(_process, stop, poll_seconds=0.01)
    first, second, third = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
    for newsletter_id in (first, second, third):
        dispatcher.enqueue(newsletter_id)

    thread = dispatcher.start()
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert seen == [first, second]
    assert dispatcher.pending() == 1
