import asyncio

from api.services.review_queue import ReviewQueue
from common.job_models import ReviewRequest


def _request(title: str, repository: str = "demo") -> ReviewRequest:
    return ReviewRequest(
        repository_name=repository,
        clone_url=f"https://bitbucket.org/acme/{repository}.git",
        source_branch="feature/x",
        destination_branch="main",
        title=title,
        author="Jane Doe",
        pull_request_url=f"https://bitbucket.org/acme/{repository}/pull-requests/1",
    )


class TrackingHandler:
    def __init__(self, fail_on=()):
        self.order = []
        self.active = 0
        self.max_active = 0
        self.fail_on = set(fail_on)

    async def __call__(self, request: ReviewRequest) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0.01)
            self.order.append(request.title)
            if request.title in self.fail_on:
                raise RuntimeError(f"boom: {request.title}")
        finally:
            self.active -= 1


def test_jobs_run_one_at_a_time_in_arrival_order():
    handler = TrackingHandler()

    async def scenario():
        queue = ReviewQueue(handler)
        positions = [queue.enqueue(_request(f"PR {i}", repository=f"repo-{i % 2}")) for i in range(5)]
        assert queue.is_processing
        await queue.wait_idle()
        return queue, positions

    queue, positions = asyncio.run(scenario())

    assert handler.order == [f"PR {i}" for i in range(5)]
    assert handler.max_active == 1
    assert positions == [1, 1, 2, 3, 4]
    assert queue.processed_count == 5
    assert queue.pending_count == 0
    assert not queue.is_processing


def test_failed_job_does_not_stop_the_queue():
    handler = TrackingHandler(fail_on={"PR 1"})

    async def scenario():
        queue = ReviewQueue(handler)
        for i in range(3):
            queue.enqueue(_request(f"PR {i}"))
        await queue.wait_idle()
        return queue

    queue = asyncio.run(scenario())

    assert handler.order == ["PR 0", "PR 1", "PR 2"]
    assert queue.processed_count == 3


def test_enqueue_after_idle_restarts_the_worker():
    handler = TrackingHandler()

    async def scenario():
        queue = ReviewQueue(handler)
        queue.enqueue(_request("first"))
        await queue.wait_idle()
        assert not queue.is_processing
        position = queue.enqueue(_request("second"))
        await queue.wait_idle()
        return position

    position = asyncio.run(scenario())

    assert position == 1
    assert handler.order == ["first", "second"]


def test_pending_count_excludes_current_job():
    started = None
    release = None

    async def blocking_handler(request):
        started.set()
        await release.wait()

    async def scenario():
        nonlocal started, release
        started, release = asyncio.Event(), asyncio.Event()
        queue = ReviewQueue(blocking_handler)
        queue.enqueue(_request("a"))
        queue.enqueue(_request("b"))
        await started.wait()
        snapshot = (queue.current.title, queue.pending_count)
        release.set()
        await queue.wait_idle()
        return snapshot

    assert asyncio.run(scenario()) == ("a", 1)


def test_shutdown_cancels_worker_and_drops_pending():
    async def never_finishes(request):
        await asyncio.sleep(3600)

    async def scenario():
        queue = ReviewQueue(never_finishes)
        queue.enqueue(_request("a"))
        queue.enqueue(_request("b"))
        await asyncio.sleep(0)
        await queue.shutdown()
        return queue

    queue = asyncio.run(scenario())

    assert queue.pending_count == 0
    assert not queue.is_processing
