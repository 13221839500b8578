"""
Skip-and-continue item runner and the video concurrency throttle.
"""

import asyncio

import pytest

from flowpilot import metrics
from flowpilot.actions import Action
from flowpilot.errors import ActionFailedError, GatewayError, JobAbortedError
from flowpilot.gateway import ActionResult
from flowpilot.pipeline.helpers import find_start_index, run_item
from flowpilot.pipeline.models import ItemResult, ItemStatus
from flowpilot.throttle import needs_slot, wait_for_video_slot

from fakes import FakeGateway, fast_config, make_job, make_project


def items(*statuses):
    return [ItemResult(index=i, filename=f"item_{i}", status=s) for i, s in enumerate(statuses)]


class FakeClock:
    def __init__(self, step: float):
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        current = self.now
        self.now += self.step
        return current


# =============================================================================
# find_start_index
# =============================================================================

class TestFindStartIndex:
    def test_first_non_done_index(self):
        results = items(ItemStatus.READY, ItemStatus.SUBMITTED, ItemStatus.PENDING, ItemStatus.READY)
        assert find_start_index(results) == 2

    def test_error_item_is_not_done(self):
        assert find_start_index(items(ItemStatus.READY, ItemStatus.ERROR)) == 1

    def test_all_done(self):
        assert find_start_index(items(ItemStatus.READY, ItemStatus.DOWNLOADED)) == 2

    def test_empty(self):
        assert find_start_index([]) == 0


# =============================================================================
# run_item
# =============================================================================

class TestRunItem:
    def setup_method(self):
        metrics.reset()

    def test_success_on_first_attempt(self):
        job = make_job(make_project(max_retries=2))
        results = job.progress.image_results
        attempts = []

        async def attempt(retry):
            attempts.append(retry)
            return ItemStatus.READY

        ok = asyncio.run(run_item(job, results, 0, attempt))
        assert ok
        assert attempts == [0]
        assert results[0].status == ItemStatus.READY
        assert job.progress.current_index == 0

    def test_retries_then_succeeds(self):
        job = make_job(make_project(max_retries=2))
        results = job.progress.image_results

        async def attempt(retry):
            if retry < 2:
                raise ActionFailedError("flaky")
            return ItemStatus.READY

        assert asyncio.run(run_item(job, results, 0, attempt))
        assert results[0].status == ItemStatus.READY
        assert results[0].retry_count == 2
        assert results[0].error is None
        assert job.progress.retry_count == 0

    def test_exhaustion_marks_error_and_returns(self):
        job = make_job(make_project(max_retries=1))
        results = job.progress.image_results
        calls = []

        async def attempt(retry):
            calls.append(retry)
            raise GatewayError("editor gone")

        ok = asyncio.run(run_item(job, results, 1, attempt))
        assert not ok
        assert calls == [0, 1]
        assert results[1].status == ItemStatus.ERROR
        assert results[1].error == "editor gone"
        assert metrics.get_counter("items.images.error") == 1
        assert metrics.get_counter("items.images.retry") == 2

    def test_abort_propagates_without_marking_error(self):
        job = make_job(make_project())
        results = job.progress.image_results

        async def attempt(retry):
            raise JobAbortedError("stop")

        with pytest.raises(JobAbortedError):
            asyncio.run(run_item(job, results, 0, attempt))
        assert results[0].status == ItemStatus.GENERATING

    def test_rerun_resets_error_item(self):
        job = make_job(make_project())
        results = job.progress.image_results
        results[0].status = ItemStatus.ERROR
        results[0].error = "old failure"

        async def attempt(retry):
            return ItemStatus.READY

        assert asyncio.run(run_item(job, results, 0, attempt))
        assert results[0].status == ItemStatus.READY

    def test_progress_is_persisted(self):
        job = make_job(make_project())

        async def scenario():
            async def attempt(retry):
                return ItemStatus.READY
            await run_item(job, job.progress.image_results, 0, attempt)
            return await job.store.get_job_progress(job.project_id)

        saved = asyncio.run(scenario())
        assert saved.image_results[0].status == ItemStatus.READY


# =============================================================================
# Video throttle
# =============================================================================

class TestThrottle:
    def test_needs_slot_from_sixth_video(self):
        assert not needs_slot(4)
        assert needs_slot(5)
        assert needs_slot(2, limit=2)

    def test_returns_when_below_limit(self):
        gateway = FakeGateway().script(
            Action.COUNT_PENDING_VIDEOS,
            ActionResult.ok(pending=5),
            ActionResult.ok(pending=5),
            ActionResult.ok(pending=4),
        )
        job = make_job(make_project(), gateway=gateway, config=fast_config(video_slot_max_wait=600))

        assert asyncio.run(wait_for_video_slot(job, 5, 8))
        assert gateway.count(Action.COUNT_PENDING_VIDEOS) == 3

    def test_query_failure_proceeds(self):
        gateway = FakeGateway().script(Action.COUNT_PENDING_VIDEOS, GatewayError("no agent"))
        job = make_job(make_project(), gateway=gateway)

        assert asyncio.run(wait_for_video_slot(job, 5, 8)) is False

    def test_max_wait_proceeds(self):
        gateway = FakeGateway().set_default(Action.COUNT_PENDING_VIDEOS, ActionResult.ok(pending=9))
        job = make_job(make_project(), gateway=gateway, config=fast_config(video_slot_max_wait=60))

        assert asyncio.run(wait_for_video_slot(job, 5, 8, clock=FakeClock(step=15))) is False
        assert gateway.count(Action.COUNT_PENDING_VIDEOS) == 4

    def test_abort_while_waiting(self):
        gateway = FakeGateway().set_default(Action.COUNT_PENDING_VIDEOS, ActionResult.ok(pending=9))
        job = make_job(make_project(), gateway=gateway, config=fast_config(video_slot_max_wait=600))
        job.token.abort()

        with pytest.raises(JobAbortedError):
            asyncio.run(wait_for_video_slot(job, 5, 8))
