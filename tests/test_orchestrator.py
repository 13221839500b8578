"""
End-to-end orchestrator runs against the scripted gateway and in-memory store.
"""

import asyncio
from pathlib import Path

import pytest

from flowpilot import metrics
from flowpilot.actions import Action
from flowpilot.errors import PreconditionError, ProjectAlreadyRunningError
from flowpilot.gateway import ActionResult
from flowpilot.job_store import InMemoryJobStore
from flowpilot.pipeline.models import (
    GenerationMode,
    ItemStatus,
    JobProgress,
    JobState,
    Phase,
    ProjectSettings,
    ProjectStatus,
)
from flowpilot.pipeline.orchestrator import ProjectOrchestrator, validate_project

from fakes import EDITOR_URL, FakeGateway, RecordingNotifier, fast_config, make_project


def build(gateway=None, **config_overrides):
    store = InMemoryJobStore()
    gateway = gateway or FakeGateway()
    notifier = RecordingNotifier()
    orchestrator = ProjectOrchestrator(
        store, gateway, notifier=notifier, config=fast_config(**config_overrides)
    )
    return orchestrator, store, gateway, notifier


def blocking_prompt(gateway: FakeGateway, prompt: str):
    """Block ENTER_IMAGE_PROMPT for `prompt` until released (first time only)."""
    reached = asyncio.Event()
    release = asyncio.Event()

    async def handler(params):
        if params.get("prompt") == prompt and not release.is_set():
            reached.set()
            await release.wait()
        return ActionResult.ok()

    gateway.on(Action.ENTER_IMAGE_PROMPT, handler)
    return reached, release


def prompts_entered(gateway: FakeGateway, since: int = 0) -> list[str]:
    return [p["prompt"] for name, p in gateway.calls[since:] if name == Action.ENTER_IMAGE_PROMPT.value]


# =============================================================================
# Full runs
# =============================================================================

class TestFramesToVideoRun:
    def setup_method(self):
        metrics.reset()

    def test_failing_image_is_skipped_and_run_completes_with_errors(self):
        """3 images, 2 animations, max_retries=1, image 2 cannot take a prompt."""
        gateway = FakeGateway().on(
            Action.ENTER_IMAGE_PROMPT,
            lambda p: ActionResult.failed("prompt box missing") if p["prompt"] == "scene 2" else ActionResult.ok(),
        )
        orchestrator, store, gateway, notifier = build(gateway)
        project = make_project(images=3, animations=2, max_retries=1)

        async def scenario():
            await store.save_project(project)
            status = await orchestrator.start_project(project.id)
            return status, await store.get_project(project.id), await store.get_job_progress(project.id), \
                await store.list_run_records()

        status, saved, progress, runs = asyncio.run(scenario())

        assert prompts_entered(gateway).count("scene 2") == 2
        assert [r.status for r in progress.image_results] == [ItemStatus.READY, ItemStatus.ERROR, ItemStatus.READY]
        assert all(r.status == ItemStatus.SUBMITTED for r in progress.video_results)
        assert saved.status == ProjectStatus.COMPLETED_WITH_ERRORS
        assert progress.current_state == JobState.COMPLETED
        assert not status.running
        assert len(runs) == 1 and runs[0].status == ProjectStatus.COMPLETED_WITH_ERRORS
        assert runs[0].images_completed == 2 and runs[0].videos_completed == 2
        assert len(notifier.completed) == 1
        assert metrics.get_counter("runs.completed_with_errors") == 1

    def test_clean_run_walks_the_lifecycle(self):
        orchestrator, store, gateway, notifier = build()
        project = make_project(images=2, animations=1)

        async def scenario():
            await store.save_project(project)
            await orchestrator.start_project(project.id)
            return await store.get_project(project.id), await store.get_job_progress(project.id)

        saved, progress = asyncio.run(scenario())

        assert saved.status == ProjectStatus.COMPLETED
        assert saved.remote_url == EDITOR_URL
        assert [h["event"] for h in progress.fsm_history] == ["start", "configured", "images_done", "complete"]
        assert gateway.actions()[:3] == ["NAVIGATE", "CREATE_NEW_PROJECT", "CHECK_FLOW_PAGE"]
        modes = [p["mode"] for p in gateway.params_for(Action.CONFIGURE_SETTINGS)]
        assert modes == ["create-image", "frames-to-video"]

    def test_auto_download_runs_after_videos(self):
        class Downloader:
            def __init__(self):
                self.files = []

            async def download_video(self, url, project_name, filename):
                self.files.append(filename)
                return Path("/tmp") / filename

        gateway = FakeGateway()
        gateway.set_default(Action.COUNT_COMPLETED_VIDEOS, ActionResult.ok(count=1))
        gateway.set_default(Action.GET_VIDEO_URLS, ActionResult.ok(videos=[{"src": "https://v/1"}]))
        orchestrator, store, gateway, notifier = build(gateway)
        orchestrator.downloader = Downloader()
        project = make_project(images=2, animations=1, settings=ProjectSettings(auto_download=True))

        async def scenario():
            await store.save_project(project)
            await orchestrator.start_project(project.id)
            return await store.get_job_progress(project.id)

        progress = asyncio.run(scenario())

        assert orchestrator.downloader.files == ["video_01_01-02.mp4"]
        assert progress.video_results[0].status == ItemStatus.DOWNLOADED
        assert progress.phase == Phase.DOWNLOADS


class TestOtherModes:
    def test_text_to_video_run(self):
        gateway = FakeGateway().set_default(Action.COUNT_PENDING_VIDEOS, ActionResult.ok(pending=0, completed=2))
        orchestrator, store, gateway, notifier = build(gateway)
        project = make_project(mode=GenerationMode.TEXT_TO_VIDEO, images=0, animations=0, videos=2)

        async def scenario():
            await store.save_project(project)
            await orchestrator.start_project(project.id)
            return await store.get_project(project.id), await store.get_job_progress(project.id)

        saved, progress = asyncio.run(scenario())

        assert saved.status == ProjectStatus.COMPLETED
        assert [h["to"] for h in progress.fsm_history][:2] == ["configuring", "text-to-video-phase"]
        assert gateway.params_for(Action.CONFIGURE_SETTINGS)[0]["mode"] == "text-to-video"
        assert all(r.status == ItemStatus.DOWNLOADED for r in progress.video_results)

    def test_create_image_run(self):
        orchestrator, store, gateway, notifier = build()
        project = make_project(mode=GenerationMode.CREATE_IMAGE, images=3, animations=0)

        async def scenario():
            await store.save_project(project)
            await orchestrator.start_project(project.id)
            return await store.get_project(project.id)

        assert asyncio.run(scenario()).status == ProjectStatus.COMPLETED
        assert gateway.count(Action.WAIT_IMAGE_COMPLETE) == 1


# =============================================================================
# Preconditions and gates
# =============================================================================

class TestPreconditions:
    def test_validate_project_per_mode(self):
        with pytest.raises(PreconditionError):
            validate_project(make_project(animations=0))
        with pytest.raises(PreconditionError):
            validate_project(make_project(images=0))
        with pytest.raises(PreconditionError):
            validate_project(make_project(mode=GenerationMode.TEXT_TO_VIDEO, videos=0))
        with pytest.raises(PreconditionError):
            validate_project(make_project(mode=GenerationMode.CREATE_IMAGE, images=0))
        validate_project(make_project(images=4, animations=1))

    def test_precondition_failure_touches_nothing(self):
        orchestrator, store, gateway, notifier = build()
        project = make_project(animations=0)

        async def scenario():
            await store.save_project(project)
            with pytest.raises(PreconditionError):
                await orchestrator.start_project(project.id)
            return await store.get_project(project.id), await store.get_job_progress(project.id)

        saved, progress = asyncio.run(scenario())
        assert gateway.calls == []
        assert saved.status == ProjectStatus.DRAFT
        assert progress is None

    def test_missing_project(self):
        orchestrator, store, gateway, notifier = build()
        with pytest.raises(PreconditionError, match="not found"):
            asyncio.run(orchestrator.start_project("nope"))


class TestFatalGates:
    def _run(self, gateway, project):
        orchestrator, store, gateway, notifier = build(gateway)

        async def scenario():
            await store.save_project(project)
            await orchestrator.start_project(project.id)
            return await store.get_project(project.id), await store.get_job_progress(project.id), \
                await store.list_run_records()

        saved, progress, runs = asyncio.run(scenario())
        return saved, progress, runs, notifier

    def test_settings_gate_aborts_after_three_attempts(self):
        gateway = FakeGateway().set_default(Action.CONFIGURE_SETTINGS, ActionResult.failed("dropdown missing"))
        saved, progress, runs, notifier = self._run(gateway, make_project())

        assert gateway.count(Action.CONFIGURE_SETTINGS) == 3
        assert gateway.count(Action.ENTER_IMAGE_PROMPT) == 0
        assert saved.status == ProjectStatus.ERROR
        assert progress.current_state == JobState.ERROR
        assert "Failed to configure settings" in progress.last_error
        assert len(runs) == 1 and runs[0].status == ProjectStatus.ERROR
        assert len(notifier.errors) == 1

    def test_editor_never_loads(self):
        gateway = FakeGateway().set_default(Action.CHECK_FLOW_PAGE, ActionResult.ok(isEditorPage=False))
        saved, progress, runs, notifier = self._run(gateway, make_project())

        assert gateway.count(Action.CHECK_FLOW_PAGE) == 3
        assert saved.status == ProjectStatus.ERROR
        assert "did not load" in progress.last_error

    def test_count_gate_stops_before_videos(self):
        gateway = FakeGateway().set_default(Action.COUNT_IMAGES, ActionResult.ok(count=1))
        saved, progress, runs, notifier = self._run(gateway, make_project(images=3, animations=2))

        assert gateway.count(Action.ATTACH_START_FRAME) == 0
        assert saved.status == ProjectStatus.ERROR
        assert progress.total_images == 1

    def test_count_gate_rebuilds_pending_videos(self):
        gateway = FakeGateway().set_default(Action.COUNT_IMAGES, ActionResult.ok(count=3))
        saved, progress, runs, notifier = self._run(gateway, make_project(images=4, animations=2))

        assert progress.total_images == 3
        assert len(progress.video_results) == 2
        assert saved.status == ProjectStatus.COMPLETED

    def test_count_query_failure_proceeds(self):
        gateway = FakeGateway().set_default(Action.COUNT_IMAGES, ActionResult.failed("no grid"))
        saved, progress, runs, notifier = self._run(gateway, make_project(images=3, animations=2))

        assert saved.status == ProjectStatus.COMPLETED
        assert progress.total_images == 3

    def test_unreadable_count_proceeds(self):
        gateway = FakeGateway().set_default(Action.COUNT_IMAGES, ActionResult.ok(count="many"))
        saved, progress, runs, notifier = self._run(gateway, make_project(images=3, animations=2))

        assert saved.status == ProjectStatus.COMPLETED
        assert progress.total_images == 3
        assert len(progress.video_results) == 2


# =============================================================================
# Control: concurrency, pause, stop, resume
# =============================================================================

class TestControl:
    def test_second_start_is_rejected_without_side_effects(self):
        orchestrator, store, gateway, notifier = build()
        first = make_project(name="First")
        second = make_project(name="Second")
        reached, release = blocking_prompt(gateway, "scene 1")

        async def scenario():
            await store.save_project(first)
            await store.save_project(second)
            await orchestrator.start_project_background(first.id)
            await asyncio.wait_for(reached.wait(), 1)

            with pytest.raises(ProjectAlreadyRunningError) as exc:
                await orchestrator.start_project(second.id)

            second_saved = await store.get_project(second.id)
            second_progress = await store.get_job_progress(second.id)
            first_saved = await store.get_project(first.id)

            release.set()
            await orchestrator.stop_project()
            return exc.value, second_saved, second_progress, first_saved

        error, second_saved, second_progress, first_saved = asyncio.run(scenario())
        assert error.active_project_id == first.id
        assert second_saved.status == ProjectStatus.DRAFT
        assert second_progress is None
        assert first_saved.status == ProjectStatus.RUNNING

    def test_stop_then_cold_resume_continues_from_current_item(self):
        orchestrator, store, gateway, notifier = build()
        project = make_project(images=3, animations=2)
        reached, release = blocking_prompt(gateway, "scene 2")

        async def scenario():
            await store.save_project(project)
            await orchestrator.start_project_background(project.id)
            await asyncio.wait_for(reached.wait(), 1)

            release.set()
            await orchestrator.stop_project()
            stopped_project = await store.get_project(project.id)
            stopped_progress = await store.get_job_progress(project.id)
            mark = len(gateway.calls)

            await orchestrator.resume_project(project.id)
            return stopped_project, stopped_progress, mark, await store.get_project(project.id)

        stopped_project, stopped_progress, mark, final = asyncio.run(scenario())

        assert orchestrator.get_status().state == JobState.COMPLETED
        assert stopped_project.status == ProjectStatus.READY
        assert stopped_progress.current_state == JobState.IDLE
        assert stopped_progress.image_results[0].status == ItemStatus.READY
        assert stopped_progress.image_results[1].status == ItemStatus.GENERATING

        resumed_prompts = prompts_entered(gateway, since=mark)
        assert resumed_prompts[:2] == ["scene 2", "scene 3"]
        assert "scene 1" not in resumed_prompts
        assert gateway.actions()[mark] == "NAVIGATE"
        assert final.status == ProjectStatus.COMPLETED

    def test_pause_and_resume_in_place(self):
        orchestrator, store, gateway, notifier = build()
        project = make_project(images=2, animations=1)
        reached, release = blocking_prompt(gateway, "scene 2")

        async def scenario():
            await store.save_project(project)
            await orchestrator.start_project_background(project.id)
            await asyncio.wait_for(reached.wait(), 1)

            paused = await orchestrator.pause_project()
            paused_project = await store.get_project(project.id)
            release.set()
            await asyncio.sleep(0.05)
            clicks_while_paused = gateway.count(Action.CLICK_GENERATE)

            resumed = await orchestrator.resume_project(project.id)
            await orchestrator.wait()
            return paused, paused_project, clicks_while_paused, resumed

        paused, paused_project, clicks_while_paused, resumed = asyncio.run(scenario())

        assert paused.state == JobState.PAUSED
        assert paused_project.status == ProjectStatus.PAUSED
        assert clicks_while_paused == 1
        assert resumed.state == JobState.IMAGE_PHASE
        assert orchestrator.get_status().state == JobState.COMPLETED

    def test_pause_records_where_the_run_stopped(self):
        orchestrator, store, gateway, notifier = build()
        project = make_project(images=2, animations=1)
        reached, release = blocking_prompt(gateway, "scene 2")

        async def scenario():
            await store.save_project(project)
            await orchestrator.start_project_background(project.id)
            await asyncio.wait_for(reached.wait(), 1)

            await orchestrator.pause_project()
            paused_progress = await store.get_job_progress(project.id)
            release.set()

            await orchestrator.resume_project(project.id)
            resumed_progress = await store.get_job_progress(project.id)
            await orchestrator.wait()
            return paused_progress, resumed_progress

        paused_progress, resumed_progress = asyncio.run(scenario())

        assert paused_progress.current_state == JobState.PAUSED
        assert paused_progress.paused_state == JobState.IMAGE_PHASE
        assert paused_progress.paused_phase == Phase.IMAGES
        assert resumed_progress.paused_state is None
        assert resumed_progress.paused_phase is None
        assert orchestrator.get_status().state == JobState.COMPLETED

    def test_stop_after_completion_keeps_the_finished_run(self):
        orchestrator, store, gateway, notifier = build()
        project = make_project(images=2, animations=1)

        async def scenario():
            await store.save_project(project)
            await orchestrator.start_project(project.id)
            await orchestrator.stop_project()
            stopped = await store.get_project(project.id), await store.get_job_progress(project.id)

            mark = len(gateway.calls)
            await orchestrator.start_project(project.id)
            return stopped, mark, await store.list_run_records()

        (saved, progress), mark, runs = asyncio.run(scenario())

        assert saved.status == ProjectStatus.COMPLETED
        assert progress.current_state == JobState.COMPLETED
        # The next start is a genuine rerun from fresh progress
        assert prompts_entered(gateway, since=mark) == ["scene 1", "scene 2"]
        assert len(runs) == 2
        assert len(notifier.completed) == 2

    def test_stop_cancels_a_run_stuck_in_a_remote_call(self):
        gateway = FakeGateway()
        reached = asyncio.Event()
        never = asyncio.Event()

        async def handler(params):
            reached.set()
            await never.wait()
            return ActionResult.ok()

        gateway.on(Action.ENTER_IMAGE_PROMPT, handler)
        orchestrator, store, gateway, notifier = build(gateway, stop_grace_period=0.05)
        project = make_project(images=2, animations=1)

        async def scenario():
            await store.save_project(project)
            await orchestrator.start_project_background(project.id)
            await asyncio.wait_for(reached.wait(), 1)

            await asyncio.wait_for(orchestrator.stop_project(), 1)
            return await store.get_project(project.id), await store.get_job_progress(project.id)

        saved, progress = asyncio.run(scenario())

        assert orchestrator._task.cancelled()
        assert orchestrator.get_status().running is False
        assert saved.status == ProjectStatus.READY
        assert progress.current_state == JobState.IDLE
        assert progress.image_results[0].status == ItemStatus.GENERATING

    def test_pause_without_active_job(self):
        orchestrator, store, gateway, notifier = build()
        with pytest.raises(PreconditionError):
            asyncio.run(orchestrator.pause_project())

    def test_resume_without_progress(self):
        orchestrator, store, gateway, notifier = build()
        project = make_project()

        async def scenario():
            await store.save_project(project)
            await orchestrator.resume_project(project.id)

        with pytest.raises(PreconditionError):
            asyncio.run(scenario())

    def test_subscribers_receive_status_until_unsubscribed(self):
        orchestrator, store, gateway, notifier = build()
        project = make_project(images=2, animations=1)
        seen = []
        unsubscribe = orchestrator.subscribe(lambda status: seen.append(status.state))

        async def scenario():
            await store.save_project(project)
            await orchestrator.start_project(project.id)

        asyncio.run(scenario())
        assert JobState.IMAGE_PHASE in seen
        assert seen[-1] == JobState.COMPLETED

        unsubscribe()
        count = len(seen)
        asyncio.run(orchestrator.start_project(project.id))
        assert len(seen) == count


# =============================================================================
# Crash recovery
# =============================================================================

class TestRecovery:
    def test_running_projects_are_parked_as_paused(self):
        orchestrator, store, gateway, notifier = build()
        project = make_project(images=3, animations=2, status=ProjectStatus.RUNNING)
        idle = make_project(name="Idle", status=ProjectStatus.READY)
        progress = JobProgress.for_project(project)
        progress.phase = Phase.VIDEOS
        progress.current_state = JobState.VIDEO_PHASE
        progress.current_index = 1
        for item in progress.image_results:
            item.status = ItemStatus.READY

        async def scenario():
            await store.save_project(project)
            await store.save_project(idle)
            await store.save_job_progress(progress)
            interrupted = await orchestrator.recover_interrupted_jobs()
            return interrupted, await store.get_project(project.id), await store.get_job_progress(project.id)

        interrupted, saved, saved_progress = asyncio.run(scenario())

        assert len(interrupted) == 1
        assert interrupted[0].project_id == project.id
        assert interrupted[0].phase == Phase.VIDEOS
        assert interrupted[0].images_completed == 3
        assert saved.status == ProjectStatus.PAUSED
        assert saved_progress.current_state == JobState.PAUSED
        assert saved_progress.paused_state == JobState.VIDEO_PHASE
        assert orchestrator.interrupted == interrupted

    def test_recovered_job_resumes_into_video_phase(self):
        orchestrator, store, gateway, notifier = build()
        project = make_project(images=3, animations=2, status=ProjectStatus.RUNNING)
        progress = JobProgress.for_project(project)
        progress.current_state = JobState.VIDEO_PHASE
        for item in progress.image_results:
            item.status = ItemStatus.READY
        progress.video_results[0].status = ItemStatus.SUBMITTED

        async def scenario():
            await store.save_project(project)
            await store.save_job_progress(progress)
            await orchestrator.recover_interrupted_jobs()
            await orchestrator.resume_project(project.id)
            return await store.get_project(project.id)

        saved = asyncio.run(scenario())

        assert saved.status == ProjectStatus.COMPLETED
        assert prompts_entered(gateway) == ["animate 2"]
        assert gateway.params_for(Action.ATTACH_START_FRAME) == [{"imageIndex": 1}]
