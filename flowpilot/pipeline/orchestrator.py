"""
ProjectOrchestrator — drives one project at a time through its phases.

  start_project(id)
    ├─ preconditions (fail fast, nothing mutated)
    ├─ load or create JobProgress, mark project running
    ├─ open a brand-new remote workspace
    ├─ settings hard gate (3 attempts, fatal)
    └─ dispatch by mode
         frames-to-video: images → count gate → video settings → videos [→ downloads]
         text-to-video:   text-to-video
         create-image:    create-image
  → completed / completed_with_errors / error, one run record, one notification

Lifecycle state lives in a StateMachine built from the registered
"project-lifecycle" table; every transition is mirrored into
JobProgress.current_state and checkpointed to the store.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from .. import metrics
from ..actions import Action
from ..cancellation import CancellationToken
from ..config import RuntimeConfig, config as default_config
from ..downloads import DownloadManager
from ..errors import (
    GatewayError,
    ItemCountGateError,
    JobAbortedError,
    PreconditionError,
    ProjectAlreadyRunningError,
    SettingsConfigurationError,
    WorkspaceError,
)
from ..gateway import ActionGateway
from ..job_store import JobStore
from ..notifications import Notifier, NullNotifier
from ..prompt_rewriter import PromptRewriter
from ..state_machine import StateMachine, Transition, get_machine, register_machine
from .context import FINISHED_STATES, ActiveJob, StatusListener
from .create_image_phase import run_create_image_phase
from .download_phase import run_download_phase
from .image_phase import run_image_phase
from .models import (
    GenerationMode,
    InterruptedJob,
    ItemStatus,
    JobProgress,
    JobState,
    Phase,
    Project,
    ProjectStatus,
    RunRecord,
    StatusResponse,
    build_video_results,
    now_iso,
)
from .text_to_video_phase import run_text_to_video_phase
from .video_phase import run_video_phase

logger = logging.getLogger(__name__)


# ── Lifecycle transition table ───────────────────────────────────────────────

LIFECYCLE_MACHINE = "project-lifecycle"

PHASE_STATES = [
    JobState.IMAGE_PHASE,
    JobState.VIDEO_PHASE,
    JobState.TEXT_TO_VIDEO_PHASE,
    JobState.CREATE_IMAGE_PHASE,
]

MODE_PHASE_STATE = {
    GenerationMode.FRAMES_TO_VIDEO: JobState.IMAGE_PHASE,
    GenerationMode.TEXT_TO_VIDEO: JobState.TEXT_TO_VIDEO_PHASE,
    GenerationMode.CREATE_IMAGE: JobState.CREATE_IMAGE_PHASE,
}

MODE_FIRST_PHASE = {
    GenerationMode.FRAMES_TO_VIDEO: Phase.IMAGES,
    GenerationMode.TEXT_TO_VIDEO: Phase.TEXT_TO_VIDEO,
    GenerationMode.CREATE_IMAGE: Phase.CREATE_IMAGE,
}


def _mode_is(mode: GenerationMode):
    return lambda ctx, payload: ctx.get("mode") == mode.value


def _paused_from(state: JobState):
    return lambda ctx, payload: ctx.get("paused_from") == state.value


def _lifecycle_table() -> dict[str, list[Transition]]:
    table: dict[str, list[Transition]] = {state.value: [] for state in JobState}

    for state in JobState:
        table[state.value].append(Transition("start", JobState.CONFIGURING.value))
        table[state.value].append(Transition("stop", JobState.IDLE.value))
        if state != JobState.COMPLETED:
            table[state.value].append(Transition("fail", JobState.ERROR.value))

    for mode, phase_state in MODE_PHASE_STATE.items():
        table[JobState.CONFIGURING.value].append(
            Transition("configured", phase_state.value, guard=_mode_is(mode))
        )
    table[JobState.IMAGE_PHASE.value].append(Transition("images_done", JobState.VIDEO_PHASE.value))

    for state in [JobState.CONFIGURING, *PHASE_STATES]:
        table[state.value].append(Transition("pause", JobState.PAUSED.value))
        table[JobState.PAUSED.value].append(
            Transition("resume", state.value, guard=_paused_from(state))
        )
    for state in PHASE_STATES:
        table[state.value].append(Transition("complete", JobState.COMPLETED.value))

    return table


register_machine(LIFECYCLE_MACHINE, _lifecycle_table())


# ── Preconditions ────────────────────────────────────────────────────────────

def validate_project(project: Project) -> None:
    """Raise PreconditionError if the project cannot run in its mode."""
    if project.mode == GenerationMode.FRAMES_TO_VIDEO:
        if not project.image_prompts:
            raise PreconditionError("Frames-to-video needs at least one image prompt")
        if not project.animation_prompts:
            raise PreconditionError("Frames-to-video needs at least one animation prompt")
        transitions = len(project.image_prompts) - 1
        if not project.single_image_mode and len(project.animation_prompts) < transitions:
            logger.warning(
                f"[{project.id}] {len(project.animation_prompts)} animation prompts for "
                f"{transitions} transitions — the last prompt will be reused"
            )
    elif project.mode == GenerationMode.TEXT_TO_VIDEO:
        if not project.video_prompts:
            raise PreconditionError("Text-to-video needs at least one video prompt")
    elif project.mode == GenerationMode.CREATE_IMAGE:
        if not project.image_prompts:
            raise PreconditionError("Create-image needs at least one image prompt")
    else:
        raise PreconditionError(f"Unknown generation mode: {project.mode}")


def _duration_ms(started_at: Optional[str]) -> Optional[int]:
    if not started_at:
        return None
    try:
        start = datetime.fromisoformat(started_at)
    except ValueError:
        return None
    return int((datetime.now(timezone.utc) - start).total_seconds() * 1000)


# ── Orchestrator ─────────────────────────────────────────────────────────────

class ProjectOrchestrator:
    """
    Owns at most one ActiveJob.

    Usage:
        orchestrator = ProjectOrchestrator(store, gateway)
        await orchestrator.start_project(project_id)            # runs to the end
        await orchestrator.start_project_background(project_id) # returns at once
    """

    def __init__(
        self,
        store: JobStore,
        gateway: ActionGateway,
        notifier: Optional[Notifier] = None,
        rewriter: Optional[PromptRewriter] = None,
        downloader: Optional[DownloadManager] = None,
        config: Optional[RuntimeConfig] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.notifier = notifier or NullNotifier()
        self.rewriter = rewriter
        self.downloader = downloader
        self.config = config or default_config
        self._job: Optional[ActiveJob] = None
        self._task: Optional[asyncio.Task] = None
        self._listeners: list[StatusListener] = []
        self.interrupted: list[InterruptedJob] = []

    @property
    def active_job(self) -> Optional[ActiveJob]:
        return self._job

    # ── Status ───────────────────────────────────────────────────────────

    def get_status(self) -> StatusResponse:
        if self._job is None:
            return StatusResponse()
        return self._job.status()

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a status listener; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ── Start ────────────────────────────────────────────────────────────

    async def start_project(self, project_id: str) -> StatusResponse:
        job = await self._prepare(project_id)
        await self._run(job)
        return job.status()

    async def start_project_background(self, project_id: str) -> StatusResponse:
        """Validate and prepare now, run the phases in a background task."""
        job = await self._prepare(project_id)
        self._task = asyncio.create_task(self._run(job))
        return job.status()

    async def wait(self) -> None:
        """Wait for the background run, if any, to finish."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _prepare(self, project_id: str) -> ActiveJob:
        status = self.get_status()
        if status.running:
            raise ProjectAlreadyRunningError(status.project_id)

        project = await self.store.get_project(project_id)
        if project is None:
            raise PreconditionError(f"Project not found: {project_id}")
        validate_project(project)

        progress = await self.store.get_job_progress(project_id)
        if progress is None or progress.current_state == JobState.COMPLETED:
            progress = JobProgress.for_project(project)
            logger.info(f"[{project_id}] Created fresh job progress")
        else:
            logger.info(f"[{project_id}] Resuming from saved progress (state={progress.current_state.value})")

        job = ActiveJob(
            project=project,
            progress=progress,
            token=CancellationToken(self.config.pause_poll_interval),
            store=self.store,
            gateway=self.gateway,
            config=self.config,
            notifier=self.notifier,
            rewriter=self.rewriter,
            downloader=self.downloader,
            listeners=self._listeners,
        )
        job.fsm = self._build_fsm(job)

        project.status = ProjectStatus.RUNNING
        progress.phase = MODE_FIRST_PHASE[project.mode]
        progress.paused_phase = None
        progress.paused_state = None
        progress.started_at = progress.started_at or now_iso()
        await job.persist_project()
        await job.persist()

        if self._job is not None and self._job.fsm is not None:
            self._job.fsm.destroy()
        self._job = job
        metrics.set_gauge("active_job", 1)
        metrics.inc_counter("runs.started")

        await self._transition(job, "start")
        logger.info(f"[{project_id}] Project \"{project.name}\" started ({project.mode.value})")
        return job

    # ── FSM wiring ───────────────────────────────────────────────────────

    def _build_fsm(self, job: ActiveJob) -> StateMachine:
        definition = get_machine(LIFECYCLE_MACHINE)
        progress = job.progress
        context = {"mode": job.project.mode.value}
        if progress.paused_state is not None:
            context["paused_from"] = progress.paused_state.value

        async def on_transition(previous: str, target: str, event: str, payload: dict):
            progress.current_state = JobState(target)
            logger.info(f"[{job.project_id}] {previous} → {target} ({event})")

        async def on_checkpoint(snapshot: dict):
            progress.fsm_history = snapshot["history"]
            await job.persist()
            job.broadcast()

        if progress.current_state == JobState.IDLE and not progress.fsm_history:
            return StateMachine.create(
                job.project_id,
                JobState.IDLE.value,
                definition,
                context=context,
                on_transition=on_transition,
                on_checkpoint=on_checkpoint,
            )
        snapshot = {
            "id": job.project_id,
            "state": progress.current_state.value,
            "context": context,
            "history": progress.fsm_history,
        }
        return StateMachine.restore(
            snapshot, definition, on_transition=on_transition, on_checkpoint=on_checkpoint
        )

    async def _transition(self, job: ActiveJob, event: str, payload: Optional[dict] = None) -> bool:
        result = await job.fsm.send(event, payload)
        if not result.changed:
            logger.warning(
                f"[{job.project_id}] Lifecycle event '{event}' ignored in state '{result.state}' ({result.reason})"
            )
        return result.changed

    # ── Run ──────────────────────────────────────────────────────────────

    async def _run(self, job: ActiveJob) -> None:
        project = job.project
        progress = job.progress
        pid = project.id

        try:
            await self._open_workspace(job)

            # Frames-to-video renders images first, then switches the editor to video
            settings_mode = (
                GenerationMode.CREATE_IMAGE
                if project.mode == GenerationMode.FRAMES_TO_VIDEO
                else project.mode
            )
            await self._configure_settings(job, settings_mode, hard=True)
            await job.sleep(self.config.settle_delay)
            await self._transition(job, "configured")

            if project.mode == GenerationMode.TEXT_TO_VIDEO:
                await run_text_to_video_phase(job)
            elif project.mode == GenerationMode.CREATE_IMAGE:
                await run_create_image_phase(job)
            else:
                await run_image_phase(job)
                await job.token.checkpoint()
                await self._verify_image_count(job)

                logger.info(f"[{pid}] Switching settings to video frames for the video phase...")
                if not await self._configure_settings(job, GenerationMode.FRAMES_TO_VIDEO, hard=False):
                    logger.error(f"[{pid}] Failed to switch to video settings — proceeding with caution")
                await job.sleep(self.config.settle_delay)

                progress.phase = Phase.VIDEOS
                await self._transition(job, "images_done")
                await run_video_phase(job)

                if project.settings.auto_download:
                    await job.token.checkpoint()
                    progress.phase = Phase.DOWNLOADS
                    await job.persist()
                    await run_download_phase(job)

            await job.token.checkpoint()
            await self._finish(job)

        except JobAbortedError:
            logger.info(f"[{pid}] Run aborted")
        except Exception as e:
            if job.token.aborted:
                logger.info(f"[{pid}] Run aborted ({e})")
                return
            logger.error(f"[{pid}] Project failed: {e}", exc_info=True)
            await self._fail(job, str(e))
        finally:
            if self._job is job and job.fsm.state in (JobState.COMPLETED.value, JobState.ERROR.value):
                metrics.set_gauge("active_job", 0)

    async def _open_workspace(self, job: ActiveJob) -> None:
        """Always start from a brand-new remote project; never reuse an old one."""
        cfg = self.config
        pid = job.project_id
        logger.info(f"[{pid}] Pre-flight: creating a new remote project...")

        try:
            nav = await job.send(Action.NAVIGATE, {"url": cfg.dashboard_url})
            if not nav.success:
                logger.warning(f"[{pid}] Dashboard navigation failed: {nav.error}")
        except GatewayError as e:
            logger.warning(f"[{pid}] Dashboard navigation failed: {e}")
        await job.sleep(cfg.workspace_load_delay)

        try:
            await job.send(Action.CREATE_NEW_PROJECT)
        except GatewayError as e:
            logger.warning(f"[{pid}] CREATE_NEW_PROJECT failed (may be due to navigation): {e}")

        for attempt in range(1, cfg.editor_check_attempts + 1):
            await job.sleep(cfg.editor_check_interval)
            try:
                page = await job.send(Action.CHECK_FLOW_PAGE)
            except GatewayError as e:
                logger.info(f"[{pid}] Editor check {attempt}/{cfg.editor_check_attempts} failed: {e}")
                continue
            if page.get("hasPromptInput") or page.get("isEditorPage"):
                url = page.get("url") or ""
                if "/project/" in url:
                    job.project.remote_url = url
                    await job.persist_project()
                    logger.info(f"[{pid}] Captured remote project URL: {url}")
                logger.info(f"[{pid}] New project editor is ready")
                return

        raise WorkspaceError("Remote project editor did not load. Please try again.")

    async def _configure_settings(self, job: ActiveJob, mode: GenerationMode, hard: bool) -> bool:
        cfg = self.config
        project = job.project
        params = {
            "mode": mode.value,
            "aspectRatio": project.aspect_ratio,
            "outputCount": project.output_count,
            "imageModel": project.image_model,
            "videoModel": project.video_model,
        }

        for attempt in range(1, cfg.settings_attempts + 1):
            try:
                result = await job.send(Action.CONFIGURE_SETTINGS, params)
                if result.success:
                    logger.info(f"[{job.project_id}] Settings configured on attempt {attempt} (mode: {mode.value})")
                    return True
                logger.warning(
                    f"[{job.project_id}] Settings attempt {attempt}/{cfg.settings_attempts} "
                    f"returned failure: {result.error or 'unknown'}"
                )
            except GatewayError as e:
                logger.warning(f"[{job.project_id}] Settings attempt {attempt}/{cfg.settings_attempts} failed: {e}")
            if attempt < cfg.settings_attempts:
                await job.sleep(cfg.settings_retry_delay)

        if hard:
            raise SettingsConfigurationError(
                f"Failed to configure settings (aspect ratio / output count) after "
                f"{cfg.settings_attempts} attempts. Aborting to prevent wrong settings."
            )
        return False

    async def _verify_image_count(self, job: ActiveJob) -> None:
        """Reconcile total_images with what the remote page actually shows."""
        project = job.project
        progress = job.progress
        pid = job.project_id

        try:
            result = await job.send(Action.COUNT_IMAGES)
        except GatewayError as e:
            logger.warning(f"[{pid}] Image count gate check failed: {e} — proceeding with original count")
            return
        try:
            actual = int(result.get("count"))
        except (TypeError, ValueError):
            logger.warning(
                f"[{pid}] Image count gate got no usable count ({result.get('count')!r}) — "
                f"proceeding with original count"
            )
            return

        expected = progress.total_images
        if actual != expected:
            logger.warning(f"[{pid}] Image count mismatch: expected {expected}, found {actual} on page")
            progress.total_images = actual
            if all(r.status == ItemStatus.PENDING for r in progress.video_results):
                progress.video_results = build_video_results(
                    actual, len(project.animation_prompts), project.single_image_mode
                )
                progress.total_videos = len(progress.video_results)
            else:
                logger.info(f"[{pid}] Videos already started — keeping the existing video list")
            await job.persist()
        else:
            logger.info(f"[{pid}] Image count verified: {actual}")

        if actual < 2 and not project.single_image_mode:
            raise ItemCountGateError(
                f"Only {actual} image(s) generated — need at least 2 for transitions. Aborting video phase."
            )

    # ── Terminal outcomes ────────────────────────────────────────────────

    async def _finish(self, job: ActiveJob) -> None:
        project = job.project
        progress = job.progress
        has_errors = progress.has_errors()

        await self._transition(job, "complete")
        project.status = ProjectStatus.COMPLETED_WITH_ERRORS if has_errors else ProjectStatus.COMPLETED
        await job.persist_project()
        await self._record_run(job, project.status)
        metrics.inc_counter(f"runs.{project.status.value}")
        await job.notify(self.notifier.notify_completed(project, progress))
        job.fsm.destroy()
        job.broadcast()
        logger.info(f"[{project.id}] Project completed: \"{project.name}\" ({project.status.value})")

    async def _fail(self, job: ActiveJob, message: str) -> None:
        project = job.project
        progress = job.progress

        progress.last_error = message
        if not await self._transition(job, "fail"):
            progress.current_state = JobState.ERROR
            await job.persist()
        project.status = ProjectStatus.ERROR
        await job.persist_project()
        await self._record_run(job, ProjectStatus.ERROR, message)
        metrics.inc_counter("runs.error")
        metrics.record_error("orchestrator", "run_failed", message, project.id)
        await job.notify(self.notifier.notify_error(project, progress, message))
        job.fsm.destroy()
        job.broadcast()

    async def _record_run(self, job: ActiveJob, status: ProjectStatus, error: Optional[str] = None) -> None:
        progress = job.progress
        record = RunRecord(
            project_id=job.project.id,
            project_name=job.project.name,
            status=status,
            started_at=progress.started_at,
            duration_ms=_duration_ms(progress.started_at),
            total_images=progress.total_images,
            total_videos=progress.total_videos,
            images_completed=sum(1 for r in progress.image_results if r.status == ItemStatus.READY),
            videos_completed=sum(
                1 for r in progress.video_results
                if r.status in (ItemStatus.SUBMITTED, ItemStatus.DOWNLOADED)
            ),
            error=error,
        )
        try:
            await self.store.save_run_record(record)
            logger.info(f"[{job.project_id}] Run history recorded ({record.id})")
        except Exception as e:
            logger.warning(f"[{job.project_id}] Failed to record run history: {e}")

    # ── Control ──────────────────────────────────────────────────────────

    async def pause_project(self) -> StatusResponse:
        job = self._job
        if job is None or not job.status().running:
            raise PreconditionError("No running project to pause")
        if job.token.paused:
            return job.status()

        current = job.progress.current_state
        job.token.pause()
        job.progress.paused_phase = job.progress.phase
        job.progress.paused_state = current
        await self._transition(job, "pause")

        job.project.status = ProjectStatus.PAUSED
        await job.persist_project()
        logger.info(f"[{job.project_id}] Paused in {current.value}")
        return job.status()

    async def resume_project(self, project_id: str, background: bool = False) -> StatusResponse:
        job = self._job
        if job is not None and job.project_id == project_id and job.token.paused and not job.token.aborted:
            progress = job.progress
            if progress.paused_state is not None:
                job.fsm.update_context(paused_from=progress.paused_state.value)
            await self._transition(job, "resume")
            if progress.paused_phase is not None:
                progress.phase = progress.paused_phase
            job.progress.paused_phase = None
            job.progress.paused_state = None
            job.project.status = ProjectStatus.RUNNING
            await job.persist()
            await job.persist_project()
            job.token.resume()
            logger.info(f"[{project_id}] Resumed in place")
            return job.status()

        # Cold resume: re-enter from persisted progress with a fresh remote workspace
        progress = await self.store.get_job_progress(project_id)
        if progress is None:
            raise PreconditionError(f"No saved progress for project {project_id}")
        logger.info(f"[{project_id}] Cold resume from {progress.phase.value} (index {progress.current_index})")
        if background:
            return await self.start_project_background(project_id)
        return await self.start_project(project_id)

    async def stop_project(self) -> StatusResponse:
        job = self._job
        if job is None:
            return StatusResponse()
        if job.progress.current_state in FINISHED_STATES:
            # A finished run keeps its terminal state
            self._job = None
            metrics.set_gauge("active_job", 0)
            logger.info(f"[{job.project_id}] Stop ignored, run already {job.progress.current_state.value}")
            return StatusResponse()

        job.token.abort()
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            await self._await_unwind(job, task)
        await self._transition(job, "stop")
        job.progress.current_state = JobState.IDLE
        job.project.status = ProjectStatus.READY
        await job.persist()
        await job.persist_project()
        job.fsm.destroy()
        job.broadcast()

        self._job = None
        metrics.set_gauge("active_job", 0)
        logger.info(f"[{job.project_id}] Stopped")
        return StatusResponse()

    async def _await_unwind(self, job: ActiveJob, task: asyncio.Task) -> None:
        """Give the aborted run stop_grace_period seconds to reach a checkpoint, then cancel it."""
        grace = self.config.stop_grace_period
        done, _ = await asyncio.wait({task}, timeout=grace)
        if done:
            return
        logger.warning(f"[{job.project_id}] Run still inside a remote call after {grace:.0f}s — cancelling it")
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    # ── Crash recovery ───────────────────────────────────────────────────

    async def recover_interrupted_jobs(self) -> list[InterruptedJob]:
        """Projects left running by a dead process are parked as paused."""
        interrupted = []
        for project in await self.store.list_projects():
            if project.status != ProjectStatus.RUNNING:
                continue
            if self._job is not None and self._job.project_id == project.id:
                continue

            project.status = ProjectStatus.PAUSED
            await self.store.save_project(project)

            progress = await self.store.get_job_progress(project.id)
            if progress is None:
                continue
            progress.paused_phase = progress.phase
            progress.paused_state = progress.current_state
            progress.current_state = JobState.PAUSED
            await self.store.save_job_progress(progress)

            interrupted.append(InterruptedJob(
                project_id=project.id,
                project_name=project.name,
                phase=progress.paused_phase,
                current_index=progress.current_index,
                total_images=progress.total_images,
                total_videos=progress.total_videos,
                images_completed=progress.count(progress.image_results),
            ))
            logger.warning(f"[{project.id}] Interrupted job found in {progress.phase.value}, parked as paused")

        self.interrupted = interrupted
        return interrupted
