"""
ActiveJob — the single handle a running project is driven through.

The orchestrator owns at most one ActiveJob and passes it explicitly to every
phase function; nothing about the active run lives in module globals.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..actions import Action
from ..cancellation import CancellationToken
from ..config import RuntimeConfig
from ..downloads import DownloadManager
from ..gateway import ActionGateway, ActionResult
from ..job_store import JobStore
from ..notifications import Notifier, notify_safely
from ..prompt_rewriter import PromptRewriter
from ..state_machine import StateMachine
from .models import JobState, JobProgress, Project, StatusResponse

logger = logging.getLogger(__name__)

StatusListener = Callable[[StatusResponse], None]

FINISHED_STATES = {JobState.COMPLETED, JobState.ERROR}


@dataclass
class ActiveJob:
    project: Project
    progress: JobProgress
    token: CancellationToken
    store: JobStore
    gateway: ActionGateway
    config: RuntimeConfig
    notifier: Notifier
    rewriter: Optional[PromptRewriter] = None
    downloader: Optional[DownloadManager] = None
    fsm: Optional[StateMachine] = None
    listeners: list[StatusListener] = field(default_factory=list)

    @property
    def project_id(self) -> str:
        return self.project.id

    # ── Remote calls and delays (suspension points) ──────────────────────

    async def send(self, action: Action, params: Optional[dict] = None) -> ActionResult:
        await self.token.checkpoint()
        return await self.gateway.dispatch(action, params or {})

    async def sleep(self, seconds: float) -> None:
        await self.token.sleep(seconds)

    # ── Persistence and status ───────────────────────────────────────────

    async def persist(self) -> None:
        await self.store.save_job_progress(self.progress)

    async def persist_project(self) -> None:
        await self.store.save_project(self.project)

    def status(self) -> StatusResponse:
        p = self.progress
        return StatusResponse(
            running=not self.token.aborted and p.current_state not in FINISHED_STATES,
            project_id=self.project.id,
            project_name=self.project.name,
            remote_url=self.project.remote_url,
            phase=p.phase,
            state=p.current_state,
            current_index=p.current_index,
            total_images=p.total_images,
            total_videos=p.total_videos,
            image_results=[r.model_copy() for r in p.image_results],
            video_results=[r.model_copy() for r in p.video_results],
            last_error=p.last_error,
        )

    def broadcast(self) -> None:
        if not self.listeners:
            return
        snapshot = self.status()
        for listener in list(self.listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning(f"[{self.project_id}] status listener failed: {e}")

    async def notify(self, call) -> None:
        await notify_safely(call, timeout=self.config.notify_timeout)
