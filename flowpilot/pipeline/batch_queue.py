"""
Batch queue — runs queued projects one after another.

  entries:  [completed, completed, queued, error, queued]
                                   ▲ next      skipped ▲

Each project goes through ProjectOrchestrator.start_project; an errored
project is marked and the batch moves on. Between projects the runner
cools down for batch_cooldown seconds, checked in 1 s slices so stop and
pause take effect promptly. Queue state is persisted through the JobStore
after every change.
"""

import asyncio
import logging
import time
from typing import Optional

from ..config import RuntimeConfig, config as default_config
from ..errors import PreconditionError
from ..job_store import JobStore
from .models import BatchEntry, BatchEntryStatus, BatchQueue, BatchStatus, JobState
from .orchestrator import ProjectOrchestrator

logger = logging.getLogger(__name__)

COOLDOWN_SLICE = 1.0  # seconds


class BatchQueueRunner:
    def __init__(
        self,
        orchestrator: ProjectOrchestrator,
        store: JobStore,
        config: Optional[RuntimeConfig] = None,
    ):
        self.orchestrator = orchestrator
        self.store = store
        self.config = config or default_config
        self._queue: Optional[BatchQueue] = None
        self._task: Optional[asyncio.Task] = None
        self._stop_requested = False

    # ── Queue state ──────────────────────────────────────────────────────

    async def load(self) -> BatchQueue:
        if self._queue is None:
            self._queue = await self.store.get_batch_queue()
        return self._queue

    async def _save(self) -> None:
        await self.store.save_batch_queue(self._queue)

    async def get_status(self) -> BatchQueue:
        return (await self.load()).model_copy(deep=True)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ── Editing ──────────────────────────────────────────────────────────

    async def add_project(self, project_id: str) -> BatchQueue:
        queue = await self.load()
        if project_id in queue.ids():
            logger.info(f"Batch: project {project_id} already queued")
            return await self.get_status()
        if await self.store.get_project(project_id) is None:
            raise PreconditionError(f"Project not found: {project_id}")

        queue.entries.append(BatchEntry(project_id=project_id))
        await self._save()
        logger.info(f"Batch: queued project {project_id} (position {len(queue.entries)})")
        return await self.get_status()

    async def remove_project(self, project_id: str) -> BatchQueue:
        queue = await self.load()
        entry = next((e for e in queue.entries if e.project_id == project_id), None)
        if entry is None:
            raise PreconditionError(f"Project {project_id} is not in the batch queue")
        if entry.status == BatchEntryStatus.RUNNING:
            raise PreconditionError("Cannot remove the project that is currently running")

        queue.entries.remove(entry)
        await self._save()
        logger.info(f"Batch: removed project {project_id}")
        return await self.get_status()

    async def reorder(self, project_ids: list[str]) -> BatchQueue:
        """Reorder entries; project_ids must name every queued project exactly once."""
        queue = await self.load()
        if sorted(project_ids) != sorted(queue.ids()):
            raise PreconditionError("Reorder must list every project in the batch exactly once")

        by_id = {e.project_id: e for e in queue.entries}
        queue.entries = [by_id[pid] for pid in project_ids]
        await self._save()
        return await self.get_status()

    # ── Run loop ─────────────────────────────────────────────────────────

    def _next_entry(self) -> Optional[BatchEntry]:
        return next((e for e in self._queue.entries if e.status == BatchEntryStatus.QUEUED), None)

    async def run(self) -> None:
        queue = await self.load()
        completed_prefix = 0
        for entry in queue.entries:
            if entry.status != BatchEntryStatus.COMPLETED:
                break
            completed_prefix += 1
        logger.info(f"Batch: starting with {len(queue.entries)} projects ({completed_prefix} already completed)")

        while not self._stop_requested:
            await self._wait_while_paused()
            if self._stop_requested:
                break

            entry = self._next_entry()
            if entry is None:
                break

            await self._run_entry(entry)
            if self._stop_requested:
                break
            if self._next_entry() is not None:
                await self._cooldown()

        queue.current_index = -1
        queue.waiting_until = None
        if not self._stop_requested:
            queue.status = BatchStatus.COMPLETED
            failed = sum(1 for e in queue.entries if e.status == BatchEntryStatus.ERROR)
            logger.info(f"Batch: finished ({failed} failed)")
        await self._save()

    async def _run_entry(self, entry: BatchEntry) -> None:
        queue = self._queue
        entry.status = BatchEntryStatus.RUNNING
        entry.error = None
        queue.current_index = queue.entries.index(entry)
        await self._save()
        logger.info(f"Batch: project {queue.current_index + 1}/{len(queue.entries)} ({entry.project_id})")

        try:
            status = await self.orchestrator.start_project(entry.project_id)
        except Exception as e:
            entry.status = BatchEntryStatus.ERROR
            entry.error = str(e)
            logger.error(f"Batch: project {entry.project_id} could not start: {e}")
            await self._save()
            return

        if self._stop_requested:
            entry.status = BatchEntryStatus.QUEUED
        elif status.state == JobState.ERROR:
            entry.status = BatchEntryStatus.ERROR
            entry.error = status.last_error
            logger.warning(f"Batch: project {entry.project_id} failed: {status.last_error}")
        else:
            entry.status = BatchEntryStatus.COMPLETED
        await self._save()

    async def _cooldown(self) -> None:
        cooldown = self.config.batch_cooldown
        if cooldown <= 0:
            return
        deadline = time.time() + cooldown
        self._queue.waiting_until = deadline
        await self._save()
        logger.info(f"Batch: cooling down {cooldown:.0f}s before the next project")

        while not self._stop_requested:
            remaining = deadline - time.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(COOLDOWN_SLICE, remaining))

        self._queue.waiting_until = None

    async def _wait_while_paused(self) -> None:
        while self._queue.status == BatchStatus.PAUSED and not self._stop_requested:
            await asyncio.sleep(COOLDOWN_SLICE)

    # ── Control ──────────────────────────────────────────────────────────

    async def start(self) -> BatchQueue:
        queue = await self.load()
        if self.running:
            raise PreconditionError("Batch is already running")
        if not queue.entries:
            raise PreconditionError("Batch queue is empty")

        # Entries left running by an earlier process go back to the queue
        for entry in queue.entries:
            if entry.status == BatchEntryStatus.RUNNING:
                entry.status = BatchEntryStatus.QUEUED

        self._stop_requested = False
        queue.status = BatchStatus.RUNNING
        await self._save()
        self._task = asyncio.create_task(self.run())
        return await self.get_status()

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def pause(self) -> BatchQueue:
        queue = await self.load()
        if queue.status != BatchStatus.RUNNING:
            raise PreconditionError("Batch is not running")

        queue.status = BatchStatus.PAUSED
        await self._save()
        if self.orchestrator.get_status().running:
            await self.orchestrator.pause_project()
        logger.info("Batch: paused")
        return await self.get_status()

    async def resume(self) -> BatchQueue:
        queue = await self.load()
        if queue.status != BatchStatus.PAUSED:
            raise PreconditionError("Batch is not paused")

        queue.status = BatchStatus.RUNNING
        await self._save()

        status = self.orchestrator.get_status()
        if status.state == JobState.PAUSED and status.project_id:
            await self.orchestrator.resume_project(status.project_id)
        if not self.running:
            self._stop_requested = False
            self._task = asyncio.create_task(self.run())
        logger.info("Batch: resumed")
        return await self.get_status()

    async def stop(self) -> BatchQueue:
        queue = await self.load()
        self._stop_requested = True
        queue.status = BatchStatus.STOPPED
        await self._save()

        if self.orchestrator.get_status().running:
            await self.orchestrator.stop_project()
        if self.running:
            grace = self.config.stop_grace_period
            done, _ = await asyncio.wait({self._task}, timeout=grace)
            if not done:
                logger.warning(f"Batch: current project still inside a remote call after {grace:.0f}s — cancelling")
                self._task.cancel()
        await self.wait()

        for entry in queue.entries:
            if entry.status == BatchEntryStatus.RUNNING:
                entry.status = BatchEntryStatus.QUEUED
        queue.current_index = -1
        queue.waiting_until = None
        await self._save()
        logger.info("Batch: stopped")
        return await self.get_status()

    async def retry_failed(self) -> BatchQueue:
        queue = await self.load()
        failed = [e for e in queue.entries if e.status == BatchEntryStatus.ERROR]
        if not failed:
            raise PreconditionError("No failed projects to retry")
        for entry in failed:
            entry.status = BatchEntryStatus.QUEUED
            entry.error = None
        await self._save()
        logger.info(f"Batch: re-queued {len(failed)} failed project(s)")

        if self.running:
            return await self.get_status()
        return await self.start()
