"""
Text-to-video phase: submit every video prompt, then wait for the renders.

Submission is sequential and throttled like the video phase. The wait loop
polls COUNT_PENDING_VIDEOS and promotes finished items to DOWNLOADED. It is
optimistic: after t2v_max_wait, or when the page shows no videos at all
after a short grace period, the phase assumes completion instead of failing.
"""

import logging
import time
from typing import Callable

from ..actions import Action
from ..errors import JobAbortedError
from ..gateway import require_success
from ..throttle import needs_slot, wait_for_video_slot
from .context import ActiveJob
from .helpers import find_start_index, run_item
from .models import ItemStatus

logger = logging.getLogger(__name__)

RENDERED_FROM = (ItemStatus.SUBMITTED, ItemStatus.READY)


def _mark_rendered(job: ActiveJob, completed: int) -> None:
    for item in job.progress.video_results[:completed]:
        if item.status in RENDERED_FROM:
            item.advance(ItemStatus.DOWNLOADED)


async def wait_for_renders(job: ActiveJob, clock: Callable[[], float] = time.monotonic) -> None:
    cfg = job.config
    pid = job.project_id
    started = clock()
    logger.info(f"[{pid}] All prompts submitted — waiting for videos to finish generating...")

    while True:
        elapsed = clock() - started
        try:
            result = await job.send(Action.COUNT_PENDING_VIDEOS)
            pending = int(result.get("pending", 0) or 0)
            completed = int(result.get("completed", 0) or 0)
        except JobAbortedError:
            raise
        except Exception as e:
            logger.warning(f"[{pid}] COUNT_PENDING_VIDEOS failed: {e}")
        else:
            logger.info(f"[{pid}] Video generation: {completed} completed, {pending} pending ({elapsed:.0f}s)")
            _mark_rendered(job, completed)
            await job.persist()
            job.broadcast()

            if pending == 0 and completed > 0:
                _mark_rendered(job, len(job.progress.video_results))
                await job.persist()
                job.broadcast()
                logger.info(f"[{pid}] All {completed} videos finished generating")
                return
            if pending == 0 and completed == 0 and elapsed >= cfg.t2v_empty_grace:
                logger.warning(f"[{pid}] No videos detected on page — assuming they completed")
                return

        if clock() - started >= cfg.t2v_max_wait:
            logger.warning(f"[{pid}] Video wait timed out after {cfg.t2v_max_wait:.0f}s — assuming completion")
            return
        await job.sleep(cfg.t2v_poll_interval)


async def run_text_to_video_phase(job: ActiveJob) -> None:
    prompts = job.project.video_prompts
    results = job.progress.video_results
    total = len(results)

    if total == 0:
        logger.warning(f"[{job.project_id}] No video prompts provided — skipping text-to-video phase")
        return

    start = find_start_index(results)
    logger.info(f"[{job.project_id}] Text-to-video phase: {total} prompts, starting at {start + 1}")

    for i in range(start, total):
        if results[i].done:
            continue
        if needs_slot(i, job.config.max_concurrent_videos):
            await wait_for_video_slot(job, i, total)
        prompt = prompts[i]

        async def attempt(retry: int) -> ItemStatus:
            require_success(await job.send(Action.ENTER_IMAGE_PROMPT, {"prompt": prompt}), "enter prompt")
            await job.sleep(job.config.settle_delay)
            require_success(await job.send(Action.CLICK_GENERATE), "click Create")
            await job.sleep(job.config.submit_settle_delay)
            return ItemStatus.SUBMITTED

        await run_item(job, results, i, attempt, label=f"T2V {i + 1}/{total}")

    await wait_for_renders(job)
