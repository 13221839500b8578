"""
Video concurrency throttle.

The remote app renders at most MAX_CONCURRENT_VIDEOS videos at once. Before
submitting the 6th and later videos, poll COUNT_PENDING_VIDEOS until a slot
frees up. The throttle is advisory: a failed query, or waiting longer than
video_slot_max_wait, lets the submission proceed.
"""

import logging
import time
from typing import TYPE_CHECKING, Callable

from .actions import Action
from .errors import JobAbortedError

if TYPE_CHECKING:
    from .pipeline.context import ActiveJob

logger = logging.getLogger(__name__)

MAX_CONCURRENT_VIDEOS = 5


def needs_slot(index: int, limit: int = MAX_CONCURRENT_VIDEOS) -> bool:
    return index >= limit


async def wait_for_video_slot(
    job: "ActiveJob",
    index: int,
    total: int,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """
    Block until fewer than max_concurrent_videos are pending.

    Returns True when a slot was observed, False when proceeding without one
    (query failure or max wait elapsed). Abort raises JobAbortedError.
    """
    cfg = job.config
    limit = cfg.max_concurrent_videos
    started = clock()
    logger.info(f"[{job.project_id}] Video {index + 1}/{total}: checking concurrent video limit...")

    while True:
        try:
            result = await job.send(Action.COUNT_PENDING_VIDEOS)
            pending = int(result.get("pending", 0) or 0)
        except JobAbortedError:
            raise
        except Exception as e:
            logger.warning(f"[{job.project_id}] COUNT_PENDING_VIDEOS failed: {e} — proceeding without throttle")
            return False

        if pending < limit:
            logger.info(f"[{job.project_id}] Video slot available: {pending} pending (limit: {limit})")
            return True

        elapsed = clock() - started
        if elapsed >= cfg.video_slot_max_wait:
            logger.warning(
                f"[{job.project_id}] Video slot wait timed out after {elapsed:.0f}s — proceeding anyway"
            )
            return False

        logger.info(f"[{job.project_id}] {pending} videos still rendering — waiting for a slot ({elapsed:.0f}s)")
        await job.sleep(cfg.video_slot_poll_interval)
