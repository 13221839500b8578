"""
Download phase: wait for submitted videos to render, then save them locally.

Polls COUNT_COMPLETED_VIDEOS on the videos tab until every expected video is
done or download_max_wait elapses, then fetches GET_VIDEO_URLS and downloads
each one. A failed download is logged and skipped.
"""

import logging
import time
from typing import Callable

from ..actions import Action
from ..errors import GatewayError
from .context import ActiveJob
from .models import ItemStatus

logger = logging.getLogger(__name__)


async def _count_completed(job: ActiveJob) -> int:
    try:
        result = await job.send(Action.COUNT_COMPLETED_VIDEOS)
    except GatewayError as e:
        logger.warning(f"[{job.project_id}] COUNT_COMPLETED_VIDEOS failed: {e}")
        return 0
    return int(result.get("count", 0) or 0)


async def run_download_phase(job: ActiveJob, clock: Callable[[], float] = time.monotonic) -> None:
    cfg = job.config
    pid = job.project_id
    results = job.progress.video_results
    expected = len(results)

    if expected == 0:
        return
    if job.downloader is None:
        logger.warning(f"[{pid}] No download manager configured — skipping download phase")
        return

    logger.info(f"[{pid}] Download phase: waiting for {expected} videos to complete")
    switched = await job.send(Action.SWITCH_TO_VIDEOS_TAB)
    if not switched.success:
        logger.warning(f"[{pid}] Could not switch to videos tab: {switched.error}")
    await job.sleep(cfg.settle_delay)

    started = clock()
    completed = 0
    while True:
        completed = await _count_completed(job)
        logger.info(f"[{pid}] Videos ready: {completed}/{expected}")
        if completed >= expected:
            break
        if clock() - started >= cfg.download_max_wait:
            logger.warning(f"[{pid}] Only {completed}/{expected} videos completed within timeout")
            break
        await job.sleep(cfg.download_poll_interval)

    if completed == 0:
        return

    urls = await job.send(Action.GET_VIDEO_URLS)
    videos = urls.get("videos") or []

    for i, video in enumerate(videos[:expected]):
        await job.token.checkpoint()
        src = video.get("src") if isinstance(video, dict) else video
        if not src:
            continue
        item = results[i]
        try:
            path = await job.downloader.download_video(src, job.project.name, item.filename)
        except Exception as e:
            logger.warning(f"[{pid}] Video {i + 1} download failed: {e}")
            continue

        item.download_path = str(path)
        if item.status in (ItemStatus.READY, ItemStatus.SUBMITTED):
            item.advance(ItemStatus.DOWNLOADED)
        await job.persist()
        job.broadcast()
        logger.info(f"[{pid}] Video {i + 1} downloaded")

    logger.info(f"[{pid}] Download phase complete")
