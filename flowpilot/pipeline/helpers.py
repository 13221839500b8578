"""
Control pattern shared by every phase module.

  start = find_start_index(results)        # skip the completed prefix
  for i in range(start, len(results)):
      await run_item(job, results, i, attempt, label=...)

run_item gives each item max_retries + 1 attempts with backoff in between.
On exhaustion the item is marked error and the phase moves on
(skip-and-continue). JobAbortedError always propagates.
"""

import logging
import time
from typing import Awaitable, Callable, Optional

from .. import metrics
from ..backoff import backoff
from ..errors import JobAbortedError
from .context import ActiveJob
from .models import DONE_STATUSES, ItemResult, ItemStatus

logger = logging.getLogger(__name__)

Attempt = Callable[[int], Awaitable[ItemStatus]]


def find_start_index(results: list[ItemResult]) -> int:
    """Length of the contiguous prefix of finished items."""
    for i, item in enumerate(results):
        if item.status not in DONE_STATUSES:
            return i
    return len(results)


async def begin_item(job: ActiveJob, item: ItemResult) -> None:
    if item.status in (ItemStatus.GENERATING, ItemStatus.ERROR):
        # Left over from an earlier run of this phase
        item.reset()
    item.advance(ItemStatus.GENERATING)
    job.progress.current_index = item.index
    await job.persist()
    job.broadcast()


async def finish_item(job: ActiveJob, item: ItemResult, status: ItemStatus) -> None:
    item.advance(status)
    job.progress.retry_count = 0
    await job.persist()
    job.broadcast()


async def run_item(
    job: ActiveJob,
    results: list[ItemResult],
    index: int,
    attempt: Attempt,
    label: Optional[str] = None,
) -> bool:
    """
    Drive one item to a terminal status.

    `attempt(retry_number)` performs the full action sequence once and
    returns the status to advance to (READY or SUBMITTED); any exception
    counts as a failed attempt. Returns True on success.
    """
    item = results[index]
    label = label or f"Item {index + 1}"
    phase = job.progress.phase.value
    max_retries = job.project.settings.max_retries

    await begin_item(job, item)
    started = time.monotonic()
    retries = 0

    while True:
        await job.token.checkpoint()
        try:
            outcome = await attempt(retries)
        except JobAbortedError:
            raise
        except Exception as e:
            retries += 1
            item.retry_count = retries
            item.error = str(e)
            job.progress.retry_count = retries
            job.progress.last_error = str(e)
            metrics.inc_counter(f"items.{phase}.retry")
            logger.warning(f"[{job.project_id}] {label} attempt {retries} failed: {e}")

            if retries > max_retries:
                item.advance(ItemStatus.ERROR)
                await job.persist()
                job.broadcast()
                metrics.inc_counter(f"items.{phase}.error")
                metrics.record_error(phase, type(e).__name__, str(e), job.project_id)
                logger.error(f"[{job.project_id}] {label} failed after {max_retries} retries — skipping")
                return False

            await job.persist()
            job.broadcast()
            await backoff(job.token, retries, job.config)
            continue

        await finish_item(job, item, outcome)
        metrics.inc_counter(f"items.{phase}.ready")
        metrics.record_latency(phase, time.monotonic() - started)
        logger.info(f"[{job.project_id}] {label} {outcome.value}")
        return True
