"""
Create-image phase: image-only projects, optionally chained or referenced.

Modes:
  chain      — image 1 may start from chain_first_ref, each later image
               attaches the previous one
  reference  — per-image reference URLs from project.reference_urls
  fast-fire  — no chain and no references: every image but the last is
               submitted without waiting and marked ready (verified=False);
               the last image always waits. Toggled by settings.fast_fire.

Content-policy rejections go through recover_policy_violation() before the
normal retry path sees a failure.
"""

import logging

from .. import metrics
from ..actions import Action
from ..errors import PolicyViolationError
from ..gateway import require_success
from ..prompt_rewriter import RewriteResult
from .context import ActiveJob
from .helpers import find_start_index, run_item
from .image_phase import LAST_IMAGE, generate_and_wait
from .models import ItemStatus, Project

logger = logging.getLogger(__name__)


def can_fast_fire(project: Project) -> bool:
    has_refs = any(url and url.strip() for url in project.reference_urls)
    return project.settings.fast_fire and not project.chain_mode and not has_refs


async def _attach_references(job: ActiveJob, index: int) -> None:
    """Reference attachment is best-effort here: failures are logged, not raised."""
    project = job.project
    pid = job.project_id

    if project.chain_mode:
        first_ref = (project.chain_first_ref or "").strip()
        if index == 0 and first_ref:
            result = await job.send(Action.ATTACH_REFERENCE_URL, {"url": first_ref})
            if not result.success:
                logger.warning(f"[{pid}] Chain first-ref upload failed: {result.error}")
            await job.sleep(job.config.submit_settle_delay)
        elif index > 0:
            result = await job.send(Action.ATTACH_REFERENCE_ADD_TO_PROMPT, {"imageIndex": LAST_IMAGE})
            if not result.success:
                logger.warning(f"[{pid}] Chain auto-ref failed, trying upload fallback")
                fallback = await job.send(Action.ATTACH_REFERENCE_UPLOAD, {"imageIndex": LAST_IMAGE})
                if not fallback.success:
                    logger.warning(f"[{pid}] Chain reference attachment failed for image {index + 1}")
            await job.sleep(job.config.settle_delay)
        return

    ref_url = project.reference_urls[index].strip() if index < len(project.reference_urls) else ""
    if ref_url:
        result = await job.send(Action.ATTACH_REFERENCE_URL, {"url": ref_url})
        if not result.success:
            logger.warning(f"[{pid}] Reference URL upload failed for image {index + 1}: {result.error}")
        await job.sleep(job.config.submit_settle_delay)


async def _wait_for_image(job: ActiveJob):
    return await job.send(Action.WAIT_IMAGE_COMPLETE, {"timeout": job.project.settings.image_timeout})


async def recover_policy_violation(job: ActiveJob, index: int, prompt: str) -> None:
    """
    Step A: click the retry icon and wait once more.
    Step B: restore the prompt, rewrite it with the LLM, resubmit and wait.

    Returns when the image rendered; raises PolicyViolationError otherwise.
    Every outcome is reported to the notifier.
    """
    project = job.project
    pid = job.project_id
    metrics.inc_counter("policy.violations")

    retry = await job.send(Action.CLICK_RETRY_ICON)
    if retry.success:
        logger.info(f"[{pid}] Policy recovery: retry icon clicked, waiting for generation...")
        await job.sleep(job.config.policy_retry_delay)
        waited = await _wait_for_image(job)
        if waited.success:
            logger.info(f"[{pid}] Policy retry succeeded for image {index + 1}")
            metrics.inc_counter("policy.recovered")
            await job.notify(job.notifier.notify_policy_violation(project, index, prompt, None, True))
            return
        logger.warning(f"[{pid}] Retry also failed, proceeding to AI rewrite...")
    else:
        logger.warning(f"[{pid}] Retry icon not found, proceeding to AI rewrite...")

    await job.send(Action.CLICK_REUSE_PROMPT_BUTTON)
    await job.sleep(job.config.settle_delay)

    if job.rewriter is None:
        rewrite = RewriteResult(False, error="no prompt rewriter configured")
    else:
        rewrite = await job.rewriter.rewrite(prompt)

    if not (rewrite.success and rewrite.new_prompt):
        logger.error(f"[{pid}] AI rewrite failed: {rewrite.error}")
        metrics.inc_counter("policy.failed")
        await job.notify(job.notifier.notify_policy_violation(project, index, prompt, None, False))
        raise PolicyViolationError(f"Policy violation — AI rewrite failed: {rewrite.error}")

    logger.info(f"[{pid}] AI rewrote prompt via {rewrite.provider}: \"{rewrite.new_prompt[:80]}...\"")
    waited = await generate_and_wait(job, rewrite.new_prompt)
    await job.notify(
        job.notifier.notify_policy_violation(project, index, prompt, rewrite.new_prompt, waited.success)
    )
    if waited.success:
        metrics.inc_counter("policy.recovered")
        logger.info(f"[{pid}] AI-rewritten prompt succeeded for image {index + 1}")
        return

    metrics.inc_counter("policy.failed")
    raise PolicyViolationError("Policy violation — retry and AI rewrite both failed")


async def run_create_image_phase(job: ActiveJob) -> None:
    project = job.project
    results = job.progress.image_results
    total = len(results)
    fast_fire = can_fast_fire(project)

    start = find_start_index(results)
    logger.info(
        f"[{job.project_id}] Create Image phase: {total} images, starting at {start + 1}"
        + (" [FAST-FIRE]" if fast_fire else " [SEQUENTIAL]")
    )

    for i in range(start, total):
        item = results[i]
        if item.done:
            continue
        prompt = project.image_prompts[i]
        is_last = i == total - 1

        async def attempt(retry: int) -> ItemStatus:
            await _attach_references(job, i)
            require_success(await job.send(Action.ENTER_IMAGE_PROMPT, {"prompt": prompt}), "enter prompt")
            require_success(await job.send(Action.CLICK_GENERATE), "click Create")

            if fast_fire and not is_last:
                logger.info(f"[{job.project_id}] Fast-fire: image {i + 1}/{total} submitted, not waiting")
                item.verified = False
                await job.sleep(job.config.submit_settle_delay)
                return ItemStatus.READY

            result = await _wait_for_image(job)
            if result.policy_violation:
                logger.warning(f"[{job.project_id}] Policy violation on image {i + 1}: {result.error}")
                await recover_policy_violation(job, i, prompt)
                return ItemStatus.READY

            require_success(result, "generate image")
            return ItemStatus.READY

        await run_item(job, results, i, attempt, label=f"Image {i + 1}/{total}")

    logger.info(f"[{job.project_id}] Create Image phase complete")
