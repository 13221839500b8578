"""
Video phase (frames-to-video, step 2): submit image-to-video animations.

Two sub-modes, both driven off the precomputed video_results:
  normal        — video i animates image i → image i+1 (start + end frame),
                  plus an optional trailing single-frame animation of the
                  last image when there are more prompts than transitions
  single-image  — video i animates image i alone (start frame only)

Videos are submitted, not awaited: items end in SUBMITTED. The throttle
runs before the 6th and later videos, and always before the extra one.
"""

import logging

from ..actions import Action
from ..errors import GatewayError
from ..gateway import require_success
from ..throttle import needs_slot, wait_for_video_slot
from .context import ActiveJob
from .helpers import find_start_index, run_item
from .models import ItemResult, ItemStatus

logger = logging.getLogger(__name__)


async def _try_reuse_prompt(job: ActiveJob, label: str) -> bool:
    try:
        result = await job.send(Action.CLICK_REUSE_PROMPT)
    except GatewayError as e:
        logger.warning(f"[{job.project_id}] {label}: reuse prompt shortcut failed: {e} — falling back to full flow")
        return False
    if result.success:
        logger.info(f"[{job.project_id}] {label}: reuse prompt clicked — submitting")
    return result.success


async def submit_video(job: ActiveJob, item: ItemResult, prompt: str, retry: int, label: str) -> ItemStatus:
    """One submission attempt; retries try the reuse-prompt shortcut first."""
    reused = retry > 0 and await _try_reuse_prompt(job, label)

    if not reused:
        result = await job.send(Action.ATTACH_START_FRAME, {"imageIndex": item.start_scene})
        require_success(result, "attach start frame")
        if item.end_scene is not None:
            result = await job.send(Action.ATTACH_END_FRAME, {"imageIndex": item.end_scene})
            require_success(result, "attach end frame")
        require_success(await job.send(Action.ENTER_IMAGE_PROMPT, {"prompt": prompt}), "enter prompt")
        await job.sleep(job.config.settle_delay)

    require_success(await job.send(Action.CLICK_GENERATE), "click Create")
    await job.sleep(job.config.submit_settle_delay)
    return ItemStatus.SUBMITTED


def _prompt_for(prompts: list[str], index: int) -> str:
    # Fewer prompts than transitions is allowed (warned at start); reuse the last one
    if index < len(prompts):
        return prompts[index]
    return prompts[-1] if prompts else ""


async def run_video_phase(job: ActiveJob) -> None:
    project = job.project
    results = job.progress.video_results
    prompts = project.animation_prompts
    total = len(results)
    single = project.single_image_mode

    if total == 0:
        logger.info(f"[{job.project_id}] No videos to generate — skipping video phase")
        return

    start = find_start_index(results)
    logger.info(
        f"[{job.project_id}] Video phase ({'single-image' if single else 'transitions'}): "
        f"{total} videos, starting at {start + 1}"
    )

    for i in range(start, total):
        item = results[i]
        if item.done:
            continue
        is_extra = not single and item.end_scene is None

        if is_extra or needs_slot(i, job.config.max_concurrent_videos):
            await wait_for_video_slot(job, i, total)

        if is_extra:
            label = f"Extra video {i + 1}/{total}"
        elif single:
            label = f"Single image video {i + 1}/{total}"
        else:
            label = f"Video {i + 1}/{total} ({item.start_scene + 1} → {item.end_scene + 1})"
        prompt = _prompt_for(prompts, i)

        async def attempt(retry: int) -> ItemStatus:
            return await submit_video(job, item, prompt, retry, label)

        await run_item(job, results, i, attempt, label=label)

    logger.info(f"[{job.project_id}] Video phase complete — all videos submitted")
