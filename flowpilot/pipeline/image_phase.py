"""
Image phase (frames-to-video, step 1): generate scene images one at a time.

Every image after the first attaches the previous image as a reference so
the scenes stay visually consistent. Reference method:
  add-to-prompt  — pick the last image into the prompt
  upload         — re-upload the last image
  auto           — add-to-prompt, falling back to upload
"""

import logging

from ..actions import Action
from ..errors import ActionFailedError
from ..gateway import require_success
from .context import ActiveJob
from .helpers import find_start_index, run_item
from .models import ItemStatus, ReferenceMethod

logger = logging.getLogger(__name__)

LAST_IMAGE = -1


async def attach_previous_image(job: ActiveJob, method: ReferenceMethod) -> bool:
    result = None
    if method in (ReferenceMethod.AUTO, ReferenceMethod.ADD_TO_PROMPT):
        result = await job.send(Action.ATTACH_REFERENCE_ADD_TO_PROMPT, {"imageIndex": LAST_IMAGE})
    if (result is None or not result.success) and method in (ReferenceMethod.AUTO, ReferenceMethod.UPLOAD):
        if result is not None:
            logger.info(f"[{job.project_id}] Add-to-Prompt failed, trying upload fallback")
        result = await job.send(Action.ATTACH_REFERENCE_UPLOAD, {"imageIndex": LAST_IMAGE})
    return result is not None and result.success


async def generate_and_wait(job: ActiveJob, prompt: str):
    """Enter the prompt, click Create and wait for the render. Returns the wait result."""
    require_success(await job.send(Action.ENTER_IMAGE_PROMPT, {"prompt": prompt}), "enter prompt")
    await job.sleep(job.config.settle_delay)
    require_success(await job.send(Action.CLICK_GENERATE), "click Create")
    return await job.send(Action.WAIT_IMAGE_COMPLETE, {"timeout": job.project.settings.image_timeout})


async def run_image_phase(job: ActiveJob) -> None:
    project = job.project
    results = job.progress.image_results
    total = len(results)
    method = project.settings.reference_method

    start = find_start_index(results)
    logger.info(f"[{job.project_id}] Image phase: {total} images, starting at {start + 1}")

    for i in range(start, total):
        if results[i].done:
            continue
        prompt = project.image_prompts[i]

        async def attempt(retry: int) -> ItemStatus:
            if i > 0 and not await attach_previous_image(job, method):
                raise ActionFailedError(f"Failed to attach reference for image {i + 1}")
            result = await generate_and_wait(job, prompt)
            require_success(result, "generate image")
            return ItemStatus.READY

        await run_item(job, results, i, attempt, label=f"Image {i + 1}/{total}")

    logger.info(f"[{job.project_id}] Image phase complete")
