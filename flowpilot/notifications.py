"""
Run-outcome notifications via Telegram, Discord and a generic HTTP webhook.

Each channel is enabled only when configured. A failing channel is logged
and skipped; notifications never change a job's outcome. Callers in the
engine go through notify_safely(), which also bounds the call with a timeout.

Webhook events:
  project.completed / project.completed_with_errors / project.error / policy.violation
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Awaitable, Optional

import httpx

from .config import RuntimeConfig
from .pipeline.models import ItemStatus, JobProgress, Project

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"

COLOR_OK = 0x43B581
COLOR_WARN = 0xFFA500
COLOR_ERROR = 0xED4245


class Notifier(ABC):
    @abstractmethod
    async def notify_completed(self, project: Project, progress: JobProgress) -> None: ...

    @abstractmethod
    async def notify_error(self, project: Project, progress: JobProgress, message: str) -> None: ...

    @abstractmethod
    async def notify_policy_violation(
        self,
        project: Project,
        index: int,
        original_prompt: str,
        rewritten_prompt: Optional[str],
        recovered: bool,
    ) -> None: ...


class NullNotifier(Notifier):
    async def notify_completed(self, project, progress):
        return None

    async def notify_error(self, project, progress, message):
        return None

    async def notify_policy_violation(self, project, index, original_prompt, rewritten_prompt, recovered):
        return None


async def notify_safely(call: Awaitable, timeout: float = 10.0) -> None:
    """Await a notifier coroutine; log and drop any failure or timeout."""
    try:
        await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Notification timed out after {timeout}s")
    except Exception as e:
        logger.warning(f"Notification failed: {e}")


def _format_duration(started_at: Optional[str]) -> str:
    if not started_at:
        return "unknown"
    try:
        start = datetime.fromisoformat(started_at)
    except ValueError:
        return "unknown"
    seconds = int((datetime.now(timezone.utc) - start).total_seconds())
    hours, rest = divmod(max(seconds, 0), 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def summarize(progress: JobProgress) -> dict:
    images = progress.image_results
    videos = progress.video_results
    return {
        "img_done": sum(1 for r in images if r.status == ItemStatus.READY),
        "img_total": progress.total_images,
        "img_err": sum(1 for r in images if r.status == ItemStatus.ERROR),
        "vid_done": sum(1 for r in videos if r.status in (ItemStatus.SUBMITTED, ItemStatus.DOWNLOADED)),
        "vid_total": progress.total_videos,
        "vid_err": sum(1 for r in videos if r.status == ItemStatus.ERROR),
        "duration": _format_duration(progress.started_at),
    }


class WebhookNotifier(Notifier):
    def __init__(self, config: RuntimeConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client or httpx.AsyncClient(timeout=15)

    # ── Channels ─────────────────────────────────────────────────────────

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.config.telegram_bot_token and self.config.telegram_chat_id)

    @property
    def discord_enabled(self) -> bool:
        return bool(self.config.discord_webhook_url)

    @property
    def webhook_enabled(self) -> bool:
        return bool(self.config.webhook_url)

    async def _send_telegram(self, text: str) -> None:
        url = f"{TELEGRAM_API}/bot{self.config.telegram_bot_token}/sendMessage"
        response = await self._client.post(url, json={
            "chat_id": self.config.telegram_chat_id,
            "text": text,
            "parse_mode": "Markdown",
        })
        response.raise_for_status()

    async def _send_discord(self, title: str, description: str, color: int) -> None:
        response = await self._client.post(self.config.discord_webhook_url, json={
            "embeds": [{
                "title": title,
                "description": description,
                "color": color,
                "footer": {"text": "flowpilot"},
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }],
        })
        response.raise_for_status()

    async def _send_webhook(self, payload: dict) -> None:
        payload.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        response = await self._client.post(
            self.config.webhook_url, json=payload, headers=self.config.webhook_headers
        )
        response.raise_for_status()

    async def _fan_out(self, label: str, telegram: str, discord: tuple[str, str, int], webhook: dict) -> None:
        if self.telegram_enabled:
            try:
                await self._send_telegram(telegram)
                logger.info(f"Telegram notification sent ({label})")
            except httpx.HTTPError as e:
                logger.warning(f"Telegram notification failed: {e}")
        if self.discord_enabled:
            try:
                await self._send_discord(*discord)
                logger.info(f"Discord notification sent ({label})")
            except httpx.HTTPError as e:
                logger.warning(f"Discord notification failed: {e}")
        if self.webhook_enabled:
            try:
                await self._send_webhook(webhook)
                logger.info(f"Webhook notification sent ({label})")
            except httpx.HTTPError as e:
                logger.warning(f"Webhook notification failed: {e}")

    # ── Events ───────────────────────────────────────────────────────────

    async def notify_completed(self, project, progress):
        s = summarize(progress)
        has_errors = s["img_err"] > 0 or s["vid_err"] > 0
        title = "Project Completed with Errors" if has_errors else "Project Completed"
        lines = [
            f"**{project.name}**",
            f"Images: {s['img_done']}/{s['img_total']}" + (f" ({s['img_err']} failed)" if s["img_err"] else ""),
            f"Videos: {s['vid_done']}/{s['vid_total']}" + (f" ({s['vid_err']} failed)" if s["vid_err"] else ""),
            f"Duration: {s['duration']}",
        ]
        if project.remote_url:
            lines.append(f"[Open project]({project.remote_url})")
        body = "\n".join(lines)

        await self._fan_out(
            "completed",
            telegram=f"*flowpilot: {title}*\n\n{body.replace('**', '*')}",
            discord=(title, body, COLOR_WARN if has_errors else COLOR_OK),
            webhook={
                "event": "project.completed_with_errors" if has_errors else "project.completed",
                "project": {"id": project.id, "name": project.name, "remote_url": project.remote_url},
                "stats": s,
            },
        )

    async def notify_error(self, project, progress, message):
        s = summarize(progress)
        error = message or "Unknown error"
        lines = [
            f"**{project.name}**",
            f"Error: {error}",
            f"Images done: {s['img_done']}/{s['img_total']}",
        ]
        if project.remote_url:
            lines.append(f"[Open project]({project.remote_url})")
        body = "\n".join(lines)

        await self._fan_out(
            "error",
            telegram=f"*flowpilot: Project Failed*\n\n{body.replace('**', '*')}",
            discord=("Project Failed", body, COLOR_ERROR),
            webhook={
                "event": "project.error",
                "project": {"id": project.id, "name": project.name, "remote_url": project.remote_url},
                "error": error,
                "stats": {"img_done": s["img_done"], "img_total": s["img_total"]},
            },
        )

    async def notify_policy_violation(self, project, index, original_prompt, rewritten_prompt, recovered):
        outcome = "recovered" if recovered else "not recovered"
        lines = [
            f"**{project.name}**: image {index + 1} hit a content policy ({outcome})",
            f"Original: {original_prompt[:300]}",
        ]
        if rewritten_prompt:
            lines.append(f"Rewritten: {rewritten_prompt[:300]}")
        body = "\n".join(lines)

        await self._fan_out(
            "policy",
            telegram=f"*flowpilot: Policy Violation*\n\n{body.replace('**', '*')}",
            discord=("Policy Violation", body, COLOR_OK if recovered else COLOR_WARN),
            webhook={
                "event": "policy.violation",
                "project": {"id": project.id, "name": project.name},
                "index": index,
                "original_prompt": original_prompt,
                "rewritten_prompt": rewritten_prompt,
                "recovered": recovered,
            },
        )

    async def aclose(self) -> None:
        await self._client.aclose()
