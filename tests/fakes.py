"""
Test doubles shared across the suite.

FakeGateway — scripted ActionGateway that records every dispatched action
FakeRedis   — dict-backed stand-in for the few redis-py calls RedisJobStore makes
fast_config — RuntimeConfig with every delay set to zero
"""

import inspect
from typing import Callable, Optional, Union

from flowpilot.actions import Action
from flowpilot.cancellation import CancellationToken
from flowpilot.config import RuntimeConfig
from flowpilot.gateway import ActionGateway, ActionResult
from flowpilot.job_store import InMemoryJobStore
from flowpilot.notifications import NullNotifier
from flowpilot.pipeline.context import ActiveJob
from flowpilot.pipeline.models import (
    GenerationMode,
    JobProgress,
    Project,
    ProjectSettings,
)

EDITOR_URL = "https://labs.google/fx/tools/flow/project/test-123"

Response = Union[ActionResult, Exception]


def fast_config(**overrides) -> RuntimeConfig:
    values = dict(
        reconnect_delay=0,
        worker_secret="",
        environment="development",
        telegram_bot_token="",
        telegram_chat_id="",
        discord_webhook_url="",
        webhook_url="",
        rewrite_api_key="",
        notify_timeout=1,
        retry_base_delay=0,
        retry_max_delay=0,
        settings_retry_delay=0,
        workspace_load_delay=0,
        editor_check_attempts=3,
        editor_check_interval=0,
        settle_delay=0,
        submit_settle_delay=0,
        pause_poll_interval=0.01,
        policy_retry_delay=0,
        video_slot_poll_interval=0,
        video_slot_max_wait=0,
        t2v_poll_interval=0,
        t2v_max_wait=0,
        t2v_empty_grace=0,
        download_poll_interval=0,
        download_max_wait=0,
        batch_cooldown=0,
    )
    values.update(overrides)
    return RuntimeConfig(**values)


class FakeGateway(ActionGateway):
    """
    Responses are resolved per action in this order:
      1. a handler registered with on()
      2. the next queued response from script()
      3. the default for the action (success with no data unless overridden)
    An Exception in place of a response is raised from dispatch().
    """

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.closed = False
        self._queued: dict[str, list[Response]] = {}
        self._handlers: dict[str, Callable] = {}
        self.defaults: dict[str, ActionResult] = {
            Action.CHECK_FLOW_PAGE.value: ActionResult.ok(isEditorPage=True, hasPromptInput=True, url=EDITOR_URL),
            Action.COUNT_PENDING_VIDEOS.value: ActionResult.ok(pending=0, completed=0),
        }

    def script(self, action: Action, *responses: Response) -> "FakeGateway":
        self._queued.setdefault(action.value, []).extend(responses)
        return self

    def on(self, action: Action, handler: Callable) -> "FakeGateway":
        """handler(params) returns a response; it may be async."""
        self._handlers[action.value] = handler
        return self

    def set_default(self, action: Action, response: ActionResult) -> "FakeGateway":
        self.defaults[action.value] = response
        return self

    async def dispatch(self, action: Action, params: Optional[dict] = None) -> ActionResult:
        name = action.value if isinstance(action, Action) else str(action)
        params = dict(params or {})
        self.calls.append((name, params))

        if name in self._handlers:
            response = self._handlers[name](params)
            if inspect.isawaitable(response):
                response = await response
        elif self._queued.get(name):
            response = self._queued[name].pop(0)
        else:
            response = self.defaults.get(name, ActionResult.ok())

        if isinstance(response, Exception):
            raise response
        return response

    async def aclose(self) -> None:
        self.closed = True

    # ── Inspection ───────────────────────────────────────────────────────

    def actions(self) -> list[str]:
        return [name for name, _ in self.calls]

    def count(self, action: Action) -> int:
        return sum(1 for name, _ in self.calls if name == action.value)

    def params_for(self, action: Action) -> list[dict]:
        return [params for name, params in self.calls if name == action.value]


class RecordingNotifier(NullNotifier):
    def __init__(self):
        self.completed = []
        self.errors = []
        self.policy = []

    async def notify_completed(self, project, progress):
        self.completed.append((project.id, project.status))

    async def notify_error(self, project, progress, message):
        self.errors.append((project.id, message))

    async def notify_policy_violation(self, project, index, original_prompt, rewritten_prompt, recovered):
        self.policy.append((index, original_prompt, rewritten_prompt, recovered))


class FakePipeline:
    def __init__(self, redis: "FakeRedis"):
        self.redis = redis
        self.ops = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self.ops.append((name, args, kwargs))
            return self
        return queue

    def execute(self):
        return [getattr(self.redis, name)(*args, **kwargs) for name, args, kwargs in self.ops]


class FakeRedis:
    def __init__(self):
        self.values: dict[str, bytes] = {}
        self.sets: dict[str, set] = {}
        self.lists: dict[str, list] = {}

    @staticmethod
    def _b(value) -> bytes:
        return value if isinstance(value, bytes) else str(value).encode()

    def get(self, key):
        return self.values.get(key)

    def set(self, key, value):
        self.values[key] = self._b(value)
        return True

    def delete(self, *keys):
        removed = 0
        for key in keys:
            removed += int(self.values.pop(key, None) is not None)
        return removed

    def sadd(self, key, *members):
        self.sets.setdefault(key, set()).update(self._b(m) for m in members)
        return len(members)

    def smembers(self, key):
        return set(self.sets.get(key, set()))

    def lpush(self, key, *values):
        items = self.lists.setdefault(key, [])
        for value in values:
            items.insert(0, self._b(value))
        return len(items)

    def ltrim(self, key, start, end):
        items = self.lists.get(key, [])
        self.lists[key] = items[start:end + 1]
        return True

    def lrange(self, key, start, end):
        items = self.lists.get(key, [])
        return items[start:] if end == -1 else items[start:end + 1]

    def pipeline(self, transaction=True):
        return FakePipeline(self)


# ── Factories ────────────────────────────────────────────────────────────────

def make_project(
    mode: GenerationMode = GenerationMode.FRAMES_TO_VIDEO,
    images: int = 3,
    animations: int = 2,
    videos: int = 0,
    max_retries: int = 1,
    **fields,
) -> Project:
    settings = fields.pop("settings", None) or ProjectSettings(max_retries=max_retries)
    return Project(
        name=fields.pop("name", "Test Project"),
        mode=mode,
        image_prompts=fields.pop("image_prompts", [f"scene {i + 1}" for i in range(images)]),
        animation_prompts=fields.pop("animation_prompts", [f"animate {i + 1}" for i in range(animations)]),
        video_prompts=fields.pop("video_prompts", [f"video {i + 1}" for i in range(videos)]),
        settings=settings,
        **fields,
    )


def make_job(
    project: Project,
    gateway: Optional[FakeGateway] = None,
    config: Optional[RuntimeConfig] = None,
    progress: Optional[JobProgress] = None,
    **collaborators,
) -> ActiveJob:
    cfg = config or fast_config()
    return ActiveJob(
        project=project,
        progress=progress or JobProgress.for_project(project),
        token=CancellationToken(cfg.pause_poll_interval),
        store=collaborators.pop("store", None) or InMemoryJobStore(),
        gateway=gateway or FakeGateway(),
        config=cfg,
        notifier=collaborators.pop("notifier", None) or RecordingNotifier(),
        **collaborators,
    )
