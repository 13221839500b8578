"""
Persisted Job Store — projects, job progress, run history and the batch queue.

Three backends behind one async interface:
  InMemoryJobStore   — tests and single-process development
  RedisJobStore      — JSON blobs under flowpilot:* keys
  SupabaseJobStore   — rows with a jsonb `data` column

Keys (Redis):
  flowpilot:project:{id}     — Project JSON
  flowpilot:projects         — set of project ids
  flowpilot:progress:{id}    — JobProgress JSON
  flowpilot:runs             — run records (list, newest first, capped)
  flowpilot:batch            — BatchQueue JSON

Semantics are last-write-wins; the engine only needs read-after-write
within one process.
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import Optional

from supabase import Client, create_client

from .errors import StoreError
from .pipeline.models import BatchQueue, JobProgress, Project, RunRecord, now_iso

logger = logging.getLogger(__name__)

MAX_RUN_RECORDS = 100


class JobStore(ABC):
    @abstractmethod
    async def get_project(self, project_id: str) -> Optional[Project]: ...

    @abstractmethod
    async def save_project(self, project: Project) -> None: ...

    @abstractmethod
    async def list_projects(self) -> list[Project]: ...

    @abstractmethod
    async def get_job_progress(self, project_id: str) -> Optional[JobProgress]: ...

    @abstractmethod
    async def save_job_progress(self, progress: JobProgress) -> None: ...

    @abstractmethod
    async def delete_job_progress(self, project_id: str) -> None: ...

    @abstractmethod
    async def save_run_record(self, record: RunRecord) -> None: ...

    @abstractmethod
    async def list_run_records(self, limit: int = 20) -> list[RunRecord]: ...

    @abstractmethod
    async def get_batch_queue(self) -> BatchQueue: ...

    @abstractmethod
    async def save_batch_queue(self, queue: BatchQueue) -> None: ...


# ── In-memory ────────────────────────────────────────────────────────────────

class InMemoryJobStore(JobStore):
    """Holds serialized JSON so callers never share live objects with the store."""

    def __init__(self):
        self._projects: dict[str, str] = {}
        self._progress: dict[str, str] = {}
        self._runs: list[str] = []
        self._batch: Optional[str] = None

    async def get_project(self, project_id):
        raw = self._projects.get(project_id)
        return Project.model_validate_json(raw) if raw else None

    async def save_project(self, project):
        project.updated_at = now_iso()
        self._projects[project.id] = project.model_dump_json()

    async def list_projects(self):
        return [Project.model_validate_json(raw) for raw in self._projects.values()]

    async def get_job_progress(self, project_id):
        raw = self._progress.get(project_id)
        return JobProgress.model_validate_json(raw) if raw else None

    async def save_job_progress(self, progress):
        progress.updated_at = now_iso()
        self._progress[progress.project_id] = progress.model_dump_json()

    async def delete_job_progress(self, project_id):
        self._progress.pop(project_id, None)

    async def save_run_record(self, record):
        self._runs.insert(0, record.model_dump_json())
        del self._runs[MAX_RUN_RECORDS:]

    async def list_run_records(self, limit=20):
        return [RunRecord.model_validate_json(raw) for raw in self._runs[:limit]]

    async def get_batch_queue(self):
        return BatchQueue.model_validate_json(self._batch) if self._batch else BatchQueue()

    async def save_batch_queue(self, queue):
        self._batch = queue.model_dump_json()


# ── Redis ────────────────────────────────────────────────────────────────────

PROJECT_PREFIX = "flowpilot:project:"
PROJECT_IDS_KEY = "flowpilot:projects"
PROGRESS_PREFIX = "flowpilot:progress:"
RUNS_KEY = "flowpilot:runs"
BATCH_KEY = "flowpilot:batch"


def _decode(raw) -> Optional[str]:
    if raw is None:
        return None
    return raw.decode() if isinstance(raw, bytes) else raw


class RedisJobStore(JobStore):
    """
    Uses the synchronous redis client (as the task queue does) and hops
    each call onto a worker thread so the event loop never blocks.
    """

    def __init__(self, redis_client):
        self.redis = redis_client

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"Redis operation failed: {e}") from e

    def _set_project(self, project: Project):
        pipe = self.redis.pipeline(transaction=True)
        pipe.set(f"{PROJECT_PREFIX}{project.id}", project.model_dump_json())
        pipe.sadd(PROJECT_IDS_KEY, project.id)
        pipe.execute()

    def _list_projects(self) -> list[Project]:
        projects = []
        for raw_id in self.redis.smembers(PROJECT_IDS_KEY):
            raw = _decode(self.redis.get(f"{PROJECT_PREFIX}{_decode(raw_id)}"))
            if raw:
                projects.append(Project.model_validate_json(raw))
        return sorted(projects, key=lambda p: p.created_at)

    def _push_run(self, record: RunRecord):
        pipe = self.redis.pipeline(transaction=True)
        pipe.lpush(RUNS_KEY, record.model_dump_json())
        pipe.ltrim(RUNS_KEY, 0, MAX_RUN_RECORDS - 1)
        pipe.execute()

    async def get_project(self, project_id):
        raw = _decode(await self._run(self.redis.get, f"{PROJECT_PREFIX}{project_id}"))
        return Project.model_validate_json(raw) if raw else None

    async def save_project(self, project):
        project.updated_at = now_iso()
        await self._run(self._set_project, project)

    async def list_projects(self):
        return await self._run(self._list_projects)

    async def get_job_progress(self, project_id):
        raw = _decode(await self._run(self.redis.get, f"{PROGRESS_PREFIX}{project_id}"))
        return JobProgress.model_validate_json(raw) if raw else None

    async def save_job_progress(self, progress):
        progress.updated_at = now_iso()
        await self._run(self.redis.set, f"{PROGRESS_PREFIX}{progress.project_id}", progress.model_dump_json())

    async def delete_job_progress(self, project_id):
        await self._run(self.redis.delete, f"{PROGRESS_PREFIX}{project_id}")

    async def save_run_record(self, record):
        await self._run(self._push_run, record)

    async def list_run_records(self, limit=20):
        raws = await self._run(self.redis.lrange, RUNS_KEY, 0, limit - 1)
        return [RunRecord.model_validate_json(_decode(raw)) for raw in raws]

    async def get_batch_queue(self):
        raw = _decode(await self._run(self.redis.get, BATCH_KEY))
        return BatchQueue.model_validate_json(raw) if raw else BatchQueue()

    async def save_batch_queue(self, queue):
        await self._run(self.redis.set, BATCH_KEY, queue.model_dump_json())


# ── Supabase ─────────────────────────────────────────────────────────────────

PROJECTS_TABLE = "flow_projects"
PROGRESS_TABLE = "flow_job_progress"
RUNS_TABLE = "flow_run_history"
BATCH_TABLE = "flow_batch_queue"
BATCH_ROW_ID = "default"


def create_supabase_client(url: str = "", key: str = "") -> Client:
    url = url or os.getenv("SUPABASE_URL", "")
    key = key or os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
    if not url or not key:
        raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
    return create_client(url, key)


class SupabaseJobStore(JobStore):
    """Each table has `id` (text, primary key) and `data` (jsonb) columns."""

    def __init__(self, client):
        self.sb = client

    async def _run(self, fn):
        try:
            return await asyncio.to_thread(fn)
        except Exception as e:
            raise StoreError(f"Supabase operation failed: {e}") from e

    def _select_one(self, table: str, row_id: str) -> Optional[dict]:
        result = self.sb.table(table).select("data").eq("id", row_id).limit(1).execute()
        return result.data[0]["data"] if result.data else None

    def _upsert(self, table: str, row_id: str, data: dict) -> None:
        self.sb.table(table).upsert({"id": row_id, "data": data, "updated_at": now_iso()}).execute()

    async def get_project(self, project_id):
        data = await self._run(lambda: self._select_one(PROJECTS_TABLE, project_id))
        return Project.model_validate(data) if data else None

    async def save_project(self, project):
        project.updated_at = now_iso()
        await self._run(lambda: self._upsert(PROJECTS_TABLE, project.id, project.model_dump(mode="json")))

    async def list_projects(self):
        result = await self._run(
            lambda: self.sb.table(PROJECTS_TABLE).select("data").order("created_at").execute()
        )
        return [Project.model_validate(row["data"]) for row in result.data or []]

    async def get_job_progress(self, project_id):
        data = await self._run(lambda: self._select_one(PROGRESS_TABLE, project_id))
        return JobProgress.model_validate(data) if data else None

    async def save_job_progress(self, progress):
        progress.updated_at = now_iso()
        await self._run(
            lambda: self._upsert(PROGRESS_TABLE, progress.project_id, progress.model_dump(mode="json"))
        )

    async def delete_job_progress(self, project_id):
        await self._run(lambda: self.sb.table(PROGRESS_TABLE).delete().eq("id", project_id).execute())

    async def save_run_record(self, record):
        await self._run(lambda: self.sb.table(RUNS_TABLE).insert({
            "id": record.id,
            "project_id": record.project_id,
            "data": record.model_dump(mode="json"),
        }).execute())

    async def list_run_records(self, limit=20):
        result = await self._run(
            lambda: self.sb.table(RUNS_TABLE).select("data").order("created_at", desc=True).limit(limit).execute()
        )
        return [RunRecord.model_validate(row["data"]) for row in result.data or []]

    async def get_batch_queue(self):
        data = await self._run(lambda: self._select_one(BATCH_TABLE, BATCH_ROW_ID))
        return BatchQueue.model_validate(data) if data else BatchQueue()

    async def save_batch_queue(self, queue):
        await self._run(lambda: self._upsert(BATCH_TABLE, BATCH_ROW_ID, queue.model_dump(mode="json")))
