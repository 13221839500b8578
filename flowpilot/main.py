"""
flowpilot worker — FastAPI app wiring the orchestrator to its collaborators.

Persistence is picked at startup: Supabase when SUPABASE_URL and
SUPABASE_SERVICE_ROLE_KEY are set, else Redis when REDIS_URL is set and
reachable, else an in-memory store (nothing survives a restart).
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

import redis
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

from . import metrics
from .auth_middleware import WorkerAuthMiddleware
from .config import RuntimeConfig, config as default_config
from .downloads import DownloadManager
from .gateway import ActionGateway, HttpActionGateway
from .job_store import (
    InMemoryJobStore,
    JobStore,
    RedisJobStore,
    SupabaseJobStore,
    create_supabase_client,
)
from .notifications import Notifier, WebhookNotifier
from .pipeline.batch_queue import BatchQueueRunner
from .pipeline.orchestrator import ProjectOrchestrator
from .pipeline.routes import batch_router, project_router
from .prompt_rewriter import PromptRewriter

load_dotenv()
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


# ── Lazy Redis client ─────────────────────────────────────────────────────────
_redis_client = None


def get_redis(redis_url: Optional[str] = None):
    """Get or create a Redis client. Returns None if Redis is not configured."""
    global _redis_client
    if _redis_client is None:
        redis_url = redis_url or os.environ.get("REDIS_URL")
        if redis_url:
            _redis_client = redis.from_url(redis_url, decode_responses=False)
            try:
                _redis_client.ping()
                logger.info(f"Redis connected: {redis_url[:30]}...")
            except redis.RedisError as e:
                logger.warning(f"Redis connection failed: {e} — falling back to in-memory store")
                _redis_client = None
    return _redis_client


def build_store(cfg: RuntimeConfig) -> JobStore:
    if cfg.supabase_url and cfg.supabase_service_role_key:
        logger.info("Job store: Supabase")
        return SupabaseJobStore(create_supabase_client(cfg.supabase_url, cfg.supabase_service_role_key))
    r = get_redis(cfg.redis_url)
    if r is not None:
        logger.info("Job store: Redis")
        return RedisJobStore(r)
    logger.warning("Job store: in-memory — progress will not survive a restart")
    return InMemoryJobStore()


def create_app(
    config: Optional[RuntimeConfig] = None,
    store: Optional[JobStore] = None,
    gateway: Optional[ActionGateway] = None,
    notifier: Optional[Notifier] = None,
) -> FastAPI:
    cfg = config or default_config

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info("Worker starting up...")
        metrics.set_gauge("start_time", time.time())

        job_store = store or build_store(cfg)
        action_gateway = gateway or HttpActionGateway(cfg.agent_url, cfg.agent_timeout, cfg.reconnect_delay)
        job_notifier = notifier or WebhookNotifier(cfg)
        rewriter = PromptRewriter.from_config(cfg)
        downloader = DownloadManager(cfg.download_dir)

        orchestrator = ProjectOrchestrator(
            job_store,
            action_gateway,
            notifier=job_notifier,
            rewriter=rewriter,
            downloader=downloader,
            config=cfg,
        )
        app.state.store = job_store
        app.state.orchestrator = orchestrator
        app.state.batch = BatchQueueRunner(orchestrator, job_store, cfg)

        # Projects left running by a crashed process come back paused
        interrupted = await orchestrator.recover_interrupted_jobs()
        if interrupted:
            logger.warning(f"Recovered {len(interrupted)} interrupted job(s) from previous session")

        yield

        logger.info("Worker shutting down...")
        if orchestrator.get_status().running:
            await orchestrator.stop_project()
        await rewriter.aclose()
        await downloader.aclose()
        if gateway is None:
            await action_gateway.aclose()
        if notifier is None:
            await job_notifier.aclose()

    app = FastAPI(title="flowpilot", lifespan=lifespan)
    app.add_middleware(WorkerAuthMiddleware, config=cfg)
    app.include_router(project_router)
    app.include_router(batch_router)

    @app.get("/health")
    def health_check():
        """Verify the worker is up and report which backends are configured."""
        orchestrator = getattr(app.state, "orchestrator", None)
        return {
            "status": "ok",
            "store": type(getattr(app.state, "store", None)).__name__,
            "agent_url": cfg.agent_url,
            "active_project": orchestrator.get_status().project_id if orchestrator else None,
        }

    @app.get("/metrics")
    def metrics_endpoint():
        """Return a snapshot of all worker metrics."""
        return metrics.get_snapshot()

    return app


app = create_app()


def run():
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("flowpilot.main:app", host="0.0.0.0", port=port)


if __name__ == "__main__":
    run()
