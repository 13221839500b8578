"""
Project Pipeline

Durable orchestration for one project at a time:
  Frames-to-video — sequential images → count gate → throttled video submissions → downloads
  Text-to-video   — sequential video submissions → render wait
  Create-image    — sequential images with reference attachment and policy recovery
  Batch           — queued projects run back to back

Routers live in .routes and the orchestrator in .orchestrator; import them
from there so the models stay importable on their own.
"""

from .models import (
    GenerationMode,
    ItemStatus,
    JobProgress,
    JobState,
    Phase,
    Project,
    ProjectStatus,
)

__all__ = [
    "GenerationMode",
    "ItemStatus",
    "JobProgress",
    "JobState",
    "Phase",
    "Project",
    "ProjectStatus",
]
