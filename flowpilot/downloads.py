"""
Download manager: stream finished videos to local disk.

Layout:
  {download_dir}/{project name}/videos/{filename}

Existing files are never overwritten; a " (n)" suffix is added instead.
"""

import logging
import re
from pathlib import Path
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*]')
MAX_FOLDER_NAME = 100


def sanitize_folder_name(name: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", name).strip()
    return cleaned[:MAX_FOLDER_NAME] or "untitled"


def unique_path(path: Path) -> Path:
    if not path.exists():
        return path
    n = 1
    while True:
        candidate = path.with_name(f"{path.stem} ({n}){path.suffix}")
        if not candidate.exists():
            return candidate
        n += 1


class DownloadManager:
    def __init__(self, download_dir: str, client: Optional[httpx.AsyncClient] = None):
        self.root = Path(download_dir)
        self._client = client or httpx.AsyncClient(timeout=120, follow_redirects=True)

    def target_path(self, project_name: str, kind: str, filename: str) -> Path:
        folder = self.root / sanitize_folder_name(project_name) / kind
        folder.mkdir(parents=True, exist_ok=True)
        return unique_path(folder / filename)

    async def _download(self, url: str, path: Path) -> Path:
        async with self._client.stream("GET", url) as response:
            response.raise_for_status()
            with open(path, "wb") as f:
                async for chunk in response.aiter_bytes():
                    f.write(chunk)
        logger.info(f"Downloaded {url[:60]}... → {path}")
        return path

    async def download_video(self, url: str, project_name: str, filename: str) -> Path:
        return await self._download(url, self.target_path(project_name, "videos", filename))

    async def aclose(self) -> None:
        await self._client.aclose()
