import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from agentflow.core.config import get_settings

logger = logging.getLogger(__name__)

PROGRESS_FILE = "progress.txt"
NO_PROGRESS = "(no progress file)"


class ProgressSidecar:
    """Free-text progress log that loop workers append to between stories."""

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = Path(base_dir) if base_dir else None

    def path_for(self, run_id: str) -> Optional[Path]:
        if self.base_dir is None:
            return None
        return self.base_dir / run_id / PROGRESS_FILE

    def read(self, run_id: str) -> Optional[str]:
        path = self.path_for(run_id)
        if path is None or not path.is_file():
            return None
        return path.read_text(encoding="utf-8")

    def archive(self, run_id: str) -> Optional[Path]:
        """Move the progress file aside so a later run starts empty."""
        path = self.path_for(run_id)
        if path is None or not path.is_file():
            return None
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        archived = path.with_name(f"progress-{stamp}.txt")
        os.replace(path, archived)
        path.write_text("", encoding="utf-8")
        return archived


_sidecar: Optional[ProgressSidecar] = None


def get_progress_sidecar() -> ProgressSidecar:
    if _sidecar is not None:
        return _sidecar
    return ProgressSidecar(get_settings().workspace_dir)


def set_progress_sidecar(sidecar: Optional[ProgressSidecar]) -> None:
    global _sidecar
    _sidecar = sidecar


def read_progress(run_id: str) -> str:
    try:
        text = get_progress_sidecar().read(run_id)
    except OSError:
        logger.warning("Progress file unreadable", exc_info=True, extra={"run_id": run_id})
        return NO_PROGRESS
    return text if text else NO_PROGRESS


def archive_progress(run_id: str) -> None:
    try:
        archived = get_progress_sidecar().archive(run_id)
    except OSError:
        logger.warning("Progress file archive failed", exc_info=True, extra={"run_id": run_id})
        return
    if archived is not None:
        logger.info("Progress file archived", extra={"run_id": run_id, "path": str(archived)})
