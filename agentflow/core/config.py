import os
from dataclasses import dataclass
from typing import Optional


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return v.strip() not in {"0", "false", "False", "no", "NO", "off"}


@dataclass(frozen=True)
class Settings:
    # Reaper: a running step/story untouched for this long is abandoned.
    abandoned_step_seconds: int = 15 * 60
    reaper_on_claim: bool = True

    # Medic: stuck threshold is the longest worker timeout plus a grace period.
    max_worker_timeout_seconds: int = 30 * 60
    medic_grace_seconds: int = 5 * 60
    medic_max_abandons: int = 5
    medic_history_limit: int = 500

    max_stories: int = 20
    default_max_retries: int = 2

    job_prefix: str = "agentflow/"
    workspace_dir: Optional[str] = None

    sweeper_poll_seconds: float = 120.0
    medic_poll_seconds: float = 300.0

    @property
    def medic_stuck_seconds(self) -> int:
        return self.max_worker_timeout_seconds + self.medic_grace_seconds

    @property
    def medic_stall_seconds(self) -> int:
        return self.medic_stuck_seconds * 2


def get_settings() -> Settings:
    """Read settings from the environment.

    Called per operation rather than cached so that tests and long-lived
    workers pick up environment changes without a restart.
    """
    return Settings(
        abandoned_step_seconds=_env_int("AGENTFLOW_ABANDONED_STEP_SECONDS", 15 * 60),
        reaper_on_claim=_env_bool("AGENTFLOW_REAPER_ON_CLAIM", True),
        max_worker_timeout_seconds=_env_int("AGENTFLOW_MAX_WORKER_TIMEOUT_SECONDS", 30 * 60),
        medic_grace_seconds=_env_int("AGENTFLOW_MEDIC_GRACE_SECONDS", 5 * 60),
        medic_max_abandons=_env_int("AGENTFLOW_MEDIC_MAX_ABANDONS", 5),
        medic_history_limit=_env_int("AGENTFLOW_MEDIC_HISTORY_LIMIT", 500),
        max_stories=_env_int("AGENTFLOW_MAX_STORIES", 20),
        default_max_retries=_env_int("AGENTFLOW_DEFAULT_MAX_RETRIES", 2),
        job_prefix=os.getenv("AGENTFLOW_JOB_PREFIX", "agentflow/"),
        workspace_dir=os.getenv("AGENTFLOW_WORKSPACE_DIR") or None,
        sweeper_poll_seconds=_env_float("SWEEPER_POLL_SECONDS", 120.0),
        medic_poll_seconds=_env_float("MEDIC_POLL_SECONDS", 300.0),
    )
