import asyncio
import logging
import os
import time
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session

from agentflow.core.config import get_settings
from agentflow.database import SessionLocal
from agentflow.models._time import utcnow
from agentflow.services.medic import run_medic_check
from agentflow.services.reaper import cleanup_abandoned_steps

logger = logging.getLogger(__name__)


def sweeper_enabled() -> bool:
    # Disable by default under pytest to keep tests deterministic.
    if os.getenv("PYTEST_CURRENT_TEST"):
        return False
    v = os.getenv("SWEEPER_ENABLED")
    if v is None:
        return True
    return v.strip() not in {"0", "false", "False", "no", "NO"}


def _is_postgres(db: Session) -> bool:
    bind = db.get_bind()
    return bind is not None and bind.dialect.name == "postgresql"


def try_acquire_sweeper_lock(db: Session) -> bool:
    # Only PostgreSQL can coordinate several processes; elsewhere a single process is assumed.
    if not _is_postgres(db):
        return True
    res = db.execute(text("select pg_try_advisory_lock(5151, 5152)")).scalar()
    return bool(res)


def release_sweeper_lock(db: Session) -> None:
    if _is_postgres(db):
        db.execute(text("select pg_advisory_unlock(5151, 5152)"))


def _dispose_pool(db: Session) -> None:
    try:
        engine = db.get_bind()
        if engine is not None and hasattr(engine, "dispose"):
            engine.dispose()
    except Exception:
        logger.debug("Engine dispose failed", exc_info=True)


def sweep_once(*, run_medic: bool, db: Optional[Session] = None) -> None:
    """One tick: reap abandoned work, then (when due) run the medic."""
    now = utcnow()
    cleanup_abandoned_steps(db=db, now=now)
    if run_medic:
        run_medic_check(db=db, now=now)


async def sweeper_loop(*, poll_seconds: float = 120.0, medic_poll_seconds: float = 300.0) -> None:
    """
    Single-sweeper loop.

    Goals:
      - Never crash the server on transient DB failures.
      - Only one process sweeps (PG advisory lock).
      - Reaper and medic keep running even when no worker is polling.
    """
    logger.info(
        "Sweeper started",
        extra={"poll_seconds": float(poll_seconds), "medic_poll_seconds": float(medic_poll_seconds)},
    )

    last_medic = 0.0

    while True:
        lock_db: Session = SessionLocal()
        have_lock = False

        try:
            have_lock = try_acquire_sweeper_lock(lock_db)
            if not have_lock:
                lock_db.close()
                await asyncio.sleep(poll_seconds)
                continue

            # We hold the advisory lock as long as lock_db connection stays healthy.
            while True:
                work_db: Session = SessionLocal()
                try:
                    medic_due = time.monotonic() - last_medic >= medic_poll_seconds
                    sweep_once(run_medic=medic_due, db=work_db)
                    work_db.commit()
                    if medic_due:
                        last_medic = time.monotonic()

                except asyncio.CancelledError:
                    raise

                except (OperationalError, DBAPIError):
                    work_db.rollback()
                    # Ensure next tick gets fresh connections.
                    _dispose_pool(work_db)
                    logger.exception(
                        "Sweeper tick failed",
                        extra={"component": "sweeper", "reason": "dbapi_error"},
                    )

                except Exception:
                    work_db.rollback()
                    logger.exception(
                        "Sweeper tick failed",
                        extra={"component": "sweeper", "reason": "unexpected"},
                    )

                finally:
                    work_db.close()

                await asyncio.sleep(poll_seconds)

        except asyncio.CancelledError:
            logger.info("Sweeper cancelled; shutting down")
            raise

        except (OperationalError, DBAPIError):
            # lock connection died; drop pooled conns and restart outer loop.
            logger.exception(
                "Sweeper lock connection failed",
                extra={"component": "sweeper", "reason": "lock_dbapi_error"},
            )
            _dispose_pool(lock_db)
            await asyncio.sleep(poll_seconds)

        except Exception:
            # Do NOT crash the server; log and keep trying.
            logger.exception(
                "Sweeper crashed",
                extra={"component": "sweeper", "reason": "outer_unexpected"},
            )
            await asyncio.sleep(poll_seconds)

        finally:
            if have_lock:
                try:
                    release_sweeper_lock(lock_db)
                except (OperationalError, DBAPIError):
                    logger.warning("Sweeper lock release failed", exc_info=True)
            lock_db.close()


def start_sweeper_task() -> Optional[asyncio.Task]:
    if not sweeper_enabled():
        logger.info("Sweeper disabled")
        return None

    settings = get_settings()
    return asyncio.create_task(
        sweeper_loop(
            poll_seconds=settings.sweeper_poll_seconds,
            medic_poll_seconds=settings.medic_poll_seconds,
        )
    )
