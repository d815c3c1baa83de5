from contextlib import asynccontextmanager
import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from agentflow.core.logging import configure_logging
from agentflow import models  # noqa: F401
from agentflow.routers.auth import router as auth_router
from agentflow.routers.medic import router as medic_router
from agentflow.routers.runs import router as runs_router
from agentflow.routers.steps import router as steps_router
from agentflow.services.handoff import install_handoff_listener, uninstall_handoff_listener
from agentflow.services.run_outcomes import install_run_outcome_listener, uninstall_run_outcome_listener
from agentflow.services.sweeper_worker import start_sweeper_task

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    install_handoff_listener()
    install_run_outcome_listener()

    task = start_sweeper_task()
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Sweeper stopped with an error")
        uninstall_run_outcome_listener()
        uninstall_handoff_listener()


app = FastAPI(
    title="agentflow",
    lifespan=lifespan,
)


@app.middleware("http")
async def catch_unhandled_exceptions(request: Request, call_next):
    try:
        return await call_next(request)
    except Exception:
        logger.exception("Unhandled exception")
        return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


app.include_router(auth_router)
app.include_router(steps_router)
app.include_router(runs_router)
app.include_router(medic_router)


@app.get("/health")
def health():
    return {
        "status": "ok",
        "version": "0.1.0",
    }
