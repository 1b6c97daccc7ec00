import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Any, Dict, Optional

from fastapi import FastAPI, Depends, BackgroundTasks, Query, Body, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from marketing_gateway.auth import CurrentUser, current_user
from marketing_gateway.errors import register_error_handlers
from marketing_gateway.housekeeping import run_housekeeping
from marketing_gateway.jobs import JobService
from marketing_gateway.models import JobKind, JobStatus
from marketing_gateway.schemas import JobAccepted, JobResult, JobUpdate, JobView, parse_submission
from marketing_gateway.settings import Settings, settings as default_settings
from marketing_gateway.storage import JobStore
from marketing_gateway.workflow_adapter import AUTOMATION_PLATFORM, WORKFLOW_ENGINE, WorkflowClient

logger = logging.getLogger(__name__)

LOG_FORMATS = {
    "json": '{"time":"%(asctime)s","level":"%(levelname)s","logger":"%(name)s","message":"%(message)s"}',
    "structured": "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
}


def configure_logging(cfg: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, cfg.LOG_LEVEL.upper(), logging.INFO),
        format=LOG_FORMATS.get(cfg.LOG_FORMAT, LOG_FORMATS["structured"]),
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )


async def _housekeeping_loop(app: FastAPI) -> None:
    cfg: Settings = app.state.settings
    while True:
        try:
            await asyncio.to_thread(run_housekeeping, app.state.store, cfg)
        except Exception:
            logger.exception("Housekeeping run failed")
        await asyncio.sleep(cfg.SWEEP_INTERVAL_SECONDS)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    cfg: Settings = app.state.settings
    configure_logging(cfg)
    logger.info("Starting marketing gateway (database %s)", cfg.DATABASE_URL.split("@")[-1])
    sweeper = asyncio.create_task(_housekeeping_loop(app))
    yield
    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper
    logger.info("Shutting down marketing gateway")


def get_service(request: Request) -> JobService:
    return request.app.state.service


def create_app(cfg: Optional[Settings] = None, *, store: Optional[JobStore] = None,
               client: Optional[WorkflowClient] = None) -> FastAPI:
    cfg = cfg or default_settings
    app = FastAPI(title="Marketing Content Gateway", lifespan=_lifespan)

    # ----- state -----
    app.state.settings = cfg
    app.state.store = store or JobStore(cfg.DATABASE_URL)
    app.state.service = JobService(app.state.store, client or WorkflowClient(cfg), cfg)

    # ----- CORS (frontend origins only, cookies allowed) -----
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in cfg.CORS_ORIGINS.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    # ----- health & identity -----
    @app.get("/healthz", include_in_schema=False)
    @app.get("/api/health")
    def healthz():
        return {"status": "ok"}

    @app.get("/api/profile")
    def profile(user: CurrentUser = Depends(current_user)):
        return user

    # ----- jobs -----
    @app.post("/api/jobs", responses={202: {"model": JobAccepted}, 200: {"model": JobResult}})
    def submit_job(
        bg: BackgroundTasks,
        payload: Dict[str, Any] = Body(...),
        wait: bool = Query(False, description="Run inline and return the result instead of polling"),
        user: CurrentUser = Depends(current_user),
        service: JobService = Depends(get_service),
    ):
        submission = parse_submission(payload)
        kind = JobKind(submission.kind)
        inputs: Dict[str, Any] = (
            submission.inputs.model_dump() if kind != JobKind.workflow else dict(submission.inputs)
        )
        ticket = service.submit(user.email, kind, inputs, job_id=submission.job_id, title=submission.title)

        if wait:
            outcome = service.execute(ticket, user)
            return JobResult(job_id=ticket.job_id, status=outcome.status, run_id=outcome.run_id, result=outcome.visible)

        bg.add_task(service.run_in_background, ticket, user)
        accepted = JobAccepted(
            job_id=ticket.job_id,
            status=JobStatus.processing,
            poll_interval_seconds=cfg.POLL_INTERVAL_SECONDS,
        )
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=accepted.model_dump(mode="json"),
                            background=bg)

    @app.get("/api/jobs")
    def list_jobs(
        kind: Optional[JobKind] = Query(None),
        limit: int = Query(50, ge=1, le=500),
        user: CurrentUser = Depends(current_user),
        service: JobService = Depends(get_service),
    ):
        return [JobView.from_job(j) for j in service.history(user.email, kind=kind, limit=limit)]

    @app.get("/api/jobs/{job_id}", response_model=JobView)
    def job_status(
        job_id: str,
        user: CurrentUser = Depends(current_user),
        service: JobService = Depends(get_service),
    ):
        return JobView.from_job(service.get_status(job_id, user.email))

    @app.put("/api/jobs/{job_id}", response_model=JobView)
    def update_job(
        job_id: str,
        changes: JobUpdate,
        user: CurrentUser = Depends(current_user),
        service: JobService = Depends(get_service),
    ):
        return JobView.from_job(service.update(job_id, user.email, title=changes.title, result=changes.result))

    @app.delete("/api/jobs/{job_id}")
    def delete_job(
        job_id: str,
        user: CurrentUser = Depends(current_user),
        service: JobService = Depends(get_service),
    ):
        service.delete(job_id, user.email)
        return {"message": "Job deleted successfully"}

    # ----- raw pass-through -----
    @app.post("/api/workflow/run")
    def workflow_proxy(
        payload: Dict[str, Any] = Body(...),
        user: CurrentUser = Depends(current_user),
        service: JobService = Depends(get_service),
    ):
        return service.proxy(WORKFLOW_ENGINE, payload, user)

    @app.post("/api/automation/run")
    def automation_proxy(
        payload: Dict[str, Any] = Body(...),
        user: CurrentUser = Depends(current_user),
        service: JobService = Depends(get_service),
    ):
        return service.proxy(AUTOMATION_PLATFORM, payload, user)

    return app


app = create_app()


def run_server() -> None:
    """CLI entry point: ``python -m marketing_gateway.main``."""
    import uvicorn

    uvicorn.run(app, host=default_settings.HOST, port=default_settings.PORT)


if __name__ == "__main__":
    run_server()
