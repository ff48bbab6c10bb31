from __future__ import annotations
import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ..core.errors import SubmissionError
from ..core.models import ExecutionRequest, ExecutionResult, TerminalState
from ..core.settings import get_settings
from ..logging import setup_logging
from ..services.execution_service import ExecutionService

# seconds a rejected caller should wait before retrying
RETRY_AFTER_S = 1


# --------- Schemas ---------

class _Camel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LimitsOverride(_Camel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    cpu_time_ms: Optional[int] = None
    wall_time_ms: Optional[int] = None
    memory_bytes: Optional[int] = None
    max_output_bytes: Optional[int] = None
    max_processes: Optional[int] = None


class ExecuteReq(_Camel):
    # optional, lets the caller DELETE the job while this POST is still pending
    job_id: Optional[str] = None
    language: str
    source: str
    stdin: Optional[str] = None
    limits_override: Optional[LimitsOverride] = None
    submitter: Optional[str] = None

    def to_request(self, submitter: Optional[str] = None) -> ExecutionRequest:
        limits = self.limits_override.model_dump(exclude_none=True) if self.limits_override else None
        return ExecutionRequest(
            language=self.language,
            source=self.source,
            stdin=self.stdin,
            limits_override=limits,
            submitter=self.submitter or submitter,
        )


class ExecutionResultRes(_Camel):
    job_id: str
    state: str
    stdout: str
    stderr: str
    stdout_truncated: bool
    stderr_truncated: bool
    exit_code: Optional[int] = None
    elapsed_ms: int
    peak_memory_bytes: Optional[int] = None


def _result_response(result: ExecutionResult) -> JSONResponse:
    if result.state is TerminalState.SANDBOX_FAILURE:
        # our fault, not the learner's: generic body, no program output
        body = ExecutionResult(job_id=result.job_id, state=result.state, elapsed_ms=result.elapsed_ms)
        return JSONResponse(status_code=500, content=body.to_wire())
    return JSONResponse(status_code=200, content=result.to_wire())


# --------- Endpoints ---------

router = APIRouter()


def _service(request: Request) -> ExecutionService:
    return request.app.state.service


@router.get("/health")
@router.get("/api/health")
def health(request: Request):
    return {
        "status": "healthy",
        "service": "execution",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - request.app.state.started, 3),
    }


@router.post(
    "/api/execution",
    response_model=ExecutionResultRes,
    responses={
        409: {"description": "jobId already in use"},
        503: {"description": "capacity, retry later"},
        500: {"description": "sandbox failure"},
    },
)
async def execute(req: ExecuteReq, request: Request, x_submitter_id: Optional[str] = Header(default=None)):
    svc = _service(request)
    admission = svc.submit(req.to_request(x_submitter_id), job_id=req.job_id)
    if not admission.accepted:
        return JSONResponse(
            status_code=503,
            headers={"Retry-After": str(RETRY_AFTER_S)},
            content={"error": "capacity", "reason": admission.reason},
        )
    try:
        result = await asyncio.wrap_future(admission.ticket.future)
    except asyncio.CancelledError:
        # client disconnected: free the queue slot or kill the sandbox.
        # A DELETE never lands here, it resolves the future with a result.
        svc.cancel(admission.job_id)
        raise
    return _result_response(result)


@router.delete("/api/execution/{job_id}", status_code=202)
def cancel(job_id: str, request: Request):
    if not _service(request).cancel(job_id):
        raise HTTPException(status_code=404, detail="job_not_found")
    return {"jobId": job_id, "cancelled": True}


@router.get("/api/execution/languages")
def languages(request: Request):
    return {"languages": _service(request).languages()}


@router.get("/api/execution/stats")
def stats(request: Request):
    svc = _service(request)
    return {"queue": svc.stats(), "sandbox": svc.capabilities()}


async def _submission_error(request: Request, exc: SubmissionError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": str(exc)})


# the API only ever serves JSON
SECURITY_HEADERS = {
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Resource-Policy": "same-origin",
}


async def _security_headers(request: Request, call_next):
    response = await call_next(request)
    for k, v in SECURITY_HEADERS.items():
        response.headers.setdefault(k, v)
    return response


def create_app(service: Optional[ExecutionService] = None) -> FastAPI:
    settings = service.settings if service is not None else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = service
        if svc is None:
            setup_logging(settings.log_level)
            svc = ExecutionService(settings)
        app.state.service = svc.start()
        app.state.started = time.monotonic()
        try:
            yield
        finally:
            svc.shutdown(wait=False)

    app = FastAPI(title="Runbox Execution Service", lifespan=lifespan)
    app.middleware("http")(_security_headers)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Submitter-Id"],
    )
    app.add_exception_handler(SubmissionError, _submission_error)
    app.include_router(router)
    return app


app = create_app()
