"""
Approver Bot - FastAPI transport

Run with: uvicorn approver_bot.server:app --port 8080

Endpoints:
    GET  /approve        - Thorough approval (auth handling + retry cycles)
    GET  /approve-fast   - Fast approval (single attempt, no login)
    POST /hook/signal    - Acknowledge at once, then fast -> thorough in the background
    GET  /login-status   - Probe the session: OK | LOGIN_REQUIRED | FAIL
    GET  /health         - Read-only summary (no caller auth)

Callers authenticate with the X-Auth header or the `auth` query parameter
when AUTH_TOKEN is configured.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional, Union

from fastapi import BackgroundTasks, Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from approver_bot.approval_pipeline import ApprovalPipeline
from approver_bot.config import AUTH_TOKEN
from approver_bot.models import ActionOutcome, ApprovalReason, ExecutionMode, TriggerTime
from approver_bot.utils import utc_now

logger = logging.getLogger('approver_bot.server')

# Fast-mode failures worth one thorough retry
ESCALATE_ON = frozenset({
    ApprovalReason.NO_TARGET_FOUND,
    ApprovalReason.LOGIN_REQUIRED,
    ApprovalReason.CLICK_FAILED,
    ApprovalReason.VERIFY_TIMEOUT,
})


class UnauthorizedError(Exception):
    pass


class SignalPayload(BaseModel):
    message: Optional[str] = None
    timestamp: Optional[Union[float, str]] = None


def require_caller(request: Request,
                   x_auth: Optional[str] = Header(default=None),
                   auth: Optional[str] = Query(default=None)):
    token = request.app.state.auth_token
    if not token:
        return
    if (x_auth or auth) != token:
        raise UnauthorizedError()


def approve_with_escalation(pipeline: ApprovalPipeline, trigger_ts: TriggerTime) -> Optional[ActionOutcome]:
    """Fast attempt first; one thorough attempt if the fast one could not finish the job."""
    try:
        outcome = pipeline.submit_approval(trigger_ts, ExecutionMode.FAST)
        logger.info(f"Signal fast: {outcome.to_dict()}")
        if outcome.success or outcome.reason not in ESCALATE_ON:
            return outcome

        outcome = pipeline.submit_approval(trigger_ts, ExecutionMode.THOROUGH)
        logger.info(f"Signal thorough: {outcome.to_dict()}")
        return outcome
    except ValueError as e:
        logger.error(f"Signal rejected: {e}")
        return None


def _approve(pipeline: ApprovalPipeline, ts: Optional[str], mode: ExecutionMode):
    try:
        outcome = pipeline.submit_approval(ts, mode)
    except ValueError as e:
        return JSONResponse(status_code=400, content={"ok": False, "reason": "BAD_REQUEST", "message": str(e)})
    return outcome.to_dict()


def create_app(pipeline: Optional[ApprovalPipeline] = None,
               auth_token: str = AUTH_TOKEN,
               start_background: bool = True) -> FastAPI:
    """
    Build the app around a pipeline.

    The lifespan starts the heartbeat/scheduler (unless start_background is
    False) and closes the browser on shutdown.
    """
    pipeline = pipeline if pipeline is not None else ApprovalPipeline()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_background:
            pipeline.start_background()
        logger.info(f"Approver up | window {pipeline.window.describe()}")
        yield
        pipeline.shutdown()

    app = FastAPI(
        title="Approver Bot API",
        description="Trigger-driven approval of pending dashboard actions",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline
    app.state.auth_token = auth_token

    @app.exception_handler(UnauthorizedError)
    async def unauthorized(request: Request, exc: UnauthorizedError):
        return JSONResponse(status_code=401, content={"ok": False, "reason": "UNAUTHORIZED"})

    @app.get("/approve", dependencies=[Depends(require_caller)])
    def approve(ts: Optional[str] = Query(default=None)):
        return _approve(pipeline, ts, ExecutionMode.THOROUGH)

    @app.get("/approve-fast", dependencies=[Depends(require_caller)])
    def approve_fast(ts: Optional[str] = Query(default=None)):
        return _approve(pipeline, ts, ExecutionMode.FAST)

    @app.post("/hook/signal", dependencies=[Depends(require_caller)])
    def hook_signal(payload: SignalPayload, background_tasks: BackgroundTasks):
        logger.info(f"Signal received: {(payload.message or '')[:160]}")
        # Age is measured from receipt when the sender gives no timestamp
        trigger_ts = payload.timestamp if payload.timestamp is not None else utc_now()
        background_tasks.add_task(approve_with_escalation, pipeline, trigger_ts)
        return {"ok": True, "accepted": True}

    @app.get("/login-status", dependencies=[Depends(require_caller)])
    def login_status():
        return {"ok": True, "status": pipeline.get_session_status().value}

    @app.get("/health")
    def health():
        return pipeline.get_health()

    return app


app = create_app()
