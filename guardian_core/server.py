"""FastAPI server exposing the engagement core to the app and the scheduler.

REST endpoints:
- Members:    POST /api/members, GET /api/members/{member_id}
- Reports:    POST /api/reports
- Guardian:   POST /api/guardian/unlock
- Energy:     POST /api/energy/invest, GET /api/energy/{member_id}/history
- Cron:       POST|GET /api/cron/check-escalation
- Health:     GET /api/health

Services are built per request around a Redis client; there is no shared
in-process state.
"""

from __future__ import annotations

import logging
import random
from datetime import datetime
from typing import Optional

import redis
from fastapi import FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from guardian_core.config.settings import CRON_SECRET, REDIS_URL, SERVER_HOST, SERVER_PORT
from guardian_core.engine.energy_ledger import summarize_history
from guardian_core.engine.errors import (
    EngagementError,
    InsufficientBalance,
    InvalidInput,
    ProfileConflict,
    UnknownMember,
)
from guardian_core.models.profile import parse_timestamp, utc_now
from guardian_core.services.container import EngagementServices, build_services

logger = logging.getLogger(__name__)

app = FastAPI(title="Guardian Core", description="Engagement and retention engine")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS = {
    UnknownMember: 404,
    InvalidInput: 422,
    InsufficientBalance: 409,
    ProfileConflict: 409,
}


def _get_redis() -> redis.Redis:
    return redis.Redis.from_url(REDIS_URL, decode_responses=True)


def _get_rng() -> random.Random:
    return random.Random()


def _services() -> EngagementServices:
    return build_services(_get_redis(), rng=_get_rng())


def _resolve_now(value: Optional[str]) -> datetime:
    return parse_timestamp(value, "now") if value else utc_now()


@app.exception_handler(EngagementError)
async def engagement_error_handler(request: Request, exc: EngagementError):
    status = next((code for kind, code in ERROR_STATUS.items() if isinstance(exc, kind)), 400)
    if status >= 409:
        logger.info(f"{request.method} {request.url.path} → {status}: {exc}")
    return JSONResponse(status_code=status, content={"error": type(exc).__name__, "detail": str(exc)})


# ── Health ───────────────────────────────────────────────────────────────

@app.get("/api/health")
async def health():
    r = _get_redis()
    try:
        r.ping()
        redis_ok = True
    except redis.RedisError:
        redis_ok = False
    return {"status": "ok", "redis": redis_ok}


# ── Members ──────────────────────────────────────────────────────────────

class RegisterMemberRequest(BaseModel):
    member_id: str
    display_name: str = ""
    team: str = ""


@app.post("/api/members")
async def register_member(req: RegisterMemberRequest):
    services = _services()
    profile = services.profiles.create_profile(req.member_id, req.display_name, req.team)
    return {"member": profile.to_dict()}


@app.get("/api/members/{member_id}")
async def get_member(member_id: str, now: Optional[str] = None):
    """Profile plus derived recency and guardian status."""
    services = _services()
    return {"member": services.reports.describe_member(member_id, _resolve_now(now))}


# ── Reports ──────────────────────────────────────────────────────────────

class ReportRequest(BaseModel):
    member_id: str
    report_at: Optional[str] = None
    report_id: Optional[str] = None


@app.post("/api/reports")
async def submit_report(req: ReportRequest):
    """Apply an activity report: streak, energy, evolution and recovery."""
    services = _services()
    outcome = services.reports.submit_with_retry(
        req.member_id,
        req.report_at or utc_now(),
        req.report_id,
    )
    return outcome.to_dict()


# ── Guardian ─────────────────────────────────────────────────────────────

class UnlockRequest(BaseModel):
    member_id: str
    style: str
    now: Optional[str] = None


@app.post("/api/guardian/unlock")
async def unlock_guardian(req: UnlockRequest):
    services = _services()
    status = services.reports.unlock_guardian(req.member_id, req.style, _resolve_now(req.now))
    return {"member_id": req.member_id, "style": req.style, "guardian": status.to_dict()}


# ── Energy ───────────────────────────────────────────────────────────────

class InvestRequest(BaseModel):
    member_id: str
    amount: int
    target_id: str = ""


@app.post("/api/energy/invest")
async def invest_energy(req: InvestRequest):
    services = _services()
    result = services.ledger.invest(req.member_id, req.amount, req.target_id)
    return result.to_dict()


@app.get("/api/energy/{member_id}/history")
async def energy_history(member_id: str):
    services = _services()
    transactions = services.ledger.history(member_id)
    return {
        "member_id": member_id,
        "balance": sum(tx.amount for tx in transactions),
        "summary": summarize_history(transactions).to_dict(),
        "transactions": [
            {
                "tx_id": tx.tx_id,
                "amount": tx.amount,
                "kind": tx.kind,
                "source_type": tx.source_type,
                "source_id": tx.source_id,
                "created_at": tx.created_at.isoformat(),
            }
            for tx in transactions
        ],
    }


# ── Cron ─────────────────────────────────────────────────────────────────

@app.api_route("/api/cron/check-escalation", methods=["GET", "POST"])
def check_escalation(
    now: Optional[str] = None,
    authorization: Optional[str] = Header(default=None),
):
    """Run the escalation job. Scheduling belongs to the caller.

    A plain def so FastAPI runs it in the threadpool: the job paces its
    dispatches with blocking sleeps.
    """
    if CRON_SECRET:
        token = (authorization or "").removeprefix("Bearer ").strip()
        if token != CRON_SECRET:
            return JSONResponse(status_code=401, content={"error": "Unauthorized"})
    services = _services()
    report = services.escalation.run(_resolve_now(now))
    return {"success": True, **report.to_dict()}


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host=SERVER_HOST, port=SERVER_PORT)
