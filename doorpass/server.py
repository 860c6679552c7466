from __future__ import annotations
import sys

import httpx
import logging
import os
from datetime import datetime, timezone
from typing import Optional

from .infra.sql import GatedAsyncSession, make_async_engine
from .infra.timings import aggregates, install_shutdown_report, timeit

from .model.db import create_schema
from .model.errors import DoorpassError, InvalidRequest, InvalidSignature
from .model import codes
from .model import tickets
from .model.purchases import issue_manual_ticket
from .model.eventlog import (
        EventLogStore, new_store, BACKEND as EVENTLOG_BACKEND
)
from .intake import handle_webhook, send_ticket_email
from .mailer import PosterCache, ResendMailer
from .payments import PaymentAdapter, new_adapter

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import ORJSONResponse

from .helpers import ct_equal, now_ts, parse_limit, to_iso

import redis.asyncio as redis

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", None)

if DATABASE_URL is None:
    print("NEED DATABASE_URL! e.g. sqlite:///./doorpass.db")
    sys.exit(1)

ADMIN_API_KEY = os.environ.get("ADMIN_API_KEY", "")
APP_ENV = os.environ.get("APP_ENV", "development")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger(__name__)


engine, SessionAsync, _, gated = make_async_engine(DATABASE_URL)


async def get_db() -> GatedAsyncSession:
    async with SessionAsync() as session:
        yield GatedAsyncSession(session=session, gated=gated)

adapter: PaymentAdapter = new_adapter()

app = FastAPI(
    title="Doorpass",
    default_response_class=ORJSONResponse,
)

# log latency aggregates when we go down
install_shutdown_report(app)


def payment_adapter() -> PaymentAdapter:
    return adapter


def get_mailer() -> ResendMailer:
    mailer = getattr(app.state, "mailer", None)
    if mailer is None:
        raise RuntimeError("mailer not initialized")
    return mailer


async def eventlog() -> EventLogStore:
    if EVENTLOG_BACKEND == 'redis':
        yield new_store(r=app.state.redis)
    else:
        async with SessionAsync() as session:
            yield new_store(db=session, gated=gated)


def require_admin(x_admin_key: Optional[str] = Header(None)) -> None:
    # no key configured -> local development, everything goes
    if not ADMIN_API_KEY:
        return
    if not ct_equal(x_admin_key, ADMIN_API_KEY):
        raise HTTPException(status_code=401, detail="Unauthorized")


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    print('\n' * 3)
    print('=' * 50)
    print('Doorpass is starting up...')
    print(f'   - Payment provider:   {adapter.name}')
    print(f'   - Event log backend:  {EVENTLOG_BACKEND}')
    print(f'   - Ticket code scheme: {codes.SCHEME}')
    print('=' * 50)
    print('\n' * 3)


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await create_schema(conn)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=10.0,
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=64
        ),
    )
    app.state.mailer = ResendMailer(app.state.http, poster=PosterCache())
    if not app.state.mailer.enabled:
        log.warning("RESEND_API_KEY not set; ticket emails are disabled")


@app.on_event("startup")
async def _redis_start():
    if EVENTLOG_BACKEND == 'redis':
        REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "64")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None
        app.state.mailer = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    await engine.dispose()


# ----------------------------
# Error mapping
# ----------------------------
@app.exception_handler(InvalidRequest)
async def _invalid_request(request: Request, exc: InvalidRequest):
    return ORJSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(DoorpassError)
async def _doorpass_error(request: Request, exc: DoorpassError):
    log.error("%s %s failed: %r", request.method, request.url.path, exc,
              exc_info=exc)
    return ORJSONResponse(status_code=500, content={"error": str(exc)})


# ----------------------------
# Health
# ----------------------------
@app.get("/health")
async def health():
    return {
        "status": "ok",
        "time": datetime.now(timezone.utc).isoformat(),
        "env": APP_ENV,
    }


# ----------------------------
# Webhook endpoint (Stripe or Mock)
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
    events: EventLogStore = Depends(eventlog),
    pay: PaymentAdapter = Depends(payment_adapter),
    mailer: ResendMailer = Depends(get_mailer),
):
    payload = await request.body()
    headers = dict(request.headers)

    try:
        async with timeit("webhook.total"):
            result = await handle_webhook(
                payload, headers,
                adapter=pay, db=db, events=events, mailer=mailer,
            )
    except InvalidSignature as e:
        log.warning("webhook rejected: %s", e)
        raise HTTPException(status_code=400, detail=f"Webhook Error: {e}")
    except InvalidRequest as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        # 5xx makes the provider redeliver; the event is not marked seen
        log.exception("webhook handler failed")
        raise HTTPException(status_code=500, detail="Webhook handler failed")
    return result.to_dict()


# ----------------------------
# Admin API: tickets
# ----------------------------
@app.get("/api/admin/tickets", dependencies=[Depends(require_admin)])
async def api_admin_tickets(
    limit: Optional[str] = None,
    cursor: Optional[str] = None,
    db: GatedAsyncSession = Depends(get_db),
):
    lim = parse_limit(limit)
    async with timeit("tickets.list"):
        items, next_cursor = await tickets.list_tickets(db, lim, cursor)
    return {"items": items, "next_cursor": next_cursor, "limit": lim}


@app.post("/api/admin/tickets/create", status_code=201,
          dependencies=[Depends(require_admin)])
async def api_admin_create_ticket(
    payload: dict,
    db: GatedAsyncSession = Depends(get_db),
):
    async with timeit("tickets.issue_manual"):
        outcome = await issue_manual_ticket(
            db,
            customer_email=payload.get("customer_email"),
            quantity=payload.get("quantity"),
            customer_name=payload.get("customer_name"),
            amount_total=payload.get("amount_total"),
            currency=payload.get("currency"),
            notes=payload.get("notes"),
        )
    return {
        "success": True,
        "ticket": {
            "id": outcome.ticket_id,
            "code": outcome.code,
            "quantity": outcome.quantity,
            "customer_email": outcome.customer_email,
            "customer_name": outcome.customer_name,
        },
        "purchase": {
            "id": outcome.purchase_id,
            "external_id": outcome.external_id,
        },
    }


@app.get("/api/admin/tickets/validate", dependencies=[Depends(require_admin)])
async def api_admin_validate(
    code: Optional[str] = None,
    db: GatedAsyncSession = Depends(get_db),
):
    try:
        async with timeit("tickets.validate"):
            result = await tickets.validate(db, code)
    except InvalidRequest as e:
        return ORJSONResponse(
            status_code=400, content={"valid": False, "error": str(e)}
        )
    return result.to_dict()


@app.post("/api/admin/tickets/redeem", dependencies=[Depends(require_admin)])
async def api_admin_redeem(
    payload: dict,
    db: GatedAsyncSession = Depends(get_db),
):
    try:
        async with timeit("tickets.redeem"):
            result = await tickets.redeem(
                db, payload.get("code"), payload.get("redeem_count", 1)
            )
    except InvalidRequest as e:
        return ORJSONResponse(
            status_code=400, content={"success": False, "error": str(e)}
        )
    return result.to_dict()


@app.post("/api/admin/tickets/send", dependencies=[Depends(require_admin)])
async def api_admin_send(
    payload: dict,
    db: GatedAsyncSession = Depends(get_db),
    mailer: ResendMailer = Depends(get_mailer),
):
    try:
        ticket = await tickets.get_ticket(db, payload.get("code"))
    except InvalidRequest as e:
        return ORJSONResponse(
            status_code=400, content={"success": False, "error": str(e)}
        )
    if ticket is None:
        return {"success": False, "error": "ticket not found",
                "code": tickets.normalize_code(payload["code"])}
    if not ticket["customer_email"]:
        return {"success": False, "error": "no email address on purchase",
                "code": ticket["code"]}

    result = await send_ticket_email(
        db, mailer,
        ticket_id=ticket["id"],
        to=ticket["customer_email"],
        customer_name=ticket["customer_name"],
        code=ticket["code"],
        quantity=ticket["quantity"],
    )
    if not result.success:
        return {"success": False, "error": result.error,
                "code": ticket["code"]}
    return {
        "success": True,
        "code": ticket["code"],
        "email": ticket["customer_email"],
        "message_id": result.message_id,
        "sent_at": to_iso(now_ts()),
    }


@app.get("/api/admin/tickets/stats", dependencies=[Depends(require_admin)])
async def api_admin_stats(db: GatedAsyncSession = Depends(get_db)):
    async with timeit("tickets.stats"):
        return await tickets.ticket_stats(db)


@app.get("/api/admin/timings", dependencies=[Depends(require_admin)])
async def api_admin_timings():
    return {"items": aggregates()}
