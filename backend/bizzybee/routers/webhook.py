"""Aurinko webhook endpoint: validation echo, signature check, background ingest.

Every accepted delivery gets the same `{"success": True}` body whether the
account is known or not, so the endpoint cannot be used to enumerate accounts.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from ..config import settings
from ..database import SessionLocal
from ..services.rate_limiter import check_rate_limit
from ..services.webhook_ingest import WebhookEvent, parse_webhook_payload, process_webhook_events, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["webhook"])

ACK = {"success": True}


def _validation_token(request: Request) -> Optional[str]:
    params = request.query_params
    return params.get("validationToken") or params.get("challenge")


def _client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _process_events_task(events: list[WebhookEvent]) -> None:
    session = SessionLocal()
    try:
        outcomes = process_webhook_events(session, events)
        logger.info(f"Webhook processed {len(events)} event(s): {outcomes}")
    except Exception:
        session.rollback()
        logger.exception("Webhook background processing failed")
    finally:
        session.close()


@router.get("/aurinko-webhook")
def aurinko_webhook_validate(request: Request):
    """Subscription validation handshake: echo the token as plain text."""
    token = _validation_token(request)
    if token:
        return PlainTextResponse(token)
    return ACK


@router.post("/aurinko-webhook")
async def aurinko_webhook(request: Request, background_tasks: BackgroundTasks):
    token = _validation_token(request)
    if token:
        return PlainTextResponse(token)

    if not check_rate_limit(f"webhook:{_client_key(request)}", settings.webhook_rate_limit_per_minute):
        return JSONResponse(status_code=429, content={"error": "Too many requests"})

    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > settings.webhook_max_payload_bytes:
        return JSONResponse(status_code=413, content={"error": "Payload too large"})
    raw = await request.body()
    if len(raw) > settings.webhook_max_payload_bytes:
        return JSONResponse(status_code=413, content={"error": "Payload too large"})
    if not raw.strip():
        return ACK

    if not verify_signature(raw, request.headers, settings.aurinko_webhook_secret):
        logger.warning(f"Webhook signature mismatch from {_client_key(request)}")
        return ACK

    try:
        data = json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        logger.warning("Webhook body is not valid JSON; ignoring")
        return ACK

    events = parse_webhook_payload(data)
    if events:
        background_tasks.add_task(_process_events_task, events)
    return ACK
