"""
Off-ramp HTTP handlers

POST /webhook/offramp   push deposit notifications (Hook0-style signed)
POST /offramp           request intake: verified bank account in, deposit address out
GET  /offramp/{id}      user-facing status, derived only from the stored status
POST /offramp/cancel-pending   fail the caller's pending requests so they can start over

Once a webhook is authenticated it is always acknowledged with 200; the
deposit is processed in the background and any failure lands on the ledger
row, where polling and recovery pick it up again.
"""

import json
import logging
from decimal import Decimal, InvalidOperation
from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from typing import Any, Dict

from config import Config
from services.webhook_security_service import WebhookSecurityService
from utils.offramp_errors import VerificationError
from utils.offramp_state_validator import user_facing_status

logger = logging.getLogger(__name__)

# Create FastAPI router
router = APIRouter()


def _services(request: Request):
    services = getattr(request.app.state, "offramp", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Off-ramp services not initialized")
    return services


async def _process_event(monitor, event: Dict[str, Any]):
    try:
        await monitor.handle_webhook_event(event)
    except Exception as e:
        # Still acknowledged; the deposit poller picks the row up later
        logger.error(f"❌ OFFRAMP_WEBHOOK_PROCESSING_FAILED: {type(e).__name__}: {e}", exc_info=True)


@router.post("/webhook/offramp")
async def offramp_webhook(request: Request, background_tasks: BackgroundTasks):
    """Deposit notification for a custodial off-ramp address"""
    services = _services(request)
    raw_body = await request.body()
    client_ip = WebhookSecurityService.get_client_ip(request)

    validation = WebhookSecurityService.validate_deposit_webhook(
        request.headers,
        raw_body,
        services.webhook_secret,
        signature_header_name=Config.WEBHOOK_SIGNATURE_HEADER,
        tolerance_seconds=Config.WEBHOOK_TOLERANCE_SECONDS,
    )
    WebhookSecurityService.log_webhook_security_event(
        "cdp", "offramp_deposit", validation["valid"], {"error": validation.get("error")}, client_ip
    )
    if not validation["valid"]:
        logger.warning(f"🚫 OFFRAMP_WEBHOOK_REJECTED: {validation.get('error')} from {client_ip}")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        event = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        logger.warning(f"⚠️ OFFRAMP_WEBHOOK_BAD_JSON: {e}")
        return {"received": True}

    if isinstance(event, dict):
        background_tasks.add_task(_process_event, services.monitor, event)
    return {"received": True}


@router.get("/offramp/{transaction_id}")
async def offramp_status(transaction_id: str, request: Request):
    """Status for the user; never exposes provider errors"""
    services = _services(request)
    transaction = await services.ledger.get(transaction_id)
    if transaction is None:
        raise HTTPException(status_code=404, detail="Transaction not found")

    return {
        "transaction_id": transaction.transaction_id,
        "status": transaction.status,
        "message": user_facing_status(transaction.status),
        "deposit_address": transaction.deposit_address,
        "token_symbol": transaction.token_symbol,
        "token_amount": str(transaction.token_amount) if transaction.token_amount is not None else None,
        "usdc_amount": str(transaction.usdc_amount) if transaction.usdc_amount is not None else None,
        "net_payout_ngn": str(transaction.net_payout_ngn) if transaction.net_payout_ngn is not None else None,
        "created_at": transaction.created_at.isoformat() if transaction.created_at else None,
        "completed_at": transaction.completed_at.isoformat() if transaction.completed_at else None,
    }


@router.post("/offramp")
async def create_offramp(request: Request):
    """Verify the payout account and hand back a deposit address"""
    services = _services(request)
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON body")

    account_number = str(payload.get("account_number") or "").strip()
    bank_code = str(payload.get("bank_code") or "").strip()
    if not account_number or not bank_code:
        raise HTTPException(status_code=400, detail="account_number and bank_code are required")

    requested = payload.get("requested_ngn_amount")
    try:
        requested_ngn_amount = Decimal(str(requested)) if requested is not None else None
    except InvalidOperation:
        raise HTTPException(status_code=400, detail="requested_ngn_amount must be a number")

    try:
        transaction = await services.requests.create_request(
            user_id=payload.get("user_id"),
            account_number=account_number,
            bank_code=bank_code,
            bank_name=payload.get("bank_name"),
            user_email=payload.get("user_email"),
            requested_ngn_amount=requested_ngn_amount,
            fiat_deposit_reference=payload.get("fiat_deposit_reference"),
        )
    except VerificationError as e:
        logger.info(f"🚫 OFFRAMP_REQUEST_REJECTED: {e}")
        raise HTTPException(status_code=422, detail=str(e))

    return {
        "transaction_id": transaction.transaction_id,
        "status": transaction.status,
        "deposit_address": transaction.deposit_address,
        "account_name": transaction.account_name,
    }


@router.post("/offramp/cancel-pending")
async def cancel_pending_offramp(request: Request):
    """Cancel the caller's pending off-ramp so they can start a new one"""
    services = _services(request)
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    user_id = str(payload.get("user_id") or "").strip() if isinstance(payload, dict) else ""
    if not user_id:
        raise HTTPException(status_code=400, detail="user_id is required")

    cancelled = await services.requests.cancel_pending(user_id)
    return {
        "success": True,
        "cancelled": len(cancelled),
        "transaction_ids": cancelled,
        "message": "Pending off-ramp cancelled. You can start a new one." if cancelled else "No pending off-ramp found.",
    }
