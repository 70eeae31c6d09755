"""
M-Pesa callback endpoint.
Public: Safaricom cannot authenticate, and must always receive an
acknowledgement or it will keep retrying. Trust comes from the secret token
in the result URL; anything else is stored for audit and not applied.
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from campusmarket.core.database import get_db
from campusmarket.services.payment_gateway import PaymentGateway, verify_callback_source

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("/mpesa/callback/{token}")
@router.post("/mpesa/callback")
async def mpesa_callback(request: Request, token: Optional[str] = None, db: Session = Depends(get_db)):
    """Ingest an STK push result; always answers ResultCode 0."""
    client_host = request.client.host if request.client else None
    verified = verify_callback_source(token, client_host)

    body = await request.body()
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.error("[MPESA] Callback body is not valid JSON")
        payload = body.decode("utf-8", errors="replace")

    return await run_in_threadpool(PaymentGateway(db).handle_callback, payload, verified)
