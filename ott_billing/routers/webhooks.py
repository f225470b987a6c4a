from __future__ import annotations

from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from ott_billing.models import WebhookAck
from ott_billing.services.webhooks import ingest

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/billing", response_model=WebhookAck)
async def billing_webhook(req: Request):
    # Signature verification needs the exact bytes the gateway signed.
    payload = await req.body()
    sig = req.headers.get("stripe-signature")
    return await run_in_threadpool(ingest, payload, sig)
