# routes/webhooks.py
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from schemas.subscription_schema import WebhookAck
from services.event_gateway import EventGateway, IngestionStatus, get_event_gateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(request: Request, gateway: EventGateway = Depends(get_event_gateway)):
    """
    Stripe webhook endpoint.

    The body is read as raw bytes (signatures are computed over the exact
    payload). Processing runs in a worker thread, so once the transaction
    has started a client disconnect cannot interrupt it.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        result = await run_in_threadpool(gateway.handle, payload, sig_header)
    except Exception as e:
        # Non-2xx makes Stripe redeliver later
        logger.exception(f"❌ Error processing webhook: {e}")
        return JSONResponse(status_code=500, content={"received": False, "error": "processing_failed"})

    if result.status is IngestionStatus.REJECTED:
        return JSONResponse(status_code=400, content={"received": False, "error": result.reason})

    return {
        "received": True,
        "status": result.status.value,
        "event_id": result.event_id,
    }
