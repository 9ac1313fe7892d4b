"""ProductBoard webhook endpoint."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from plansync.core.errors import AuthError
from plansync.sync.webhook import WebhookSyncController
from plansync.web.dependencies import get_webhook_controller
from plansync.web.models import WebhookResponse

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])
logger = structlog.get_logger()

LIVENESS_MESSAGE = "ProductBoard ADO Sync Webhook Endpoint is active."

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
}


@router.options("/productboard")
async def productboard_preflight():
    return Response(status_code=204, headers=CORS_HEADERS)


@router.get("/productboard")
async def productboard_handshake(
    validation_token: str | None = Query(None, alias="validationToken"),
):
    """Echo ProductBoard's subscription handshake token, else report liveness."""
    if validation_token:
        logger.info("webhook_validation_handshake")
        return PlainTextResponse(validation_token, headers=CORS_HEADERS)
    return PlainTextResponse(LIVENESS_MESSAGE, headers=CORS_HEADERS)


@router.post("/productboard", response_model=WebhookResponse)
async def productboard_event(
    request: Request,
    controller: WebhookSyncController = Depends(get_webhook_controller),
):
    body = await request.body()
    try:
        outcome = await controller.handle(body, request.headers.get("authorization"))
    except AuthError as e:
        logger.warning("webhook_rejected", reason=str(e))
        return JSONResponse(
            status_code=401,
            content={"error": "Unauthorized: Invalid signature"},
            headers=CORS_HEADERS,
        )
    except Exception as e:
        logger.error("webhook_failed", error=str(e))
        raise HTTPException(status_code=500, detail=f"Webhook processing failed: {e}")

    if outcome.malformed:
        return JSONResponse(
            status_code=400,
            content={"error": outcome.details, "logId": outcome.log_id},
            headers=CORS_HEADERS,
        )

    response = WebhookResponse(
        success=True,
        message="Webhook received",
        logId=outcome.log_id,
        status=outcome.status.value,
    )
    return JSONResponse(content=response.model_dump(), headers=CORS_HEADERS)
