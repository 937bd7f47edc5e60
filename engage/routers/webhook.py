import hashlib
import hmac
import json
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from engage.config import settings
from engage.dependencies import get_pipeline
from engage.logging_config import get_logger
from engage.schemas.webhook import WebhookAcceptedResponse, WebhookEventOutcome
from engage.services.errors import PersistenceFailure, ValidationError
from engage.services.pipeline import InboundPipeline

logger = get_logger("webhook")

router = APIRouter()

SIGNATURE_HEADERS = ("X-Webhook-Signature", "X-Signature")


def _get_request_signature(request: Request) -> Optional[str]:
    for header in SIGNATURE_HEADERS:
        value = request.headers.get(header)
        if value and value.strip():
            value = value.strip()
            return value[len("sha256="):] if value.lower().startswith("sha256=") else value
    return None


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_webhook_credentials(request: Request, body: bytes) -> None:
    """API key and HMAC checks, each enforced only when configured."""
    api_key = settings.webhook_api_key
    secret = settings.webhook_signature_secret

    if not api_key and not secret:
        logger.warning("Webhook credentials not configured, accepting unauthenticated delivery")
        return

    if api_key:
        provided = (request.headers.get("X-API-Key") or "").strip()
        if not provided or not hmac.compare_digest(provided, api_key):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")

    if secret:
        signature = _get_request_signature(request)
        if not signature:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing webhook signature")
        if not hmac.compare_digest(signature.lower(), compute_signature(secret, body)):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid webhook signature")


@router.post(
    "/webhooks/whatsapp/{broker_kind}",
    response_model=WebhookAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def receive_whatsapp_webhook(
    broker_kind: str,
    request: Request,
    x_tenant_id: Optional[str] = Header(default=None, alias="X-Tenant-Id"),
    pipeline: InboundPipeline = Depends(get_pipeline),
):
    """Acknowledge once the delivery is committed. Replies run after the response."""
    body = await request.body()
    verify_webhook_credentials(request, body)

    try:
        payload = json.loads(body)
    except ValueError as exc:
        logger.warning(
            "Webhook payload is not valid JSON",
            extra={"context": {"error": str(exc), "body_preview": body[:200].decode("utf-8", "ignore")}},
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")

    tenant_hint = x_tenant_id.strip() if x_tenant_id and x_tenant_id.strip() else None
    try:
        report = await pipeline.accept(payload, broker_kind, tenant_hint)
    except ValidationError as exc:
        logger.info(
            f"Webhook rejected: {exc}",
            extra={"context": {"broker_kind": broker_kind, "tenant_id": tenant_hint}},
        )
        raise HTTPException(status_code=exc.status_code, detail=str(exc))
    except PersistenceFailure:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Delivery could not be stored, retry later",
        )

    return WebhookAcceptedResponse(
        accepted=report.accepted,
        duplicates=report.duplicates,
        ignored=report.ignored,
        acknowledged=report.acknowledged,
        events=[
            WebhookEventOutcome(
                externalMessageId=outcome.external_message_id,
                status=outcome.status,
                ticketId=outcome.ticket_id,
                messageId=outcome.message_id,
            )
            for outcome in report.outcomes
        ],
    )
