"""Request-scoped access to the components built at startup."""

from typing import Optional

from fastapi import Header, HTTPException, Request, status

from engage.services.pipeline import InboundPipeline
from engage.services.realtime import RealtimeHub


def get_pipeline(request: Request) -> InboundPipeline:
    return request.app.state.pipeline


def get_hub(request: Request) -> RealtimeHub:
    return request.app.state.hub


def require_tenant(x_tenant_id: Optional[str] = Header(default=None, alias="X-Tenant-Id")) -> str:
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="X-Tenant-Id header is required")
    return tenant_id
