from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from boxoffice.core.config import settings
from boxoffice.db.session import get_db, get_session_factory
from boxoffice.models.api_key import ApiKey
from boxoffice.security.api_key import validate_api_key
from boxoffice.services.refund_service import RefundGateway, StripeRefundGateway
from boxoffice.services.signature_codec import constant_time_equals
from boxoffice.services.webhook_service import WebhookGate


# -----------------------------
# Dependency: scanner device key
# -----------------------------
async def get_scanner_key(
    x_api_key: str = Header(..., description="Scanner device API key"),
    db: AsyncSession = Depends(get_db),
) -> ApiKey:
    """
    Raises 401 if the key is unknown or inactive, 403 if it is not a scanner key.
    """
    return await validate_api_key(db, x_api_key, roles=("scanner", "admin"))


# -----------------------------
# Dependency: operator console
# -----------------------------
def require_admin(
    x_admin_key: str | None = Header(default=None, alias="X-Admin-Key"),
) -> None:
    if not settings.ADMIN_API_ENABLED:
        raise HTTPException(status_code=404, detail="Admin API not enabled")
    if not settings.ADMIN_KEY:
        raise HTTPException(status_code=500, detail="ADMIN_KEY not configured")
    if not x_admin_key or not constant_time_equals(x_admin_key, settings.ADMIN_KEY):
        raise HTTPException(status_code=403, detail="Forbidden")


def get_webhook_gate(
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> WebhookGate:
    return WebhookGate(session_factory)


def get_refund_gateway() -> RefundGateway:
    return StripeRefundGateway()
