"""
Audit trail for the connect flow. Security-relevant events only; no tokens, verifiers or secrets.
"""
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from social_api.database import get_db
from social_api.models import AuditLog

logger = logging.getLogger(__name__)

EVENT_AUTH_STARTED = "auth_started"
EVENT_STATE_REJECTED = "state_rejected"
EVENT_TOKEN_EXCHANGED = "token_exchanged"
EVENT_TOKEN_EXCHANGE_FAILED = "token_exchange_failed"
EVENT_ACCOUNT_CONNECTED = "account_connected"
EVENT_PROVIDER_ERROR = "provider_error"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"


def get_client_ip(request: Request | None) -> str | None:
    """Client IP if available (request.client.host). Forwarding headers are not trusted."""
    if request is None or request.client is None:
        return None
    return getattr(request.client, "host", None)


async def log_audit(
    session_factory: async_sessionmaker[AsyncSession],
    event_type: str,
    *,
    platform: str | None = None,
    user_id: int | None = None,
    ip: str | None = None,
    outcome: str = OUTCOME_SUCCESS,
    detail: str | None = None,
) -> None:
    """Append one audit record in its own session so it survives the caller's failures."""
    log = logger.warning if outcome == OUTCOME_FAIL else logger.info
    log("audit event=%s platform=%s user_id=%s ip=%s outcome=%s", event_type, platform, user_id, ip, outcome)
    async with session_factory() as session:
        session.add(
            AuditLog(
                event_type=event_type,
                platform=platform,
                user_id=user_id,
                ip=ip,
                outcome=outcome,
                detail=detail[:1000] if detail else None,
            )
        )
        await session.commit()


router = APIRouter(tags=["audit"])


@router.get("/audit")
async def list_audit_logs(
    limit: int = 100,
    event_type: str | None = None,
    outcome: str | None = None,
    db: AsyncSession = Depends(get_db),
):
    """Recent audit events, most recent first."""
    q = select(AuditLog).order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
    if event_type:
        q = q.where(AuditLog.event_type == event_type)
    if outcome:
        q = q.where(AuditLog.outcome == outcome)
    result = await db.execute(q.limit(min(max(1, limit), 500)))
    return [
        {
            "created_at": r.created_at.isoformat() if r.created_at else None,
            "event_type": r.event_type,
            "platform": r.platform,
            "user_id": r.user_id,
            "ip": r.ip,
            "outcome": r.outcome,
            "detail": r.detail,
        }
        for r in result.scalars().all()
    ]
