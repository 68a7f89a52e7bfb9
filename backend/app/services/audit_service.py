"""
Keystone Backend — Audit Service
================================

What:  Writes and queries the append-only audit trail.
Why:   Every state change made through the service layer leaves a record of
       who, what, where from, and which fields changed.
How:   `log()` adds an AuditLog row to the caller's session and flushes. It
       does not commit: the request session commits the primary change and its
       audit row together, so a failed audit write rolls the change back too.

Reads (support / admin tooling):
    get_user_logs, get_resource_logs, get_recent_errors, get_stats
Retention:
    cleanup(days_to_keep=90) — the only code path that deletes audit rows.
"""

import ipaddress
import logging
import traceback
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from fastapi import Request
from sqlalchemy import delete, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import utcnow
from app.middleware.request_id import client_ip, get_request_id
from app.models.audit_log import RETENTION_DAYS, AuditLog
from app.models.enums import AuditAction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditContext:
    """Who performed an action and where the request came from."""

    user_id: Optional[uuid.UUID] = None
    user_email: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None

    @classmethod
    def from_request(cls, request: Request, user: Any = None) -> "AuditContext":
        return cls(
            user_id=getattr(user, "id", None),
            user_email=getattr(user, "email", None),
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent"),
            request_id=get_request_id() or None,
        )

    @classmethod
    def system(cls) -> "AuditContext":
        """Context for webhook- and job-driven changes with no acting user."""
        return cls()


def _valid_ip(value: Optional[str]) -> Optional[str]:
    # INET rejects hostnames such as "testclient"
    if not value:
        return None
    try:
        return str(ipaddress.ip_address(value))
    except ValueError:
        return None


def serialize_error(error: BaseException) -> Dict[str, Any]:
    return {
        "message": str(error),
        "code": getattr(error, "code", None),
        "stack": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
    }


class AuditService:
    """Audit trail access bound to one session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def log(
        self,
        action: Union[AuditAction, str],
        resource: str,
        resource_id: Optional[Any] = None,
        ctx: Optional[AuditContext] = None,
        *,
        user_id: Optional[uuid.UUID] = None,
        metadata: Optional[Dict[str, Any]] = None,
        changes: Optional[Dict[str, Any]] = None,
        duration_ms: Optional[int] = None,
        status_code: Optional[int] = None,
        error: Optional[BaseException] = None,
    ) -> AuditLog:
        ctx = ctx or AuditContext()
        entry = AuditLog(
            user_id=user_id or ctx.user_id,
            user_email=ctx.user_email,
            action=AuditAction(action).value,
            resource=resource,
            resource_id=str(resource_id) if resource_id is not None else None,
            metadata_=metadata or {},
            changes=changes,
            ip_address=_valid_ip(ctx.ip_address),
            user_agent=ctx.user_agent,
            request_id=ctx.request_id,
            duration_ms=duration_ms,
            status_code=status_code,
            error=serialize_error(error) if error is not None else None,
        )
        self.session.add(entry)
        await self.session.flush()
        logger.debug("Audit %s %s/%s", entry.action, resource, entry.resource_id)
        return entry

    # ── Queries ───────────────────────────────────────────────────────────

    async def get_user_logs(
        self,
        user_id: uuid.UUID,
        limit: int = 50,
        skip: int = 0,
        action: Optional[str] = None,
        resource: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[AuditLog]:
        stmt = select(AuditLog).where(AuditLog.user_id == user_id)
        if action:
            stmt = stmt.where(AuditLog.action == action)
        if resource:
            stmt = stmt.where(AuditLog.resource == resource)
        if start:
            stmt = stmt.where(AuditLog.created_at >= start)
        if end:
            stmt = stmt.where(AuditLog.created_at <= end)
        stmt = stmt.order_by(desc(AuditLog.created_at)).limit(limit).offset(skip)
        return list((await self.session.execute(stmt)).scalars().all())

    async def get_resource_logs(
        self,
        resource: str,
        resource_id: Any,
        limit: int = 100,
        skip: int = 0,
    ) -> List[AuditLog]:
        stmt = (
            select(AuditLog)
            .where(AuditLog.resource == resource, AuditLog.resource_id == str(resource_id))
            .order_by(desc(AuditLog.created_at))
            .limit(limit)
            .offset(skip)
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def get_recent_errors(self, limit: int = 100, since: Optional[datetime] = None) -> List[AuditLog]:
        stmt = select(AuditLog).where(AuditLog.error.is_not(None))
        if since:
            stmt = stmt.where(AuditLog.created_at >= since)
        stmt = stmt.order_by(desc(AuditLog.created_at)).limit(limit)
        return list((await self.session.execute(stmt)).scalars().all())

    async def get_stats(self, start: datetime, end: Optional[datetime] = None) -> Dict[str, Any]:
        """Totals, error rate, counts by action and resource, duration summary."""
        end = end or utcnow()
        window = (AuditLog.created_at >= start, AuditLog.created_at <= end)

        total = (await self.session.execute(select(func.count()).select_from(AuditLog).where(*window))).scalar_one()
        errors = (
            await self.session.execute(
                select(func.count()).select_from(AuditLog).where(*window, AuditLog.error.is_not(None))
            )
        ).scalar_one()

        by_action = dict(
            (await self.session.execute(
                select(AuditLog.action, func.count()).where(*window).group_by(AuditLog.action)
            )).all()
        )
        by_resource = dict(
            (await self.session.execute(
                select(AuditLog.resource, func.count()).where(*window).group_by(AuditLog.resource)
            )).all()
        )
        perf = (
            await self.session.execute(
                select(
                    func.avg(AuditLog.duration_ms),
                    func.min(AuditLog.duration_ms),
                    func.max(AuditLog.duration_ms),
                ).where(*window, AuditLog.duration_ms.is_not(None))
            )
        ).one()

        return {
            "total": total,
            "errors": errors,
            "errorRate": (errors / total * 100) if total else 0,
            "byAction": by_action,
            "byResource": by_resource,
            "performance": {
                "avgDuration": float(perf[0] or 0),
                "minDuration": perf[1] or 0,
                "maxDuration": perf[2] or 0,
            },
        }

    async def cleanup(self, days_to_keep: int = RETENTION_DAYS) -> int:
        """Delete entries older than the retention window; returns rows removed."""
        cutoff = utcnow() - timedelta(days=days_to_keep)
        result = await self.session.execute(delete(AuditLog).where(AuditLog.created_at < cutoff))
        removed = result.rowcount or 0
        logger.info("Audit cleanup removed %d entries older than %s", removed, cutoff.isoformat())
        return removed
