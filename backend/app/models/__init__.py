"""ORM models; importing this package registers every table on Base.metadata."""

from app.models.audit_log import AuditLog
from app.models.enums import AuditAction, ExampleStatus, SubscriptionStatus, UserRole
from app.models.example import Example
from app.models.user import User

__all__ = [
    "AuditAction",
    "AuditLog",
    "Example",
    "ExampleStatus",
    "SubscriptionStatus",
    "User",
    "UserRole",
]
