"""Enumerations shared by models, schemas and services."""

import enum


class ExampleStatus(str, enum.Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"

    def can_transition_to(self, target: "ExampleStatus") -> bool:
        """
        draft → published → archived. Staying put is always allowed; nothing
        leaves archived and published never goes back to draft.
        """
        if self is target:
            return True
        return target in _TRANSITIONS[self]


_TRANSITIONS = {
    ExampleStatus.DRAFT: {ExampleStatus.PUBLISHED, ExampleStatus.ARCHIVED},
    ExampleStatus.PUBLISHED: {ExampleStatus.ARCHIVED},
    ExampleStatus.ARCHIVED: set(),
}


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    MODERATOR = "moderator"
    USER = "user"


class SubscriptionStatus(str, enum.Enum):
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"
    CANCELLED = "cancelled"


class AuditAction(str, enum.Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    PUBLISH = "publish"
    ARCHIVE = "archive"
    RESTORE = "restore"
    LOGIN = "login"
    LOGOUT = "logout"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
