"""
Database models for the book entitlement service.

Importing this package registers every table on Base.metadata.
"""

from bookgate.models.base import (
    SENTINEL_END_DATE,
    TimestampMixin,
    ensure_utc,
    generate_uuid,
    utcnow,
)
from bookgate.models.user import User, UserRole, STAFF_ROLES
from bookgate.models.school import School, Grade, Group, GroupMembership
from bookgate.models.book import Book
from bookgate.models.book_access import BookAccess, AccessStatus
from bookgate.models.book_assignment import BookAssignment, AssignmentTargetType
from bookgate.models.school_book_license import SchoolBookLicense
from bookgate.models.subscription import Subscription, SubscriptionStatus, PlanType
from bookgate.models.purchase import (
    Purchase,
    PurchaseType,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from bookgate.models.webhook_event import WebhookEvent
from bookgate.models.notification import (
    Notification,
    NotificationEventType,
    NotificationStatus,
)

__all__ = [
    "SENTINEL_END_DATE",
    "TimestampMixin",
    "ensure_utc",
    "generate_uuid",
    "utcnow",
    "User",
    "UserRole",
    "STAFF_ROLES",
    "School",
    "Grade",
    "Group",
    "GroupMembership",
    "Book",
    "BookAccess",
    "AccessStatus",
    "BookAssignment",
    "AssignmentTargetType",
    "SchoolBookLicense",
    "Subscription",
    "SubscriptionStatus",
    "PlanType",
    "Purchase",
    "PurchaseType",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    "WebhookEvent",
    "Notification",
    "NotificationEventType",
    "NotificationStatus",
]
