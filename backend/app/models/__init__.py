"""SQLAlchemy models for the billing service.

All models are imported here so that Alembic's autogenerate can discover
them via Base.metadata. If you add a new model, import it in this file.
"""

from app.models.billing_record import BillingRecord
from app.models.history import AuditLog, ProcessedWebhookEvent, SubscriptionStatusHistory
from app.models.plan import PlanPrivilege, Privilege, SubscriptionPlan
from app.models.privilege_usage import PrivilegeUsage
from app.models.subscription import Subscription
from app.models.user import User

__all__ = [
    "AuditLog",
    "BillingRecord",
    "PlanPrivilege",
    "Privilege",
    "PrivilegeUsage",
    "ProcessedWebhookEvent",
    "Subscription",
    "SubscriptionPlan",
    "SubscriptionStatusHistory",
    "User",
]
