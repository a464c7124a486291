"""Shared API dependencies: single import point for all routers.

Re-exports database, authentication and billing dependencies so that router
modules can import everything they need from one place::

    from app.api.deps import get_db, get_current_active_user
"""

from app.auth.dependencies import (
    get_current_active_user,
    get_current_user,
    require_admin,
)
from app.billing.dependencies import (
    get_gateway,
    get_ledger,
    get_orchestrator,
    get_pipeline,
    get_policy,
    get_side_effects,
)
from app.database import get_db, get_session_factory

__all__ = [
    "get_db",
    "get_session_factory",
    "get_current_user",
    "get_current_active_user",
    "require_admin",
    "get_gateway",
    "get_ledger",
    "get_orchestrator",
    "get_pipeline",
    "get_policy",
    "get_side_effects",
]
