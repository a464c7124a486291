"""Seed the database with telehealth plans, privileges and demo accounts.

Plans mirror the platform's public pricing page:
- Basic ($10/mo): 2 teleconsultations per period, messaging capped per day
- Plus ($20/mo): 5 teleconsultations, unlimited messaging, 2 refills
- Premium ($49/mo, 14-day trial): unlimited consultations with a daily cap
- Premium Annual ($490/yr)

Run inside Docker:
    docker compose exec backend python -m scripts.seed_data

Then create the matching Stripe products:
    docker compose exec backend python -m app.billing.scripts.sync_stripe_plans
"""

import asyncio
import sys
from decimal import Decimal
from pathlib import Path

# Add backend to path so imports work when run as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sqlalchemy import delete, select

from app.database import async_session_factory, engine
from app.models.plan import UNLIMITED, PlanPrivilege, Privilege, SubscriptionPlan
from app.models.subscription import Subscription
from app.models.user import User

# ---------------------------------------------------------------------------
# Seed data definitions
# ---------------------------------------------------------------------------

USERS = [
    {"email": "admin@telehealth.test", "name": "Billing Admin", "role": "admin"},
    {"email": "patient@telehealth.test", "name": "Demo Patient", "role": "patient"},
]

PRIVILEGES = [
    {"name": "Teleconsultation", "description": "Video visit with a licensed provider"},
    {"name": "Messaging", "description": "Asynchronous chat with the care team"},
    {"name": "PrescriptionRefill", "description": "Refill request reviewed by a provider"},
    {"name": "LabReview", "description": "Provider review of uploaded lab results"},
]

# value: per-period quota (-1 unlimited, 0 disabled); optional daily/weekly/monthly caps
PLANS = [
    {
        "name": "Basic",
        "description": "2 consultations per month and care-team messaging",
        "price": Decimal("10.00"),
        "billing_interval_months": 1,
        "trial_days": 0,
        "grants": {
            "Teleconsultation": {"value": 2},
            "Messaging": {"value": UNLIMITED, "daily_limit": 10},
            "PrescriptionRefill": {"value": 0},
        },
    },
    {
        "name": "Plus",
        "description": "5 consultations per month, unlimited messaging, prescription refills",
        "price": Decimal("20.00"),
        "billing_interval_months": 1,
        "trial_days": 0,
        "grants": {
            "Teleconsultation": {"value": 5, "weekly_limit": 2},
            "Messaging": {"value": UNLIMITED},
            "PrescriptionRefill": {"value": 2},
            "LabReview": {"value": 1},
        },
    },
    {
        "name": "Premium",
        "description": "Unlimited consultations, refills and lab reviews",
        "price": Decimal("49.00"),
        "billing_interval_months": 1,
        "trial_days": 14,
        "grants": {
            "Teleconsultation": {"value": UNLIMITED, "daily_limit": 3},
            "Messaging": {"value": UNLIMITED},
            "PrescriptionRefill": {"value": UNLIMITED},
            "LabReview": {"value": UNLIMITED},
        },
    },
    {
        "name": "Premium Annual",
        "description": "Premium, billed yearly",
        "price": Decimal("490.00"),
        "billing_interval_months": 12,
        "trial_days": 0,
        "grants": {
            "Teleconsultation": {"value": UNLIMITED, "daily_limit": 3, "monthly_limit": 30},
            "Messaging": {"value": UNLIMITED},
            "PrescriptionRefill": {"value": UNLIMITED},
            "LabReview": {"value": UNLIMITED},
        },
    },
]


async def seed() -> None:
    """Populate plans, privileges and demo accounts.

    Idempotent: demo users (and their subscriptions) are deleted and
    re-created; plans and privileges are updated in place by name so that
    Stripe ids written by ``sync_stripe_plans`` survive a re-seed.
    """
    async with async_session_factory() as session:
        # ------------------------------------------------------------------
        # 1. Demo users
        # ------------------------------------------------------------------
        emails = [u["email"] for u in USERS]
        result = await session.execute(select(User).where(User.email.in_(emails)))
        existing = result.scalars().all()
        if existing:
            print(f"⚠️  {len(existing)} demo user(s) already exist. Deleting and re-seeding...")
            ids = [u.id for u in existing]
            await session.execute(delete(Subscription).where(Subscription.user_id.in_(ids)))
            await session.execute(delete(User).where(User.id.in_(ids)))
            await session.flush()

        for user_data in USERS:
            user = User(is_active=True, **user_data)
            session.add(user)
            await session.flush()
            print(f"✅ Created {user.role} user: {user.email} (id={user.id})")

        # ------------------------------------------------------------------
        # 2. Privileges
        # ------------------------------------------------------------------
        privileges: dict[str, Privilege] = {}
        for priv_data in PRIVILEGES:
            result = await session.execute(select(Privilege).where(Privilege.name == priv_data["name"]))
            privilege = result.scalar_one_or_none()
            if privilege is None:
                privilege = Privilege(**priv_data)
                session.add(privilege)
            else:
                privilege.description = priv_data["description"]
            privileges[privilege.name] = privilege
        await session.flush()
        print(f"✅ Upserted {len(privileges)} privileges")

        # ------------------------------------------------------------------
        # 3. Plans and grants
        # ------------------------------------------------------------------
        for plan_data in PLANS:
            grants = plan_data["grants"]
            fields = {k: v for k, v in plan_data.items() if k != "grants"}
            result = await session.execute(select(SubscriptionPlan).where(SubscriptionPlan.name == fields["name"]))
            plan = result.scalar_one_or_none()
            if plan is None:
                plan = SubscriptionPlan(is_active=True, currency="usd", **fields)
                session.add(plan)
                await session.flush()
            else:
                for key, value in fields.items():
                    setattr(plan, key, value)
                await session.execute(delete(PlanPrivilege).where(PlanPrivilege.plan_id == plan.id))

            for privilege_name, limits in grants.items():
                session.add(
                    PlanPrivilege(plan_id=plan.id, privilege_id=privileges[privilege_name].id, **limits)
                )
            await session.flush()
            print(f"   💊 {plan.name} at ${plan.price} every {plan.billing_interval_months} month(s)")

        await session.commit()

        print()
        print("=" * 60)
        print("📊 Seed Summary")
        print("=" * 60)
        print(f"   Users:      {len(USERS)} ({', '.join(emails)})")
        print(f"   Privileges: {len(PRIVILEGES)}")
        print(f"   Plans:      {len(PLANS)}")
        print("=" * 60)
        print("🎉 Done! Next: python -m app.billing.scripts.sync_stripe_plans")

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(seed())
