"""
Membership plan seed script.

Creates the default plan catalog. Plans that already exist (matched by name)
are left untouched.

Usage:
    python -m scripts.seed_membership_plans
    python -m scripts.seed_membership_plans --dry-run (to preview without saving)

Environment variables:
    DATABASE_URL: PostgreSQL connection string (required)
"""

import logging
from decimal import Decimal

from sqlalchemy.orm import sessionmaker

from gymaccess.database.session import create_engine_for_url, database_url_from_env, normalize_database_url
from gymaccess.models.plan import MembershipPlan
from gymaccess.repositories.plans_repository import PlansRepository

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


DEFAULT_PLANS = [
    {"name": "Explorer", "price": Decimal("49.00"), "duration_days": 30, "access_level": "standard"},
    {"name": "Astronaut", "price": Decimal("99.00"), "duration_days": 30, "access_level": "plus"},
    {"name": "Commander", "price": Decimal("199.00"), "duration_days": 30, "access_level": "premium"},
    {"name": "Day Pass", "price": Decimal("12.00"), "duration_days": 1, "access_level": "standard"},
    {"name": "Annual Explorer", "price": Decimal("490.00"), "duration_days": 365, "access_level": "standard"},
]


def seed_plans(database_url: str, dry_run: bool = False) -> int:
    """
    Insert missing default plans.

    Returns:
        Number of plans created
    """
    engine = create_engine_for_url(normalize_database_url(database_url))
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    created = 0
    session = SessionLocal()
    try:
        repo = PlansRepository(session)

        for plan_data in DEFAULT_PLANS:
            if repo.get_by_name(plan_data["name"]):
                logger.info(f"Plan already exists: {plan_data['name']}")
                continue

            if dry_run:
                logger.info(f"[dry-run] Would create plan: {plan_data['name']}")
                continue

            repo.create(MembershipPlan(**plan_data))
            created += 1

        if not dry_run:
            session.commit()
        logger.info(f"Seeding complete, {created} plan(s) created")
        return created
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
        engine.dispose()


def main():
    import argparse

    parser = argparse.ArgumentParser(description="Seed default membership plans")
    parser.add_argument("--dry-run", action="store_true", help="Preview without saving")
    args = parser.parse_args()

    seed_plans(database_url_from_env(), dry_run=args.dry_run)


if __name__ == "__main__":
    main()
