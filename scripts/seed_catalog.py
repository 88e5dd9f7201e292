import argparse
import os
from decimal import Decimal
from pathlib import Path

from dotenv import load_dotenv

from billing_engine.domain.models import Plan
from billing_engine.infrastructure.persistence.sqlite import SQLitePersistence


def main() -> None:
    load_dotenv()

    parser = argparse.ArgumentParser(description="Create a plan and, optionally, a user in the billing store.")
    parser.add_argument("plan_id")
    parser.add_argument("name")
    parser.add_argument("price_monthly", type=Decimal)
    parser.add_argument("price_annual", type=Decimal)
    parser.add_argument("--currency", default="NGN")
    parser.add_argument("--user-email")
    parser.add_argument("--user-id")
    args = parser.parse_args()

    database_path = Path(os.getenv("DATABASE_PATH", "data/billing.db")).resolve()
    persistence = SQLitePersistence(database_path)
    try:
        if persistence.find_plan(args.plan_id):
            print("Plan already exists:", args.plan_id)
        else:
            plan = persistence.create_plan(
                Plan(
                    id=args.plan_id,
                    name=args.name,
                    price_monthly=args.price_monthly,
                    price_annual=args.price_annual,
                    currency=args.currency,
                )
            )
            print("Plan created:", plan.id, plan.price_monthly, plan.price_annual, plan.currency)

        if args.user_email:
            user = persistence.create_user(args.user_email, user_id=args.user_id)
            print("User created:", user.id, user.email)
    finally:
        persistence.close()


if __name__ == "__main__":
    main()
