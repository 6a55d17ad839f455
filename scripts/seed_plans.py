"""Seed the default trial, monthly and yearly pricing plans."""

from dotenv import load_dotenv

from app.config import settings
from app.db import SessionLocal
from app.services.billing.plans import PlanCatalog


def main() -> None:
    load_dotenv()
    db = SessionLocal()
    try:
        created = PlanCatalog(db).seed_default_plans(currency=settings.billing_currency)
        db.commit()
        print(f"Plan seed complete ({len(created)} created).")
    finally:
        db.close()


if __name__ == "__main__":
    main()
