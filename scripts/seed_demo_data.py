from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from src.application.booking_service import BookingLifecycleService, CASH, ServiceLine
from src.infrastructure.db.models import Base, Booking, Voucher
from src.infrastructure.db.session import SessionLocal, engine

DEMO_TENANT = "demo-salon"


def _dt(days_from_now: int, hour: int, minute: int) -> datetime:
    manila = timezone(timedelta(hours=8))
    target = datetime.now(manila) + timedelta(days=days_from_now)
    return target.replace(hour=hour, minute=minute, second=0, microsecond=0)


def seed_vouchers(db) -> None:
    voucher_defs = [
        {"code": "WELCOME100", "discount_type": "FLAT", "discount_value": 10000},
        {"code": "SPA15", "discount_type": "PERCENTAGE", "discount_value": 15},
    ]

    for item in voucher_defs:
        existing = db.execute(
            select(Voucher).where(Voucher.code == item["code"])
        ).scalar_one_or_none()
        if existing:
            if existing.used_by_id is None:
                existing.is_active = True
            existing.discount_type = item["discount_type"]
            existing.discount_value = item["discount_value"]
            continue

        db.add(
            Voucher(
                tenant_id=DEMO_TENANT,
                code=item["code"],
                discount_type=item["discount_type"],
                discount_value=item["discount_value"],
                is_active=True,
            )
        )
    db.flush()


def seed_bookings(db) -> None:
    already_seeded = db.execute(
        select(Booking.id).where(Booking.tenant_id == DEMO_TENANT).limit(1)
    ).first()
    if already_seeded:
        return

    service = BookingLifecycleService(db)

    hold = service.create_hold(
        tenant_id=DEMO_TENANT,
        scheduled_start=_dt(days_from_now=1, hour=10, minute=0),
        scheduled_end=_dt(days_from_now=1, hour=11, minute=30),
        services=[ServiceLine("Signature Haircut", 45000), ServiceLine("Hair Spa", 30000)],
        customer_name="Maria Santos",
        customer_email="maria@example.com",
        voucher_code="SPA15",
    )
    service.start_payment_attempt(
        booking_id=hold.id,
        amount_principal=hold.grand_total,
        payment_intent_id="pi_demo_hold",
    )

    service.create_hold(
        tenant_id=DEMO_TENANT,
        scheduled_start=_dt(days_from_now=2, hour=14, minute=0),
        scheduled_end=_dt(days_from_now=2, hour=15, minute=0),
        services=[ServiceLine("Manicure", 25000)],
        customer_name="Jose Reyes",
        customer_email="jose@example.com",
        payment_method=CASH,
    )


def main() -> None:
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_vouchers(db)
        seed_bookings(db)
        db.commit()
        print("Seed complete: demo-salon vouchers, one HOLD booking with a pending attempt, one cash booking.")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
