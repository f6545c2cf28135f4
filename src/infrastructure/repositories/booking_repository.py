# src/infrastructure/repositories/booking_repository.py

from datetime import datetime

from sqlalchemy import func, select, update

from src.domain.state_machine import (
    BookingStatus,
    PaymentStatus,
    SERVED_UNIT_STATUSES,
    ServiceUnitStatus,
)
from src.infrastructure.db.models import Booking, ServiceUnit
from src.infrastructure.repositories.base import Repository


class BookingRepository(Repository):

    def get_by_id(
        self,
        booking_id: str,
        for_update: bool = False,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.id == booking_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def list_expired_holds(self, now: datetime) -> list[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.status == BookingStatus.HOLD)
            .where(Booking.hold_expires_at < now)
            .order_by(Booking.hold_expires_at)
        )
        return list(self.db.execute(stmt).scalars().all())

    def create_booking(
        self,
        tenant_id: str,
        status: BookingStatus,
        scheduled_start: datetime,
        scheduled_end: datetime,
        hold_expires_at: datetime | None,
        customer_name: str | None,
        customer_email: str | None,
    ) -> Booking:
        booking = Booking(
            tenant_id=tenant_id,
            status=status,
            scheduled_start=scheduled_start,
            scheduled_end=scheduled_end,
            hold_expires_at=hold_expires_at,
            customer_name=customer_name,
            customer_email=customer_email,
            payment_status=PaymentStatus.UNPAID,
        )
        self.db.add(booking)
        self.db.flush()
        return booking

    def add_service_unit(
        self,
        booking: Booking,
        service_name: str,
        price: int,
    ) -> ServiceUnit:
        unit = ServiceUnit(
            booking_id=booking.id,
            service_name=service_name,
            price=price,
            status=ServiceUnitStatus.PENDING,
        )
        self.db.add(unit)
        return unit

    def get_service_unit(self, unit_id: str) -> ServiceUnit | None:
        stmt = select(ServiceUnit).where(ServiceUnit.id == unit_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def count_unserved_units(self, booking_id: str) -> int:
        stmt = (
            select(func.count())
            .select_from(ServiceUnit)
            .where(ServiceUnit.booking_id == booking_id)
            .where(ServiceUnit.status.not_in(list(SERVED_UNIT_STATUSES)))
        )
        return self.db.execute(stmt).scalar_one()

    # -----------------------------
    # Conditional transitions
    # -----------------------------
    def cancel_expired_hold(self, booking_id: str, now: datetime) -> int:
        return self.conditional_update(
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.status == BookingStatus.HOLD)
            .where(Booking.hold_expires_at < now)
            .values(status=BookingStatus.CANCELLED, hold_expires_at=None)
        )

    def cancel_hold(self, booking_id: str) -> int:
        return self.conditional_update(
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.status == BookingStatus.HOLD)
            .values(status=BookingStatus.CANCELLED, hold_expires_at=None)
        )

    def accept_hold(
        self,
        booking_id: str,
        amount_paid: int,
        payment_status: PaymentStatus,
    ) -> int:
        return self.conditional_update(
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.status == BookingStatus.HOLD)
            .values(
                status=BookingStatus.ACCEPTED,
                hold_expires_at=None,
                amount_paid=amount_paid,
                payment_status=payment_status,
            )
        )

    def apply_payment(
        self,
        booking_id: str,
        expected_amount_paid: int,
        amount_paid: int,
        payment_status: PaymentStatus,
    ) -> int:
        # Guarded on the amount read in this transaction so two concurrent
        # credits cannot overwrite each other.
        return self.conditional_update(
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.amount_paid == expected_amount_paid)
            .values(amount_paid=amount_paid, payment_status=payment_status)
        )

    def complete_if_accepted(self, booking_id: str) -> int:
        return self.conditional_update(
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.status == BookingStatus.ACCEPTED)
            .values(status=BookingStatus.COMPLETED)
        )

    def update_service_unit_status(
        self,
        unit_id: str,
        status: ServiceUnitStatus,
    ) -> int:
        return self.conditional_update(
            update(ServiceUnit)
            .where(ServiceUnit.id == unit_id)
            .where(ServiceUnit.status.not_in(list(SERVED_UNIT_STATUSES)))
            .values(status=status)
        )
