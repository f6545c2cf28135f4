# src/infrastructure/repositories/voucher_repository.py

from sqlalchemy import select, update

from src.infrastructure.db.models import Voucher
from src.infrastructure.repositories.base import Repository


class VoucherRepository(Repository):

    def get_by_code(self, code: str) -> Voucher | None:
        stmt = select(Voucher).where(Voucher.code == code)
        return self.db.execute(stmt).scalar_one_or_none()

    def reserve(self, code: str, tenant_id: str, booking_id: str) -> int:
        """
        Optimistic reservation: only an active, unclaimed voucher of the same
        tenant can be taken.
        """
        return self.conditional_update(
            update(Voucher)
            .where(Voucher.code == code)
            .where(Voucher.tenant_id == tenant_id)
            .where(Voucher.is_active.is_(True))
            .where(Voucher.used_by_id.is_(None))
            .values(used_by_id=booking_id, is_active=False)
        )

    def release_for_booking(self, booking_id: str) -> int:
        return self.conditional_update(
            update(Voucher)
            .where(Voucher.used_by_id == booking_id)
            .values(used_by_id=None, is_active=True)
        )
