import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from marketplace.models import FinancialRecord, User
from marketplace.models.enums import FinancialStatus, UserRole
from marketplace.services.clock import utcnow
from marketplace.services.effects import EffectsDispatcher
from marketplace.services.errors import NotFoundError, OrderValidationError, PayoutConflictError
from marketplace.services.ledger import FinancialLedger
from marketplace.services.notices import PayoutNotice
from marketplace.services.notification_service import Notifier
from marketplace.services.pricing import ZERO, to_money
from marketplace.services.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PayoutResult:
    seller_id: int
    total_amount: Decimal
    records_count: int
    payout_reference: str
    payout_method: str
    paid_at: datetime


def generate_payout_reference() -> str:
    return f"PO-{uuid.uuid4().hex[:16].upper()}"


class PayoutService:
    """Settles a batch of CLEARED records for one seller, all or nothing."""

    def __init__(
        self,
        ledger: FinancialLedger,
        dispatcher: EffectsDispatcher | None = None,
        notifier: Notifier | None = None,
    ):
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.notifier = notifier or Notifier()

    def process_payout(
        self,
        db: Session,
        seller_id: int,
        record_ids: list[int],
        payout_method: str,
        reference: str | None = None,
        notes: str | None = None,
        processed_by: int | None = None,
    ) -> PayoutResult:
        if not record_ids:
            raise OrderValidationError("record_ids must not be empty")
        if len(set(record_ids)) != len(record_ids):
            raise OrderValidationError("record_ids must not contain duplicates")
        if not payout_method or not payout_method.strip():
            raise OrderValidationError("payout_method is required")

        payout_reference = reference or generate_payout_reference()

        with UnitOfWork(db, self.dispatcher) as uow:
            # Seller row lock serializes concurrent payouts for the same seller.
            seller = (
                db.query(User)
                .filter(User.id == seller_id, User.role == UserRole.SELLER.value)
                .with_for_update()
                .first()
            )
            if seller is None:
                raise NotFoundError("Seller", seller_id)

            records = (
                db.query(FinancialRecord)
                .filter(FinancialRecord.id.in_(record_ids))
                .order_by(FinancialRecord.id)
                .with_for_update()
                .all()
            )
            found = {record.id for record in records}
            offending = set(record_ids) - found
            offending.update(
                record.id
                for record in records
                if record.seller_id != seller_id or record.status != FinancialStatus.CLEARED.value
            )
            if offending:
                logger.warning(
                    "Payout for seller %s rejected; ineligible records %s", seller_id, sorted(offending)
                )
                raise PayoutConflictError(list(offending))

            updated = self.ledger.mark_paid(
                db,
                seller_id=seller_id,
                record_ids=record_ids,
                payout_method=payout_method.strip(),
                payout_id=payout_reference,
                notes=notes,
            )
            if updated != len(record_ids):
                raise PayoutConflictError(record_ids, message="Records changed while the payout was processed")

            total = to_money(sum((record.net_amount for record in records), ZERO))
            notice = PayoutNotice(
                seller_id=seller_id,
                total_amount=total,
                records_count=updated,
                payout_reference=payout_reference,
            )
            uow.add_effect("notify_payout_processed", self.notifier.payout_processed, notice)

        logger.info(
            "Payout %s processed for seller %s: %s record(s), total %s (by user %s)",
            payout_reference,
            seller_id,
            updated,
            total,
            processed_by,
        )
        return PayoutResult(
            seller_id=seller_id,
            total_amount=total,
            records_count=updated,
            payout_reference=payout_reference,
            payout_method=payout_method.strip(),
            paid_at=utcnow(),
        )
