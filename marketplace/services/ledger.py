import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import distinct, func, select, update
from sqlalchemy.orm import Session

from marketplace.models import FinancialRecord, OrderItem, Payment, User
from marketplace.models.enums import FinancialStatus, PaymentStatus
from marketplace.services.clock import as_utc, utcnow
from marketplace.services.errors import InvalidTransitionError
from marketplace.services.pricing import ZERO, to_money

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    FinancialStatus.PENDING.value: frozenset({FinancialStatus.CLEARED.value, FinancialStatus.CANCELLED.value}),
    FinancialStatus.CLEARED.value: frozenset({FinancialStatus.PAID.value, FinancialStatus.CANCELLED.value}),
    FinancialStatus.PAID.value: frozenset(),
    FinancialStatus.CANCELLED.value: frozenset(),
}


def compute_net_amount(amount, platform_fee, processing_fee) -> Decimal:
    return to_money(Decimal(amount) - Decimal(platform_fee) - Decimal(processing_fee))


@dataclass(frozen=True)
class StatusTotals:
    status: str
    amount: Decimal = ZERO
    net_amount: Decimal = ZERO
    platform_fee: Decimal = ZERO
    processing_fee: Decimal = ZERO
    count: int = 0


@dataclass(frozen=True)
class SellerSummary:
    seller_id: int
    by_status: dict[str, StatusTotals]
    total_orders: int

    def _totals(self, status: FinancialStatus) -> StatusTotals:
        return self.by_status.get(status.value, StatusTotals(status=status.value))

    @property
    def _live(self) -> list[StatusTotals]:
        return [t for s, t in self.by_status.items() if s != FinancialStatus.CANCELLED.value]

    @property
    def total_earnings(self) -> Decimal:
        return to_money(sum((t.amount for t in self._live), ZERO))

    @property
    def total_platform_fees(self) -> Decimal:
        return to_money(sum((t.platform_fee for t in self._live), ZERO))

    @property
    def total_processing_fees(self) -> Decimal:
        return to_money(sum((t.processing_fee for t in self._live), ZERO))

    @property
    def net_earnings(self) -> Decimal:
        return to_money(sum((t.net_amount for t in self._live), ZERO))

    @property
    def pending_amount(self) -> Decimal:
        return self._totals(FinancialStatus.PENDING).net_amount

    @property
    def cleared_amount(self) -> Decimal:
        return self._totals(FinancialStatus.CLEARED).net_amount

    @property
    def paid_amount(self) -> Decimal:
        return self._totals(FinancialStatus.PAID).net_amount

    @property
    def cancelled_amount(self) -> Decimal:
        return self._totals(FinancialStatus.CANCELLED).amount

    @property
    def total_transactions(self) -> int:
        return sum(t.count for t in self._live)


@dataclass(frozen=True)
class SellerRevenue:
    seller_id: int
    total_revenue: Decimal
    net_revenue: Decimal
    transaction_count: int
    total_platform_fees: Decimal = ZERO
    seller_name: str | None = None


@dataclass(frozen=True)
class PlatformOverview:
    total_revenue: Decimal
    total_platform_fees: Decimal
    total_paid_out: Decimal
    awaiting_payout: Decimal
    pending_clearance: Decimal
    active_sellers: int
    top_sellers: list[SellerRevenue] = field(default_factory=list)


@dataclass(frozen=True)
class DailyRevenue:
    day: date
    revenue: Decimal
    transaction_count: int


@dataclass(frozen=True)
class PaymentMethodRevenue:
    payment_method: str
    revenue: Decimal
    transaction_count: int
    percentage: Decimal


@dataclass(frozen=True)
class RevenueAnalytics:
    start: datetime
    end: datetime
    total_revenue: Decimal
    transaction_count: int
    average_transaction_value: Decimal
    total_platform_fees: Decimal
    total_paid_out: Decimal
    daily: list[DailyRevenue]
    by_payment_method: list[PaymentMethodRevenue]


@dataclass(frozen=True)
class SellerRevenueComparison:
    period: str
    start: datetime
    end: datetime
    sellers: list[SellerRevenue]


@dataclass(frozen=True)
class MonthlyTotals:
    month: int
    total_amount: Decimal
    total_platform_fees: Decimal
    net_amount: Decimal
    transaction_count: int


ANALYTICS_WINDOW = timedelta(days=30)
COMPARISON_PERIODS = ("month", "quarter", "year")


def period_start(period: str, now: datetime) -> datetime:
    """First instant of the calendar month, quarter or year containing ``now``."""
    if period not in COMPARISON_PERIODS:
        raise ValueError(f"period must be one of {', '.join(COMPARISON_PERIODS)}, got {period!r}")
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "year":
        return midnight.replace(month=1, day=1)
    if period == "quarter":
        return midnight.replace(month=(now.month - 1) // 3 * 3 + 1, day=1)
    return midnight.replace(day=1)


class FinancialLedger:
    """Owns FinancialRecord creation, status transitions and balance reads.

    The platform fee rate is configured once here; nothing else computes fees.
    """

    def __init__(self, platform_fee_rate: Decimal | str | float = Decimal("0.05")):
        rate = Decimal(str(platform_fee_rate))
        if rate < 0 or rate >= 1:
            raise ValueError(f"platform fee rate must be in [0, 1), got {rate}")
        self.platform_fee_rate = rate

    def derive_record(self, order_item: OrderItem, processing_fee: Decimal = ZERO) -> FinancialRecord:
        """Build (but do not persist) the PENDING ledger entry for one order item."""
        amount = to_money(order_item.subtotal)
        platform_fee = to_money(amount * self.platform_fee_rate)
        processing_fee = to_money(processing_fee)
        return FinancialRecord(
            seller_id=order_item.seller_id,
            order_item_id=order_item.id,
            amount=amount,
            platform_fee=platform_fee,
            processing_fee=processing_fee,
            net_amount=compute_net_amount(amount, platform_fee, processing_fee),
            status=FinancialStatus.PENDING.value,
        )

    @staticmethod
    def can_transition(current: str, target: str) -> bool:
        return target in ALLOWED_TRANSITIONS.get(current, frozenset())

    def transition(self, record: FinancialRecord, target: FinancialStatus, now: datetime | None = None) -> None:
        """Move a single loaded record to ``target`` or raise InvalidTransitionError."""
        if not self.can_transition(record.status, target.value):
            raise InvalidTransitionError("financial record", record.status, target.value)

        now = now or utcnow()
        record.status = target.value
        if target is FinancialStatus.CLEARED:
            record.cleared_at = now
            record.net_amount = compute_net_amount(record.amount, record.platform_fee, record.processing_fee)
        elif target is FinancialStatus.PAID:
            record.paid_at = now

    @staticmethod
    def _order_item_ids(order_id: int):
        return select(OrderItem.id).where(OrderItem.order_id == order_id)

    def clear_for_order(self, db: Session, order_id: int) -> int:
        """PENDING -> CLEARED for every record of the order. Other states are left alone."""
        now = utcnow()
        result = db.execute(
            update(FinancialRecord)
            .where(
                FinancialRecord.order_item_id.in_(self._order_item_ids(order_id)),
                FinancialRecord.status == FinancialStatus.PENDING.value,
            )
            .values(
                status=FinancialStatus.CLEARED.value,
                cleared_at=now,
                net_amount=FinancialRecord.amount - FinancialRecord.platform_fee - FinancialRecord.processing_fee,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        logger.info("Cleared %s financial record(s) for order %s", result.rowcount, order_id)
        return result.rowcount

    def cancel_for_order(self, db: Session, order_id: int) -> int:
        """PENDING or CLEARED -> CANCELLED for every record of the order."""
        now = utcnow()
        result = db.execute(
            update(FinancialRecord)
            .where(
                FinancialRecord.order_item_id.in_(self._order_item_ids(order_id)),
                FinancialRecord.status.in_([FinancialStatus.PENDING.value, FinancialStatus.CLEARED.value]),
            )
            .values(status=FinancialStatus.CANCELLED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        logger.info("Cancelled %s financial record(s) for order %s", result.rowcount, order_id)
        return result.rowcount

    def mark_paid(
        self,
        db: Session,
        seller_id: int,
        record_ids: list[int],
        payout_method: str,
        payout_id: str,
        notes: str | None = None,
    ) -> int:
        """CLEARED -> PAID for exactly these records of this seller. Returns rows changed."""
        now = utcnow()
        result = db.execute(
            update(FinancialRecord)
            .where(
                FinancialRecord.id.in_(record_ids),
                FinancialRecord.seller_id == seller_id,
                FinancialRecord.status == FinancialStatus.CLEARED.value,
            )
            .values(
                status=FinancialStatus.PAID.value,
                paid_at=now,
                payout_id=payout_id,
                payout_method=payout_method,
                payout_notes=notes,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def records_for_order(self, db: Session, order_id: int) -> list[FinancialRecord]:
        return (
            db.query(FinancialRecord)
            .filter(FinancialRecord.order_item_id.in_(self._order_item_ids(order_id)))
            .order_by(FinancialRecord.id)
            .all()
        )

    def seller_summary(
        self,
        db: Session,
        seller_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> SellerSummary:
        filters = [FinancialRecord.seller_id == seller_id]
        if start is not None:
            filters.append(FinancialRecord.created_at >= start)
        if end is not None:
            filters.append(FinancialRecord.created_at <= end)

        rows = db.execute(
            select(
                FinancialRecord.status,
                func.coalesce(func.sum(FinancialRecord.amount), 0),
                func.coalesce(func.sum(FinancialRecord.net_amount), 0),
                func.coalesce(func.sum(FinancialRecord.platform_fee), 0),
                func.coalesce(func.sum(FinancialRecord.processing_fee), 0),
                func.count(FinancialRecord.id),
            )
            .where(*filters)
            .group_by(FinancialRecord.status)
        ).all()

        by_status = {
            status: StatusTotals(
                status=status,
                amount=to_money(amount),
                net_amount=to_money(net_amount),
                platform_fee=to_money(platform_fee),
                processing_fee=to_money(processing_fee),
                count=count,
            )
            for status, amount, net_amount, platform_fee, processing_fee, count in rows
        }

        total_orders = db.execute(
            select(func.count(distinct(OrderItem.order_id)))
            .select_from(FinancialRecord)
            .join(OrderItem, OrderItem.id == FinancialRecord.order_item_id)
            .where(*filters, FinancialRecord.status != FinancialStatus.CANCELLED.value)
        ).scalar_one()

        return SellerSummary(seller_id=seller_id, by_status=by_status, total_orders=total_orders)

    def records_for_seller(
        self,
        db: Session,
        seller_id: int,
        status: FinancialStatus | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[FinancialRecord], int]:
        query = db.query(FinancialRecord).filter(FinancialRecord.seller_id == seller_id)
        if status is not None:
            query = query.filter(FinancialRecord.status == status.value)
        total = query.count()
        records = query.order_by(FinancialRecord.id.desc()).offset((page - 1) * limit).limit(limit).all()
        return records, total

    def payout_history(
        self,
        db: Session,
        seller_id: int,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[FinancialRecord], int]:
        query = db.query(FinancialRecord).filter(
            FinancialRecord.seller_id == seller_id,
            FinancialRecord.status == FinancialStatus.PAID.value,
        )
        total = query.count()
        records = (
            query.order_by(FinancialRecord.paid_at.desc(), FinancialRecord.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return records, total

    @staticmethod
    def _seller_revenue(db: Session, filters: list, limit: int | None = None) -> list[SellerRevenue]:
        revenue = func.sum(FinancialRecord.amount)
        query = (
            select(
                FinancialRecord.seller_id,
                User.display_name,
                revenue,
                func.sum(FinancialRecord.platform_fee),
                func.sum(FinancialRecord.net_amount),
                func.count(FinancialRecord.id),
            )
            .join(User, User.id == FinancialRecord.seller_id)
            .where(*filters)
            .group_by(FinancialRecord.seller_id, User.display_name)
            .order_by(revenue.desc(), FinancialRecord.seller_id)
        )
        if limit is not None:
            query = query.limit(limit)
        return [
            SellerRevenue(
                seller_id=seller_id,
                seller_name=name,
                total_revenue=to_money(total),
                total_platform_fees=to_money(fees),
                net_revenue=to_money(net),
                transaction_count=count,
            )
            for seller_id, name, total, fees, net, count in db.execute(query).all()
        ]

    def platform_overview(
        self,
        db: Session,
        start: datetime | None = None,
        end: datetime | None = None,
        top: int = 10,
    ) -> PlatformOverview:
        record_filters = [FinancialRecord.status != FinancialStatus.CANCELLED.value]
        payment_filters = [Payment.status == PaymentStatus.COMPLETED.value]
        if start is not None:
            record_filters.append(FinancialRecord.created_at >= start)
            payment_filters.append(Payment.created_at >= start)
        if end is not None:
            record_filters.append(FinancialRecord.created_at <= end)
            payment_filters.append(Payment.created_at <= end)

        def _sum(column, *extra):
            value = db.execute(
                select(func.coalesce(func.sum(column), 0)).where(*record_filters, *extra)
            ).scalar_one()
            return to_money(value)

        total_revenue = to_money(
            db.execute(select(func.coalesce(func.sum(Payment.amount), 0)).where(*payment_filters)).scalar_one()
        )
        active_sellers = db.execute(
            select(func.count(distinct(FinancialRecord.seller_id))).where(*record_filters)
        ).scalar_one()

        return PlatformOverview(
            total_revenue=total_revenue,
            total_platform_fees=_sum(FinancialRecord.platform_fee),
            total_paid_out=_sum(FinancialRecord.net_amount, FinancialRecord.status == FinancialStatus.PAID.value),
            awaiting_payout=_sum(FinancialRecord.net_amount, FinancialRecord.status == FinancialStatus.CLEARED.value),
            pending_clearance=_sum(FinancialRecord.net_amount, FinancialRecord.status == FinancialStatus.PENDING.value),
            active_sellers=active_sellers,
            top_sellers=self._seller_revenue(db, record_filters, limit=top),
        )

    def revenue_analytics(
        self,
        db: Session,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> RevenueAnalytics:
        """Completed-payment revenue for a window (default: the last 30 days).

        Every day of the window appears in the daily breakdown, zero-filled.
        Payments are grouped by card type when known, otherwise by provider.
        """
        end = end or utcnow()
        start = start or end - ANALYTICS_WINDOW

        payments = db.execute(
            select(Payment.amount, Payment.provider, Payment.payment_method, Payment.created_at).where(
                Payment.status == PaymentStatus.COMPLETED.value,
                Payment.created_at >= start,
                Payment.created_at <= end,
            )
        ).all()

        daily: dict[date, list] = {}
        day, last_day = as_utc(start).date(), as_utc(end).date()
        while day <= last_day:
            daily[day] = [ZERO, 0]
            day += timedelta(days=1)
        methods: dict[str, list] = {}
        total = ZERO
        for amount, provider, payment_method, created_at in payments:
            amount = to_money(amount)
            total += amount
            for bucket in (
                daily.setdefault(as_utc(created_at).date(), [ZERO, 0]),
                methods.setdefault((payment_method or {}).get("type") or provider, [ZERO, 0]),
            ):
                bucket[0] += amount
                bucket[1] += 1

        count = len(payments)
        fees = db.execute(
            select(func.coalesce(func.sum(FinancialRecord.platform_fee), 0)).where(
                FinancialRecord.status != FinancialStatus.CANCELLED.value,
                FinancialRecord.created_at >= start,
                FinancialRecord.created_at <= end,
            )
        ).scalar_one()
        paid_out = db.execute(
            select(func.coalesce(func.sum(FinancialRecord.net_amount), 0)).where(
                FinancialRecord.status == FinancialStatus.PAID.value,
                FinancialRecord.paid_at >= start,
                FinancialRecord.paid_at <= end,
            )
        ).scalar_one()

        return RevenueAnalytics(
            start=start,
            end=end,
            total_revenue=to_money(total),
            transaction_count=count,
            average_transaction_value=to_money(total / count) if count else ZERO,
            total_platform_fees=to_money(fees),
            total_paid_out=to_money(paid_out),
            daily=[DailyRevenue(day=d, revenue=r, transaction_count=n) for d, (r, n) in sorted(daily.items())],
            by_payment_method=[
                PaymentMethodRevenue(
                    payment_method=method,
                    revenue=revenue,
                    transaction_count=n,
                    percentage=to_money(revenue / total * 100) if total else ZERO,
                )
                for method, (revenue, n) in sorted(methods.items(), key=lambda item: item[1][0], reverse=True)
            ],
        )

    def seller_revenue_comparison(
        self,
        db: Session,
        period: str = "month",
        now: datetime | None = None,
    ) -> SellerRevenueComparison:
        """Per-seller totals since the start of the current month, quarter or year."""
        now = now or utcnow()
        start = period_start(period, now)
        filters = [
            FinancialRecord.status != FinancialStatus.CANCELLED.value,
            FinancialRecord.created_at >= start,
            FinancialRecord.created_at <= now,
        ]
        return SellerRevenueComparison(
            period=period, start=start, end=now, sellers=self._seller_revenue(db, filters)
        )

    def seller_monthly_breakdown(self, db: Session, seller_id: int, year: int | None = None) -> list[MonthlyTotals]:
        year = year or utcnow().year
        rows = db.execute(
            select(
                FinancialRecord.created_at,
                FinancialRecord.amount,
                FinancialRecord.platform_fee,
                FinancialRecord.net_amount,
            ).where(
                FinancialRecord.seller_id == seller_id,
                FinancialRecord.status != FinancialStatus.CANCELLED.value,
                FinancialRecord.created_at >= datetime(year, 1, 1, tzinfo=timezone.utc),
                FinancialRecord.created_at < datetime(year + 1, 1, 1, tzinfo=timezone.utc),
            )
        ).all()

        # Bucketed here: SQLite has no EXTRACT(MONTH ...).
        months: dict[int, list] = {}
        for created_at, amount, platform_fee, net_amount in rows:
            totals = months.setdefault(as_utc(created_at).month, [ZERO, ZERO, ZERO, 0])
            totals[0] += to_money(amount)
            totals[1] += to_money(platform_fee)
            totals[2] += to_money(net_amount)
            totals[3] += 1

        return [
            MonthlyTotals(
                month=month,
                total_amount=amount,
                total_platform_fees=fees,
                net_amount=net,
                transaction_count=count,
            )
            for month, (amount, fees, net, count) in sorted(months.items())
        ]
