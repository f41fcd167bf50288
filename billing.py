"""Membership lifecycle and billing reconciliation rules.

Pure functions only: nothing here touches the database or the clock unless a
``now`` is omitted, in which case local time is used.
"""
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP

ACTIVE = 'ACTIVE'
EXPIRING_SOON = 'EXPIRING_SOON'
EXPIRED = 'EXPIRED'

MEMBERSHIP = 'MEMBERSHIP'
SUPPLEMENT = 'SUPPLEMENT'

EXPIRING_SOON_DAYS = 5
SECONDS_PER_DAY = 24 * 60 * 60

# Canonical plan lengths -> Pricing attribute
PLAN_DAYS = {
    30: 'one_month',
    60: 'two_months',
    90: 'three_months',
    180: 'six_months',
    365: 'twelve_months',
}


def to_local_naive(value: datetime) -> datetime:
    """Offset-aware timestamps are shifted to local time and stripped of tzinfo."""
    if value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


def days_left(expiry: datetime, now: datetime | None = None) -> int:
    """Whole days until expiry, rounded up (negative once expired)."""
    now = now or datetime.now()
    return math.ceil((expiry - now).total_seconds() / SECONDS_PER_DAY)


def days_since(start: datetime, now: datetime | None = None) -> int:
    """Whole days elapsed since start, rounded up."""
    now = now or datetime.now()
    return math.ceil((now - start).total_seconds() / SECONDS_PER_DAY)


def member_status(expiry: datetime, now: datetime | None = None) -> str:
    diff = days_left(expiry, now)
    if diff < 0:
        return EXPIRED
    if diff <= EXPIRING_SOON_DAYS:
        return EXPIRING_SOON
    return ACTIVE


def calculate_expiry(start: datetime, days: int) -> datetime:
    if days < 0:
        raise ValueError('days must be zero or positive')
    return start + timedelta(days=int(days))


def round_half_up(value) -> int:
    return int(Decimal(value).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class Pricing:
    one_month: float = 0.0
    two_months: float = 0.0
    three_months: float = 0.0
    six_months: float = 0.0
    twelve_months: float = 0.0

    @classmethod
    def from_dict(cls, data: dict | None) -> 'Pricing':
        data = data or {}
        values = {}
        for attr in PLAN_DAYS.values():
            raw = data.get(attr)
            try:
                values[attr] = float(raw) if raw not in (None, '') else 0.0
            except (TypeError, ValueError):
                raise ValueError(f'pricing.{attr} must be numeric')
            if not math.isfinite(values[attr]) or values[attr] < 0:
                raise ValueError(f'pricing.{attr} must be numeric')
        return cls(**values)

    def to_dict(self) -> dict:
        return {attr: getattr(self, attr) for attr in PLAN_DAYS.values()}


def resolve_price(pricing: Pricing, days: int):
    """Configured price for a canonical plan, else a pro-rated monthly rate."""
    attr = PLAN_DAYS.get(days)
    if attr:
        return getattr(pricing, attr)
    per_day = Decimal(str(pricing.one_month)) / Decimal(30)
    return round_half_up(per_day * Decimal(int(days)))


@dataclass(frozen=True)
class Extension:
    days: int
    anchor: datetime
    new_expiry: datetime
    amount: float


def plan_extension(current_expiry: datetime, days: int, pricing: Pricing,
                   override_amount=None, now: datetime | None = None) -> Extension:
    """Push a membership forward from whichever is later: its expiry or now.

    An explicit ``override_amount`` bypasses the pricing table entirely.
    """
    if int(days) <= 0:
        raise ValueError('days must be a positive number')
    if override_amount is not None and float(override_amount) < 0:
        raise ValueError('amount cannot be negative')
    now = now or datetime.now()
    anchor = max(current_expiry, now)
    new_expiry = calculate_expiry(anchor, int(days))
    if override_amount is None:
        amount = resolve_price(pricing, int(days))
    else:
        amount = float(override_amount)
    return Extension(days=int(days), anchor=anchor, new_expiry=new_expiry, amount=amount)


# Revenue windows
TODAY = 'TODAY'
THIS_MONTH = 'THIS_MONTH'
SPECIFIC = 'SPECIFIC'
RANGE = 'RANGE'
ALL = 'ALL'
WINDOW_KINDS = (TODAY, THIS_MONTH, SPECIFIC, RANGE, ALL)


@dataclass(frozen=True)
class RevenueWindow:
    kind: str = ALL
    day: date | None = None
    start: datetime | None = None
    end: datetime | None = None

    def __post_init__(self):
        if self.kind not in WINDOW_KINDS:
            raise ValueError(f"window must be one of {', '.join(WINDOW_KINDS)}")
        if self.kind == SPECIFIC and self.day is None:
            raise ValueError('date required for SPECIFIC window')
        if self.kind == RANGE and (self.start is None or self.end is None):
            raise ValueError('start and end required for RANGE window')

    @classmethod
    def from_args(cls, args) -> 'RevenueWindow':
        kind = (args.get('window') or ALL).strip().upper()
        try:
            if kind == SPECIFIC:
                return cls(kind, day=date.fromisoformat((args.get('date') or '').strip()))
            if kind == RANGE:
                # A bare date parses to midnight; the end bound is not widened.
                return cls(
                    kind,
                    start=to_local_naive(datetime.fromisoformat((args.get('start') or '').strip())),
                    end=to_local_naive(datetime.fromisoformat((args.get('end') or '').strip())),
                )
        except ValueError:
            raise ValueError('dates must be ISO formatted (YYYY-MM-DD)')
        return cls(kind)

    def contains(self, ts: datetime, now: datetime) -> bool:
        if self.kind == TODAY:
            return ts.date() == now.date()
        if self.kind == THIS_MONTH:
            return ts.year == now.year and ts.month == now.month
        if self.kind == SPECIFIC:
            return ts.date() == self.day
        if self.kind == RANGE:
            return self.start <= ts <= self.end
        return True


@dataclass
class RevenueSummary:
    total: float = 0.0
    membership: float = 0.0
    supplement: float = 0.0
    transactions: list = field(default_factory=list)


def aggregate_revenue(transactions, window: RevenueWindow,
                      now: datetime | None = None) -> RevenueSummary:
    """Filter transactions to ``window`` and total them by category.

    Transactions are any objects exposing ``date``, ``amount`` and ``category``.
    """
    now = now or datetime.now()
    summary = RevenueSummary()
    for tx in transactions:
        if not window.contains(tx.date, now):
            continue
        amount = tx.amount or 0
        summary.transactions.append(tx)
        summary.total += amount
        if tx.category == MEMBERSHIP:
            summary.membership += amount
        elif tx.category == SUPPLEMENT:
            summary.supplement += amount
    return summary
