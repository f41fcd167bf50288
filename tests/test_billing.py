from datetime import date, datetime, timedelta
from types import SimpleNamespace

import pytest

import billing
from billing import Pricing, RevenueWindow

PRICING = Pricing(one_month=1500, two_months=2800, three_months=4000, six_months=8000, twelve_months=15000)
NOW = datetime(2024, 3, 15, 12, 0, 0)


def test_calculate_expiry_adds_whole_days():
    assert billing.calculate_expiry(datetime(2024, 1, 20), 15) == datetime(2024, 2, 4)
    assert billing.calculate_expiry(datetime(2024, 1, 20, 18, 30), 0) == datetime(2024, 1, 20, 18, 30)


def test_calculate_expiry_rejects_negative_days():
    with pytest.raises(ValueError):
        billing.calculate_expiry(NOW, -1)


@pytest.mark.parametrize('delta, expected', [
    (timedelta(days=30), billing.ACTIVE),
    (timedelta(days=5, seconds=1), billing.ACTIVE),
    (timedelta(days=5), billing.EXPIRING_SOON),
    (timedelta(0), billing.EXPIRING_SOON),
    # less than a day overdue still rounds up to zero
    (timedelta(hours=-23), billing.EXPIRING_SOON),
    (timedelta(days=-1, seconds=-1), billing.EXPIRED),
    (timedelta(days=-40), billing.EXPIRED),
])
def test_member_status_thresholds(delta, expected):
    assert billing.member_status(NOW + delta, NOW) == expected


def test_days_left_rounds_up():
    assert billing.days_left(NOW + timedelta(days=2, hours=1), NOW) == 3
    assert billing.days_left(NOW - timedelta(days=2, hours=1), NOW) == -2


def test_resolve_price_uses_canonical_plans():
    assert billing.resolve_price(PRICING, 30) == 1500
    assert billing.resolve_price(PRICING, 90) == 4000
    assert billing.resolve_price(PRICING, 365) == 15000


def test_resolve_price_prorates_other_lengths():
    assert billing.resolve_price(PRICING, 45) == 2250
    assert billing.resolve_price(Pricing(one_month=1000), 7) == 233
    # 0.5 rounds up
    assert billing.resolve_price(Pricing(one_month=15), 1) == 1


def test_pricing_from_dict_defaults_and_validation():
    p = Pricing.from_dict({'one_month': '1200'})
    assert p.one_month == 1200.0
    assert p.twelve_months == 0.0
    with pytest.raises(ValueError, match='pricing.two_months'):
        Pricing.from_dict({'two_months': 'lots'})


def test_extension_from_future_expiry_stacks_on_expiry():
    expiry = NOW + timedelta(days=10)
    ext = billing.plan_extension(expiry, 30, PRICING, now=NOW)
    assert ext.anchor == expiry
    assert ext.new_expiry == expiry + timedelta(days=30)
    assert ext.amount == 1500


def test_extension_of_lapsed_member_starts_now():
    ext = billing.plan_extension(NOW - timedelta(days=50), 45, PRICING, now=NOW)
    assert ext.anchor == NOW
    assert ext.new_expiry == NOW + timedelta(days=45)
    assert ext.amount == 2250


def test_extension_anchor_calendar_examples():
    now = datetime(2024, 6, 1)
    assert billing.plan_extension(datetime(2024, 1, 1), 30, PRICING, now=now).new_expiry == datetime(2024, 7, 1)
    assert billing.plan_extension(datetime(2024, 12, 31), 30, PRICING, now=now).new_expiry == datetime(2025, 1, 30)


def test_extension_override_amount_wins():
    assert billing.plan_extension(NOW, 30, PRICING, override_amount=999, now=NOW).amount == 999.0
    assert billing.plan_extension(NOW, 30, PRICING, override_amount=0, now=NOW).amount == 0.0


@pytest.mark.parametrize('days, amount', [(0, None), (-5, None), (30, -1)])
def test_extension_rejects_bad_input(days, amount):
    with pytest.raises(ValueError):
        billing.plan_extension(NOW, days, PRICING, override_amount=amount, now=NOW)


def _tx(ts, amount, category):
    return SimpleNamespace(date=ts, amount=amount, category=category)


TXS = [
    _tx(datetime(2024, 3, 15, 9), 100, billing.MEMBERSHIP),
    _tx(datetime(2024, 3, 15, 10), 40, billing.SUPPLEMENT),
    _tx(datetime(2024, 2, 10, 18), 60, billing.MEMBERSHIP),
]


def test_aggregate_all():
    s = billing.aggregate_revenue(TXS, RevenueWindow(), NOW)
    assert (s.total, s.membership, s.supplement) == (200, 160, 40)
    assert s.transactions == TXS


def test_aggregate_today_and_this_month():
    today = billing.aggregate_revenue(TXS, RevenueWindow(billing.TODAY), NOW)
    assert (today.total, today.membership, today.supplement) == (140, 100, 40)
    month = billing.aggregate_revenue(TXS, RevenueWindow(billing.THIS_MONTH), NOW)
    assert month.total == 140


def test_aggregate_specific_day():
    s = billing.aggregate_revenue(TXS, RevenueWindow(billing.SPECIFIC, day=date(2024, 2, 10)), NOW)
    assert s.total == 60
    assert s.supplement == 0


def test_range_end_is_raw_timestamp():
    window = RevenueWindow.from_args({'window': 'range', 'start': '2024-02-01', 'end': '2024-03-15'})
    s = billing.aggregate_revenue(TXS, window, NOW)
    assert s.total == 60


def test_window_from_args_validation():
    with pytest.raises(ValueError):
        RevenueWindow.from_args({'window': 'SPECIFIC', 'date': '15/03/2024'})
    with pytest.raises(ValueError):
        RevenueWindow.from_args({'window': 'SPECIFIC'})
    with pytest.raises(ValueError):
        RevenueWindow.from_args({'window': 'FORTNIGHT'})
    assert RevenueWindow.from_args({}).kind == billing.ALL


@pytest.mark.parametrize('raw', ['nan', 'inf', '-inf', -100, '-0.5'])
def test_pricing_rejects_non_finite_and_negative(raw):
    with pytest.raises(ValueError, match='pricing.one_month'):
        Pricing.from_dict({'one_month': raw})


def test_range_bounds_with_offset_become_local_naive():
    window = RevenueWindow.from_args({
        'window': 'RANGE',
        'start': '2020-01-01T00:00:00+05:30',
        'end': '2030-01-01T00:00:00+05:30',
    })
    assert window.start.tzinfo is None
    assert window.end.tzinfo is None
    assert window.start == datetime.fromisoformat('2020-01-01T00:00:00+05:30').astimezone().replace(tzinfo=None)
    assert billing.aggregate_revenue(TXS, window, NOW).total == 200


def test_days_since_rounds_up():
    assert billing.days_since(NOW - timedelta(days=3), NOW) == 3
    assert billing.days_since(NOW - timedelta(days=3, minutes=1), NOW) == 4
    assert billing.days_since(NOW, NOW) == 0
