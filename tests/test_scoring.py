"""
OrderGuard — Unit tests: duplicate scorer and recent-fact collection
"""

from datetime import datetime, timedelta, timezone

import pytest

from orderguard.config import Settings
from orderguard.core.matching import MatchField
from orderguard.core.scoring import (
    FraudSignal, OrderFacts, RecentOrderFacts, ScoringPolicy, SignalKind, describe, normalize_address, score,
)
from orderguard.services.scorer import collect_recent_facts

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

RAHIM = OrderFacts(
    order_id="new",
    billing_phone="01712345678",
    ip_address="103.4.145.10",
    first_name="Rahim",
    last_name="Uddin",
    address_1="House 12, Road 5",
    city="Dhaka",
    postcode="1207",
)


def _kinds(signals):
    return [s.kind for s in signals]


# ===========================================================================
# ── Unit: Address key ───────────────────────────────────────────────────────
# ===========================================================================

class TestNormalizeAddress:
    def test_punctuation_case_and_whitespace(self):
        assert normalize_address("House #12,  Road-5", "DHAKA", "1207") == "house 12 road5|dhaka|1207"

    def test_same_address_written_differently(self):
        assert normalize_address("House 12, Road 5.", "Dhaka ", "1207") == RAHIM.address_key

    def test_bengali_full_stop_removed(self):
        assert normalize_address("বাড়ি ১২।", "ঢাকা", "") == "বাড়ি ১২|ঢাকা"

    def test_empty(self):
        assert normalize_address("", " ", "") == ""


# ===========================================================================
# ── Unit: Percentage ────────────────────────────────────────────────────────
# ===========================================================================

class TestDuplicatePercentage:
    def test_no_history(self):
        percentage, signals = score(RAHIM, RecentOrderFacts())
        assert percentage == 0
        assert signals == []

    def test_same_phone_only(self):
        percentage, signals = score(RAHIM, RecentOrderFacts(same_phone=2))
        assert percentage == 40
        assert _kinds(signals) == [SignalKind.PHONE_COOLDOWN]
        assert signals[0].weight == 40
        assert not signals[0].blocking

    def test_phone_and_ip(self):
        percentage, signals = score(RAHIM, RecentOrderFacts(same_phone=1, same_ip=1))
        assert percentage == 70
        assert _kinds(signals) == [SignalKind.PHONE_COOLDOWN, SignalKind.IP_COOLDOWN]

    def test_all_three(self):
        percentage, _ = score(RAHIM, RecentOrderFacts(same_phone=1, same_ip=1, same_address=1))
        assert percentage == 100

    def test_capped_at_100(self):
        policy = ScoringPolicy(weight_same_phone=60, weight_same_ip=60, weight_same_address=60)
        percentage, signals = score(RAHIM, RecentOrderFacts(same_phone=1, same_ip=1, same_address=1), policy)
        assert percentage == 100
        assert sum(s.weight for s in signals) == 180

    def test_blocking_signals_do_not_change_percentage(self):
        recent = RecentOrderFacts(
            same_phone=1,
            address_window_count=9,
            recent_names=(("Rahim Udin", "01812345678"),),
        )
        percentage, signals = score(RAHIM, recent)
        assert percentage == 40
        assert [s.kind for s in signals if s.blocking] == [SignalKind.SAME_ADDRESS, SignalKind.SIMILAR_NAME]

    def test_describe(self):
        _, signals = score(RAHIM, RecentOrderFacts(same_phone=2, same_ip=1))
        assert describe(signals) == "2 orders with same phone, 1 orders with same IP"


# ===========================================================================
# ── Unit: Address limit ─────────────────────────────────────────────────────
# ===========================================================================

class TestAddressLimit:
    def test_limit_reached_blocks(self):
        _, signals = score(RAHIM, RecentOrderFacts(address_window_count=5))
        assert len(signals) == 1
        assert signals[0].kind is SignalKind.SAME_ADDRESS
        assert signals[0].blocking

    def test_below_limit(self):
        _, signals = score(RAHIM, RecentOrderFacts(address_window_count=4))
        assert signals == []

    def test_disabled(self):
        policy = ScoringPolicy(address_detection=False)
        _, signals = score(RAHIM, RecentOrderFacts(address_window_count=50), policy)
        assert signals == []

    def test_order_without_address(self):
        order = OrderFacts(billing_phone="01712345678")
        _, signals = score(order, RecentOrderFacts(address_window_count=50))
        assert signals == []


# ===========================================================================
# ── Unit: Similar name ──────────────────────────────────────────────────────
# ===========================================================================

class TestSimilarName:
    def test_similar_name_other_phone_blocks(self):
        _, signals = score(RAHIM, RecentOrderFacts(recent_names=(("rahim udin", "01812345678"),)))
        assert _kinds(signals) == [SignalKind.SIMILAR_NAME]
        assert signals[0].blocking
        assert "rahim udin" in signals[0].detail

    def test_identical_name_other_phone_blocks(self):
        _, signals = score(RAHIM, RecentOrderFacts(recent_names=(("Rahim Uddin", "01812345678"),)))
        assert _kinds(signals) == [SignalKind.SIMILAR_NAME]

    def test_same_customer_in_other_format_skipped(self):
        _, signals = score(RAHIM, RecentOrderFacts(recent_names=(("Rahim Uddin", "+8801712345678"),)))
        assert signals == []

    def test_different_name(self):
        _, signals = score(RAHIM, RecentOrderFacts(recent_names=(("Karim Hossain", "01812345678"),)))
        assert signals == []

    def test_short_names_skipped(self):
        order = OrderFacts(billing_phone="01712345678", first_name="Al")
        _, signals = score(order, RecentOrderFacts(recent_names=(("Al", "01812345678"),)))
        assert signals == []

    def test_threshold_is_configurable(self):
        policy = ScoringPolicy(name_similarity_threshold=95)
        _, signals = score(RAHIM, RecentOrderFacts(recent_names=(("Rahim Udin", "01812345678"),)), policy)
        assert signals == []

    def test_disabled(self):
        policy = ScoringPolicy(name_similarity=False)
        _, signals = score(RAHIM, RecentOrderFacts(recent_names=(("Rahim Uddin", "01812345678"),)), policy)
        assert signals == []


class TestPolicyAndSignals:
    def test_policy_from_settings(self):
        settings = Settings(
            WEIGHT_SAME_PHONE=50,
            ADDRESS_DETECTION_ENABLED=True,
            MAX_ORDERS_PER_ADDRESS=3,
            NAME_SIMILARITY_THRESHOLD=90,
        )
        policy = ScoringPolicy.from_settings(settings)
        assert policy.weight_same_phone == 50
        assert policy.weight_same_ip == settings.WEIGHT_SAME_IP
        assert policy.address_detection is True
        assert policy.max_orders_per_address == 3
        assert policy.name_similarity_threshold == 90

    def test_signal_to_dict(self):
        signal = FraudSignal(SignalKind.IP_COOLDOWN, weight=30, detail="x")
        assert signal.to_dict() == {"kind": "ip_cooldown", "weight": 30, "detail": "x", "blocking": False}


# ===========================================================================
# ── Unit: Recent-fact collection ────────────────────────────────────────────
# ===========================================================================

_FIELDS = {MatchField.PHONE: "phone", MatchField.IP: "ip", MatchField.ADDRESS: "address"}


class FakeOrderStore:
    def __init__(self, orders=(), fail=False):
        self.orders = list(orders)
        self.fail = fail
        self.calls = []

    def _live(self, since, exclude_ids, excluded_statuses):
        return [
            o for o in self.orders
            if o["created_at"] > since
            and o["status"] not in excluded_statuses
            and o["id"] not in exclude_ids
        ]

    async def count_recent(self, field, values, since, exclude_ids, excluded_statuses):
        self.calls.append(field)
        if self.fail:
            raise RuntimeError("database is locked")
        key = _FIELDS[field]
        return sum(1 for o in self._live(since, exclude_ids, excluded_statuses) if o.get(key) in values)

    async def recent_names(self, since, exclude_phone_values, excluded_statuses, limit, exclude_ids=frozenset()):
        self.calls.append("names")
        if self.fail:
            raise RuntimeError("database is locked")
        rows = [
            (o["name"], o["phone"]) for o in self._live(since, exclude_ids, excluded_statuses)
            if o["phone"] not in exclude_phone_values
        ]
        return rows[:limit]


def _row(order_id, minutes_ago=60, status="processing", **kwargs):
    row = dict(
        id=order_id,
        status=status,
        created_at=NOW - timedelta(minutes=minutes_ago),
        phone="01999999999",
        ip="198.51.100.1",
        address="elsewhere|khulna",
        name="Someone Else",
    )
    row.update(kwargs)
    return row


@pytest.mark.asyncio
class TestCollectRecentFacts:
    async def test_counts_and_names(self):
        store = FakeOrderStore([
            _row("new", minutes_ago=0, phone="01712345678", ip="103.4.145.10", address=RAHIM.address_key),
            _row("a", minutes_ago=120, phone="8801712345678", name="Rahim Uddin"),
            _row("b", ip="103.4.145.10", status="cancelled"),
            _row("c", minutes_ago=30, address=RAHIM.address_key, name="Karim Hossain", phone="01912345678"),
            _row("old", minutes_ago=48 * 60, phone="01712345678", ip="103.4.145.10"),
        ])
        recent = await collect_recent_facts(store, RAHIM, ScoringPolicy(), now=NOW)

        assert recent.same_phone == 1
        assert recent.same_ip == 0
        assert recent.same_address == 1
        assert recent.address_window_count == 1
        assert recent.recent_names == (("Karim Hossain", "01912345678"),)

        percentage, signals = score(RAHIM, recent)
        assert percentage == 70
        assert _kinds(signals) == [SignalKind.PHONE_COOLDOWN, SignalKind.SAME_ADDRESS]

    async def test_blocking_only_skips_lookback_counts(self):
        store = FakeOrderStore()
        await collect_recent_facts(store, RAHIM, ScoringPolicy(), now=NOW, include_percentage=False)
        assert store.calls == [MatchField.ADDRESS, "names"]

    async def test_disabled_checks_skip_store(self):
        store = FakeOrderStore()
        policy = ScoringPolicy(address_detection=False, name_similarity=False)
        await collect_recent_facts(store, RAHIM, policy, now=NOW, include_percentage=False)
        assert store.calls == []

    async def test_placeholder_ip_not_counted(self):
        store = FakeOrderStore([_row("a", ip="0.0.0.0")])
        order = OrderFacts(order_id="new", billing_phone="01712345678", ip_address="0.0.0.0")
        recent = await collect_recent_facts(store, order, ScoringPolicy(), now=NOW)
        assert recent.same_ip == 0
        assert MatchField.IP not in store.calls

    async def test_store_failure_counts_as_zero(self):
        store = FakeOrderStore(fail=True)
        recent = await collect_recent_facts(store, RAHIM, ScoringPolicy(), now=NOW)
        assert recent == RecentOrderFacts()
        assert score(RAHIM, recent) == (0, [])
