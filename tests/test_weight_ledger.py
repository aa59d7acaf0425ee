"""
重量账本纯函数测试
"""
from decimal import Decimal

import pytest

from mf_core.models import MovementKind
from mf_core.services import weight_ledger
from mf_core.services.weight_ledger import HealthState, LedgerCounters
from mf_core.utils.errors import DataIntegrityError, InvariantViolation, ValidationError

D = Decimal


def counters(total, committed="0") -> LedgerCounters:
    return LedgerCounters(D(total), D(committed))


class TestScenarios:
    """总量 100、阈值 10、每件 5 的原料"""

    def test_paid_order_commits_then_overflow_is_rejected(self):
        first = weight_ledger.commit(counters("100"), D("75"))
        assert first.kind is MovementKind.ORDER_CREATED
        assert first.after == counters("100", "75")
        assert first.after.available == D("25")
        assert weight_ledger.is_sellable(first.after.available, D("5"))

        second = weight_ledger.commit(first.after, D("30"))
        assert second.kind is MovementKind.OUT_OF_STOCK
        assert not second.accepted
        assert second.quantity_change == D("0")
        assert second.after == first.after

    def test_fulfilment_deducts_from_both_counters(self):
        transition = weight_ledger.release(counters("100", "75"), D("75"))
        assert transition.kind is MovementKind.FULFILLMENT
        assert transition.after == counters("25", "0")
        assert transition.quantity_change == D("-75")
        assert weight_ledger.is_sellable(transition.after.available, D("5"))
        assert weight_ledger.health_state(transition.after, D("10"), [D("5")]) is HealthState.HEALTHY

    def test_cancellation_restores_committed_weight(self):
        transition = weight_ledger.restore(counters("100", "75"), D("75"))
        assert transition.kind is MovementKind.CANCELLED
        assert transition.after == counters("100", "0")

    def test_adjustment_cannot_go_below_committed(self):
        with pytest.raises(InvariantViolation) as exc_info:
            weight_ledger.adjust(counters("100", "80"), D("-30"))
        assert "cannot reduce total weight below committed amount" in exc_info.value.detail

        transition = weight_ledger.adjust(counters("100", "80"), D("-10"))
        assert transition.after == counters("90", "80")
        assert transition.after.available == D("10")


class TestTransitions:

    def test_float_weights_go_through_decimal_text(self):
        assert weight_ledger.to_weight(0.1) == D("0.1")
        assert weight_ledger.commit(counters("1"), 0.3).after == counters("1", "0.3")

    def test_commit_to_exact_capacity_is_accepted(self):
        transition = weight_ledger.commit(counters("10", "5"), D("5"))
        assert transition.accepted
        assert transition.after == counters("10", "10")
        assert transition.remaining_stock == D("0")

    def test_commit_then_restore_round_trip(self):
        start = counters("40", "12.5")
        committed = weight_ledger.commit(start, D("7.25")).after
        assert weight_ledger.restore(committed, D("7.25")).after == start

    def test_partial_fulfilment_produces_two_transitions(self):
        start = counters("100", "30")
        first = weight_ledger.release(start, D("10"))
        second = weight_ledger.release(first.after, D("20"))
        assert second.after == counters("70", "0")
        assert [first.quantity_change, second.quantity_change] == [D("-10"), D("-20")]

    def test_release_more_than_committed_is_rejected(self):
        with pytest.raises(InvariantViolation):
            weight_ledger.release(counters("100", "5"), D("6"))

    def test_restore_below_zero_is_a_data_integrity_error(self):
        with pytest.raises(DataIntegrityError) as exc_info:
            weight_ledger.restore(counters("100", "0"), D("5"))
        assert exc_info.value.code == "LEDGER_DATA_INTEGRITY"

    def test_negative_delta_rejected_for_order_operations(self):
        for operation in (weight_ledger.commit, weight_ledger.release, weight_ledger.restore):
            with pytest.raises(ValidationError):
                operation(counters("100", "10"), D("-1"))

    def test_positive_adjustment_adds_to_total(self):
        transition = weight_ledger.adjust(counters("100", "20"), D("50"))
        assert transition.after == counters("150", "20")
        assert transition.remaining_stock == D("130")

    def test_apply_dispatches_by_kind(self):
        transition = weight_ledger.apply(MovementKind.CANCELLED, counters("10", "4"), D("4"))
        assert transition.kind is MovementKind.CANCELLED

        with pytest.raises(ValueError):
            weight_ledger.apply(MovementKind.INITIAL, counters("10"), D("1"))

    def test_invariant_holds_across_accepted_sequence(self):
        state = counters("50")
        steps = [
            (MovementKind.ORDER_CREATED, "20"),
            (MovementKind.ORDER_CREATED, "40"),  # 超出容量
            (MovementKind.FULFILLMENT, "15"),
            (MovementKind.ADJUSTMENT, "25"),
            (MovementKind.CANCELLED, "5"),
            (MovementKind.ADJUSTMENT, "-30"),
        ]
        for kind, delta in steps:
            state = weight_ledger.apply(kind, state, D(delta)).after
            assert state.is_consistent()
        assert state == counters("30", "0")


class TestHealthState:

    def test_low_when_available_at_threshold(self):
        assert weight_ledger.health_state(counters("10"), D("10"), [D("1")]) is HealthState.LOW

    def test_out_of_stock_when_no_variant_fits(self):
        assert weight_ledger.health_state(counters("10", "7"), D("5"), [D("4"), D("5")]) is HealthState.OUT_OF_STOCK

    def test_zero_requirement_variant_stays_sellable(self):
        state = weight_ledger.health_state(counters("5", "5"), None, [D("0")])
        assert state is HealthState.HEALTHY

    def test_without_links_uses_available_weight(self):
        assert weight_ledger.health_state(counters("0"), None) is HealthState.OUT_OF_STOCK
        assert weight_ledger.health_state(counters("3"), None) is HealthState.HEALTHY
