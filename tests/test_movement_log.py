"""
库存流水重放测试
"""
from decimal import Decimal

from mf_core.models import MovementKind, StockMovement
from mf_core.services import movement_log, weight_ledger
from mf_core.services.weight_ledger import LedgerCounters


def movement(kind: MovementKind, change: str) -> StockMovement:
    return StockMovement(material_id=1, kind=kind.value, quantity_change=Decimal(change), remaining_stock=Decimal("0"))


def test_replay_reconstructs_counters():
    movements = [
        movement(MovementKind.INITIAL, "100"),
        movement(MovementKind.ORDER_CREATED, "75"),
        movement(MovementKind.OUT_OF_STOCK, "0"),
        movement(MovementKind.FULFILLMENT, "-50"),
        movement(MovementKind.CANCELLED, "-25"),
        movement(MovementKind.ADJUSTMENT, "10"),
    ]
    replayed = movement_log.replay(movements)
    assert replayed == LedgerCounters(Decimal("60"), Decimal("0"))


def test_replay_matches_ledger_transitions():
    state = LedgerCounters(Decimal("40"))
    movements = [movement(MovementKind.INITIAL, "40")]
    for kind, delta in [
        (MovementKind.ORDER_CREATED, "12"),
        (MovementKind.ORDER_CREATED, "30"),
        (MovementKind.FULFILLMENT, "5"),
        (MovementKind.ADJUSTMENT, "-3"),
        (MovementKind.CANCELLED, "7"),
    ]:
        transition = weight_ledger.apply(kind, state, Decimal(delta))
        movements.append(movement(transition.kind, str(transition.quantity_change)))
        state = transition.after

    assert movement_log.replay(movements) == state


def test_record_uses_transition_snapshot():
    class Session:
        def __init__(self):
            self.added = []

        def add(self, obj):
            self.added.append(obj)

    session = Session()
    transition = weight_ledger.commit(LedgerCounters(Decimal("10"), Decimal("2")), Decimal("3"))
    record = movement_log.record(session, 7, transition, variant_id="1001", order_id="A-1")

    assert session.added == [record]
    assert record.kind == "ORDER_CREATED"
    assert record.quantity_change == Decimal("3")
    assert record.remaining_stock == Decimal("5")
    assert record.order_id == "A-1"
