"""Tests for stock and payment counter maintenance and audits."""

from __future__ import annotations

import random
from datetime import date
from decimal import Decimal

import pytest

from estate_ledger import core_logic, data_manager, reconciler
from estate_ledger.constants import EntityType, PaymentDirection, PaymentStatus, SheetName
from estate_ledger.errors import ConflictError, NotFoundError, ValidationError
from estate_ledger.models import PaymentState


def test_increment_stock_updates_counters_and_version(context, seed):
    seed.item("ITM-01", opening_stock="5")

    updated = reconciler.increment_stock(context, "ITM-01", purchased=Decimal("10"))
    assert updated.total_purchased == Decimal("10")
    assert updated.current_stock == Decimal("15")
    assert updated.version == 1

    cached = core_logic.get_item(context, "ITM-01")
    assert cached.current_stock == Decimal("15")


def test_increment_stock_rejects_negative_result(context, seed):
    seed.item("ITM-01", opening_stock="2")
    with pytest.raises(ValidationError):
        reconciler.increment_stock(context, "ITM-01", sold=Decimal("3"))
    assert core_logic.get_item(context, "ITM-01").current_stock == Decimal("2")


def test_increment_stock_unknown_item(context):
    with pytest.raises(NotFoundError):
        reconciler.increment_stock(context, "ITM-404", purchased=Decimal("1"))


def test_increment_stock_retries_after_conflict(context, seed, monkeypatch):
    """A lost race is retried against the freshly read row."""

    seed.item("ITM-01")
    original = data_manager.update_row
    calls = []

    def racing_update(workbook, sheet_name, key_value, **kwargs):
        calls.append(kwargs.get("expected_version"))
        if len(calls) == 1:
            # Another writer bumps the version between our read and write.
            original(workbook, sheet_name, key_value, field_values={"Version": 7})
            raise ConflictError("changed concurrently")
        return original(workbook, sheet_name, key_value, **kwargs)

    monkeypatch.setattr(data_manager, "update_row", racing_update)
    updated = reconciler.increment_stock(context, "ITM-01", purchased=Decimal("4"))

    assert calls == [0, 7]
    assert updated.version == 8
    assert updated.current_stock == Decimal("4")


def test_increment_stock_gives_up_after_retry_bound(context, seed, monkeypatch):
    seed.item("ITM-01")

    def always_conflict(*args, **kwargs):
        raise ConflictError("changed concurrently")

    monkeypatch.setattr(data_manager, "update_row", always_conflict)
    with pytest.raises(ConflictError):
        reconciler.increment_stock(context, "ITM-01", purchased=Decimal("1"))


def test_sequential_increments_are_not_lost(context, seed):
    seed.item("ITM-01")
    for _ in range(5):
        reconciler.increment_stock(context, "ITM-01", purchased=Decimal("2"))
    item = core_logic.get_item(context, "ITM-01")
    assert item.total_purchased == Decimal("10")
    assert item.version == 5


@pytest.mark.parametrize(
    ("delta", "expected_status"),
    [("0", PaymentStatus.UNPAID), ("40", PaymentStatus.PARTIAL), ("100", PaymentStatus.PAID), ("130", PaymentStatus.PAID)],
)
def test_increment_amount_paid_sets_status(context, seed, delta, expected_status):
    seed.purchase("PU000001", date(2024, 1, 1), "100")
    target = reconciler.settlement_target_for("PU000001")

    updated = reconciler.increment_amount_paid(context, target, "PU000001", Decimal(delta))
    assert updated.amount_paid == Decimal(delta)
    assert updated.payment_status is expected_status


@pytest.mark.parametrize(
    ("paid", "net", "expected_status"),
    [("0", "0", PaymentStatus.UNPAID), ("0", "50", PaymentStatus.UNPAID), ("10", "50", PaymentStatus.PARTIAL),
     ("50", "50", PaymentStatus.PAID), ("5", "0", PaymentStatus.PAID)],
)
def test_payment_state_status(paid, net, expected_status):
    assert PaymentState(Decimal(paid), Decimal(net)).status is expected_status


def test_increment_amount_paid_refuses_negative_total(context, seed):
    seed.invoice("SI000001", date(2024, 1, 1), "100", amount_received="20", status=PaymentStatus.PARTIAL)
    target = reconciler.settlement_target_for("SI000001")
    with pytest.raises(ValidationError):
        reconciler.increment_amount_paid(context, target, "SI000001", Decimal("-30"))


@pytest.mark.parametrize(
    ("reference", "entity_type"),
    [("PU000001", EntityType.PURCHASE), ("SI000002", EntityType.SALES_INVOICE), ("ps000003", EntityType.PLOT_SALE)],
)
def test_settlement_target_for_known_prefixes(reference, entity_type):
    assert reconciler.settlement_target_for(reference).entity_type is entity_type


def test_settlement_target_for_rejects_payments():
    with pytest.raises(ValidationError):
        reconciler.settlement_target_for("BP000001")


def test_reconcile_stock_reports_drift(context, seed):
    seed.item("ITM-01", opening_stock="5", total_purchased="10", total_sold="0", current_stock="15")
    seed.purchase("PU000001", date(2024, 1, 1), "100", item_code="ITM-01", quantity="10")
    seed.invoice("SI000001", date(2024, 1, 2), "30")
    seed.line("SI000001", "ITM-01", "3")

    result = reconciler.reconcile_stock(context, "ITM-01")
    assert result.has_drift
    assert result.expected == Decimal("12")
    assert result.actual == Decimal("15")
    assert result.drift == Decimal("3")


def test_reconcile_stock_ignores_cancelled_history(context, seed):
    seed.item("ITM-01", total_purchased="4", current_stock="4")
    seed.purchase("PU000001", date(2024, 1, 1), "40", item_code="ITM-01", quantity="4")
    seed.purchase("PU000002", date(2024, 1, 2), "90", item_code="ITM-01", quantity="9", cancelled=True)
    seed.invoice("SI000001", date(2024, 1, 3), "20", cancelled=True)
    seed.line("SI000001", "ITM-01", "2")

    result = reconciler.reconcile_stock(context, "ITM-01")
    assert not result.has_drift
    assert result.expected == Decimal("4")


def test_reconcile_stock_unknown_item(context):
    with pytest.raises(NotFoundError):
        reconciler.reconcile_stock(context, "ITM-404")


def test_replay_is_independent_of_row_order(context, seed):
    """Shuffling the transaction log must not change the replayed totals."""

    seed.item("ITM-01")
    quantities = ["3", "1", "4", "1", "5", "9", "2", "6"]
    purchases = [
        (f"PU{index:06d}", date(2024, 1, index), quantity)
        for index, quantity in enumerate(quantities, start=1)
    ]
    random.Random(7).shuffle(purchases)
    for serial, when, quantity in purchases:
        seed.purchase(serial, when, "10", item_code="ITM-01", quantity=quantity)

    movement = reconciler.stock_movements(context)["ITM-01"]
    assert movement.purchased == sum(Decimal(quantity) for quantity in quantities)


def test_repair_stock_rewrites_counters(context, seed):
    seed.item("ITM-01", total_sold="1", current_stock="-1")
    seed.purchase("PU000001", date(2024, 1, 1), "20", item_code="ITM-01", quantity="2")

    result = reconciler.reconcile_stock(context, "ITM-01")
    repaired = reconciler.repair_stock(context, result)

    assert repaired.total_purchased == Decimal("2")
    assert repaired.total_sold == Decimal("0")
    assert repaired.current_stock == Decimal("2")
    assert not reconciler.reconcile_stock(context, "ITM-01").has_drift


def test_audit_payment_states_flags_mismatch(context, seed):
    seed.purchase("PU000001", date(2024, 1, 1), "100", amount_paid="100", status=PaymentStatus.PAID)
    seed.payment("BP000001", date(2024, 1, 2), "60", counterparty_id="SUP-01", target_ref="PU000001")
    seed.plot_sale("PS000001", date(2024, 1, 3), "1000")

    results = {entry.reference: entry for entry in reconciler.audit_payment_states(context)}
    assert set(results) == {"PU000001", "PS000001"}
    drift = results["PU000001"]
    assert not drift.is_consistent
    assert drift.expected_amount == Decimal("60")
    assert drift.expected_status is PaymentStatus.PARTIAL
    assert results["PS000001"].is_consistent


def test_audit_ignores_cancelled_payments(context, seed):
    seed.invoice("SI000001", date(2024, 1, 1), "50")
    seed.payment(
        "BP000001",
        date(2024, 1, 2),
        "50",
        direction=PaymentDirection.IN,
        counterparty_id="CUS-01",
        target_ref="SI000001",
        cancelled=True,
    )
    (entry,) = reconciler.audit_payment_states(context)
    assert entry.is_consistent


def test_recompute_repairs_then_is_idempotent(context, seed):
    seed.item("ITM-01", current_stock="9")
    seed.purchase("PU000001", date(2024, 1, 1), "100")
    seed.payment("BP000001", date(2024, 1, 2), "100", counterparty_id="SUP-01", target_ref="PU000001")

    first = reconciler.recompute_derived_fields(context)
    assert first.drift_count == 2
    assert set(first.repaired) == {"ITM-01", "PU000001"}

    purchase = core_logic.get_record(context, SheetName.PURCHASES, "PU000001")
    assert purchase.amount_paid == Decimal("100")
    assert purchase.payment_status is PaymentStatus.PAID
    assert core_logic.get_item(context, "ITM-01").current_stock == Decimal("0")

    second = reconciler.recompute_derived_fields(context)
    assert second.drift_count == 0
    assert second.repaired == ()


def test_recompute_dry_run_writes_nothing(context, seed):
    seed.item("ITM-01", current_stock="9")

    report = reconciler.recompute_derived_fields(context, repair=False)
    assert report.drift_count == 1
    assert report.repaired == ()
    assert core_logic.get_item(context, "ITM-01").current_stock == Decimal("9")
