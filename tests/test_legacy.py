"""Tests for resolving free-text payees on old payment rows."""

from __future__ import annotations

from datetime import date

import pytest

from estate_ledger import core_logic, legacy
from estate_ledger.constants import PaymentDirection
from estate_ledger.data_manager import SupplierRow

SUPPLIERS = [
    SupplierRow("SUP-01", "Acme Cement", True),
    SupplierRow("SUP-02", "Acme Steel", True),
    SupplierRow("SUP-03", "Rivera Transport", True),
]


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("acme cement", ("SUP-01", 1)),
        ("Rivera", ("SUP-03", 1)),
        ("Rivera Transport Co", ("SUP-03", 1)),
        ("Acme", (None, 2)),
        ("Unknown Traders", (None, 0)),
        ("   ", (None, 0)),
    ],
)
def test_match_supplier(name, expected):
    assert legacy.match_supplier(name, SUPPLIERS) == expected


def test_backfill_payee_references(context, seed):
    for supplier in SUPPLIERS:
        seed.supplier(supplier.supplier_code, supplier.name)
    seed.payment("BP000001", date(2024, 1, 1), "10", pay_to="Acme Cement")
    seed.payment("BP000002", date(2024, 1, 2), "20", pay_to="Acme")
    seed.payment("BP000003", date(2024, 1, 3), "30", pay_to="Nobody")
    seed.payment("BP000004", date(2024, 1, 4), "40", pay_to="Rivera", counterparty_id="SUP-02")
    seed.payment("BP000005", date(2024, 1, 5), "50", pay_to="Rivera", direction=PaymentDirection.IN)

    result = legacy.backfill_payee_references(context)

    assert result.matched == (("BP000001", "SUP-01"),)
    assert result.ambiguous == ("BP000002",)
    assert result.unmatched == ("BP000003",)
    payments = {payment.serial_no: payment for payment in core_logic.list_payments(context)}
    assert payments["BP000001"].counterparty_id == "SUP-01"
    assert payments["BP000004"].counterparty_id == "SUP-02"
    assert payments["BP000005"].counterparty_id is None


def test_backfill_is_repeatable(context, seed):
    seed.supplier()
    seed.payment("BP000001", date(2024, 1, 1), "10", pay_to="Acme Cement")

    first = legacy.backfill_payee_references(context)
    second = legacy.backfill_payee_references(context)

    assert len(first.matched) == 1
    assert second.as_dict() == {"matched": [], "ambiguous": [], "unmatched": []}
