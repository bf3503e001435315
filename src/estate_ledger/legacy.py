"""Adapter for payments recorded before counterparty references existed.

Old payment rows name their payee only in the free-text ``PayTo`` column.
This module resolves those names to supplier codes once, writing the code to
``CounterpartyID`` so the ledger builder can work purely on references. The
ledger builder never matches names itself.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from . import core_logic, data_manager, log
from .constants import PaymentDirection, SheetName


@dataclass(frozen=True)
class BackfillResult:
    """Outcome of a payee backfill run."""

    matched: Tuple[Tuple[str, str], ...] = ()
    ambiguous: Tuple[str, ...] = ()
    unmatched: Tuple[str, ...] = ()

    def as_dict(self) -> Dict[str, object]:
        return {
            "matched": [{"payment": payment, "supplier": supplier} for payment, supplier in self.matched],
            "ambiguous": list(self.ambiguous),
            "unmatched": list(self.unmatched),
        }


def match_supplier(name: str, suppliers: Sequence[data_manager.SupplierRow]) -> Tuple[Optional[str], int]:
    """Match a payee name to a supplier code.

    A case-insensitive exact name match wins. Otherwise a supplier whose name
    contains the payee, or is contained in it, is accepted only if it is the
    sole such supplier.

    Returns:
        tuple[str | None, int]: The matched supplier code (or ``None``) and the
            number of candidates considered at the deciding step.
    """

    needle = name.strip().casefold()
    if not needle:
        return None, 0

    exact = [supplier.supplier_code for supplier in suppliers if supplier.name.strip().casefold() == needle]
    if len(exact) == 1:
        return exact[0], 1
    if exact:
        return None, len(exact)

    partial = [
        supplier.supplier_code
        for supplier in suppliers
        if supplier.name.strip()
        and (needle in supplier.name.casefold() or supplier.name.strip().casefold() in needle)
    ]
    if len(partial) == 1:
        return partial[0], 1
    return None, len(partial)


def backfill_payee_references(context: core_logic.RuntimeContext) -> BackfillResult:
    """Fill ``CounterpartyID`` on outgoing payments that only carry ``PayTo``.

    Ambiguous and unmatched payees are logged and left untouched. Running the
    backfill again only revisits the rows still lacking a reference.
    """

    suppliers = list(core_logic.list_records(context, SheetName.SUPPLIERS))
    matched: List[Tuple[str, str]] = []
    ambiguous: List[str] = []
    unmatched: List[str] = []

    for payment in core_logic.list_payments(context, include_cancelled=True):
        if payment.direction is not PaymentDirection.OUT:
            continue
        if payment.counterparty_id is not None or payment.pay_to is None:
            continue
        code, candidates = match_supplier(payment.pay_to, suppliers)
        if code is None:
            if candidates > 1:
                log.warning(
                    "Payee '%s' on payment '%s' matches %d suppliers; left unresolved",
                    payment.pay_to,
                    payment.serial_no,
                    candidates,
                )
                ambiguous.append(payment.serial_no)
            else:
                log.warning("Payee '%s' on payment '%s' matches no supplier", payment.pay_to, payment.serial_no)
                unmatched.append(payment.serial_no)
            continue
        data_manager.update_row(
            context.workbook,
            SheetName.PAYMENTS,
            payment.serial_no,
            field_values={"CounterpartyID": code},
        )
        matched.append((payment.serial_no, code))

    if matched:
        core_logic.invalidate_cache(context, SheetName.PAYMENTS)
    log.info(
        "Backfilled payee references: %d matched, %d ambiguous, %d unmatched",
        len(matched),
        len(ambiguous),
        len(unmatched),
    )
    return BackfillResult(matched=tuple(matched), ambiguous=tuple(ambiguous), unmatched=tuple(unmatched))
