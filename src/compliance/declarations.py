from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

from compliance.data_models import DeclarationCategory, DeclarationId
from compliance.errors import ValidationError


_CATALOG: Mapping[DeclarationId, DeclarationCategory] = MappingProxyType(
    {
        DeclarationId.RENTAL: DeclarationCategory(
            id=DeclarationId.RENTAL,
            label="Rental Only",
            description="Vehicle is used exclusively for platform rentals.",
            max_gap_miles=500,
            tax_implication="Fully deductible as a business asset.",
            insurance_note="Covered by the host's rental policy for all guest trips.",
            claim_impact="Claims are processed without usage review when mileage gaps stay within limits.",
        ),
        DeclarationId.BUSINESS: DeclarationCategory(
            id=DeclarationId.BUSINESS,
            label="Rental & Business",
            description="Vehicle is rented and also driven for the host's business errands.",
            max_gap_miles=1000,
            tax_implication="Deductible in proportion to logged business mileage.",
            insurance_note="Business use between trips must be covered by a commercial policy.",
            claim_impact="Claims may require a mileage log for the interval before the incident.",
        ),
        DeclarationId.MIXED: DeclarationCategory(
            id=DeclarationId.MIXED,
            label="Rental & Personal",
            description="Vehicle is shared between platform rentals and the host's personal driving.",
            max_gap_miles=1500,
            tax_implication="Deductions limited to the rental share of total mileage.",
            insurance_note="Personal policy must remain active alongside platform coverage.",
            claim_impact="Claims are reviewed against recent gap history before approval.",
        ),
        DeclarationId.PERSONAL: DeclarationCategory(
            id=DeclarationId.PERSONAL,
            label="Primarily Personal",
            description="Vehicle is mainly a personal car that is occasionally listed.",
            max_gap_miles=3000,
            tax_implication="Rental income is reported; vehicle costs are largely non-deductible.",
            insurance_note="Personal insurer must permit peer-to-peer sharing.",
            claim_impact="Claims are subject to full usage review and may be denied for undeclared use.",
        ),
    }
)


def _coerce_id(declaration_id: DeclarationId | str) -> DeclarationId | None:
    if isinstance(declaration_id, DeclarationId):
        return declaration_id
    try:
        return DeclarationId(str(declaration_id).strip().upper())
    except ValueError:
        return None


def is_known_declaration(declaration_id: DeclarationId | str) -> bool:
    return _coerce_id(declaration_id) is not None


def get_declaration(declaration_id: DeclarationId | str) -> DeclarationCategory:
    key = _coerce_id(declaration_id)
    if key is None:
        raise ValidationError("declaration_id", f"unknown declaration '{declaration_id}'")
    return _CATALOG[key]


def list_declarations() -> list[DeclarationCategory]:
    return sorted(_CATALOG.values(), key=lambda c: c.max_gap_miles)
