from datetime import datetime, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from compliance.activity import ClaimActivity, ComplianceActivity, decode_activity, encode_activity
from compliance.data_models import DeclarationId
from compliance.declarations import get_declaration, is_known_declaration, list_declarations
from compliance.errors import ValidationError


# ── Declaration Catalog ─────────────────────────────────────────────


def test_rental_threshold():
    assert get_declaration(DeclarationId.RENTAL).max_gap_miles == 500


def test_lookup_is_case_insensitive():
    assert get_declaration("mixed").id is DeclarationId.MIXED
    assert is_known_declaration(" personal ")


def test_unknown_declaration_is_a_validation_error():
    with pytest.raises(ValidationError) as exc_info:
        get_declaration("COMMUTER")
    assert exc_info.value.field == "declaration_id"
    assert not is_known_declaration("COMMUTER")


def test_catalog_is_ordered_strictest_first():
    thresholds = [c.max_gap_miles for c in list_declarations()]
    assert thresholds == sorted(thresholds)
    assert {c.id for c in list_declarations()} == set(DeclarationId)


def test_every_entry_carries_host_facing_text():
    for category in list_declarations():
        assert category.label and category.tax_implication and category.insurance_note and category.claim_impact


# ── Activity Payloads ───────────────────────────────────────────────


def test_decode_selects_variant_by_category():
    raw = {
        "category": "CLAIM",
        "id": "act-1",
        "vehicle_id": "veh-1",
        "action": "CLAIM_FILED",
        "occurred_at": "2026-09-14T16:30:00+00:00",
        "claim_id": "clm-1",
        "claim_status": "PENDING",
        "estimated_cost": 1200,
    }
    activity = decode_activity(raw)
    assert isinstance(activity, ClaimActivity)
    assert activity.estimated_cost == 1200.0


def test_unknown_fields_are_rejected():
    raw = {
        "category": "COMPLIANCE",
        "id": "act-2",
        "vehicle_id": "veh-1",
        "action": "DECLARATION_UPDATED",
        "occurred_at": "2026-09-14T16:30:00+00:00",
        "photo_count": 3,
    }
    with pytest.raises(PydanticValidationError):
        decode_activity(raw)


def test_unknown_category_is_rejected():
    with pytest.raises(PydanticValidationError):
        decode_activity({"category": "MARKETING", "id": "x", "vehicle_id": "v", "action": "a", "occurred_at": "2026-01-01T00:00:00Z"})


def test_encode_then_decode_keeps_variant():
    activity = ComplianceActivity(
        id="act-3",
        vehicle_id="veh-1",
        action="DECLARATION_UPDATED",
        performed_by="host-5",
        occurred_at=datetime(2026, 10, 1, tzinfo=timezone.utc),
        previous_declaration_id="PERSONAL",
        declaration_id="RENTAL",
    )
    payload = encode_activity(activity)
    assert payload["category"] == "COMPLIANCE"
    assert decode_activity(payload) == activity
