"""
Tests for the status dual-write adapter and identifier helpers.
"""
import pytest
from datetime import datetime, timezone

from services.status_adapter import EntityStatus, read_status_code
from services.validation import (
    ValidationError, validate_id, validate_scope_id, validate_numeric_id,
    generate_id, generate_numeric_id,
)


class TestEntityStatus:
    """One internal status value, two external fields."""

    def test_order_writes_legacy_label(self):
        fields = EntityStatus("ORDER", "PENDING_SITE_ADMIN_APPROVAL").to_fields(
            updated_by="U-1", now=datetime(2026, 1, 1, tzinfo=timezone.utc)
        )
        assert fields["unified_status"] == "PENDING_SITE_ADMIN_APPROVAL"
        assert fields["status"] == "Awaiting approval"
        assert fields["unified_status_updated_by"] == "U-1"
        assert fields["unified_status_updated_at"] == "2026-01-01T00:00:00.000000+00:00"

    def test_stage_approved_order_awaits_fulfilment(self):
        assert EntityStatus("ORDER", "COMPANY_ADMIN_APPROVED").legacy_value == "Awaiting fulfilment"

    def test_other_entities_mirror_code(self):
        fields = EntityStatus("INVOICE", "RAISED").to_fields()
        assert fields["status"] == fields["unified_status"] == "RAISED"

    def test_shipment_field_names(self):
        fields = EntityStatus("SHIPMENT", "IN_TRANSIT").to_fields()
        assert fields["unified_shipment_status"] == "IN_TRANSIT"
        assert fields["shipment_status"] == "IN_TRANSIT"

    def test_unified_field_preferred(self):
        doc = {"status": "Rejected", "unified_status": "PENDING_APPROVAL"}
        assert read_status_code("ORDER", doc) == "PENDING_APPROVAL"

    def test_legacy_order_label_hydrated(self):
        assert read_status_code("ORDER", {"id": "ORD-1", "status": "Awaiting fulfilment"}) == "IN_FULFILMENT"
        assert read_status_code("ORDER", {"id": "ORD-2"}) is None


class TestIdentifiers:

    def test_generic_ids(self):
        assert validate_id("ORD-1_a", "entity_id") == "ORD-1_a"
        for bad in (None, "", "has space", "x" * 51, 42):
            with pytest.raises(ValidationError):
                validate_id(bad, "entity_id")

    def test_scope_marker(self):
        assert validate_scope_id("*") == "*"
        with pytest.raises(ValidationError) as exc:
            validate_scope_id("**")
        assert exc.value.to_dict()["field"] == "company_id"

    def test_numeric_ids(self):
        assert validate_numeric_id(generate_numeric_id(), "log_id")
        with pytest.raises(ValidationError):
            validate_numeric_id("12345", "log_id")

    def test_generated_ids_are_valid(self):
        generated = generate_id("SHM")
        assert generated.startswith("SHM-")
        assert validate_id(generated, "shipment_id") == generated
