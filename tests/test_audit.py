"""
Test suite for audit module

Tests hash chaining, tamper detection, metadata serialization and
rollback behaviour of audit events.
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timezone

from loan_servicing.audit import AuditEvent, AuditEventType, AuditTrail
from loan_servicing.currency import Money, Currency
from loan_servicing.fees import DeferralFeeMode
from loan_servicing.storage import InMemoryStorage


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def test_metadata_serialization(self):
        """Test that money, dates and enums are stored as plain values"""
        now = datetime.now(timezone.utc)
        event = AuditEvent(
            id="evt-1",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.PAYMENT_DEFERRED,
            entity_type="loan",
            entity_id="loan-1",
            previous_hash="",
            current_hash="",
            metadata={
                "fee_amount": Money(Decimal('25.00'), Currency.CAD),
                "appended_due_date": date(2025, 7, 10),
                "fee_mode": DeferralFeeMode.END,
                "rate": Decimal('29'),
                "sequence_numbers": (2, 3),
            }
        )

        assert event.metadata == {
            "fee_amount": "CAD 25.00",
            "appended_due_date": "2025-07-10",
            "fee_mode": "end",
            "rate": "29",
            "sequence_numbers": [2, 3],
        }

    def test_hash_verification(self):
        """Test hash calculation and verification"""
        now = datetime.now(timezone.utc)
        event = AuditEvent(
            id="evt-1", created_at=now, updated_at=now,
            event_type=AuditEventType.SCHEDULE_GENERATED,
            entity_type="loan", entity_id="loan-1",
            previous_hash="", current_hash="", metadata={"contract_version": 1}
        )
        event.current_hash = event.calculate_hash()
        assert event.verify_hash()

        event.metadata["contract_version"] = 2
        assert not event.verify_hash()

    def test_round_trip_keeps_hash_valid(self):
        """Test that a stored event still verifies after loading"""
        trail = AuditTrail(InMemoryStorage())
        event = trail.log_event(
            AuditEventType.SCHEDULE_MODIFIED, "loan", "loan-1",
            {"new_remaining_balance": Money(Decimal('555.00'), Currency.CAD)}
        )
        loaded = AuditEvent.from_dict(trail.storage.load(trail.table_name, event.id))
        assert loaded.event_type == AuditEventType.SCHEDULE_MODIFIED
        assert loaded.verify_hash()


class TestAuditTrail:
    """Test AuditTrail functionality"""

    def setup_method(self):
        """Set up test environment"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)

    def test_chain(self):
        """Test that each event links to the previous one"""
        first = self.audit_trail.log_event(AuditEventType.SCHEDULE_GENERATED, "loan", "loan-1")
        second = self.audit_trail.log_event(AuditEventType.PAYMENT_DEFERRED, "loan", "loan-1")

        assert first.previous_hash == ""
        assert first.sequence == 1
        assert second.previous_hash == first.current_hash
        assert second.sequence == 2

    def test_get_events_for_entity(self):
        """Test filtering by entity"""
        self.audit_trail.log_event(AuditEventType.SCHEDULE_GENERATED, "loan", "loan-1")
        self.audit_trail.log_event(AuditEventType.SCHEDULE_GENERATED, "loan", "loan-2")
        self.audit_trail.log_event(AuditEventType.SETTLEMENT_APPLIED, "payment", "p-1")
        self.audit_trail.log_event(AuditEventType.PAYMENTS_STOPPED, "loan", "loan-1")

        events = self.audit_trail.get_events_for_entity("loan", "loan-1")
        assert [e.event_type for e in events] == [
            AuditEventType.SCHEDULE_GENERATED, AuditEventType.PAYMENTS_STOPPED
        ]

    def test_verify_integrity_valid_chain(self):
        """Test integrity verification of an untouched chain"""
        for _ in range(5):
            self.audit_trail.log_event(AuditEventType.SETTLEMENT_APPLIED, "payment", "p-1")

        result = self.audit_trail.verify_integrity()
        assert result["valid"] is True
        assert result["total_events"] == 5
        assert result["hash_errors"] == []
        assert result["chain_breaks"] == []

    def test_verify_integrity_detects_tampering(self):
        """Test integrity verification detects edited metadata"""
        event = self.audit_trail.log_event(
            AuditEventType.SCHEDULE_MODIFIED, "loan", "loan-1", {"new_remaining_balance": "555.00"}
        )
        self.audit_trail.log_event(AuditEventType.PAYMENTS_STOPPED, "loan", "loan-1")

        data = self.storage.load(self.audit_trail.table_name, event.id)
        data["metadata"]["new_remaining_balance"] = "1.00"
        self.storage.save(self.audit_trail.table_name, event.id, data)

        result = self.audit_trail.verify_integrity()
        assert result["valid"] is False
        assert [e["event_id"] for e in result["hash_errors"]] == [event.id]

    def test_verify_integrity_detects_chain_break(self):
        """Test integrity verification detects a removed event"""
        self.audit_trail.log_event(AuditEventType.SCHEDULE_GENERATED, "loan", "loan-1")
        middle = self.audit_trail.log_event(AuditEventType.SCHEDULE_REGENERATED, "loan", "loan-1")
        last = self.audit_trail.log_event(AuditEventType.SCHEDULE_REGENERATED, "loan", "loan-1")

        self.storage.delete(self.audit_trail.table_name, middle.id)

        result = self.audit_trail.verify_integrity()
        assert result["valid"] is False
        assert [b["event_id"] for b in result["chain_breaks"]] == [last.id]

    def test_rolled_back_event_does_not_anchor_chain(self):
        """Test that the chain continues from the last committed event"""
        first = self.audit_trail.log_event(AuditEventType.SCHEDULE_GENERATED, "loan", "loan-1")

        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.audit_trail.log_event(AuditEventType.SCHEDULE_MODIFIED, "loan", "loan-1")
                raise RuntimeError("write failed")

        second = self.audit_trail.log_event(AuditEventType.PAYMENTS_STOPPED, "loan", "loan-1")
        assert second.previous_hash == first.current_hash
        assert self.audit_trail.verify_integrity()["valid"] is True

    def test_disabled_trail(self):
        """Test that a disabled trail records nothing"""
        trail = AuditTrail(self.storage, enabled=False)
        assert trail.log_event(AuditEventType.SCHEDULE_GENERATED, "loan", "loan-1") is None
        assert trail.get_all_events() == []
