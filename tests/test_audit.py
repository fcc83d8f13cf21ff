"""
Test suite for audit module

Tests the hash-chained audit trail, tamper detection, integrity verification
and entity queries.
"""

import pytest
from datetime import datetime, timezone, date
from decimal import Decimal

from fleet_billing.storage import InMemoryStorage
from fleet_billing.audit import AuditTrail, AuditEvent, AuditEventType
from fleet_billing.quotas import QuotaStatus


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def test_metadata_made_json_safe(self):
        now = datetime.now(timezone.utc)
        event = AuditEvent(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.PAYMENT_APPLIED,
            entity_type="financing",
            entity_id="fin-1",
            previous_hash="",
            current_hash="",
            metadata={
                "amount": Decimal("253.85"),
                "payment_date": date(2026, 2, 3),
                "status": QuotaStatus.PAID,
                "records": ("q1", "q2"),
            }
        )
        assert event.metadata == {
            "amount": "253.85",
            "payment_date": "2026-02-03",
            "status": "paid",
            "records": ["q1", "q2"],
        }

    def test_hash_covers_content(self):
        now = datetime.now(timezone.utc)
        event = AuditEvent(
            id="AUDIT001", created_at=now, updated_at=now,
            event_type=AuditEventType.QUOTA_OVERDUE, entity_type="quota",
            entity_id="q1", previous_hash="", current_hash="",
            metadata={"days_late": 2}
        )
        event.current_hash = event.calculate_hash()
        assert event.verify_hash()

        event.metadata["days_late"] = 0
        assert not event.verify_hash()


class TestAuditTrail:
    """Test the audit trail chain"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)

    def test_events_are_chained(self):
        first = self.audit_trail.log_event(AuditEventType.FINANCING_CREATED, "financing", "fin-1",
                                           {"total_amount": Decimal("49500.00")})
        second = self.audit_trail.log_event(AuditEventType.QUOTA_GENERATED, "quota", "q1",
                                            {"financing_id": "fin-1", "quota_number": 1})

        assert first.previous_hash == ""
        assert first.sequence == 1
        assert second.previous_hash == first.current_hash
        assert second.sequence == 2

        result = self.audit_trail.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 2

    def test_tampered_metadata_detected(self):
        event = self.audit_trail.log_event(AuditEventType.PAYMENT_APPLIED, "financing", "fin-1",
                                           {"amount": Decimal("250")})
        self.audit_trail.log_event(AuditEventType.PAYMENT_APPLIED, "financing", "fin-1",
                                   {"amount": Decimal("100")})

        stored = self.storage.load("audit_events", event.id)
        stored["metadata"]["amount"] = "25000"
        self.storage.save("audit_events", event.id, stored)

        result = self.audit_trail.verify_integrity()
        assert not result["valid"]
        assert result["hash_errors"] == [event.id]

    def test_removed_event_breaks_chain(self):
        self.audit_trail.log_event(AuditEventType.FINANCING_CREATED, "financing", "fin-1")
        middle = self.audit_trail.log_event(AuditEventType.QUOTA_GENERATED, "quota", "q1")
        last = self.audit_trail.log_event(AuditEventType.QUOTA_OVERDUE, "quota", "q1")

        self.storage.delete("audit_events", middle.id)

        result = self.audit_trail.verify_integrity()
        assert not result["valid"]
        assert last.id in result["chain_breaks"]

    def test_chain_resumes_after_reload(self):
        first = self.audit_trail.log_event(AuditEventType.FINANCING_CREATED, "financing", "fin-1")

        reopened = AuditTrail(self.storage)
        second = reopened.log_event(AuditEventType.FINANCING_STATUS_CHANGED, "financing", "fin-1",
                                    {"old_status": "active", "new_status": "inactive"})
        assert second.previous_hash == first.current_hash
        assert second.sequence == 2
        assert reopened.verify_integrity()["valid"]

    def test_entity_and_type_queries(self):
        self.audit_trail.log_event(AuditEventType.FINANCING_CREATED, "financing", "fin-1")
        self.audit_trail.log_event(AuditEventType.QUOTA_GENERATED, "quota", "q1")
        self.audit_trail.log_event(AuditEventType.PAYMENT_APPLIED, "financing", "fin-1")
        self.audit_trail.log_event(AuditEventType.FINANCING_CREATED, "financing", "fin-2")

        events = self.audit_trail.get_events_for_entity("financing", "fin-1")
        assert [e.event_type for e in events] == [
            AuditEventType.FINANCING_CREATED, AuditEventType.PAYMENT_APPLIED
        ]
        latest = self.audit_trail.get_events_for_entity("financing", "fin-1", limit=1)
        assert latest[0].event_type == AuditEventType.PAYMENT_APPLIED

        created = self.audit_trail.get_events_by_type(AuditEventType.FINANCING_CREATED)
        assert [e.entity_id for e in created] == ["fin-1", "fin-2"]
