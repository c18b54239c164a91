"""
Tests for Token Ledger models

Test strategy:
1. Unit tests for individual components (models, ledger rules, validators)
2. Integration tests for the service against in-memory SQLite
3. No external services in tests
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

from tokenledger.models import (
    Actor,
    AuditAction,
    AuditEntityType,
    AuditEvent,
    AuditEventBuilder,
    AuditSeverity,
    Contribution,
    ErrorCode,
    ImpactAnalysis,
    LedgerErrorInfo,
    OperationResult,
    Purchase,
    User,
    UserRole,
    ValidationIssue,
    ValidationResult,
)


def make_purchase(**overrides) -> Purchase:
    data = dict(
        total_tokens=Decimal("100"),
        total_payment=Decimal("50"),
        meter_reading=Decimal("1000"),
        purchase_date=datetime(2025, 1, 1),
        created_by=uuid4(),
    )
    data.update(overrides)
    return Purchase(**data)


class TestLedgerModels:
    """Tests for purchase, contribution and user models."""

    def test_purchase_creation(self):
        """Test Purchase model creation."""
        purchase = make_purchase()
        assert purchase.total_tokens == Decimal("100")
        assert purchase.is_emergency is False

    @pytest.mark.parametrize("field", ["total_tokens", "total_payment", "meter_reading"])
    def test_purchase_rejects_non_positive_values(self, field):
        """Test that zero and negative figures are rejected."""
        with pytest.raises(ValueError):
            make_purchase(**{field: Decimal("0")})
        with pytest.raises(ValueError):
            make_purchase(**{field: Decimal("-5")})

    def test_purchase_normalizes_aware_dates_to_naive_utc(self):
        """Test that timezone-aware dates are stored as naive UTC."""
        plus_two = timezone(timedelta(hours=2))
        purchase = make_purchase(purchase_date=datetime(2025, 1, 1, 14, 0, tzinfo=plus_two))
        assert purchase.purchase_date == datetime(2025, 1, 1, 12, 0)
        assert purchase.purchase_date.tzinfo is None

    def test_chronological_key_breaks_ties_by_creation(self):
        """Test that same-day purchases order by created_at."""
        first = make_purchase(created_at=datetime(2025, 1, 1, 8))
        second = make_purchase(created_at=datetime(2025, 1, 1, 9))
        assert first.chronological_key < second.chronological_key

    def test_contribution_rejects_negative_consumption(self):
        """Test that tokens_consumed cannot be negative."""
        with pytest.raises(ValueError):
            Contribution(
                purchase_id=uuid4(),
                user_id=uuid4(),
                contribution_amount=Decimal("10"),
                meter_reading=Decimal("1000"),
                tokens_consumed=Decimal("-1"),
            )

    def test_contribution_allows_zero_consumption(self):
        contribution = Contribution(
            purchase_id=uuid4(),
            user_id=uuid4(),
            contribution_amount=Decimal("10"),
            meter_reading=Decimal("1000"),
            tokens_consumed=Decimal("0"),
        )
        assert contribution.tokens_consumed == 0

    def test_user_strips_whitespace(self):
        """Test that whitespace is stripped from user names."""
        user = User(name="  Thandi  ")
        assert user.name == "Thandi"
        assert user.role == UserRole.USER

    def test_actor_from_user(self):
        user = User(name="Admin", role=UserRole.ADMIN, is_locked=True)
        actor = Actor.from_user(user)
        assert actor.user_id == user.id
        assert actor.is_admin
        assert actor.is_locked


class TestOperationResult:
    """Tests for the typed operation outcome."""

    def test_ok_result(self):
        result = OperationResult.ok("value", warnings=["check this"])
        assert result.success
        assert result.value == "value"
        assert result.warnings == ["check this"]
        assert result.error_code is None

    def test_fail_result(self):
        result = OperationResult.fail(
            LedgerErrorInfo(code=ErrorCode.SEQUENCING, message="Out of order")
        )
        assert not result.success
        assert result.value is None
        assert result.error_code == ErrorCode.SEQUENCING


class TestImpactAnalysis:
    """Tests for recalculation impact deltas."""

    def test_deltas(self):
        impact = ImpactAnalysis(
            purchase_id=uuid4(),
            old_meter_reading=Decimal("1000"),
            new_meter_reading=Decimal("980"),
            prior_reading=Decimal("900"),
            is_latest_purchase=False,
            affected_contribution_id=uuid4(),
            old_tokens_consumed=Decimal("100"),
            new_tokens_consumed=Decimal("80"),
            old_true_cost=Decimal("50"),
            new_true_cost=Decimal("40"),
            old_overpayment=Decimal("10"),
            new_overpayment=Decimal("20"),
        )
        assert impact.requires_recalculation
        assert not impact.requires_override
        assert impact.can_apply
        assert impact.tokens_consumed_delta == Decimal("-20")
        assert impact.true_cost_delta == Decimal("-10")
        assert impact.overpayment_delta == Decimal("10")

    def test_deltas_absent_without_contribution(self):
        impact = ImpactAnalysis(
            purchase_id=uuid4(),
            old_meter_reading=Decimal("1000"),
            new_meter_reading=Decimal("1010"),
            prior_reading=Decimal("0"),
            is_latest_purchase=True,
            violations=["bad"],
        )
        assert not impact.requires_recalculation
        assert impact.tokens_consumed_delta is None
        assert not impact.can_apply


class TestAuditModels:
    """Tests for audit models."""

    def test_audit_event_creation(self):
        """Test AuditEvent creation computes an integrity hash."""
        event = AuditEvent(
            actor_id=uuid4(),
            action=AuditAction.CREATE,
            entity_type=AuditEntityType.PURCHASE,
            entity_id=uuid4(),
            description="Test event",
        )
        assert event.event_id is not None
        assert event.severity == AuditSeverity.INFO
        assert len(event.integrity_hash) == 64
        assert event.verify_integrity()

    def test_tampering_breaks_integrity(self):
        """Test that editing a snapshot invalidates the hash."""
        purchase = make_purchase()
        actor = Actor(user_id=purchase.created_by)
        event = AuditEventBuilder.purchase_created(purchase, actor, uuid4())
        event.after["meter_reading"] = "1"
        assert not event.verify_integrity()

    def test_audit_event_to_log_dict(self):
        """Test conversion to log dictionary."""
        event = AuditEvent(
            actor_id=uuid4(),
            action=AuditAction.DELETE,
            entity_type=AuditEntityType.CONTRIBUTION,
            entity_id=uuid4(),
            description="Test",
        )
        log_dict = event.to_log_dict()
        assert log_dict["action"] == "DELETE"
        assert log_dict["entity_type"] == "UserContribution"
        assert log_dict["integrity_hash"] == event.integrity_hash

    def test_contribution_created_with_override(self):
        """Test that a sequencing override is recorded with who and why."""
        contribution = Contribution(
            purchase_id=uuid4(),
            user_id=uuid4(),
            contribution_amount=Decimal("25"),
            meter_reading=Decimal("1100"),
            tokens_consumed=Decimal("50"),
        )
        actor = Actor(user_id=uuid4(), role=UserRole.ADMIN)
        skipped = [uuid4()]
        event = AuditEventBuilder.contribution_created(
            contribution,
            actor,
            uuid4(),
            override_reason="Late receipt",
            skipped_purchase_ids=skipped,
        )
        assert event.severity == AuditSeverity.WARNING
        assert event.details["sequencing_override"] is True
        assert event.details["override_by"] == str(actor.user_id)
        assert event.details["override_reason"] == "Late receipt"
        assert event.details["skipped_purchase_ids"] == [str(skipped[0])]

    def test_contribution_created_without_override(self):
        contribution = Contribution(
            purchase_id=uuid4(),
            user_id=uuid4(),
            contribution_amount=Decimal("25"),
            meter_reading=Decimal("1100"),
            tokens_consumed=Decimal("50"),
        )
        event = AuditEventBuilder.contribution_created(
            contribution, Actor(user_id=contribution.user_id), uuid4()
        )
        assert event.severity == AuditSeverity.INFO
        assert event.details == {}
        assert event.after["contribution_amount"] == "25"


class TestValidationResult:
    """Tests for ValidationResult model."""

    def test_validation_result_has_errors(self):
        """Test has_errors property."""
        result = ValidationResult(
            is_valid=False,
            issues=[
                ValidationIssue(
                    field="meter_reading",
                    issue_type="decreasing_reading",
                    message="Meter reading cannot decrease",
                    severity="error",
                ),
                ValidationIssue(
                    field="meter_reading",
                    issue_type="high_consumption",
                    message="Unusually high",
                    severity="warning",
                ),
            ],
        )
        assert result.has_errors
        assert result.error_count == 1
        assert [issue.issue_type for issue in result.errors] == ["decreasing_reading"]

    def test_validation_result_warnings_only(self):
        """Test result with only warnings."""
        result = ValidationResult(
            is_valid=True,
            issues=[
                ValidationIssue(
                    field="meter_reading",
                    issue_type="low_consumption",
                    message="Unusually low",
                    severity="warning",
                ),
            ],
            warnings=["Unusually low"],
        )
        assert not result.has_errors
        assert result.error_count == 0

    def test_severity_must_be_known(self):
        with pytest.raises(ValueError):
            ValidationIssue(field="x", issue_type="y", message="z", severity="fatal")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
