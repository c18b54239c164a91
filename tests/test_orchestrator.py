"""
Integration tests for LedgerService against in-memory SQLite.
"""

import pytest
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from tokenledger.ledger import to_money
from tokenledger.models import Actor, ErrorCode, UserRole


def stored(storage):
    """Read back every purchase and contribution."""
    with storage.transaction() as tx:
        return tx.list_purchases(), tx.list_contributions()


class TestUsers:
    """Tests for user registration."""

    def test_register_user(self, service):
        result = service.register_user("  Lerato  ", role=UserRole.ADMIN)
        assert result.success
        assert result.value.name == "Lerato"
        assert result.value.role == UserRole.ADMIN

    def test_register_user_rejects_empty_name(self, service):
        result = service.register_user("")
        assert not result.success
        assert result.error_code == ErrorCode.VALIDATION
        assert result.error.details["field"] == "name"


class TestCreatePurchase:
    """Tests for recording purchases."""

    def test_create_purchase(self, service, admin, storage):
        result = service.create_purchase(
            total_tokens=Decimal("100"),
            total_payment=Decimal("50"),
            meter_reading=Decimal("1000"),
            purchase_date=datetime(2025, 1, 1),
            actor=admin,
        )
        assert result.success
        assert result.value.created_by == admin.user_id
        assert result.correlation_id is not None

        purchases, _ = stored(storage)
        assert [p.id for p in purchases] == [result.value.id]

    def test_accepts_plain_numbers(self, service, admin):
        result = service.create_purchase(
            total_tokens=100,
            total_payment="49.99",
            meter_reading=1000.5,
            purchase_date=datetime(2025, 1, 1),
            actor=admin,
        )
        assert result.success
        assert result.value.meter_reading == Decimal("1000.5")

    def test_non_positive_payment_is_validation_error(self, service, admin):
        result = service.create_purchase(
            total_tokens=Decimal("100"),
            total_payment=Decimal("0"),
            meter_reading=Decimal("1000"),
            purchase_date=datetime(2025, 1, 1),
            actor=admin,
        )
        assert not result.success
        assert result.error_code == ErrorCode.VALIDATION
        assert result.error.details["field"] == "total_payment"

    def test_decreasing_reading_is_validation_error(self, service, admin, buy, storage):
        buy(1000, 1)
        result = service.create_purchase(
            total_tokens=Decimal("100"),
            total_payment=Decimal("50"),
            meter_reading=Decimal("900"),
            purchase_date=datetime(2025, 1, 11),
            actor=admin,
        )
        assert not result.success
        assert result.error_code == ErrorCode.VALIDATION
        assert result.error.details["issues"][0]["issue_type"] == "decreasing_reading"
        assert len(stored(storage)[0]) == 1

    def test_advisory_warnings_are_returned_with_success(self, service, admin, buy):
        buy(1000, 1)
        buy(1100, 11)
        buy(1200, 21)
        result = service.create_purchase(
            total_tokens=Decimal("100"),
            total_payment=Decimal("50"),
            meter_reading=Decimal("2000"),
            purchase_date=datetime(2025, 1, 31),
            actor=admin,
        )
        assert result.success
        assert len(result.warnings) == 1
        assert "unusually high" in result.warnings[0]

    def test_locked_actor_cannot_create_purchase(self, service, locked_member):
        result = service.create_purchase(
            total_tokens=Decimal("100"),
            total_payment=Decimal("50"),
            meter_reading=Decimal("1000"),
            purchase_date=datetime(2025, 1, 1),
            actor=locked_member,
        )
        assert result.error_code == ErrorCode.PERMISSION

    def test_unknown_actor_is_not_found(self, service):
        result = service.create_purchase(
            total_tokens=Decimal("100"),
            total_payment=Decimal("50"),
            meter_reading=Decimal("1000"),
            purchase_date=datetime(2025, 1, 1),
            actor=Actor(user_id=uuid4()),
        )
        assert result.error_code == ErrorCode.NOT_FOUND

    def test_backdated_purchase_before_contributed_purchase_is_refused(
        self, service, admin, buy, contribute, queries, storage
    ):
        """A purchase slotted in front of P2 would change P2's consumption."""
        p1 = buy(1000, 1)
        p2 = buy(1050, 10)
        contribute(p1, "50", baseline_reading=Decimal("900"))
        contribute(p2, "25")

        result = service.create_purchase(
            total_tokens=Decimal("100"),
            total_payment=Decimal("50"),
            meter_reading=Decimal("1020"),
            purchase_date=datetime(2025, 1, 5),
            actor=admin,
        )

        assert result.error_code == ErrorCode.CONSTRAINT
        assert result.error.details["reason"] == "downstream_contribution"
        assert len(stored(storage)[0]) == 2
        assert queries.verify_ledger().is_consistent

    def test_backdated_purchase_into_open_slot(self, service, admin, buy, contribute):
        p1 = buy(1000, 1)
        buy(1050, 10)
        contribute(p1, "50", baseline_reading=Decimal("900"))

        result = service.create_purchase(
            total_tokens=Decimal("100"),
            total_payment=Decimal("50"),
            meter_reading=Decimal("1020"),
            purchase_date=datetime(2025, 1, 5),
            actor=admin,
        )
        assert result.success

    def test_member_waits_for_previous_contribution(
        self, service, admin, member, buy, contribute
    ):
        p1 = buy(1000, 1)
        purchase_kwargs = dict(
            total_tokens=Decimal("100"),
            total_payment=Decimal("50"),
            meter_reading=Decimal("1050"),
            purchase_date=datetime(2025, 1, 11),
        )

        result = service.create_purchase(actor=member, **purchase_kwargs)
        assert result.error_code == ErrorCode.SEQUENCING
        assert result.error.details["blocking_purchase_ids"] == [str(p1.id)]
        assert "requires a contribution first" in result.error.message

        contribute(p1, "50")
        assert service.create_purchase(actor=member, **purchase_kwargs).success

    def test_admin_bypasses_purchase_order(self, service, admin, buy):
        buy(1000, 1)
        result = service.create_purchase(
            total_tokens=Decimal("100"),
            total_payment=Decimal("50"),
            meter_reading=Decimal("1050"),
            purchase_date=datetime(2025, 1, 11),
            actor=admin,
        )
        assert result.success

    def test_excess_decimal_places_are_rejected(self, service, admin, storage):
        result = service.create_purchase(
            total_tokens=Decimal("100"),
            total_payment=Decimal("50"),
            meter_reading=Decimal("1000.0004"),
            purchase_date=datetime(2025, 1, 1),
            actor=admin,
        )
        assert result.error_code == ErrorCode.VALIDATION
        assert result.error.details["field"] == "meter_reading"
        assert stored(storage)[0] == []

    def test_stored_values_match_returned_values(self, service, admin, storage):
        result = service.create_purchase(
            total_tokens=Decimal("100.125"),
            total_payment=Decimal("49.9999"),
            meter_reading=Decimal("1000.125"),
            purchase_date=datetime(2025, 1, 1),
            actor=admin,
        )
        assert result.success

        saved = stored(storage)[0][0]
        assert saved.meter_reading == result.value.meter_reading
        assert saved.total_tokens == result.value.total_tokens
        assert saved.total_payment == result.value.total_payment


class TestCreateContribution:
    """Tests for contributions, including scenarios A to C."""

    def test_scenario_a(self, buy, contribute):
        """Baseline 900, reading 1000, 100 tokens for $50, paid $60."""
        p1 = buy(1000, 1, total_tokens="100", total_payment="50")
        view = contribute(p1, "60", baseline_reading=Decimal("900"))

        assert view.contribution.meter_reading == p1.meter_reading
        assert view.contribution.tokens_consumed == Decimal("100")
        assert to_money(view.true_cost) == Decimal("50.00")
        assert to_money(view.allocation.overpayment) == Decimal("10.00")

    def test_scenario_b(self, buy, contribute):
        p1 = buy(1000, 1, total_tokens="100", total_payment="50")
        p2 = buy(1050, 11, total_tokens="50", total_payment="25")
        contribute(p1, "60", baseline_reading=Decimal("900"))

        view = contribute(p2, "25")

        assert view.contribution.tokens_consumed == Decimal("50")
        assert to_money(view.true_cost) == Decimal("25.00")
        assert to_money(view.allocation.overpayment) == Decimal("0.00")

    def test_first_contribution_uses_configured_baseline(self, buy, contribute):
        p1 = buy(1000, 1, total_tokens="1000", total_payment="250")
        view = contribute(p1, "250")
        assert view.contribution.tokens_consumed == Decimal("1000")

    def test_scenario_c_sequencing(self, service, admin, buy, contribute, storage):
        p1 = buy(1000, 1)
        p2 = buy(1050, 11)
        p3 = buy(1100, 21)
        contribute(p1, "50", baseline_reading=Decimal("900"))

        result = service.create_contribution(
            purchase_id=p3.id,
            user_id=admin.user_id,
            contribution_amount=Decimal("25"),
            actor=admin,
        )
        assert result.error_code == ErrorCode.SEQUENCING
        assert result.error.details["blocking_purchase_ids"] == [str(p2.id)]
        assert len(stored(storage)[1]) == 1

        result = service.create_contribution(
            purchase_id=p3.id,
            user_id=admin.user_id,
            contribution_amount=Decimal("25"),
            actor=admin,
            override=True,
            override_reason="Receipt for P2 is lost",
        )
        assert result.success
        assert result.value.contribution.tokens_consumed == Decimal("50")

    def test_only_admin_can_override(self, service, member, buy, contribute):
        buy(1000, 1)
        p2 = buy(1050, 11)
        result = service.create_contribution(
            purchase_id=p2.id,
            user_id=member.user_id,
            contribution_amount=Decimal("25"),
            actor=member,
            override=True,
        )
        assert result.error_code == ErrorCode.PERMISSION

    def test_duplicate_contribution(self, service, admin, buy, contribute):
        p1 = buy(1000, 1)
        contribute(p1, "50")
        result = service.create_contribution(
            purchase_id=p1.id,
            user_id=admin.user_id,
            contribution_amount=Decimal("50"),
            actor=admin,
        )
        assert result.error_code == ErrorCode.DUPLICATE

    def test_member_contributes_for_self(self, buy, contribute, member):
        p1 = buy(1000, 1)
        view = contribute(p1, "50", actor=member)
        assert view.contribution.user_id == member.user_id

    def test_member_cannot_contribute_for_others(self, service, buy, member, other_member):
        p1 = buy(1000, 1)
        result = service.create_contribution(
            purchase_id=p1.id,
            user_id=other_member.user_id,
            contribution_amount=Decimal("50"),
            actor=member,
        )
        assert result.error_code == ErrorCode.PERMISSION

    def test_admin_contributes_for_member(self, buy, contribute, member):
        p1 = buy(1000, 1)
        view = contribute(p1, "50", user_id=member.user_id)
        assert view.contribution.user_id == member.user_id

    def test_locked_actor_cannot_contribute(self, service, buy, locked_member):
        p1 = buy(1000, 1)
        result = service.create_contribution(
            purchase_id=p1.id,
            user_id=locked_member.user_id,
            contribution_amount=Decimal("50"),
            actor=locked_member,
        )
        assert result.error_code == ErrorCode.PERMISSION

    def test_unknown_purchase(self, service, admin):
        result = service.create_contribution(
            purchase_id=uuid4(),
            user_id=admin.user_id,
            contribution_amount=Decimal("50"),
            actor=admin,
        )
        assert result.error_code == ErrorCode.NOT_FOUND

    def test_non_positive_amount(self, service, admin, buy):
        p1 = buy(1000, 1)
        result = service.create_contribution(
            purchase_id=p1.id,
            user_id=admin.user_id,
            contribution_amount=Decimal("0"),
            actor=admin,
        )
        assert result.error_code == ErrorCode.VALIDATION

    def test_reading_below_baseline(self, service, admin, buy):
        p1 = buy(1000, 1)
        result = service.create_contribution(
            purchase_id=p1.id,
            user_id=admin.user_id,
            contribution_amount=Decimal("50"),
            actor=admin,
            baseline_reading=Decimal("1100"),
        )
        assert result.error_code == ErrorCode.VALIDATION

    def test_consumption_above_tokens_warns(self, buy, service, admin):
        p1 = buy(1000, 1, total_tokens="100")
        result = service.create_contribution(
            purchase_id=p1.id,
            user_id=admin.user_id,
            contribution_amount=Decimal("50"),
            actor=admin,
            baseline_reading=Decimal("800"),
        )
        assert result.success
        assert "exceeds" in result.warnings[0]

    def test_reading_equality_holds(self, buy, contribute, storage):
        p1 = buy(1000, 1)
        p2 = buy(1050, 11)
        contribute(p1, "50")
        contribute(p2, "25")
        purchases, contributions = stored(storage)
        by_id = {p.id: p for p in purchases}
        for contribution in contributions:
            assert contribution.meter_reading == by_id[contribution.purchase_id].meter_reading


class TestEditAndDeleteContribution:
    """Tests for contribution edits and the deletion gate."""

    def test_owner_edits_amount(self, service, buy, contribute, member):
        p1 = buy(1000, 1)
        view = contribute(p1, "50", actor=member, baseline_reading=Decimal("900"))

        result = service.edit_contribution(view.contribution.id, Decimal("70"), member)

        assert result.success
        assert result.value.contribution.contribution_amount == Decimal("70")
        assert result.value.contribution.tokens_consumed == Decimal("100")
        assert result.value.allocation.overpayment == Decimal("20")

    def test_stranger_cannot_edit(self, service, buy, contribute, member, other_member):
        p1 = buy(1000, 1)
        view = contribute(p1, "50", actor=member)
        result = service.edit_contribution(view.contribution.id, Decimal("70"), other_member)
        assert result.error_code == ErrorCode.PERMISSION

    def test_edit_unknown_contribution(self, service, admin):
        result = service.edit_contribution(uuid4(), Decimal("70"), admin)
        assert result.error_code == ErrorCode.NOT_FOUND

    def test_edit_rejects_non_positive_amount(self, service, buy, contribute, admin):
        view = contribute(buy(1000, 1), "50")
        result = service.edit_contribution(view.contribution.id, Decimal("-1"), admin)
        assert result.error_code == ErrorCode.VALIDATION

    def test_deletion_gate(self, service, buy, contribute, admin, storage):
        p1 = buy(1000, 1)
        p2 = buy(1050, 11)
        first = contribute(p1, "50")
        second = contribute(p2, "25")

        result = service.delete_contribution(first.contribution.id, admin)
        assert result.error_code == ErrorCode.CONSTRAINT
        assert result.error.details["reason"] == "not_latest"

        assert service.delete_contribution(second.contribution.id, admin).success
        assert service.delete_contribution(first.contribution.id, admin).success
        assert stored(storage)[1] == []

    def test_gate_spans_all_users(self, service, buy, contribute, member, other_member):
        p1 = buy(1000, 1)
        p2 = buy(1050, 11)
        mine = contribute(p1, "50", actor=member)
        contribute(p2, "25", actor=other_member)

        result = service.delete_contribution(mine.contribution.id, member)
        assert result.error_code == ErrorCode.CONSTRAINT


class TestPurchaseEditAndDelete:
    """Tests for purchase edits and deletes."""

    def test_delete_uncontributed_purchase(self, service, buy, admin, storage):
        p1 = buy(1000, 1)
        assert service.delete_purchase(p1.id, admin).success
        assert stored(storage)[0] == []

    def test_delete_contributed_purchase_fails(self, service, buy, contribute, admin):
        p1 = buy(1000, 1)
        contribute(p1, "50")
        result = service.delete_purchase(p1.id, admin)
        assert result.error_code == ErrorCode.CONSTRAINT
        assert result.error.details["reason"] == "has_contribution"

    def test_member_cannot_delete_admins_purchase(self, service, buy, member):
        p1 = buy(1000, 1)
        assert service.delete_purchase(p1.id, member).error_code == ErrorCode.PERMISSION

    def test_creator_can_delete_own_purchase(self, service, buy, member):
        p1 = buy(1000, 1, actor=member)
        assert service.delete_purchase(p1.id, member).success

    def test_delete_unknown_purchase(self, service, admin):
        assert service.delete_purchase(uuid4(), admin).error_code == ErrorCode.NOT_FOUND

    def test_edit_uncontributed_purchase(self, service, buy, admin):
        p1 = buy(1000, 1)
        result = service.edit_purchase(
            p1.id, admin, total_payment=Decimal("55"), is_emergency=True
        )
        assert result.success
        assert result.value.total_payment == Decimal("55")
        assert result.value.is_emergency

    def test_edit_contributed_purchase_fails(self, service, buy, contribute, admin):
        p1 = buy(1000, 1)
        contribute(p1, "50")
        result = service.edit_purchase(p1.id, admin, total_payment=Decimal("55"))
        assert result.error_code == ErrorCode.CONSTRAINT

    def test_moving_purchase_date_rechecks_chronology(self, service, buy, admin):
        buy(1000, 1)
        p2 = buy(1050, 11)
        buy(1100, 21)
        result = service.edit_purchase(p2.id, admin, purchase_date=datetime(2025, 1, 25))
        assert result.error_code == ErrorCode.VALIDATION

    def test_edit_rejects_invalid_values(self, service, buy, admin):
        p1 = buy(1000, 1)
        result = service.edit_purchase(p1.id, admin, total_tokens=Decimal("-5"))
        assert result.error_code == ErrorCode.VALIDATION

    @pytest.fixture
    def gap_over_open_purchase(self, buy, contribute):
        """P1 and P3 contributed (P3 by override); P2 still open."""
        p1 = buy(1000, 1)
        p2 = buy(1050, 11)
        p3 = buy(1100, 21)
        contribute(p1, "50", baseline_reading=Decimal("900"))
        contribute(p3, "25", override=True, override_reason="P2 receipt pending")
        return p1, p2, p3

    def test_delete_in_front_of_contribution_fails(
        self, service, admin, queries, storage, gap_over_open_purchase
    ):
        _, p2, _ = gap_over_open_purchase

        result = service.delete_purchase(p2.id, admin)

        assert result.error_code == ErrorCode.CONSTRAINT
        assert result.error.details["reason"] == "downstream_contribution"
        assert len(stored(storage)[0]) == 3
        issue_types = [issue.issue_type for issue in queries.verify_ledger().issues]
        assert "consumption_mismatch" not in issue_types

    def test_moving_purchase_away_from_contribution_fails(
        self, service, admin, gap_over_open_purchase
    ):
        _, p2, _ = gap_over_open_purchase
        result = service.edit_purchase(p2.id, admin, purchase_date=datetime(2025, 1, 25))
        assert result.error_code == ErrorCode.CONSTRAINT
        assert result.error.details["reason"] == "downstream_contribution"

    def test_non_date_edit_next_to_contribution_is_allowed(
        self, service, admin, gap_over_open_purchase
    ):
        _, p2, _ = gap_over_open_purchase
        result = service.edit_purchase(p2.id, admin, total_payment=Decimal("30"))
        assert result.success


class TestValidateMeterReading:
    """Tests for the dry-run validation operation."""

    def test_invalid_reading_is_a_successful_call(self, service, buy):
        buy(1000, 1)
        result = service.validate_meter_reading(Decimal("900"), datetime(2025, 1, 5))
        assert result.success
        assert not result.value.is_valid

    def test_valid_reading(self, service, buy):
        buy(1000, 1)
        result = service.validate_meter_reading(Decimal("1100"), datetime(2025, 1, 5))
        assert result.value.is_valid


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
