"""
Ledger Service for Token Ledger

This module ties together all the ledger components and defines the
operations outer layers (API, CLI, scripts) call:
1. Purchases (create → validate reading → save)
2. Contributions (sequence check → reconcile → allocate → save)
3. Corrections (preview impact → apply atomically → audit both records)

DESIGN DECISION: The service enforces the boundaries:
- One operation == one storage transaction
- Guarded reads lock their rows until the write commits
- No ledger failure escapes as an exception; every call returns an
  OperationResult
- Every mutation is audited, after its transaction commits. An audit
  write that fails leaves the committed change in place and comes back
  as a warning on the result

Storage failures (StorageError) are the exception to the rule: they
propagate so the caller can decide whether to retry.
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional, Union
from uuid import UUID

import structlog
from pydantic import ValidationError

from tokenledger.audit import AuditLogger, create_correlation_id
from tokenledger.config import LedgerSettings, Settings, get_settings
from tokenledger.ledger import (
    ConstraintError,
    DuplicateError,
    LedgerError,
    LedgerValidationError,
    NotFoundError,
    PermissionDeniedError,
    RecalculationEngine,
    allocate,
    can_delete_contribution,
    can_delete_purchase,
    can_edit_contribution,
    can_edit_purchase,
    downstream_contribution,
    ensure_can_write,
    ensure_no_downstream_contribution,
    reconcile_in_chain,
    validate_contribution_order,
    validate_purchase_order,
)
from tokenledger.models import (
    Actor,
    AuditEvent,
    AuditEventBuilder,
    Contribution,
    ContributionView,
    ErrorCode,
    LedgerErrorInfo,
    OperationResult,
    Purchase,
    User,
    UserRole,
    utcnow,
)
from tokenledger.queries import LedgerQueries
from tokenledger.services.storage import (
    IntegrityConflictError,
    LedgerStorageInterface,
    LedgerTransaction,
    SqlAuditStorage,
    SqlLedgerStorage,
    build_engine,
)
from tokenledger.validation import ReadingCandidate, ReadingValidator

logger = structlog.get_logger(__name__)

Number = Union[Decimal, int, float, str]

AUDIT_FAILED_WARNING = (
    "The change was saved, but its audit record could not be persisted"
)


def _to_decimal(value: Number, field: str) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise LedgerValidationError(f"{field} must be a number", field=field) from e


def _validation_error_info(error: ValidationError) -> LedgerErrorInfo:
    """Translate a pydantic ValidationError into a ledger validation failure."""
    issues = [
        {
            "field": ".".join(str(part) for part in item["loc"]),
            "message": item["msg"],
        }
        for item in error.errors()
    ]
    first = issues[0] if issues else {"field": "", "message": "Invalid input"}
    return LedgerErrorInfo(
        code=ErrorCode.VALIDATION,
        message=f"Invalid {first['field']}: {first['message']}",
        details={"field": first["field"], "issues": issues},
    )


class _OperationContext:
    """What one operation accumulates besides its return value."""

    def __init__(self, correlation_id: UUID):
        self.correlation_id = correlation_id
        self.warnings: list[str] = []
        self.events: list[AuditEvent] = []


class LedgerService:
    """
    The ledger's operation contract.

    Each public method runs exactly one transaction and returns an
    OperationResult. Audit events are emitted only once the transaction
    has committed; a failed operation emits nothing.
    """

    def __init__(
        self,
        storage: LedgerStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[LedgerSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._storage = storage
        self._audit_logger = audit_logger or AuditLogger()
        self._settings = settings or get_settings().ledger
        self._clock = clock
        self._validator = ReadingValidator(self._settings)
        self._recalculation = RecalculationEngine(self._settings)

    @property
    def validator(self) -> ReadingValidator:
        return self._validator

    # ===== PLUMBING =====

    def _run(
        self,
        operation: str,
        work: Callable[[LedgerTransaction, _OperationContext], Any],
        on_conflict: Optional[Callable[[], LedgerError]] = None,
    ) -> OperationResult:
        """
        Run `work` inside one transaction and package the outcome.

        Args:
            operation: Name used in log lines
            work: Does the reads, checks and writes; returns the success value
            on_conflict: Ledger error to report when the store rejects the
                write on a uniqueness or foreign-key constraint
        """
        ctx = _OperationContext(create_correlation_id())

        try:
            with self._storage.transaction() as tx:
                value = work(tx, ctx)
        except LedgerError as e:
            logger.info(
                "ledger_operation_rejected",
                operation=operation,
                code=e.code.value,
                message=e.message,
                correlation_id=str(ctx.correlation_id),
            )
            return OperationResult.fail(e.to_info(), ctx.correlation_id)
        except ValidationError as e:
            info = _validation_error_info(e)
            logger.info(
                "ledger_operation_rejected",
                operation=operation,
                code=info.code.value,
                message=info.message,
                correlation_id=str(ctx.correlation_id),
            )
            return OperationResult.fail(info, ctx.correlation_id)
        except IntegrityConflictError:
            if on_conflict is None:
                raise
            error = on_conflict()
            logger.info(
                "ledger_operation_conflict",
                operation=operation,
                code=error.code.value,
                correlation_id=str(ctx.correlation_id),
            )
            return OperationResult.fail(error.to_info(), ctx.correlation_id)

        if ctx.events and not self._audit_logger.log_many(ctx.events):
            logger.error(
                "ledger_audit_incomplete",
                operation=operation,
                event_count=len(ctx.events),
                correlation_id=str(ctx.correlation_id),
            )
            ctx.warnings.append(AUDIT_FAILED_WARNING)

        return OperationResult.ok(
            value,
            warnings=ctx.warnings,
            correlation_id=ctx.correlation_id,
        )

    def _require_user(self, tx: LedgerTransaction, user_id: UUID) -> User:
        user = tx.get_user(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return user

    def _require_purchase(self, tx: LedgerTransaction, purchase_id: UUID) -> Purchase:
        purchase = tx.get_purchase(purchase_id)
        if purchase is None:
            raise NotFoundError("Purchase", purchase_id)
        return purchase

    def _require_contribution(
        self,
        tx: LedgerTransaction,
        contribution_id: UUID,
    ) -> Contribution:
        contribution = tx.get_contribution(contribution_id)
        if contribution is None:
            raise NotFoundError("Contribution", contribution_id)
        return contribution

    def _contributions_by_purchase(
        self,
        tx: LedgerTransaction,
    ) -> dict[UUID, Contribution]:
        return {c.purchase_id: c for c in tx.list_contributions(lock=True)}

    def _check_reading(
        self,
        candidate: ReadingCandidate,
        chain: list[Purchase],
        ctx: _OperationContext,
    ) -> None:
        """Run the validation pipeline; raise on errors, keep the warnings."""
        result = self._validator.validate(candidate, chain)
        if not result.is_valid:
            errors = result.errors
            raise LedgerValidationError(
                errors[0].message,
                field=errors[0].field,
                issues=[issue.model_dump() for issue in errors],
            )
        ctx.warnings.extend(result.warnings)

    # ===== USERS =====

    def register_user(
        self,
        name: str,
        role: UserRole = UserRole.USER,
        is_locked: bool = False,
        actor: Optional[Actor] = None,
    ) -> OperationResult:
        """Add a household member. Value: User."""

        def work(tx: LedgerTransaction, ctx: _OperationContext) -> User:
            user = User(name=name, role=role, is_locked=is_locked, created_at=self._clock())
            tx.add_user(user)
            ctx.events.append(
                AuditEventBuilder.user_registered(user, ctx.correlation_id, actor)
            )
            return user

        return self._run("register_user", work)

    # ===== PURCHASES =====

    def create_purchase(
        self,
        total_tokens: Number,
        total_payment: Number,
        meter_reading: Number,
        purchase_date: datetime,
        actor: Actor,
        is_emergency: bool = False,
    ) -> OperationResult:
        """
        Record a token purchase.

        The reading is checked against the chain; advisory consumption
        warnings come back on the result. A purchase cannot be slotted in
        front of a contributed purchase, and a member cannot add one while
        the purchase before it is unsettled. Value: Purchase.
        """

        def work(tx: LedgerTransaction, ctx: _OperationContext) -> Purchase:
            ensure_can_write(actor)
            self._require_user(tx, actor.user_id)

            candidate = ReadingCandidate(
                meter_reading=meter_reading,
                purchase_date=purchase_date,
                total_tokens=total_tokens,
                total_payment=total_payment,
            )
            chain = tx.list_purchases(lock=True)
            self._check_reading(candidate, chain, ctx)

            purchase = Purchase(
                total_tokens=total_tokens,
                total_payment=total_payment,
                meter_reading=meter_reading,
                purchase_date=purchase_date,
                is_emergency=is_emergency,
                created_by=actor.user_id,
                created_at=self._clock(),
            )

            contributions = self._contributions_by_purchase(tx)
            ensure_no_downstream_contribution(
                downstream_contribution(purchase, chain, contributions),
                "add a purchase at this date",
            )
            validate_purchase_order(purchase, chain, set(contributions), actor)

            tx.add_purchase(purchase)
            ctx.events.append(AuditEventBuilder.purchase_created(
                purchase, actor, ctx.correlation_id, warnings=list(ctx.warnings)
            ))
            return purchase

        return self._run("create_purchase", work)

    def edit_purchase(
        self,
        purchase_id: UUID,
        actor: Actor,
        total_tokens: Optional[Number] = None,
        total_payment: Optional[Number] = None,
        purchase_date: Optional[datetime] = None,
        is_emergency: Optional[bool] = None,
    ) -> OperationResult:
        """
        Change an uncontributed purchase's details.

        Meter readings are corrected through apply_meter_reading_change.
        Value: Purchase.
        """

        def work(tx: LedgerTransaction, ctx: _OperationContext) -> Purchase:
            chain = tx.list_purchases(lock=True)
            purchase = self._require_purchase(tx, purchase_id)
            contribution = tx.get_contribution_for_purchase(purchase.id)
            can_edit_purchase(purchase, contribution, actor)

            changes: dict[str, Any] = {}
            if total_tokens is not None:
                changes["total_tokens"] = total_tokens
            if total_payment is not None:
                changes["total_payment"] = total_payment
            if purchase_date is not None:
                changes["purchase_date"] = purchase_date
            if is_emergency is not None:
                changes["is_emergency"] = is_emergency

            updated = Purchase.model_validate({**purchase.model_dump(), **changes})

            if updated.purchase_date != purchase.purchase_date:
                # Moving the purchase changes P(k-1) at both its old and new slot
                contributions = self._contributions_by_purchase(tx)
                for slot in (purchase, updated):
                    ensure_no_downstream_contribution(
                        downstream_contribution(slot, chain, contributions),
                        "move this purchase",
                    )
                self._check_reading(
                    ReadingCandidate(
                        meter_reading=updated.meter_reading,
                        purchase_date=updated.purchase_date,
                        exclude_purchase_id=updated.id,
                    ),
                    chain,
                    ctx,
                )

            tx.update_purchase(updated)
            ctx.events.append(AuditEventBuilder.purchase_updated(
                purchase, updated, actor, ctx.correlation_id
            ))
            return updated

        return self._run("edit_purchase", work)

    def delete_purchase(self, purchase_id: UUID, actor: Actor) -> OperationResult:
        """Delete a purchase that has no contribution. Value: None."""

        def work(tx: LedgerTransaction, ctx: _OperationContext) -> None:
            chain = tx.list_purchases(lock=True)
            purchase = self._require_purchase(tx, purchase_id)
            contributions = self._contributions_by_purchase(tx)
            can_delete_purchase(
                purchase,
                contributions.get(purchase.id),
                actor,
                downstream=downstream_contribution(purchase, chain, contributions),
            )

            tx.delete_purchase(purchase.id)
            ctx.events.append(AuditEventBuilder.purchase_deleted(
                purchase, actor, ctx.correlation_id
            ))
            return None

        # A contribution inserted concurrently trips the foreign key
        return self._run(
            "delete_purchase",
            work,
            on_conflict=lambda: ConstraintError(
                ConstraintError.HAS_CONTRIBUTION,
                "Cannot delete a purchase that has a contribution",
            ),
        )

    # ===== CONTRIBUTIONS =====

    def create_contribution(
        self,
        purchase_id: UUID,
        user_id: UUID,
        contribution_amount: Number,
        actor: Actor,
        override: bool = False,
        override_reason: Optional[str] = None,
        baseline_reading: Optional[Number] = None,
    ) -> OperationResult:
        """
        Settle a purchase.

        Args:
            purchase_id: Purchase being settled
            user_id: Whose contribution this is
            contribution_amount: What the user paid
            actor: Who is recording it
            override: Admin bypass of chronological sequencing
            override_reason: Recorded in the audit trail with the override
            baseline_reading: Prior reading for the very first purchase;
                defaults to the configured baseline

        Value: ContributionView (contribution plus allocation).
        """

        def work(tx: LedgerTransaction, ctx: _OperationContext) -> ContributionView:
            ensure_can_write(actor)
            if user_id != actor.user_id and not actor.is_admin:
                raise PermissionDeniedError(
                    "You can only record contributions for yourself",
                    actor_id=actor.user_id,
                )
            if override and not actor.is_admin:
                raise PermissionDeniedError(
                    "Only an admin can override contribution sequencing",
                    actor_id=actor.user_id,
                )

            self._require_user(tx, user_id)
            purchase = self._require_purchase(tx, purchase_id)
            chain = tx.list_purchases(lock=True)
            contributions = tx.list_contributions(lock=True)

            contributed_ids = {c.purchase_id for c in contributions}
            if purchase.id in contributed_ids:
                raise DuplicateError(purchase.id)

            skipped = validate_contribution_order(
                purchase, chain, contributed_ids, override=override
            )

            baseline = (
                _to_decimal(baseline_reading, "baseline_reading")
                if baseline_reading is not None
                else Decimal(str(self._settings.baseline_meter_reading))
            )
            tokens_consumed = reconcile_in_chain(purchase, chain, baseline)

            contribution = Contribution(
                purchase_id=purchase.id,
                user_id=user_id,
                contribution_amount=contribution_amount,
                meter_reading=purchase.meter_reading,
                tokens_consumed=tokens_consumed,
                created_at=self._clock(),
            )
            if tokens_consumed > purchase.total_tokens:
                ctx.warnings.append(
                    f"Consumption of {tokens_consumed} kWh exceeds the "
                    f"{purchase.total_tokens} kWh bought with this purchase"
                )

            tx.add_contribution(contribution)
            ctx.events.append(AuditEventBuilder.contribution_created(
                contribution,
                actor,
                ctx.correlation_id,
                override_reason=override_reason,
                skipped_purchase_ids=skipped,
            ))
            return ContributionView(
                contribution=contribution,
                allocation=allocate(contribution, purchase),
            )

        # Two writers racing for the same purchase: the unique constraint decides
        return self._run(
            "create_contribution",
            work,
            on_conflict=lambda: DuplicateError(purchase_id),
        )

    def edit_contribution(
        self,
        contribution_id: UUID,
        new_amount: Number,
        actor: Actor,
    ) -> OperationResult:
        """Change a contribution's amount. Value: ContributionView."""

        def work(tx: LedgerTransaction, ctx: _OperationContext) -> ContributionView:
            contribution = self._require_contribution(tx, contribution_id)
            can_edit_contribution(contribution, actor)

            updated = Contribution.model_validate({
                **contribution.model_dump(),
                "contribution_amount": new_amount,
            })
            tx.update_contribution(updated)
            purchase = self._require_purchase(tx, updated.purchase_id)

            ctx.events.append(AuditEventBuilder.contribution_updated(
                contribution, updated, actor, ctx.correlation_id
            ))
            return ContributionView(
                contribution=updated,
                allocation=allocate(updated, purchase),
            )

        return self._run("edit_contribution", work)

    def delete_contribution(self, contribution_id: UUID, actor: Actor) -> OperationResult:
        """Delete the system-wide most recent contribution. Value: None."""

        def work(tx: LedgerTransaction, ctx: _OperationContext) -> None:
            contributions = tx.list_contributions(lock=True)
            contribution = self._require_contribution(tx, contribution_id)
            can_delete_contribution(contribution, contributions, actor)

            tx.delete_contribution(contribution.id)
            ctx.events.append(AuditEventBuilder.contribution_deleted(
                contribution, actor, ctx.correlation_id
            ))
            return None

        return self._run("delete_contribution", work)

    # ===== CORRECTIONS =====

    def preview_meter_reading_change(
        self,
        purchase_id: UUID,
        new_reading: Number,
    ) -> OperationResult:
        """
        What a reading correction would do. Never writes.

        Value: ImpactAnalysis. Violations are part of the value, not a failure.
        """

        def work(tx: LedgerTransaction, ctx: _OperationContext):
            reading = _to_decimal(new_reading, "meter_reading")
            impact = self._recalculation.preview(tx, purchase_id, reading)
            ctx.warnings.extend(impact.warnings)
            return impact

        return self._run("preview_meter_reading_change", work)

    def apply_meter_reading_change(
        self,
        purchase_id: UUID,
        new_reading: Number,
        actor: Actor,
        override: bool = False,
    ) -> OperationResult:
        """
        Correct a purchase's meter reading and recalculate its contribution.

        Both records change in one transaction or neither does. Emits two
        audit events sharing a correlation id when a contribution was
        recalculated. Value: RecalculationOutcome.
        """

        def work(tx: LedgerTransaction, ctx: _OperationContext):
            reading = _to_decimal(new_reading, "meter_reading")
            outcome = self._recalculation.apply(
                tx, purchase_id, reading, actor, override=override
            )
            ctx.warnings.extend(outcome.impact.warnings)

            recalculated = outcome.recalculated_contribution
            ctx.events.append(AuditEventBuilder.meter_reading_changed(
                outcome.original_purchase,
                outcome.updated_purchase,
                actor,
                ctx.correlation_id,
                recalculated_contribution_id=(
                    recalculated.contribution.id if recalculated else None
                ),
                downstream_contribution_id=outcome.impact.downstream_contribution_id,
                override=override,
            ))
            if recalculated is not None and outcome.original_contribution is not None:
                ctx.events.append(AuditEventBuilder.contribution_recalculated(
                    outcome.original_contribution,
                    recalculated.contribution,
                    actor,
                    ctx.correlation_id,
                ))
            return outcome

        return self._run("apply_meter_reading_change", work)

    # ===== VALIDATION =====

    def validate_meter_reading(
        self,
        meter_reading: Number,
        purchase_date: datetime,
        exclude_purchase_id: Optional[UUID] = None,
    ) -> OperationResult:
        """
        Dry-run the reading pipeline for a form field.

        Value: ValidationResult; an invalid reading is still a successful call.
        """

        def work(tx: LedgerTransaction, ctx: _OperationContext):
            candidate = ReadingCandidate(
                meter_reading=meter_reading,
                purchase_date=purchase_date,
                exclude_purchase_id=exclude_purchase_id,
            )
            result = self._validator.validate(candidate, tx.list_purchases())
            ctx.warnings.extend(result.warnings)
            return result

        return self._run("validate_meter_reading", work)


def create_ledger_components(
    settings: Optional[Settings] = None,
    create_schema: bool = True,
) -> tuple[LedgerService, LedgerQueries, SqlLedgerStorage]:
    """
    Factory function to create all ledger components.

    Args:
        settings: Settings to use; defaults to the environment
        create_schema: Create missing tables on startup

    Returns:
        (ledger_service, ledger_queries, ledger_storage)
    """
    settings = settings or get_settings()
    engine = build_engine(settings.database)

    storage = SqlLedgerStorage(engine)
    if create_schema:
        storage.create_schema()

    audit_logger = AuditLogger(SqlAuditStorage(engine))

    ledger_settings = settings.ledger
    service = LedgerService(storage, audit_logger=audit_logger, settings=ledger_settings)
    queries = LedgerQueries(storage, settings=ledger_settings)

    return service, queries, storage
