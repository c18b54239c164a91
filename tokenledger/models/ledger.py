"""
Core Data Models for Token Ledger

These models define the strict schemas for all data flowing through the ledger.
They are designed to:
1. Enforce type safety and positivity at runtime
2. Provide clear validation error messages
3. Be serializable for storage and the audit trail
4. Keep derived figures (consumption, true cost) out of caller hands

DESIGN DECISION: Money, token counts and meter readings are Decimal.
Ratios (efficiency) are float. Nothing is rounded until presentation.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
)


# Stored scale of readings and token counts (kWh) and of money.
# Values with more places are rejected rather than rounded on write.
KWH_PLACES = 3
MONEY_PLACES = 4
MAX_DIGITS = 14


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the ledger stores naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Normalise an aware datetime to naive UTC; naive values are taken as UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class UserRole(str, Enum):
    """Household member role."""
    ADMIN = "ADMIN"
    USER = "USER"


class ErrorCode(str, Enum):
    """
    Failure taxonomy of the ledger.

    Every failed operation carries exactly one of these codes so the
    calling layer can render a field-specific message.
    """
    VALIDATION = "validation"
    SEQUENCING = "sequencing"
    CONSTRAINT = "constraint"
    DUPLICATE = "duplicate"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"


# =============================================================================
# IDENTITY
# =============================================================================

class User(BaseModel):
    """A household member."""
    model_config = ConfigDict(str_strip_whitespace=True, from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1, max_length=200)
    role: UserRole = Field(default=UserRole.USER)
    is_locked: bool = Field(
        default=False,
        description="Locked users may not create purchases or contributions"
    )
    created_at: datetime = Field(default_factory=utcnow)


class Actor(BaseModel):
    """
    Whoever is performing an operation.

    Supplied by the external auth layer. The ledger only reads these
    values; it never authenticates anyone.
    """

    user_id: UUID
    role: UserRole = UserRole.USER
    is_locked: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(user_id=user.id, role=user.role, is_locked=user.is_locked)


# =============================================================================
# LEDGER ENTITIES
# =============================================================================

class Purchase(BaseModel):
    """
    One token-buying event.

    CRITICAL: Immutable once a Contribution references it, except
    through the recalculation path.
    """
    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    total_tokens: Decimal = Field(
        ...,
        gt=0,
        max_digits=MAX_DIGITS,
        decimal_places=KWH_PLACES,
        description="Tokens bought (1 token = 1 kWh)"
    )
    total_payment: Decimal = Field(
        ...,
        gt=0,
        max_digits=MAX_DIGITS,
        decimal_places=MONEY_PLACES,
        description="Amount paid for the tokens"
    )
    meter_reading: Decimal = Field(
        ...,
        gt=0,
        max_digits=MAX_DIGITS,
        decimal_places=KWH_PLACES,
        description="Meter reading at the time of purchase"
    )
    purchase_date: datetime
    is_emergency: bool = Field(
        default=False,
        description="Reporting flag only; does not affect allocation"
    )
    created_by: UUID
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator('purchase_date', 'created_at')
    @classmethod
    def normalize_timestamps(cls, v: datetime) -> datetime:
        return as_naive_utc(v)

    @property
    def chronological_key(self) -> tuple[datetime, datetime]:
        """Sort key: purchase date, tie-broken by creation time."""
        return (self.purchase_date, self.created_at)


class Contribution(BaseModel):
    """
    One user's settlement against exactly one Purchase.

    meter_reading and tokens_consumed are derived from the purchase chain;
    only contribution_amount is ever edited directly.
    """
    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    purchase_id: UUID
    user_id: UUID
    contribution_amount: Decimal = Field(
        ..., gt=0, max_digits=MAX_DIGITS, decimal_places=MONEY_PLACES
    )
    meter_reading: Decimal = Field(
        ..., gt=0, max_digits=MAX_DIGITS, decimal_places=KWH_PLACES
    )
    tokens_consumed: Decimal = Field(
        ..., ge=0, max_digits=MAX_DIGITS, decimal_places=KWH_PLACES
    )
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator('created_at')
    @classmethod
    def normalize_created_at(cls, v: datetime) -> datetime:
        return as_naive_utc(v)


# =============================================================================
# ALLOCATION MODELS
# =============================================================================

class Allocation(BaseModel):
    """
    Proportional cost of one contribution.

    Values are unrounded; use the allocator's to_money() for display.
    """

    true_cost: Decimal
    efficiency_pct: float
    overpayment: Decimal = Field(
        ...,
        description="Positive when the user paid more than their fair share"
    )


class ContributionView(BaseModel):
    """A contribution together with its derived allocation."""

    contribution: Contribution
    allocation: Allocation

    @computed_field
    @property
    def true_cost(self) -> Decimal:
        return self.allocation.true_cost


class BalanceEntry(BaseModel):
    """One step of the system-wide running balance."""

    contribution_id: UUID
    created_at: datetime
    overpayment: Decimal
    balance: Decimal


class CostBreakdown(BaseModel):
    """Aggregated cost figures for a set of contributions."""

    contribution_count: int = 0
    total_tokens_used: Decimal = Decimal("0")
    total_amount_paid: Decimal = Decimal("0")
    total_true_cost: Decimal = Decimal("0")
    average_cost_per_kwh: Decimal = Decimal("0")
    efficiency_pct: float = 0.0
    overpayment: Decimal = Decimal("0")
    regular_cost_per_kwh: Decimal = Decimal("0")
    emergency_cost_per_kwh: Decimal = Decimal("0")
    emergency_premium: Decimal = Field(
        default=Decimal("0"),
        description="Extra paid for emergency tokens compared with the regular rate"
    )


class ContributionProgress(BaseModel):
    """How far contributions have caught up with purchases."""

    total_purchases: int = Field(ge=0)
    purchases_with_contributions: int = Field(ge=0)
    next_purchase: Optional[Purchase] = None
    progress_percentage: int = Field(ge=0, le=100)


# =============================================================================
# VALIDATION MODELS
# =============================================================================

class ValidationIssue(BaseModel):
    """A single validation issue found."""

    field: str = Field(
        ...,
        description="Field with the issue"
    )
    issue_type: str = Field(
        ...,
        description="Type of issue (e.g., 'non_positive', 'decreasing_reading', 'high_consumption')"
    )
    message: str = Field(
        ...,
        description="Human-readable description of the issue"
    )
    severity: str = Field(
        ...,
        pattern="^(error|warning|info)$",
        description="Issue severity"
    )
    suggested_fix: Optional[str] = Field(
        default=None,
        description="Suggested fix if available"
    )


class ConsumptionStatistics(BaseModel):
    """Daily consumption figures behind the advisory checks."""

    daily_consumption: float
    historical_average: float
    historical_median: float
    historical_max: float
    historical_min: float
    high_threshold: float
    days_between: int
    sample_size: int


class ValidationResult(BaseModel):
    """
    Result of the reading validation pipeline.

    Errors block the write. Warnings do not, but must be shown.
    """

    validated_at: datetime = Field(default_factory=utcnow)

    is_valid: bool = Field(
        ...,
        description="False when any blocking error was found"
    )
    stages_run: list[str] = Field(
        default_factory=list,
        description="Names of the pipeline steps that actually ran"
    )
    issues: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[str] = Field(
        default_factory=list,
        description="Non-blocking warnings"
    )
    statistics: Optional[ConsumptionStatistics] = None

    @property
    def has_errors(self) -> bool:
        """Check if there are any error-level issues."""
        return any(issue.severity == "error" for issue in self.issues)

    @property
    def error_count(self) -> int:
        """Count error-level issues."""
        return sum(1 for issue in self.issues if issue.severity == "error")

    @property
    def errors(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == "error"]


class MeterReadingSuggestion(BaseModel):
    """Guidance for the next reading to enter."""

    minimum: Decimal
    suggestion: Decimal
    context: str


# =============================================================================
# RECALCULATION MODELS
# =============================================================================

class ImpactAnalysis(BaseModel):
    """
    What a meter-reading correction would do, computed without committing.

    CRITICAL: Producing this never changes the ledger.
    """

    purchase_id: UUID
    old_meter_reading: Decimal
    new_meter_reading: Decimal
    prior_reading: Decimal = Field(
        ...,
        description="Reading of the preceding purchase, or the baseline"
    )
    next_reading: Optional[Decimal] = Field(
        default=None,
        description="Reading of the following purchase, if any"
    )
    is_latest_purchase: bool

    affected_contribution_id: Optional[UUID] = None
    old_tokens_consumed: Optional[Decimal] = None
    new_tokens_consumed: Optional[Decimal] = None
    old_true_cost: Optional[Decimal] = None
    new_true_cost: Optional[Decimal] = None
    old_overpayment: Optional[Decimal] = None
    new_overpayment: Optional[Decimal] = None

    downstream_contribution_id: Optional[UUID] = Field(
        default=None,
        description="Contribution on the following purchase, left unchanged"
    )

    violations: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    summary: str = ""

    @property
    def requires_recalculation(self) -> bool:
        return self.affected_contribution_id is not None

    @property
    def requires_override(self) -> bool:
        return self.downstream_contribution_id is not None

    @property
    def can_apply(self) -> bool:
        return not self.violations

    @property
    def tokens_consumed_delta(self) -> Optional[Decimal]:
        if self.old_tokens_consumed is None or self.new_tokens_consumed is None:
            return None
        return self.new_tokens_consumed - self.old_tokens_consumed

    @property
    def true_cost_delta(self) -> Optional[Decimal]:
        if self.old_true_cost is None or self.new_true_cost is None:
            return None
        return self.new_true_cost - self.old_true_cost

    @property
    def overpayment_delta(self) -> Optional[Decimal]:
        if self.old_overpayment is None or self.new_overpayment is None:
            return None
        return self.new_overpayment - self.old_overpayment


class RecalculationOutcome(BaseModel):
    """Records written by an applied meter-reading correction."""

    updated_purchase: Purchase
    recalculated_contribution: Optional[ContributionView] = None
    impact: ImpactAnalysis
    # State before the correction, kept for the audit trail
    original_purchase: Purchase
    original_contribution: Optional[Contribution] = None


# =============================================================================
# OPERATION RESULTS
# =============================================================================

class LedgerErrorInfo(BaseModel):
    """Typed description of a failed operation."""

    code: ErrorCode
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class OperationResult(BaseModel):
    """
    Outcome of one ledger operation.

    Either value is set (success) or error is set (failure).
    Warnings may accompany a success and are never dropped.
    """

    success: bool
    value: Optional[Any] = None
    error: Optional[LedgerErrorInfo] = None
    warnings: list[str] = Field(default_factory=list)
    correlation_id: Optional[UUID] = None

    @classmethod
    def ok(
        cls,
        value: Any = None,
        warnings: Optional[list[str]] = None,
        correlation_id: Optional[UUID] = None,
    ) -> "OperationResult":
        return cls(
            success=True,
            value=value,
            warnings=warnings or [],
            correlation_id=correlation_id,
        )

    @classmethod
    def fail(
        cls,
        error: LedgerErrorInfo,
        correlation_id: Optional[UUID] = None,
    ) -> "OperationResult":
        return cls(success=False, error=error, correlation_id=correlation_id)

    @property
    def error_code(self) -> Optional[ErrorCode]:
        return self.error.code if self.error else None


class LedgerIssue(BaseModel):
    """One inconsistency found by the ledger integrity check."""

    entity_type: str
    entity_id: UUID
    issue_type: str
    message: str


class LedgerIntegrityReport(BaseModel):
    """Result of re-scanning the whole ledger."""

    checked_at: datetime = Field(default_factory=utcnow)
    total_purchases: int
    total_contributions: int
    running_balance: Decimal
    rescanned_balance: Decimal
    issues: list[LedgerIssue] = Field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return not self.issues
