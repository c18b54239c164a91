"""
Meter Reading Validation Pipeline

DESIGN DECISION: Validation runs as a fixed sequence of typed steps:

STEP 1 - VALUES (blocking):
- Tokens, payment and reading must be positive

STEP 2 - CHRONOLOGY (blocking):
- Reading must not be below the latest reading on or before the purchase date
- Reading must not be above the first reading after the purchase date

STEP 3 - CONSUMPTION RATE (advisory):
- Implied daily consumption compared against recent history
- Unusually high, elevated or unusually low usage produces WARNINGS

WHY A PIPELINE:
1. Errors and warnings never mix: errors block, warnings inform
2. A blocking error stops later steps (no point rating an impossible reading)
3. Warnings accumulate and are returned with a successful result

IMPORTANT: Validation NEVER silently fixes readings.
It reports them for the caller to act on.
"""

import math
import statistics
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

from pydantic import BaseModel

from tokenledger.config import LedgerSettings, get_settings
from tokenledger.ledger.reconciler import sort_chronologically
from tokenledger.models.ledger import (
    ConsumptionStatistics,
    MeterReadingSuggestion,
    Purchase,
    ValidationIssue,
    ValidationResult,
    as_naive_utc,
)


class ReadingCandidate(BaseModel):
    """A reading about to be written, with the purchase values around it."""

    meter_reading: Decimal
    purchase_date: datetime
    total_tokens: Optional[Decimal] = None
    total_payment: Optional[Decimal] = None
    # Purchase being edited; left out of the comparison chain
    exclude_purchase_id: Optional[UUID] = None


def _days_between(earlier: datetime, later: datetime) -> int:
    return math.ceil((later - earlier).total_seconds() / 86400)


def _daily_rate(consumed: float, days: int) -> float:
    return consumed / days if days > 0 else consumed


class ReadingValidator:
    """
    Validates a meter reading against the purchase chain.

    The chain is passed in by the caller, who reads it inside the same
    transaction as the write it is about to make.
    """

    def __init__(self, settings: Optional[LedgerSettings] = None):
        self._settings = settings or get_settings().ledger

    def _comparison_chain(
        self,
        candidate: ReadingCandidate,
        chain: list[Purchase],
    ) -> tuple[list[Purchase], list[Purchase]]:
        """Split the chain into purchases on/before and after the candidate date."""
        date = as_naive_utc(candidate.purchase_date)
        others = sort_chronologically(
            p for p in chain if p.id != candidate.exclude_purchase_id
        )
        before = [p for p in others if p.purchase_date <= date]
        after = [p for p in others if p.purchase_date > date]
        return before, after

    def _check_values(
        self,
        candidate: ReadingCandidate,
        chain: list[Purchase],
    ) -> list[ValidationIssue]:
        """Step 1: positivity of every supplied figure."""
        issues = []
        fields = {
            "meter_reading": candidate.meter_reading,
            "total_tokens": candidate.total_tokens,
            "total_payment": candidate.total_payment,
        }
        for name, value in fields.items():
            if value is not None and value <= 0:
                issues.append(ValidationIssue(
                    field=name,
                    issue_type="non_positive",
                    message=f"{name.replace('_', ' ').capitalize()} must be greater than zero",
                    severity="error",
                ))
        return issues

    def _check_chronology(
        self,
        candidate: ReadingCandidate,
        chain: list[Purchase],
    ) -> list[ValidationIssue]:
        """Step 2: the meter only ever runs forward."""
        issues = []
        before, after = self._comparison_chain(candidate, chain)

        if before and candidate.meter_reading < before[-1].meter_reading:
            last = before[-1]
            issues.append(ValidationIssue(
                field="meter_reading",
                issue_type="decreasing_reading",
                message=(
                    f"Meter reading cannot decrease. The last reading on "
                    f"{last.purchase_date.date().isoformat()} was {last.meter_reading} kWh."
                ),
                severity="error",
                suggested_fix=f"Enter a reading of at least {last.meter_reading} kWh",
            ))

        if after and candidate.meter_reading > after[0].meter_reading:
            following = after[0]
            issues.append(ValidationIssue(
                field="meter_reading",
                issue_type="exceeds_later_reading",
                message=(
                    f"Reading cannot be greater than the later reading of "
                    f"{following.meter_reading} kWh on "
                    f"{following.purchase_date.date().isoformat()}"
                ),
                severity="error",
                suggested_fix=f"Enter a reading of at most {following.meter_reading} kWh",
            ))

        return issues

    def consumption_statistics(
        self,
        candidate: ReadingCandidate,
        chain: list[Purchase],
    ) -> Optional[ConsumptionStatistics]:
        """
        Daily consumption of the candidate versus recent history.

        Returns None when there is not enough history to compare against.
        """
        before, _ = self._comparison_chain(candidate, chain)
        if not before:
            return None

        previous = before[-1]
        days = _days_between(previous.purchase_date, as_naive_utc(candidate.purchase_date))
        consumed = float(candidate.meter_reading - previous.meter_reading)
        daily = _daily_rate(consumed, days)

        window = before[-(self._settings.consumption_lookback + 1):]
        history = []
        for earlier, later in zip(window, window[1:]):
            rate = _daily_rate(
                float(later.meter_reading - earlier.meter_reading),
                _days_between(earlier.purchase_date, later.purchase_date),
            )
            if rate >= 0:
                history.append(rate)

        if len(history) < 2:
            return None

        avg = statistics.fmean(history)
        median = statistics.median(history)
        high = max(
            avg * self._settings.high_consumption_multiplier,
            median * 4,
            max(history) * 1.5,
            self._settings.high_consumption_floor_kwh,
        )

        return ConsumptionStatistics(
            daily_consumption=daily,
            historical_average=avg,
            historical_median=median,
            historical_max=max(history),
            historical_min=min(history),
            high_threshold=high,
            days_between=days,
            sample_size=len(history),
        )

    def _check_consumption_rate(
        self,
        candidate: ReadingCandidate,
        chain: list[Purchase],
    ) -> list[ValidationIssue]:
        """Step 3: advisory comparison against historical usage."""
        stats = self.consumption_statistics(candidate, chain)
        if stats is None:
            return []

        issues = []
        daily = stats.daily_consumption
        avg = stats.historical_average

        if daily > stats.high_threshold:
            issues.append(ValidationIssue(
                field="meter_reading",
                issue_type="high_consumption",
                message=(
                    f"Daily consumption of {daily:.2f} kWh seems unusually high. "
                    f"Historical average is {avg:.2f} kWh/day and maximum was "
                    f"{stats.historical_max:.2f} kWh/day."
                ),
                severity="warning",
                suggested_fix="Please verify the reading",
            ))
        elif daily > avg * self._settings.elevated_consumption_multiplier:
            issues.append(ValidationIssue(
                field="meter_reading",
                issue_type="elevated_consumption",
                message=(
                    f"Daily consumption of {daily:.2f} kWh is significantly higher "
                    f"than the average of {avg:.2f} kWh/day"
                ),
                severity="warning",
            ))

        if daily > 0 and daily < avg * self._settings.low_consumption_ratio:
            issues.append(ValidationIssue(
                field="meter_reading",
                issue_type="low_consumption",
                message=(
                    f"Daily consumption of {daily:.2f} kWh is unusually low "
                    f"compared to the average of {avg:.2f} kWh/day"
                ),
                severity="warning",
            ))

        return issues

    def _pipeline(self) -> list[tuple[str, Callable[[ReadingCandidate, list[Purchase]], list[ValidationIssue]]]]:
        return [
            ("values", self._check_values),
            ("chronology", self._check_chronology),
            ("consumption_rate", self._check_consumption_rate),
        ]

    def validate(
        self,
        candidate: ReadingCandidate,
        chain: list[Purchase],
    ) -> ValidationResult:
        """
        Run the validation pipeline.

        Args:
            candidate: The reading (and purchase figures) to validate
            chain: Every purchase currently in the ledger

        Returns:
            ValidationResult with all issues found
        """
        all_issues: list[ValidationIssue] = []
        stages_run = []

        for stage, step in self._pipeline():
            stages_run.append(stage)
            issues = step(candidate, chain)
            all_issues.extend(issues)
            if any(issue.severity == "error" for issue in issues):
                break

        warnings = [issue.message for issue in all_issues if issue.severity == "warning"]
        is_valid = not any(issue.severity == "error" for issue in all_issues)

        return ValidationResult(
            is_valid=is_valid,
            stages_run=stages_run,
            issues=all_issues,
            warnings=warnings,
            statistics=(
                self.consumption_statistics(candidate, chain)
                if "consumption_rate" in stages_run else None
            ),
        )

    def suggest(
        self,
        purchase_date: datetime,
        chain: list[Purchase],
        exclude_purchase_id: Optional[UUID] = None,
    ) -> MeterReadingSuggestion:
        """
        Minimum acceptable reading and a plausible value for a purchase date.
        """
        candidate = ReadingCandidate(
            meter_reading=Decimal("0"),
            purchase_date=purchase_date,
            exclude_purchase_id=exclude_purchase_id,
        )
        before, _ = self._comparison_chain(candidate, chain)

        if not before:
            baseline = Decimal(str(self._settings.baseline_meter_reading))
            return MeterReadingSuggestion(
                minimum=baseline,
                suggestion=baseline,
                context="No previous meter readings found. Enter your current meter reading.",
            )

        last = before[-1]
        days = _days_between(last.purchase_date, as_naive_utc(purchase_date))
        increment = Decimal(str(max(days * self._settings.suggested_daily_usage_kwh, 10)))

        return MeterReadingSuggestion(
            minimum=last.meter_reading,
            suggestion=last.meter_reading + increment,
            context=(
                f"Last reading was {last.meter_reading} kWh on "
                f"{last.purchase_date.date().isoformat()}. "
                f"Suggested: ~{increment} kWh increase."
            ),
        )

    def get_user_friendly_summary(
        self,
        result: ValidationResult,
    ) -> str:
        """
        Generate a user-friendly summary of validation results.
        """
        if result.is_valid and not result.warnings:
            return "All checks passed."

        lines = []

        if not result.is_valid:
            lines.append("The reading cannot be saved:")
            for issue in result.errors:
                lines.append(f"   • {issue.message}")
                if issue.suggested_fix:
                    lines.append(f"     {issue.suggested_fix}")

        if result.warnings:
            if lines:
                lines.append("")
            lines.append("Please verify the following:")
            for warning in result.warnings:
                lines.append(f"   • {warning}")

        if result.is_valid:
            lines.append("")
            lines.append("You can still proceed, but please review carefully.")

        return "\n".join(lines)
