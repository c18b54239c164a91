"""Reading validation package."""

from tokenledger.validation.validator import ReadingCandidate, ReadingValidator

__all__ = ["ReadingCandidate", "ReadingValidator"]
