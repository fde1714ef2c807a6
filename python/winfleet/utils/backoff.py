"""
winfleet/utils/backoff.py

An explicit exponential backoff policy, decoupled from the loops that use it
so it can be tested without real time.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator

from winfleet.models.settings import FleetSettings


class BackoffPolicy(BaseModel):
    """
    Exponential backoff capped at `maximum`.

    Attributes:
        initial: Delay before the second attempt, in seconds.
        multiplier: Growth factor per attempt.
        maximum: Upper bound for any single delay, in seconds.
    """

    initial: float = Field(default=2.0, ge=0.0)
    multiplier: float = Field(default=2.0, ge=1.0)
    maximum: float = Field(default=300.0, ge=0.0)

    class Config:
        frozen = True

    @model_validator(mode="after")
    def check_bounds(self) -> BackoffPolicy:
        if self.maximum < self.initial:
            raise ValueError("maximum must be >= initial")
        return self

    def delay(self, attempt: int) -> float:
        """
        Delay to wait after the given (1-based) failed attempt.

        Args:
            attempt: Number of failed attempts so far. Values below 1 are treated as 1.

        Returns:
            float: min(maximum, initial * multiplier ** (attempt - 1))
        """
        exponent = max(attempt, 1) - 1
        # Avoid float overflow for very large attempt counts
        if self.multiplier > 1.0 and self.initial > 0.0:
            limit = self.maximum / self.initial
            value = 1.0
            for _ in range(exponent):
                value *= self.multiplier
                if value >= limit:
                    return self.maximum
            return min(self.maximum, self.initial * value)
        return min(self.maximum, self.initial)

    @classmethod
    def from_settings(cls, settings: FleetSettings) -> BackoffPolicy:
        return cls(
            initial=settings.backoff_initial_seconds,
            multiplier=settings.backoff_multiplier,
            maximum=settings.backoff_max_seconds,
        )
