"""Amount-tiered withdrawal delays applied after the director's approval."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .errors import InvalidConfigurationError
from .units import tokens


HOUR = 3600


class WithdrawalTier(str, Enum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


@dataclass
class WithdrawalDelayPolicy:
    """Small amounts leave at once; medium and large wait behind a timelock."""

    small_threshold: int = tokens(10_000)
    medium_threshold: int = tokens(100_000)
    medium_delay: int = 12 * HOUR
    large_delay: int = 24 * HOUR

    def __post_init__(self) -> None:
        if not 0 < self.small_threshold <= self.medium_threshold:
            raise InvalidConfigurationError("Thresholds must satisfy 0 < small <= medium")
        if self.medium_delay < 0 or self.large_delay < self.medium_delay:
            raise InvalidConfigurationError("Delays must satisfy 0 <= medium <= large")

    def tier_for(self, amount: int) -> WithdrawalTier:
        if amount < self.small_threshold:
            return WithdrawalTier.SMALL
        if amount < self.medium_threshold:
            return WithdrawalTier.MEDIUM
        return WithdrawalTier.LARGE

    def delay_for(self, amount: int) -> int:
        return {
            WithdrawalTier.SMALL: 0,
            WithdrawalTier.MEDIUM: self.medium_delay,
            WithdrawalTier.LARGE: self.large_delay,
        }[self.tier_for(amount)]
