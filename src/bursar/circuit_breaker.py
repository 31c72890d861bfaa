"""
Circuit breaker guarding request creation and fund release.

Tracks outflow volume per daily window, refuses single amounts above a
ceiling, and trips on bursts of critical role grants. A tripped breaker
resets itself once the cooldown has elapsed; administrators can trip or
reset it by hand.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from .config import CircuitBreakerConfig
from .errors import (
    CircuitBreakerActiveError,
    DailyVolumeExceededError,
    InvalidConfigurationError,
    SingleTransactionLimitError,
)

logger = logging.getLogger(__name__)


@dataclass
class CircuitBreakerState:
    max_daily_volume: int
    max_single_tx_amount: int
    cooldown_period: int
    daily_volume_used: int = 0
    volume_window_start: int = 0
    tripped: bool = False
    tripped_at: int = 0
    trip_reason: Optional[str] = None
    role_churn_events: list[int] = field(default_factory=list)

    @property
    def role_churn_counter(self) -> int:
        return len(self.role_churn_events)


class CircuitBreaker:
    def __init__(self, config: Optional[CircuitBreakerConfig] = None):
        self.config = config or CircuitBreakerConfig()
        self.state = CircuitBreakerState(
            max_daily_volume=self.config.max_daily_volume,
            max_single_tx_amount=self.config.max_single_tx_amount,
            cooldown_period=self.config.cooldown_period,
        )

    def _refresh(self, now: int) -> None:
        state = self.state
        if state.tripped and now >= state.tripped_at + state.cooldown_period:
            logger.info("Circuit breaker cooldown elapsed; auto-reset")
            self._clear()
        if now >= state.volume_window_start + self.config.volume_window:
            state.volume_window_start = now
            state.daily_volume_used = 0

    def _clear(self) -> None:
        self.state.tripped = False
        self.state.tripped_at = 0
        self.state.trip_reason = None
        self.state.role_churn_events.clear()

    def is_tripped(self, now: int) -> bool:
        self._refresh(now)
        return self.state.tripped

    def remaining_volume(self, now: int) -> int:
        self._refresh(now)
        return max(self.state.max_daily_volume - self.state.daily_volume_used, 0)

    def ensure_not_tripped(self, now: int) -> None:
        if self.is_tripped(now):
            retry_after = self.state.tripped_at + self.state.cooldown_period - now
            raise CircuitBreakerActiveError(
                f"Circuit breaker tripped: {self.state.trip_reason}",
                retry_after=retry_after,
            )

    def check_single(self, amount: int) -> None:
        if amount > self.state.max_single_tx_amount:
            raise SingleTransactionLimitError(amount, self.state.max_single_tx_amount)

    def check_outflow(self, amount: int, now: int) -> None:
        """Raise unless ``amount`` may leave the contract right now."""
        self.ensure_not_tripped(now)
        self.check_single(amount)
        remaining = self.remaining_volume(now)
        if amount > remaining:
            window_end = self.state.volume_window_start + self.config.volume_window
            raise DailyVolumeExceededError(amount, remaining, retry_after=window_end - now)

    def admits_outflow(self, amount: int, now: int) -> bool:
        try:
            self.check_outflow(amount, now)
        except CircuitBreakerActiveError:
            return False
        return True

    def record_outflow(self, amount: int, now: int) -> None:
        self._refresh(now)
        self.state.daily_volume_used += amount

    def record_role_change(self, now: int) -> bool:
        """Count a critical role grant; trip when the burst threshold is reached."""
        self._refresh(now)
        cutoff = now - self.config.churn_window
        events = [ts for ts in self.state.role_churn_events if ts > cutoff]
        events.append(now)
        self.state.role_churn_events = events
        if not self.state.tripped and len(events) >= self.config.churn_threshold:
            self.trip(f"{len(events)} critical role grants within {self.config.churn_window}s", now)
            return True
        return False

    def trip(self, reason: str, now: int) -> None:
        self.state.tripped = True
        self.state.tripped_at = now
        self.state.trip_reason = reason
        logger.warning("Circuit breaker tripped: %s", reason)

    def reset(self) -> None:
        self._clear()
        logger.info("Circuit breaker reset")

    def update_limits(self, max_daily_volume: int, max_single_tx_amount: int) -> None:
        if max_daily_volume <= 0 or max_single_tx_amount <= 0:
            raise InvalidConfigurationError("Circuit breaker limits must be > 0")
        if max_single_tx_amount > max_daily_volume:
            raise InvalidConfigurationError("Single transaction limit cannot exceed daily volume")
        self.state.max_daily_volume = max_daily_volume
        self.state.max_single_tx_amount = max_single_tx_amount

    def status(self, now: int) -> dict:
        self._refresh(now)
        state = self.state
        return {
            "tripped": state.tripped,
            "tripped_at": state.tripped_at,
            "trip_reason": state.trip_reason,
            "daily_volume_used": state.daily_volume_used,
            "max_daily_volume": state.max_daily_volume,
            "max_single_tx_amount": state.max_single_tx_amount,
            "cooldown_period": state.cooldown_period,
            "role_churn_counter": state.role_churn_counter,
        }
