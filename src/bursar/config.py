"""
Configuration for Bursar contracts.

Every limit has a production default. ``from_env`` lets deployments override
them with ``BURSAR_*`` environment variables; amounts are read in whole units.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from .commit_reveal import REVEAL_WINDOW
from .errors import InvalidConfigurationError
from .units import gwei, native, tokens
from .withdrawal import HOUR, WithdrawalDelayPolicy


DAY = 24 * HOUR


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise InvalidConfigurationError(f"{name} must be an integer, got {raw!r}") from None


def _env_units(name: str, default: int, convert=tokens) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return convert(raw.strip())
    except (ArithmeticError, ValueError):
        raise InvalidConfigurationError(f"{name} must be a decimal amount, got {raw!r}") from None


@dataclass
class CircuitBreakerConfig:
    max_daily_volume: int = tokens(5_000_000)
    max_single_tx_amount: int = tokens(1_000_000)
    volume_window: int = DAY
    cooldown_period: int = 6 * HOUR
    churn_threshold: int = 5
    churn_window: int = HOUR

    @classmethod
    def from_env(cls) -> CircuitBreakerConfig:
        base = cls()
        return cls(
            max_daily_volume=_env_units("BURSAR_MAX_DAILY_VOLUME", base.max_daily_volume),
            max_single_tx_amount=_env_units("BURSAR_MAX_SINGLE_TX", base.max_single_tx_amount),
            cooldown_period=_env_int("BURSAR_BREAKER_COOLDOWN", base.cooldown_period),
            churn_threshold=_env_int("BURSAR_CHURN_THRESHOLD", base.churn_threshold),
            churn_window=_env_int("BURSAR_CHURN_WINDOW", base.churn_window),
        )


@dataclass
class ProjectConfig:
    """Limits for one reimbursement project."""

    reveal_window: int = REVEAL_WINDOW
    max_recipients: int = 10
    min_amount: int = tokens(100)
    max_amount: int = tokens(1_000_000)
    min_deposit: int = tokens(10)
    max_description_length: int = 1000
    max_document_hash_length: int = 100
    max_locked_percentage: int = 80
    max_active_requests: int = 100
    abandonment_period: int = 15 * DAY
    required_additional_approvers: int = 3
    withdrawal: WithdrawalDelayPolicy = field(default_factory=WithdrawalDelayPolicy)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)

    @classmethod
    def from_env(cls) -> ProjectConfig:
        base = cls()
        return cls(
            reveal_window=_env_int("BURSAR_REVEAL_WINDOW", base.reveal_window),
            max_recipients=_env_int("BURSAR_MAX_RECIPIENTS", base.max_recipients),
            min_amount=_env_units("BURSAR_MIN_AMOUNT", base.min_amount),
            max_amount=_env_units("BURSAR_MAX_AMOUNT", base.max_amount),
            min_deposit=_env_units("BURSAR_MIN_DEPOSIT", base.min_deposit),
            max_description_length=_env_int(
                "BURSAR_MAX_DESCRIPTION_LENGTH", base.max_description_length
            ),
            max_document_hash_length=_env_int(
                "BURSAR_MAX_DOCUMENT_HASH_LENGTH", base.max_document_hash_length
            ),
            max_locked_percentage=_env_int("BURSAR_MAX_LOCKED_PERCENTAGE", base.max_locked_percentage),
            max_active_requests=_env_int("BURSAR_MAX_ACTIVE_REQUESTS", base.max_active_requests),
            abandonment_period=_env_int("BURSAR_ABANDONMENT_PERIOD", base.abandonment_period),
            required_additional_approvers=_env_int(
                "BURSAR_REQUIRED_ADDITIONAL_APPROVERS", base.required_additional_approvers
            ),
            withdrawal=WithdrawalDelayPolicy(
                small_threshold=_env_units("BURSAR_SMALL_THRESHOLD", base.withdrawal.small_threshold),
                medium_threshold=_env_units("BURSAR_MEDIUM_THRESHOLD", base.withdrawal.medium_threshold),
                medium_delay=_env_int("BURSAR_MEDIUM_DELAY", base.withdrawal.medium_delay),
                large_delay=_env_int("BURSAR_LARGE_DELAY", base.withdrawal.large_delay),
            ),
            circuit_breaker=CircuitBreakerConfig.from_env(),
        )


@dataclass
class RelayConfig:
    rate_limit_window: int = HOUR
    max_tx_per_window: int = 10
    max_calls_per_target: int = 1000
    min_gas: int = 100_000
    max_batch_size: int = 10

    @classmethod
    def from_env(cls) -> RelayConfig:
        base = cls()
        return cls(
            rate_limit_window=_env_int("BURSAR_RELAY_RATE_WINDOW", base.rate_limit_window),
            max_tx_per_window=_env_int("BURSAR_RELAY_MAX_TX_PER_WINDOW", base.max_tx_per_window),
            max_calls_per_target=_env_int("BURSAR_RELAY_MAX_CALLS_PER_TARGET", base.max_calls_per_target),
            min_gas=_env_int("BURSAR_RELAY_MIN_GAS", base.min_gas),
            max_batch_size=_env_int("BURSAR_RELAY_MAX_BATCH", base.max_batch_size),
        )


@dataclass
class GasTankConfig:
    max_gas_price: int = gwei(500)
    default_max_per_transaction: int = native("0.1")
    default_daily_limit: int = native(1)
    daily_window: int = DAY
    history_size: int = 100
    max_batch_size: int = 50

    @classmethod
    def from_env(cls) -> GasTankConfig:
        base = cls()
        return cls(
            max_gas_price=_env_units("BURSAR_MAX_GAS_PRICE_GWEI", base.max_gas_price, gwei),
            default_max_per_transaction=_env_units(
                "BURSAR_GAS_MAX_PER_TX", base.default_max_per_transaction, native
            ),
            default_daily_limit=_env_units("BURSAR_GAS_DAILY_LIMIT", base.default_daily_limit, native),
            history_size=_env_int("BURSAR_GAS_HISTORY_SIZE", base.history_size),
            max_batch_size=_env_int("BURSAR_GAS_MAX_BATCH", base.max_batch_size),
        )
