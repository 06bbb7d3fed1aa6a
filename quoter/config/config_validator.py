"""
Validation of strategy and process settings before the bot starts.

Hard errors (anything StrategyConfig.validate() rejects, missing endpoints)
block startup. Warnings flag settings that are legal but likely to hit venue
limits or behave poorly:
- short-lived windows longer than the venue's 20 block maximum
- long-lived batches larger than the venue's stateful order rate limit
- refresh intervals shorter than the time a ladder takes to place
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, List, Optional

from quoter.config.strategy_config import StrategyConfig
from quoter.core.errors import ConfigError
from quoter.core.models import OrderClass
from quoter.market_data.providers import PROVIDER_REGISTRY

logger = logging.getLogger("quoter")

# Venue limits for short-term and stateful orders
MAX_SHORT_TERM_BLOCKS = 20
MAX_STATEFUL_ORDERS_PER_BATCH = 2


class ValidationSeverity(Enum):
    """Severity levels for validation issues."""
    ERROR = auto()    # Blocks startup
    WARNING = auto()  # Logs warning but allows startup
    INFO = auto()     # Informational only


@dataclass
class ValidationIssue:
    """A single validation issue."""
    field: str
    message: str
    severity: ValidationSeverity
    value: Any = None
    suggestion: Optional[str] = None


@dataclass
class ValidationResult:
    """Result of config validation."""
    valid: bool
    issues: List[ValidationIssue] = field(default_factory=list)

    def has_errors(self) -> bool:
        return any(i.severity == ValidationSeverity.ERROR for i in self.issues)

    def has_warnings(self) -> bool:
        return any(i.severity == ValidationSeverity.WARNING for i in self.issues)

    def get_errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.ERROR]

    def get_warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.WARNING]


class ConfigValidator:
    """
    Validates a StrategyConfig, optionally together with process Settings.

    Custom checks can be added with register_validator(); each receives the
    strategy and returns a list of issues.
    """

    def __init__(self) -> None:
        self._custom_validators: List[Callable[[StrategyConfig], List[ValidationIssue]]] = []

    def register_validator(self, validator: Callable[[StrategyConfig], List[ValidationIssue]]) -> None:
        self._custom_validators.append(validator)

    def validate(self, strategy: StrategyConfig, settings: Any = None) -> ValidationResult:
        issues: List[ValidationIssue] = []

        try:
            strategy.validate()
        except ConfigError as e:
            issues.append(ValidationIssue(
                field="strategy",
                message=str(e),
                severity=ValidationSeverity.ERROR,
            ))

        issues.extend(self._check_venue_limits(strategy))
        issues.extend(self._check_risky_configs(strategy))
        if settings is not None:
            issues.extend(self._validate_settings(settings))

        for validator in self._custom_validators:
            try:
                custom_issues = validator(strategy)
                if custom_issues:
                    issues.extend(custom_issues)
            except Exception as e:
                logger.warning(f"Custom validator error: {e}")

        has_errors = any(i.severity == ValidationSeverity.ERROR for i in issues)
        return ValidationResult(valid=not has_errors, issues=issues)

    def _check_venue_limits(self, cfg: StrategyConfig) -> List[ValidationIssue]:
        issues = []
        if cfg.order_class is OrderClass.SHORT_LIVED and cfg.good_til_blocks > MAX_SHORT_TERM_BLOCKS:
            issues.append(ValidationIssue(
                field="good_til_blocks",
                message=f"Short-lived window of {cfg.good_til_blocks} blocks exceeds the venue maximum",
                severity=ValidationSeverity.WARNING,
                value=cfg.good_til_blocks,
                suggestion=f"Set to at most {MAX_SHORT_TERM_BLOCKS}",
            ))
        if cfg.order_class is OrderClass.LONG_LIVED and cfg.batch_size > MAX_STATEFUL_ORDERS_PER_BATCH:
            issues.append(ValidationIssue(
                field="batch_size",
                message=f"Batches of {cfg.batch_size} long-lived orders are likely to be rate limited",
                severity=ValidationSeverity.WARNING,
                value=cfg.batch_size,
                suggestion=f"Use batch_size <= {MAX_STATEFUL_ORDERS_PER_BATCH} or a larger batch_delay_ms",
            ))
        return issues

    def _check_risky_configs(self, cfg: StrategyConfig) -> List[ValidationIssue]:
        issues = []
        placement_sec = (cfg.levels * 2 / max(cfg.batch_size, 1)) * cfg.batch_delay_ms / 1000.0
        if cfg.refresh_interval < placement_sec:
            issues.append(ValidationIssue(
                field="refresh_interval",
                message=(
                    f"refresh_interval {cfg.refresh_interval}s is shorter than the "
                    f"~{placement_sec:.1f}s needed to place the ladder"
                ),
                severity=ValidationSeverity.WARNING,
                value=cfg.refresh_interval,
            ))
        if cfg.max_orders_per_side < cfg.price_steps:
            issues.append(ValidationIssue(
                field="price_steps",
                message=f"Only {cfg.max_orders_per_side} of {cfg.price_steps} price steps will be quoted",
                severity=ValidationSeverity.INFO,
                value=cfg.price_steps,
            ))
        if cfg.order_size * cfg.levels > cfg.max_position_size:
            issues.append(ValidationIssue(
                field="order_size",
                message="One side of the ladder can exceed max_position_size if fully filled",
                severity=ValidationSeverity.WARNING,
                value=cfg.order_size,
            ))
        if cfg.risk.max_drawdown_pct < 1.0:
            issues.append(ValidationIssue(
                field="risk.max_drawdown_pct",
                message=f"Tight drawdown limit ({cfg.risk.max_drawdown_pct}%) may halt quoting frequently",
                severity=ValidationSeverity.WARNING,
                value=cfg.risk.max_drawdown_pct,
            ))
        if cfg.oracle.enabled and cfg.oracle.provider not in PROVIDER_REGISTRY:
            issues.append(ValidationIssue(
                field="oracle.provider",
                message=f"Unknown oracle provider '{cfg.oracle.provider}'",
                severity=ValidationSeverity.ERROR,
                value=cfg.oracle.provider,
                suggestion=f"Use one of {sorted(PROVIDER_REGISTRY)}",
            ))
        return issues

    def _validate_settings(self, settings: Any) -> List[ValidationIssue]:
        issues = []
        if not getattr(settings, "indexer_url", None):
            issues.append(ValidationIssue(
                field="indexer_url",
                message="Indexer URL is missing",
                severity=ValidationSeverity.ERROR,
                suggestion="Set QUOTER_INDEXER_URL",
            ))
        if not getattr(settings, "address", None):
            issues.append(ValidationIssue(
                field="address",
                message="No account address configured",
                severity=ValidationSeverity.ERROR,
                suggestion="Set QUOTER_ADDRESS",
            ))
        for name in getattr(settings, "price_providers", []) or []:
            if name not in PROVIDER_REGISTRY:
                issues.append(ValidationIssue(
                    field="price_providers",
                    message=f"Unknown price provider '{name}'",
                    severity=ValidationSeverity.ERROR,
                    value=name,
                ))
        return issues


def validate_config(strategy: StrategyConfig, settings: Any = None) -> ValidationResult:
    return ConfigValidator().validate(strategy, settings)


def validate_and_log(strategy: StrategyConfig, settings: Any = None, logger_instance=None) -> bool:
    """
    Validate config and log all issues.

    Returns:
        True if config is valid (no errors), False otherwise
    """
    log = logger_instance or logger
    result = validate_config(strategy, settings)

    for issue in result.get_errors():
        msg = f"CONFIG ERROR: {issue.message}"
        if issue.suggestion:
            msg += f" (suggestion: {issue.suggestion})"
        log.error(msg)

    for issue in result.get_warnings():
        msg = f"CONFIG WARNING: {issue.message}"
        if issue.suggestion:
            msg += f" (suggestion: {issue.suggestion})"
        log.warning(msg)

    if result.valid:
        log.info("Configuration validation passed")
    else:
        log.error(f"Configuration validation failed with {len(result.get_errors())} error(s)")

    return result.valid
