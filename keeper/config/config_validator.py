"""
Startup validation of keeper settings.

Errors block startup, warnings are logged and startup continues.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger("keeper")


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
    Range, presence and consistency checks over a Settings instance.
    """

    # (min, max)
    NUMERIC_RANGES: Dict[str, Tuple[float, float]] = {
        "slippage_bps": (1, 5_000),
        "max_price_impact_pct": (0.01, 50.0),
        "quote_ttl_sec": (1.0, 600.0),
        "tick_interval_sec": (1.0, 86_400.0),
        "max_backoff_sec": (1.0, 7 * 86_400.0),
        "alert_failure_threshold": (1, 100),
        "exclusion_max_age_sec": (1.0, 3_600.0),
        "distribution_batch_size": (1, 64),
        "pending_tx_expiry_sec": (10.0, 3_600.0),
        "rpc_timeout_sec": (1.0, 120.0),
        "confirm_timeout_sec": (5.0, 600.0),
        "token_decimals": (0, 18),
        "transfer_fee_bps": (0, 10_000),
        "metrics_port": (0, 65_535),
    }

    REQUIRED_STRINGS: List[str] = [
        "rpc_url",
        "deployment_state_path",
        "keypair_dir",
        "keeper_keypair_name",
        "runtime_state_path",
        "verification_dir",
    ]

    # (if_field, then_required, message)
    CONDITIONAL_REQUIREMENTS: List[Tuple[str, str, str]] = [
        ("alert_enabled", "alert_webhook_url", "alerting is enabled but no webhook URL is configured"),
    ]

    WEBHOOK_TYPES = ("generic", "slack", "discord", "pagerduty")

    def __init__(self) -> None:
        self._custom_validators: List[Callable[[Any], List[ValidationIssue]]] = []

    def register_validator(self, validator: Callable[[Any], List[ValidationIssue]]) -> None:
        """Register a custom validation function."""
        self._custom_validators.append(validator)

    def validate(self, cfg) -> ValidationResult:
        issues: List[ValidationIssue] = []
        issues.extend(self._validate_required_strings(cfg))
        issues.extend(self._validate_numeric_ranges(cfg))
        issues.extend(self._validate_conditional(cfg))
        issues.extend(self._validate_consistency(cfg))
        issues.extend(self._check_risky_configs(cfg))

        for validator in self._custom_validators:
            issues.extend(validator(cfg) or [])

        return ValidationResult(valid=not any(i.severity == ValidationSeverity.ERROR for i in issues), issues=issues)

    def _validate_required_strings(self, cfg) -> List[ValidationIssue]:
        issues = []
        for field_name in self.REQUIRED_STRINGS:
            value = getattr(cfg, field_name, None)
            if not value or (isinstance(value, str) and not value.strip()):
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"Required field '{field_name}' is missing or empty",
                    severity=ValidationSeverity.ERROR,
                    value=value,
                ))
        return issues

    def _validate_numeric_ranges(self, cfg) -> List[ValidationIssue]:
        issues = []
        for field_name, (min_val, max_val) in self.NUMERIC_RANGES.items():
            value = getattr(cfg, field_name, None)
            if value is None:
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"Required numeric field '{field_name}' is missing",
                    severity=ValidationSeverity.ERROR,
                ))
                continue
            try:
                num_value = float(value)
            except (TypeError, ValueError):
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' has invalid numeric value: {value}",
                    severity=ValidationSeverity.ERROR,
                    value=value,
                ))
                continue
            if num_value < min_val:
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' value {num_value} is below minimum {min_val}",
                    severity=ValidationSeverity.ERROR,
                    value=num_value,
                    suggestion=f"Set to at least {min_val}",
                ))
            elif num_value > max_val:
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' value {num_value} is above maximum {max_val}",
                    severity=ValidationSeverity.ERROR,
                    value=num_value,
                    suggestion=f"Set to at most {max_val}",
                ))
        return issues

    def _validate_conditional(self, cfg) -> List[ValidationIssue]:
        issues = []
        for if_field, then_required, message in self.CONDITIONAL_REQUIREMENTS:
            if getattr(cfg, if_field, None) and not getattr(cfg, then_required, None):
                issues.append(ValidationIssue(
                    field=then_required,
                    message=message,
                    severity=ValidationSeverity.WARNING,
                    suggestion=f"Set '{then_required}' or disable '{if_field}'",
                ))
        return issues

    def _validate_consistency(self, cfg) -> List[ValidationIssue]:
        issues = []
        if cfg.harvest_threshold < cfg.min_hold_amount:
            issues.append(ValidationIssue(
                field="harvest_threshold",
                message="harvest_threshold is below min_hold_amount; tiny harvests will cost more in fees than they distribute",
                severity=ValidationSeverity.WARNING,
                value=cfg.harvest_threshold,
            ))
        if cfg.max_backoff_sec < cfg.tick_interval_sec:
            issues.append(ValidationIssue(
                field="max_backoff_sec",
                message="max_backoff_sec must not be shorter than tick_interval_sec",
                severity=ValidationSeverity.ERROR,
                value=cfg.max_backoff_sec,
            ))
        if cfg.alert_webhook_type not in self.WEBHOOK_TYPES:
            issues.append(ValidationIssue(
                field="alert_webhook_type",
                message=f"Unknown webhook type '{cfg.alert_webhook_type}'",
                severity=ValidationSeverity.ERROR,
                value=cfg.alert_webhook_type,
                suggestion=f"Use one of {', '.join(self.WEBHOOK_TYPES)}",
            ))
        if cfg.exclusion_max_age_sec > cfg.tick_interval_sec and cfg.tick_interval_sec >= 1:
            issues.append(ValidationIssue(
                field="exclusion_max_age_sec",
                message="exclusion staleness bound is longer than one tick; a cached set may outlive a cycle",
                severity=ValidationSeverity.INFO,
                value=cfg.exclusion_max_age_sec,
            ))
        return issues

    def _check_risky_configs(self, cfg) -> List[ValidationIssue]:
        issues = []
        if cfg.slippage_bps > 300:
            issues.append(ValidationIssue(
                field="slippage_bps",
                message=f"High slippage tolerance ({cfg.slippage_bps} bps)",
                severity=ValidationSeverity.WARNING,
                value=cfg.slippage_bps,
                suggestion="Consider 50-300 bps",
            ))
        if cfg.max_price_impact_pct > 10:
            issues.append(ValidationIssue(
                field="max_price_impact_pct",
                message=f"Price impact ceiling of {cfg.max_price_impact_pct}% allows very poor swaps",
                severity=ValidationSeverity.WARNING,
                value=cfg.max_price_impact_pct,
            ))
        if cfg.network == "mainnet-beta" and cfg.commitment == "processed":
            issues.append(ValidationIssue(
                field="commitment",
                message="'processed' commitment on mainnet can observe rolled back transactions",
                severity=ValidationSeverity.ERROR,
                value=cfg.commitment,
                suggestion="Use 'confirmed' or 'finalized'",
            ))
        return issues


def validate_config(cfg) -> ValidationResult:
    return ConfigValidator().validate(cfg)


def validate_and_log(cfg, logger_instance=None) -> bool:
    """
    Validate settings and log every issue.

    Returns:
        True if there are no errors.
    """
    log = logger_instance or logger
    result = validate_config(cfg)

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
