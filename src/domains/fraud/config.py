"""Fraud engine configuration with sensible defaults."""

import os
from dataclasses import dataclass, field


@dataclass
class RiskThresholds:
    medium: float = 50.0
    high: float = 75.0
    critical: float = 90.0


@dataclass
class DecisionThresholds:
    review: float = 60.0
    block: float = 80.0


@dataclass
class SafeDefault:
    """Result returned when a check cannot complete."""

    score: float = 50.0
    flag_name: str = "system_error"
    description: str = "Unable to complete fraud check, flagged for manual review"


@dataclass
class FlagDefaults:
    """Flag scores used when a rule carries no score impact of its own."""

    velocity: int = 10
    excessive_delivery_distance: int = 15
    vpn_detected: int = 20
    proxy_detected: int = 20
    disallowed_country: int = 30
    multiple_accounts_device: int = 25
    new_device: int = 10
    device_change: int = 15
    excessive_failed_payments: int = 25
    small_transaction: int = 5
    large_transaction: int = 20
    new_account: int = 10
    high_refund_rate: int = 30
    unusual_order_amount: int = 15


@dataclass
class BehaviorSettings:
    unusual_order_multiplier: float = 3.0


@dataclass
class PaymentSettings:
    default_window_seconds: int = 86_400


@dataclass
class AlertSettings:
    kafka_topic: str = "fraud.alerts"
    recent_alert_limit: int = 10


@dataclass
class IpIntelligenceSettings:
    cache_ttl_seconds: int = 86_400


@dataclass
class FraudConfig:
    risk: RiskThresholds = field(default_factory=RiskThresholds)
    decision: DecisionThresholds = field(default_factory=DecisionThresholds)
    safe_default: SafeDefault = field(default_factory=SafeDefault)
    flags: FlagDefaults = field(default_factory=FlagDefaults)
    behavior: BehaviorSettings = field(default_factory=BehaviorSettings)
    payment: PaymentSettings = field(default_factory=PaymentSettings)
    alerts: AlertSettings = field(default_factory=AlertSettings)
    ip_intelligence: IpIntelligenceSettings = field(default_factory=IpIntelligenceSettings)

    @classmethod
    def from_env(cls) -> "FraudConfig":
        """Load config with env var overrides. Env vars use FRAUD_ prefix."""
        config = cls()

        # Risk level overrides
        if v := os.getenv("FRAUD_RISK_MEDIUM"):
            config.risk.medium = float(v)
        if v := os.getenv("FRAUD_RISK_HIGH"):
            config.risk.high = float(v)
        if v := os.getenv("FRAUD_RISK_CRITICAL"):
            config.risk.critical = float(v)

        # Decision overrides
        if v := os.getenv("FRAUD_DECISION_REVIEW"):
            config.decision.review = float(v)
        if v := os.getenv("FRAUD_DECISION_BLOCK"):
            config.decision.block = float(v)

        if v := os.getenv("FRAUD_SAFE_DEFAULT_SCORE"):
            config.safe_default.score = float(v)
        if v := os.getenv("FRAUD_UNUSUAL_ORDER_MULTIPLIER"):
            config.behavior.unusual_order_multiplier = float(v)
        if v := os.getenv("FRAUD_PAYMENT_WINDOW_SECONDS"):
            config.payment.default_window_seconds = int(v)

        if v := os.getenv("FRAUD_ALERT_KAFKA_TOPIC"):
            config.alerts.kafka_topic = v
        if v := os.getenv("FRAUD_IP_CACHE_TTL_SECONDS"):
            config.ip_intelligence.cache_ttl_seconds = int(v)

        return config


# Module-level default instance
default_config = FraudConfig()
