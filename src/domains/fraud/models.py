"""Pydantic models for the fraud domain."""

from datetime import datetime
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class RuleType(StrEnum):
    VELOCITY = "velocity"
    GEOLOCATION = "geolocation"
    DEVICE = "device"
    PAYMENT = "payment"
    BEHAVIOR = "behavior"
    IDENTITY = "identity"


class RuleAction(StrEnum):
    ALLOW = "allow"
    FLAG = "flag"
    BLOCK = "block"
    REVIEW = "review"
    NOTIFY = "notify"


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Risk levels share the severity vocabulary
RiskLevel = Severity


class Recommendation(StrEnum):
    ALLOW = "allow"
    REVIEW = "review"
    BLOCK = "block"


class CheckType(StrEnum):
    ORDER_CREATION = "order_creation"
    PAYMENT = "payment"
    LOGIN = "login"
    ACCOUNT_UPDATE = "account_update"


class AlertStatus(StrEnum):
    PENDING = "pending"
    DISMISSED = "dismissed"
    CONFIRMED = "confirmed"


class ReviewDecision(StrEnum):
    DISMISSED = "dismissed"
    CONFIRMED = "confirmed"


class AlertType(StrEnum):
    VELOCITY = "velocity"
    GEOLOCATION = "geolocation"
    DEVICE = "device"
    PAYMENT = "payment"
    BEHAVIOR = "behavior"
    IDENTITY = "identity"
    MANUAL = "manual"


class VelocityMetric(StrEnum):
    ORDERS_PER_HOUR = "orders_per_hour"
    PAYMENT_ATTEMPTS = "payment_attempts"


# --- Rule conditions: one shape per rule type ------------------------------


class VelocityConditions(BaseModel):
    metric: VelocityMetric
    threshold: int = Field(ge=1)
    time_window_seconds: int = Field(gt=0)
    scope: str = "user"


class GeolocationConditions(BaseModel):
    max_distance_km: float | None = Field(default=None, gt=0)
    check_vpn: bool = False
    check_proxy: bool = False
    allowed_countries: list[str] | None = None


class DeviceConditions(BaseModel):
    max_accounts_per_device: int | None = Field(default=None, ge=1)
    trust_new_devices: bool = False
    flag_device_changes: bool = False


class PaymentConditions(BaseModel):
    max_failed_attempts: int | None = Field(default=None, ge=1)
    min_transaction_amount: float | None = Field(default=None, ge=0)
    max_transaction_amount: float | None = Field(default=None, gt=0)
    flag_small_transactions: bool = False
    time_window_seconds: int | None = Field(default=None, gt=0)


class BehaviorConditions(BaseModel):
    min_account_age_days: int | None = Field(default=None, ge=1)
    max_refund_rate_percent: float | None = Field(default=None, ge=0, le=100)
    unusual_order_patterns: bool = False


class IdentityConditions(BaseModel):
    """Identity rules are stored and managed but no analyzer consumes them yet."""


class RuleBase(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str | None = None
    name: str = Field(min_length=1)
    description: str | None = None
    action: RuleAction = RuleAction.FLAG
    severity: Severity = Severity.MEDIUM
    score_impact: int = Field(default=10, ge=0, le=100)
    is_active: bool = True
    applicable_order_types: list[str] | None = None
    applicable_user_roles: list[str] | None = None
    trigger_count: int = 0
    false_positive_count: int = 0
    last_triggered_at: datetime | None = None

    def applies_to_order_type(self, order_type: str | None) -> bool:
        if not self.applicable_order_types or order_type is None:
            return True
        return order_type in self.applicable_order_types


class VelocityRule(RuleBase):
    rule_type: Literal["velocity"] = "velocity"
    conditions: VelocityConditions


class GeolocationRule(RuleBase):
    rule_type: Literal["geolocation"] = "geolocation"
    conditions: GeolocationConditions


class DeviceRule(RuleBase):
    rule_type: Literal["device"] = "device"
    conditions: DeviceConditions


class PaymentRule(RuleBase):
    rule_type: Literal["payment"] = "payment"
    conditions: PaymentConditions


class BehaviorRule(RuleBase):
    rule_type: Literal["behavior"] = "behavior"
    conditions: BehaviorConditions


class IdentityRule(RuleBase):
    rule_type: Literal["identity"] = "identity"
    conditions: IdentityConditions = Field(default_factory=IdentityConditions)


FraudRule = Annotated[
    VelocityRule | GeolocationRule | DeviceRule | PaymentRule | BehaviorRule | IdentityRule,
    Field(discriminator="rule_type"),
]

fraud_rule_adapter: TypeAdapter[FraudRule] = TypeAdapter(FraudRule)


# --- Check input ------------------------------------------------------------


class Coordinates(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class OrderDetails(BaseModel):
    total_amount: float = Field(ge=0)
    order_type: str
    pickup_address: Coordinates | None = None
    delivery_address: Coordinates | None = None


class DeviceContext(BaseModel):
    fingerprint: str = ""
    user_agent: str = ""
    ip: str = ""
    device_info: dict | None = None


class PaymentContext(BaseModel):
    method: str
    amount: float = Field(ge=0)
    card_last_four: str | None = Field(default=None, pattern=r"^\d{4}$")


class FraudCheckInput(BaseModel):
    user_id: str = Field(min_length=1)
    order_id: str | None = None
    order_details: OrderDetails | None = None
    device: DeviceContext | None = None
    payment: PaymentContext | None = None
    check_type: CheckType


# --- Check output -----------------------------------------------------------


class FraudFlag(BaseModel):
    name: str
    score: float = Field(ge=0)
    severity: Severity
    description: str
    category: AlertType = AlertType.BEHAVIOR
    rule_id: str | None = None


class FraudCheckResult(BaseModel):
    risk_score: float = Field(ge=0, le=100)
    risk_level: RiskLevel
    recommendation: Recommendation
    flags: list[FraudFlag] = []
    triggered_rules: list[str] = []
    processing_time_ms: int = 0
    alert_id: str | None = None
    degraded_analyzers: list[str] = []


class RiskFactorEntry(BaseModel):
    name: str
    score: float
    weight: float
    description: str


# --- Admin inputs -----------------------------------------------------------


class AlertReview(BaseModel):
    decision: ReviewDecision
    block_user: bool = False
    cancel_order: bool = False
    issue_refund: bool = False
    notes: str | None = None


class BlockRequest(BaseModel):
    reason: str = Field(min_length=1)
    duration_hours: float | None = Field(default=None, gt=0)


class RuleToggle(BaseModel):
    is_active: bool
