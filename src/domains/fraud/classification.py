"""Score clamping and the fixed score -> level / recommendation mappings."""

from .config import FraudConfig, default_config
from .models import Recommendation, RiskLevel


def clamp_score(score: float) -> float:
    return max(0.0, min(100.0, score))


def classify_risk_level(score: float, config: FraudConfig | None = None) -> RiskLevel:
    cfg = (config or default_config).risk
    if score >= cfg.critical:
        return RiskLevel.CRITICAL
    if score >= cfg.high:
        return RiskLevel.HIGH
    if score >= cfg.medium:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def recommend(score: float, config: FraudConfig | None = None) -> Recommendation:
    cfg = (config or default_config).decision
    if score >= cfg.block:
        return Recommendation.BLOCK
    if score >= cfg.review:
        return Recommendation.REVIEW
    return Recommendation.ALLOW
