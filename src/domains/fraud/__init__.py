"""Fraud detection domain."""

from .analyzers import default_analyzers
from .classification import classify_risk_level, recommend
from .config import FraudConfig, default_config
from .errors import AlertAlreadyResolvedError, FraudEngineError, NotFoundError, StorageError
from .ip_intelligence import IpIntelligenceService
from .models import (
    FraudCheckInput,
    FraudCheckResult,
    FraudFlag,
    FraudRule,
    Recommendation,
    RiskLevel,
)
from .scorer import FraudScorer

__all__ = [
    "AlertAlreadyResolvedError",
    "FraudCheckInput",
    "FraudCheckResult",
    "FraudConfig",
    "FraudEngineError",
    "FraudFlag",
    "FraudRule",
    "FraudScorer",
    "IpIntelligenceService",
    "NotFoundError",
    "Recommendation",
    "RiskLevel",
    "StorageError",
    "classify_risk_level",
    "default_analyzers",
    "default_config",
    "recommend",
]
