"""Fraud signal analyzers.

Exports default_analyzers() (one instance per analyzer, in evaluation order)
and individual analyzer classes for direct use.
"""

from ..ip_intelligence import IpIntelligenceService
from .base import Analyzer
from .behavior import BehaviorAnalyzer
from .device import DeviceAnalyzer, generate_fingerprint_hash
from .geo import GeolocationAnalyzer, haversine
from .payment import PaymentAnalyzer
from .velocity import VelocityAnalyzer


def default_analyzers(ip_intelligence: IpIntelligenceService | None = None) -> list[Analyzer]:
    return [
        VelocityAnalyzer(),
        GeolocationAnalyzer(ip_intelligence=ip_intelligence),
        DeviceAnalyzer(),
        PaymentAnalyzer(),
        BehaviorAnalyzer(),
    ]


__all__ = [
    "Analyzer",
    "BehaviorAnalyzer",
    "DeviceAnalyzer",
    "GeolocationAnalyzer",
    "PaymentAnalyzer",
    "VelocityAnalyzer",
    "default_analyzers",
    "generate_fingerprint_hash",
    "haversine",
]
