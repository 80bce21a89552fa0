"""Geolocation analyzer: delivery distance and IP reputation."""

import math
from collections.abc import Sequence
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import FraudConfig
from ..ip_intelligence import IpIntelligenceService, IpReputation
from ..models import (
    AlertType,
    FraudCheckInput,
    FraudFlag,
    GeolocationRule,
    RuleType,
)
from .base import Analyzer

EARTH_RADIUS_KM = 6371.0


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate distance in km between two lat/lon points."""
    lat1_r, lon1_r = math.radians(lat1), math.radians(lon1)
    lat2_r, lon2_r = math.radians(lat2), math.radians(lon2)
    dlat = lat2_r - lat1_r
    dlon = lon2_r - lon1_r
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


class GeolocationAnalyzer(Analyzer):
    """Flags long pickup-to-delivery distances and risky caller IPs.

    The distance check and the IP checks are independent. An IP that is not in
    the cache (or whose entry expired) is unknown and raises nothing.
    """

    name = "geolocation"
    rule_type = RuleType.GEOLOCATION
    category = AlertType.GEOLOCATION

    def __init__(self, ip_intelligence: IpIntelligenceService | None = None) -> None:
        self._ip_intelligence = ip_intelligence or IpIntelligenceService()

    def applies(self, check_input: FraudCheckInput) -> bool:
        order = check_input.order_details
        has_coordinates = order is not None and (
            order.pickup_address is not None or order.delivery_address is not None
        )
        has_ip = check_input.device is not None and bool(check_input.device.ip)
        return has_coordinates or has_ip

    async def analyze(
        self,
        check_input: FraudCheckInput,
        rules: Sequence[GeolocationRule],
        session: AsyncSession,
        config: FraudConfig,
        now: datetime,
    ) -> list[FraudFlag]:
        flags: list[FraudFlag] = []
        distance_km = self._delivery_distance(check_input)
        ip_address = check_input.device.ip if check_input.device else None
        # One cache read per check, shared by every rule that needs it
        ip_info: IpReputation | None = None
        ip_looked_up = False

        for rule in rules:
            conditions = rule.conditions

            if conditions.max_distance_km and distance_km is not None:
                if distance_km > conditions.max_distance_km:
                    flags.append(
                        self._flag(
                            rule,
                            name="excessive_delivery_distance",
                            description=(
                                f"Delivery distance ({distance_km:.2f} km) exceeds maximum "
                                f"allowed ({conditions.max_distance_km:g} km)"
                            ),
                            default_score=config.flags.excessive_delivery_distance,
                        )
                    )

            wants_ip = (
                conditions.check_vpn
                or conditions.check_proxy
                or bool(conditions.allowed_countries)
            )
            if not wants_ip or not ip_address:
                continue

            if not ip_looked_up:
                ip_info = await self._ip_intelligence.lookup(session, ip_address, now=now)
                ip_looked_up = True
            if ip_info is None:
                continue

            if conditions.check_vpn and ip_info.is_vpn:
                flags.append(
                    self._flag(
                        rule,
                        name="vpn_detected",
                        description="VPN connection detected",
                        default_score=config.flags.vpn_detected,
                    )
                )

            if conditions.check_proxy and ip_info.is_proxy:
                flags.append(
                    self._flag(
                        rule,
                        name="proxy_detected",
                        description="Proxy connection detected",
                        default_score=config.flags.proxy_detected,
                    )
                )

            if (
                conditions.allowed_countries
                and ip_info.country
                and ip_info.country not in conditions.allowed_countries
            ):
                flags.append(
                    self._flag(
                        rule,
                        name="disallowed_country",
                        description=(
                            "Request from disallowed country: "
                            f"{ip_info.country_name or ip_info.country}"
                        ),
                        default_score=config.flags.disallowed_country,
                    )
                )

        return flags

    @staticmethod
    def _delivery_distance(check_input: FraudCheckInput) -> float | None:
        order = check_input.order_details
        if order is None or order.pickup_address is None or order.delivery_address is None:
            return None
        return haversine(
            order.pickup_address.lat,
            order.pickup_address.lng,
            order.delivery_address.lat,
            order.delivery_address.lng,
        )
