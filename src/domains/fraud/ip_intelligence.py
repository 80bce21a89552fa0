"""IP reputation lookups backed by a time-bounded cache table.

The check path only ever reads the cache: a miss or an expired row means
"unknown" and never raises a flag. Refreshing rows from an external provider
happens outside the check path.
"""

from datetime import UTC, datetime, timedelta
from typing import Protocol

import structlog
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models import IpIntelligenceDB

from .config import FraudConfig, default_config

logger = structlog.get_logger()


class IpReputation(BaseModel):
    ip_address: str
    is_vpn: bool = False
    is_proxy: bool = False
    country: str | None = None
    country_name: str | None = None
    provider: str | None = None


class IpReputationProvider(Protocol):
    """External IP-reputation source (MaxMind, IPinfo, ...)."""

    name: str

    async def lookup(self, ip_address: str) -> IpReputation | None: ...


class IpIntelligenceService:
    def __init__(
        self,
        provider: IpReputationProvider | None = None,
        config: FraudConfig | None = None,
    ) -> None:
        self._provider = provider
        self._config = config or default_config

    async def lookup(
        self,
        session: AsyncSession,
        ip_address: str,
        now: datetime | None = None,
    ) -> IpReputation | None:
        """Return the cached reputation for an IP, or None if missing or expired."""
        now = now or datetime.now(UTC)
        stmt = select(IpIntelligenceDB).where(
            IpIntelligenceDB.ip_address == ip_address,
            IpIntelligenceDB.expires_at >= now,
        )
        result = await session.execute(stmt)
        row = result.scalar_one_or_none()
        if row is None:
            return None

        return IpReputation(
            ip_address=row.ip_address,
            is_vpn=row.is_vpn,
            is_proxy=row.is_proxy,
            country=row.country,
            country_name=row.country_name,
            provider=row.provider,
        )

    async def refresh(
        self,
        session: AsyncSession,
        ip_address: str,
        now: datetime | None = None,
    ) -> IpReputation | None:
        """Fetch from the provider and upsert the cache row. No provider means no-op."""
        if self._provider is None:
            logger.debug("ip_provider_not_configured", ip_address=ip_address)
            return None

        reputation = await self._provider.lookup(ip_address)
        if reputation is None:
            return None

        now = now or datetime.now(UTC)
        expires_at = now + timedelta(seconds=self._config.ip_intelligence.cache_ttl_seconds)
        values = {
            "ip_address": ip_address,
            "is_vpn": reputation.is_vpn,
            "is_proxy": reputation.is_proxy,
            "country": reputation.country,
            "country_name": reputation.country_name,
            "provider": reputation.provider or self._provider.name,
            "fetched_at": now,
            "expires_at": expires_at,
        }
        stmt = insert(IpIntelligenceDB).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[IpIntelligenceDB.ip_address],
            set_={k: v for k, v in values.items() if k != "ip_address"},
        )
        await session.execute(stmt)
        await session.commit()

        logger.info(
            "ip_intelligence_refreshed",
            ip_address=ip_address,
            provider=values["provider"],
            expires_at=expires_at.isoformat(),
        )
        return reputation
