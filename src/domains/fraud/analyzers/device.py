"""Device fingerprint analyzer and tracker."""

import hashlib
import json
from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models import DeviceFingerprintDB

from ..config import FraudConfig
from ..models import (
    AlertType,
    DeviceContext,
    DeviceRule,
    FraudCheckInput,
    FraudFlag,
    RuleType,
    Severity,
)
from .base import Analyzer


def generate_fingerprint_hash(device_info: dict) -> str:
    """Stable sha256 over the canonical JSON form of the device attributes."""
    data = json.dumps(device_info, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


class DeviceAnalyzer(Analyzer):
    """Flags shared devices, never-seen devices and device switches.

    Every check that carries device info upserts the (user, fingerprint)
    record, whether or not any flag fired.
    """

    name = "device"
    rule_type = RuleType.DEVICE
    category = AlertType.DEVICE
    runs_without_rules = True

    def applies(self, check_input: FraudCheckInput) -> bool:
        return check_input.device is not None and bool(check_input.device.fingerprint)

    async def analyze(
        self,
        check_input: FraudCheckInput,
        rules: Sequence[DeviceRule],
        session: AsyncSession,
        config: FraudConfig,
        now: datetime,
    ) -> list[FraudFlag]:
        device = check_input.device
        if device is None:
            return []

        flags: list[FraudFlag] = []
        fingerprint = device.fingerprint

        if rules:
            # Distinct accounts seen on this device so far; 0 means globally new
            account_count = await self._accounts_on_device(session, fingerprint)
            last_fingerprint = None
            if any(r.conditions.flag_device_changes for r in rules):
                last_fingerprint = await self._latest_user_fingerprint(
                    session, check_input.user_id
                )

            for rule in rules:
                conditions = rule.conditions

                if (
                    conditions.max_accounts_per_device
                    and account_count >= conditions.max_accounts_per_device
                ):
                    flags.append(
                        self._flag(
                            rule,
                            name="multiple_accounts_device",
                            description=(
                                f"{account_count} accounts detected on this device, "
                                f"maximum allowed: {conditions.max_accounts_per_device}"
                            ),
                            default_score=config.flags.multiple_accounts_device,
                        )
                    )

                if not conditions.trust_new_devices and account_count == 0:
                    flags.append(
                        self._flag(
                            rule,
                            name="new_device",
                            description="First time request from this device",
                            default_score=config.flags.new_device,
                            severity=Severity.LOW,
                        )
                    )

                if (
                    conditions.flag_device_changes
                    and last_fingerprint is not None
                    and last_fingerprint != fingerprint
                ):
                    flags.append(
                        self._flag(
                            rule,
                            name="device_change",
                            description="Request from a different device than usual",
                            default_score=config.flags.device_change,
                            severity=Severity.MEDIUM,
                        )
                    )

        await self.record_device(session, check_input.user_id, device, now)
        return flags

    async def record_device(
        self,
        session: AsyncSession,
        user_id: str,
        device: DeviceContext,
        now: datetime,
    ) -> None:
        """Atomic upsert of the (user, fingerprint) pair."""
        stmt = insert(DeviceFingerprintDB).values(
            user_id=user_id,
            fingerprint_hash=device.fingerprint,
            device_info=device.device_info or {},
            ip_address=device.ip or None,
            first_seen=now,
            last_seen=now,
            session_count=1,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[DeviceFingerprintDB.user_id, DeviceFingerprintDB.fingerprint_hash],
            set_={
                "last_seen": now,
                "ip_address": device.ip or None,
                "session_count": DeviceFingerprintDB.session_count + 1,
            },
        )
        await session.execute(stmt)
        await session.commit()

    @staticmethod
    async def _accounts_on_device(session: AsyncSession, fingerprint: str) -> int:
        stmt = select(func.count(func.distinct(DeviceFingerprintDB.user_id))).where(
            DeviceFingerprintDB.fingerprint_hash == fingerprint
        )
        result = await session.execute(stmt)
        return result.scalar_one() or 0

    @staticmethod
    async def _latest_user_fingerprint(session: AsyncSession, user_id: str) -> str | None:
        stmt = (
            select(DeviceFingerprintDB.fingerprint_hash)
            .where(DeviceFingerprintDB.user_id == user_id)
            .order_by(DeviceFingerprintDB.last_seen.desc())
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()
