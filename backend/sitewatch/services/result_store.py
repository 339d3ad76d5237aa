"""Result store - persists check results and the target's cached status."""
import logging
from typing import List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import SQLAlchemyError

from ..database import async_session
from ..models import CheckResultRecord, SSLCheck, Target as TargetModel
from ..utils.db_utils import retry_on_lock
from .records import CheckResult, CheckResultRow

logger = logging.getLogger(__name__)


class ResultStore:
    """Append-only result log plus last-known status per target."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or async_session

    async def save(self, result: CheckResult) -> bool:
        """Persist a result. Failures are logged and reported as False."""
        row = CheckResultRow.from_result(result)
        try:
            async with self._session_factory() as session:
                session.add(CheckResultRecord(**row.as_columns()))
                if result.tls is not None:
                    session.add(SSLCheck(
                        target_id=result.target_id,
                        checked_at=result.checked_at,
                        certificate_valid=result.tls.valid,
                        expires_at=result.tls.expires_at,
                        days_until_expiry=result.tls.days_until_expiry,
                        issuer=result.tls.issuer,
                        security_grade=result.tls.grade,
                        chain_valid=result.tls.chain_valid,
                    ))
                await session.execute(
                    update(TargetModel)
                    .where(TargetModel.id == result.target_id)
                    .values(status=result.status, last_checked=result.checked_at)
                )
                await retry_on_lock(session.commit)
            return True
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Error saving result for target {result.target_id}: {e}")
            return False

    async def recent_results(self, target_id: int, limit: int = 50) -> List[CheckResult]:
        """Results for a target, most recent first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(CheckResultRecord)
                .where(CheckResultRecord.target_id == target_id)
                .order_by(CheckResultRecord.checked_at.desc(), CheckResultRecord.id.desc())
                .limit(limit)
            )
            return [CheckResultRow.from_model(r).to_result() for r in result.scalars().all()]

    async def latest_result(self, target_id: int) -> Optional[CheckResult]:
        results = await self.recent_results(target_id, limit=1)
        return results[0] if results else None

    async def expiring_certificates(self, days: int = 30) -> List[SSLCheck]:
        """Latest certificate check per target that expires within ``days``."""
        async with self._session_factory() as session:
            latest = (
                select(SSLCheck.target_id, func.max(SSLCheck.id).label("latest_id"))
                .group_by(SSLCheck.target_id)
                .subquery()
            )
            result = await session.execute(
                select(SSLCheck)
                .join(latest, SSLCheck.id == latest.c.latest_id)
                .where(
                    SSLCheck.days_until_expiry.is_not(None),
                    SSLCheck.days_until_expiry >= 0,
                    SSLCheck.days_until_expiry <= days,
                )
                .order_by(SSLCheck.days_until_expiry)
            )
            return list(result.scalars().all())
