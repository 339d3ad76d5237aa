"""Target registry - loads monitored targets from the database."""
import asyncio
import logging
from typing import List, Optional

from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError

from ..database import async_session
from ..models import Target as TargetModel
from .records import Target

logger = logging.getLogger(__name__)


class StorageUnavailableError(RuntimeError):
    """The backing store cannot be reached at all."""


class TargetRegistry:
    """Reads target configuration; the only component touching config state.

    ``load_enabled_targets`` never raises: on storage errors it logs and
    returns the last list it loaded successfully.
    """

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or async_session
        self._last_good: List[Target] = []
        self.last_load_ok = False
        self._lock = asyncio.Lock()

    async def ping(self):
        """Raise StorageUnavailableError if the store cannot be queried."""
        try:
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as e:
            raise StorageUnavailableError(f"Cannot reach target store: {e}") from e

    async def load_enabled_targets(self) -> List[Target]:
        async with self._lock:
            try:
                async with self._session_factory() as session:
                    result = await session.execute(
                        select(TargetModel)
                        .where(TargetModel.enabled.is_(True))
                        .order_by(TargetModel.id)
                    )
                    rows = result.scalars().all()
            except (SQLAlchemyError, OSError) as e:
                self.last_load_ok = False
                logger.error(f"Error loading targets, keeping {len(self._last_good)} known targets: {e}")
                return list(self._last_good)

            targets = []
            for row in rows:
                target = Target.from_model(row)
                if not target.is_valid():
                    logger.warning(
                        f"Skipping target {target.id} ({target.name}): interval={target.check_interval}s "
                        f"timeout={target.timeout}s (need 0 < timeout < interval)"
                    )
                    continue
                targets.append(target)

            self._last_good = targets
            self.last_load_ok = True
            logger.debug(f"Loaded {len(targets)} enabled targets")
            return list(targets)

    async def get_target(self, target_id: int) -> Optional[Target]:
        """Look up a single target regardless of its enabled flag."""
        try:
            async with self._session_factory() as session:
                row = await session.get(TargetModel, target_id)
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Error loading target {target_id}: {e}")
            for target in self._last_good:
                if target.id == target_id:
                    return target
            return None
        return Target.from_model(row) if row else None
