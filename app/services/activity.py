"""
Activity Logger

Fire-and-forget audit trail of floor operations. Each entry is written in
its own session so a failing log write can never roll back, or be rolled
back with, the operation it describes.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models import ActivityLog

logger = logging.getLogger(__name__)


class ActivityLogger:

    def __init__(self, session_maker: Optional[async_sessionmaker[AsyncSession]]):
        self.session_maker = session_maker

    async def log(
        self,
        category: str,
        action: str,
        actor: Optional[str],
        description: str,
        outcome: str = "success",
    ) -> None:
        """Record an entry. Never raises."""
        if self.session_maker is None:
            return
        try:
            async with self.session_maker() as session:
                session.add(ActivityLog(
                    category=category,
                    action=action,
                    actor=actor or "System",
                    description=description,
                    outcome=outcome,
                ))
                await session.commit()
        except Exception as e:
            logger.warning(f"Activity log write failed ({category}/{action}): {e}")
