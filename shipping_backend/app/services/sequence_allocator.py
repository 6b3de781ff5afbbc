"""
Parcel sequence allocator.

Hands out strictly increasing parcel numbers from the `parcel_sequences`
counter row. The row is advanced with one `UPDATE ... SET value = value + 1`
and read back inside the same transaction, so concurrent bookings serialize
on the row lock and never see the same value.

If the counter cannot be used (database error), allocation degrades instead
of failing the booking:
    1. last created shipment's short id suffix + 1 (1 when there is none)
    2. number of shipments + 1
    3. a random large integer
Each degraded allocation is logged at ERROR because uniqueness then depends
on the unique index on `parcel_id_short`.
"""

import logging
import secrets
from typing import Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shipping_backend.app.core.config import settings
from shipping_backend.app.models.parcel_sequence import ParcelSequence
from shipping_backend.app.models.shipment import Shipment
from shipping_backend.app.services.parcel_identifier import parse_short_suffix

logger = logging.getLogger(__name__)

PARCEL_COUNTER = "parcel"
RANDOM_FALLBACK_FLOOR = 1_000_000
RANDOM_FALLBACK_SPAN = 9_000_000


class SequenceUnavailableError(Exception):
    """The atomic counter row could not be advanced."""


async def latest_short_suffix(db: AsyncSession, prefix: str = settings.parcel_id_prefix) -> Optional[int]:
    """
    Suffix of the most recently created shipment's short parcel id.

    Returns None when no shipment has a short id yet.

    Raises:
        ValueError: if the stored short id cannot be parsed
    """
    result = await db.execute(
        select(Shipment.parcel_id_short)
        .where(Shipment.parcel_id_short.is_not(None))
        .order_by(Shipment.created_at.desc(), Shipment.id.desc())
        .limit(1)
    )
    last_short_id = result.scalar_one_or_none()
    if last_short_id is None:
        return None
    return parse_short_suffix(last_short_id, prefix)


class SequenceAllocator:
    """Allocates parcel sequence numbers for one named counter."""

    def __init__(self, counter_name: str = PARCEL_COUNTER, prefix: str = settings.parcel_id_prefix):
        self.counter_name = counter_name
        self.prefix = prefix

    async def ensure_counter(self, db: AsyncSession) -> None:
        """
        Create the counter row if it does not exist yet.

        A new row is seeded with the highest short id suffix already in use so
        numbering continues after shipments that predate the counter.
        """
        existing = await db.execute(
            select(ParcelSequence.value).where(ParcelSequence.name == self.counter_name)
        )
        if existing.scalar_one_or_none() is not None:
            await db.commit()
            return

        try:
            seed = await self._highest_suffix(db)
        except (SQLAlchemyError, ValueError):
            logger.warning("Could not read existing parcel ids to seed counter '%s'", self.counter_name)
            seed = 0

        db.add(ParcelSequence(name=self.counter_name, value=seed))
        try:
            await db.commit()
            logger.info("Parcel counter '%s' created at %s", self.counter_name, seed)
        except IntegrityError:
            # Created by a concurrent caller
            await db.rollback()

    async def next(self, db: AsyncSession, commit: bool = True) -> int:
        """
        Return the next parcel number, degrading through the fallbacks on failure.

        With commit=False the counter row stays locked until the caller commits,
        so the number and the record that uses it become visible together and a
        rollback returns the number.
        """
        try:
            return await self._next_atomic(db, commit)
        except (SQLAlchemyError, SequenceUnavailableError):
            logger.error(
                "Atomic parcel counter '%s' unavailable, using fallback allocation; "
                "parcel number uniqueness now relies on the unique index",
                self.counter_name,
                exc_info=True,
            )
            await self._safe_rollback(db)
        return await self._next_fallback(db)

    async def _next_atomic(self, db: AsyncSession, commit: bool = True) -> int:
        for _ in range(2):
            result = await db.execute(
                update(ParcelSequence)
                .where(ParcelSequence.name == self.counter_name)
                .values(value=ParcelSequence.value + 1)
            )
            if result.rowcount:
                value = (await db.execute(
                    select(ParcelSequence.value).where(ParcelSequence.name == self.counter_name)
                )).scalar_one()
                if commit:
                    await db.commit()
                return value

            await db.rollback()
            await self.ensure_counter(db)

        raise SequenceUnavailableError(f"Counter '{self.counter_name}' could not be created")

    async def _next_fallback(self, db: AsyncSession) -> int:
        try:
            suffix = await latest_short_suffix(db, self.prefix)
            return 1 if suffix is None else suffix + 1
        except (SQLAlchemyError, ValueError):
            logger.error("Fallback from latest parcel id failed, counting shipments", exc_info=True)
            await self._safe_rollback(db)

        try:
            count = (await db.execute(select(func.count(Shipment.id)))).scalar_one()
            return count + 1
        except SQLAlchemyError:
            logger.critical("Shipment count fallback failed, issuing random parcel number", exc_info=True)
            await self._safe_rollback(db)

        return RANDOM_FALLBACK_FLOOR + secrets.randbelow(RANDOM_FALLBACK_SPAN)

    async def _highest_suffix(self, db: AsyncSession) -> int:
        result = await db.execute(
            select(Shipment.parcel_id_short).where(Shipment.parcel_id_short.is_not(None))
        )
        highest = 0
        for short_id in result.scalars():
            try:
                highest = max(highest, parse_short_suffix(short_id, self.prefix))
            except ValueError:
                logger.warning("Ignoring malformed short parcel id %r", short_id)
        return highest

    @staticmethod
    async def _safe_rollback(db: AsyncSession) -> None:
        try:
            await db.rollback()
        except SQLAlchemyError:
            logger.warning("Rollback after allocation failure also failed", exc_info=True)
