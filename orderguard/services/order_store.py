"""
OrderGuard — SQL Order Store

SQLAlchemy implementation of the read side the match engine and scorer
depend on.  Phone lookups match either the stored canonical key or the raw
billing phone, so rows written before normalisation are still found.
"""

from datetime import datetime
from typing import List, Set, Tuple

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from orderguard.core.matching import MatchField
from orderguard.models.models import Order


class SqlOrderStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    @staticmethod
    def _field_condition(field: MatchField, values: Set[str]):
        values = list(values)
        if field is MatchField.PHONE:
            return or_(Order.phone_key.in_(values), Order.billing_phone.in_(values))
        if field is MatchField.IP:
            return Order.ip_address.in_(values)
        if field is MatchField.ADDRESS:
            return Order.address_key.in_(values)
        if field is MatchField.DEVICE:
            return Order.device_id.in_(values)
        raise ValueError(f"Unsupported match field: {field}")

    @staticmethod
    def _window_conditions(since: datetime, exclude_ids: Set[str], excluded_statuses: Set[str]):
        conditions = [Order.created_at > since]
        if excluded_statuses:
            conditions.append(Order.status.notin_(list(excluded_statuses)))
        if exclude_ids:
            conditions.append(Order.id.notin_(list(exclude_ids)))
        return conditions

    async def count_recent(
        self,
        field: MatchField,
        values: Set[str],
        since: datetime,
        exclude_ids: Set[str],
        excluded_statuses: Set[str],
    ) -> int:
        if not values:
            return 0
        stmt = select(func.count(Order.id)).where(
            and_(
                self._field_condition(field, values),
                *self._window_conditions(since, exclude_ids, excluded_statuses),
            )
        )
        result = await self.db.execute(stmt)
        return result.scalar() or 0

    async def recent_names(
        self,
        since: datetime,
        exclude_phone_values: Set[str],
        excluded_statuses: Set[str],
        limit: int,
        exclude_ids: Set[str] = frozenset(),
    ) -> List[Tuple[str, str]]:
        """Most recent ``(full name, billing phone)`` pairs, newest first."""
        conditions = self._window_conditions(since, exclude_ids, excluded_statuses)
        if exclude_phone_values:
            values = list(exclude_phone_values)
            conditions.append(func.coalesce(Order.phone_key, "").notin_(values))
            conditions.append(func.coalesce(Order.billing_phone, "").notin_(values))

        stmt = (
            select(Order.first_name, Order.last_name, Order.billing_phone)
            .where(and_(*conditions))
            .order_by(Order.created_at.desc())
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return [
            (f"{first or ''} {last or ''}".strip(), phone or "")
            for first, last, phone in result.all()
        ]
