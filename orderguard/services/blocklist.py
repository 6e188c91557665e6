"""
OrderGuard — Blocklist Service

Administrator-maintained blocks on phones, IPs and device IDs.  Entries never
expire.  Phone entries are stored canonical when they normalise, so a block
on ``+880 1712-345678`` also stops ``01712345678``.
"""

import logging
from ipaddress import ip_address
from typing import List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from orderguard.core.matching import canonical_ip
from orderguard.core.phone import PhoneNumber, clean, lookup_values, normalize
from orderguard.models.models import BlockEntry, Order
from orderguard.services.errors import BlocklistError, ValidationError

logger = logging.getLogger("orderguard.blocklist")

BLOCK_TYPES = ("phone", "ip", "device")


def normalize_entry(block_type: str, value: str) -> str:
    """
    Storage form of *value* for *block_type*.  Raises :class:`ValidationError`
    for an unknown type or an IP entry that does not parse.
    """
    if block_type not in BLOCK_TYPES:
        raise ValidationError(f"Unknown block type: {block_type}")
    value = (value or "").strip()
    if block_type == "phone":
        result = normalize(value)
        return result.canonical if isinstance(result, PhoneNumber) else clean(value)
    if block_type == "ip" and value:
        try:
            return str(ip_address(value))
        except ValueError:
            raise ValidationError(f"Invalid IP address: {value}")
    return value


async def _get_entry(db: AsyncSession, block_type: str, value: str) -> Optional[BlockEntry]:
    result = await db.execute(
        select(BlockEntry).where(and_(BlockEntry.type == block_type, BlockEntry.value == value))
    )
    return result.scalar_one_or_none()


async def list_entries(db: AsyncSession, block_type: Optional[str] = None) -> List[BlockEntry]:
    stmt = select(BlockEntry).order_by(BlockEntry.created_at.desc())
    if block_type:
        stmt = stmt.where(BlockEntry.type == block_type)
    result = await db.execute(stmt)
    return list(result.scalars())


async def add_entry(
    db: AsyncSession,
    block_type: str,
    value: str,
    note: Optional[str] = None,
    created_by: Optional[str] = None,
) -> BlockEntry:
    """
    Add a block.  Raises :class:`BlocklistError` when the (type, value) pair
    is already present, :class:`ValidationError` when the value is blank after
    normalisation or not a valid IP for an ``ip`` entry.
    """
    stored = normalize_entry(block_type, value)
    if not stored:
        raise ValidationError("Block value must not be empty")
    if await _get_entry(db, block_type, stored) is not None:
        raise BlocklistError(f"{block_type} {stored} is already blocked")

    entry = BlockEntry(type=block_type, value=stored, note=note, created_by=created_by)
    db.add(entry)
    await db.flush()
    logger.info("Blocklist entry added type=%s value=%s by=%s", block_type, stored, created_by)
    return entry


async def remove_entry(db: AsyncSession, block_type: str, value: str) -> bool:
    """Delete a block; False when it did not exist."""
    entry = await _get_entry(db, block_type, normalize_entry(block_type, value))
    if entry is None:
        return False
    await db.delete(entry)
    await db.flush()
    logger.info("Blocklist entry removed type=%s value=%s", block_type, entry.value)
    return True


async def find_block(
    db: AsyncSession,
    phone: Optional[str] = None,
    ip: Optional[str] = None,
    device_id: Optional[str] = None,
) -> Optional[BlockEntry]:
    """
    First entry blocking any of the given identifiers, checked phone, then
    IP, then device.
    """
    if phone:
        values = lookup_values(phone)
        if values:
            result = await db.execute(
                select(BlockEntry)
                .where(and_(BlockEntry.type == "phone", BlockEntry.value.in_(list(values))))
                .limit(1)
            )
            entry = result.scalar_one_or_none()
            if entry is not None:
                return entry

    for block_type, value in (("ip", canonical_ip(ip)), ("device", (device_id or "").strip())):
        if value:
            entry = await _get_entry(db, block_type, value)
            if entry is not None:
                return entry
    return None


async def is_phone_blocked(db: AsyncSession, phone: str) -> bool:
    return await find_block(db, phone=phone) is not None


async def orders_for_entry(
    db: AsyncSession,
    block_type: str,
    value: str,
    limit: int = 50,
) -> List[Order]:
    """Orders placed from a blocked source, newest first."""
    stored = normalize_entry(block_type, value)
    if block_type == "phone":
        values = list(lookup_values(stored))
        if not values:
            return []
        condition = or_(Order.phone_key.in_(values), Order.billing_phone.in_(values))
    elif block_type == "ip":
        condition = Order.ip_address == stored
    else:
        condition = Order.device_id == stored

    result = await db.execute(
        select(Order).where(condition).order_by(Order.created_at.desc()).limit(limit)
    )
    return list(result.scalars())
