"""
Settings Service

Provides access to configuration persisted in the system_config table.
Values are stored JSON-encoded; last write wins.
"""

import json
import logging
from typing import Any, Dict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tradingcore.models import SystemConfig

logger = logging.getLogger(__name__)


async def get_config_value(db: AsyncSession, key: str, default: Any = None) -> Any:
    """Get a decoded config value, or default when missing or unreadable."""
    query = select(SystemConfig).where(SystemConfig.key == key)
    result = await db.execute(query)
    row = result.scalars().first()

    if row and row.value is not None:
        try:
            return json.loads(row.value)
        except json.JSONDecodeError:
            logger.warning(f"Ignoring unreadable config value for {key}")

    return default


async def get_config_values(db: AsyncSession, prefix: str) -> Dict[str, Any]:
    """All decoded config values whose key starts with prefix, keyed without the prefix."""
    query = select(SystemConfig).where(SystemConfig.key.startswith(prefix))
    result = await db.execute(query)

    values = {}
    for row in result.scalars().all():
        try:
            values[row.key[len(prefix):]] = json.loads(row.value)
        except (TypeError, json.JSONDecodeError):
            logger.warning(f"Ignoring unreadable config value for {row.key}")
    return values


async def set_config_value(db: AsyncSession, key: str, value: Any, description: str = None):
    """Insert or update a config value. Caller commits."""
    query = select(SystemConfig).where(SystemConfig.key == key)
    result = await db.execute(query)
    row = result.scalars().first()

    encoded = json.dumps(value)
    if row:
        row.value = encoded
        if description:
            row.description = description
    else:
        db.add(SystemConfig(key=key, value=encoded, description=description))
