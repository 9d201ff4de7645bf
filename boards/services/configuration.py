"""
Runtime configuration for the sync engine.

Values live as JSON in the `configurations` table and are read from an
in-memory snapshot; keys missing from the table fall back to the seeded
defaults. Every write is recorded in the audit log.
"""

import json
import logging
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select

from boards.database.models import AuditLog, Configuration
from boards.services.base import BaseService

logger = logging.getLogger(__name__)

_MISSING = object()


class ConfigurationService(BaseService):
    """DB-backed tunables with a cached snapshot, defaults and an audit trail."""

    def __init__(self, session_factory, defaults: Optional[Dict[str, Any]] = None):
        super().__init__(session_factory)
        self._defaults: Dict[str, Any] = dict(defaults or {})
        self._values: Dict[str, Any] = {}

    @staticmethod
    def _decode(key: str, raw: Optional[str]) -> Tuple[bool, Any]:
        if raw is None:
            return True, None
        try:
            return True, json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Configuration key '{key}' holds invalid JSON, ignoring it")
            return False, None

    async def load_all(self) -> int:
        """Replace the snapshot with what is stored. Returns the number of stored keys."""
        async with self.get_session() as session:
            rows = (await session.execute(select(Configuration))).scalars().all()

        values = {}
        for row in rows:
            ok, value = self._decode(row.key, row.value)
            if ok:
                values[row.key] = value
        self._values = values
        logger.info(f"Loaded {len(values)} stored configuration values ({len(self._defaults)} defaults)")
        return len(values)

    def get(self, key: str, default: Any = None) -> Any:
        """Stored value, else the seeded default, else `default`."""
        value = self._values.get(key, _MISSING)
        if value is _MISSING:
            value = self._defaults.get(key, default)
        return value

    async def set(self, key: str, value: Any, user_id: int) -> Any:
        """
        Persist a value and audit the change. Returns the previous stored value
        (None if the key was only defaulted).
        """
        encoded = json.dumps(value)
        async with self.get_session() as session:
            row = await session.get(Configuration, key)
            if row is None:
                previous = None
                session.add(Configuration(key=key, value=encoded))
            else:
                ok, previous = self._decode(key, row.value)
                if not ok:
                    previous = {"invalid_json": row.value}
                row.value = encoded

            session.add(AuditLog(
                user_id=user_id,
                action='config_set',
                details=json.dumps({'key': key, 'old_value': previous, 'new_value': value})
            ))

        self._values[key] = value
        logger.info(f"Configuration '{key}' set to {encoded} by user {user_id}")
        return previous

    def list_all(self) -> Dict[str, Any]:
        """Defaults overlaid with stored values."""
        return {**self._defaults, **self._values}

    def get_by_category(self, category: str) -> Dict[str, Any]:
        """Values under one prefix, e.g. 'sync' or 'points', keyed without the prefix."""
        prefix = f"{category}."
        return {
            key[len(prefix):]: value
            for key, value in self.list_all().items()
            if key.startswith(prefix)
        }
