"""
Settings providers - key/value configuration read by the backup subsystem.

The executor, scheduler and reapers receive a settings provider instead of
querying the settings table themselves, so they can run against
InMemorySettings in tests.
"""

import logging
from datetime import datetime
from typing import Optional

logger = logging.getLogger(__name__)

SCHEDULE_KEY = 'backup_schedule'
RETENTION_DAYS_KEY = 'backup_retention_days'

SCHEDULE_CHOICES = ('manual', 'daily', 'weekly')
DEFAULT_SCHEDULE = 'manual'
DEFAULT_RETENTION_DAYS = 30


class InMemorySettings:
    """Settings held in a plain dict."""

    def __init__(self, values: Optional[dict] = None):
        self._values = dict(values or {})

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self._values.get(key, default)

    def set(self, key: str, value) -> None:
        self._values[key] = str(value)


class DatabaseSettings:
    """Settings stored in the shared app_settings table."""

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        from backvault import db
        from backvault.models import AppSetting

        setting = db.session.get(AppSetting, key)
        return setting.value if setting else default

    def set(self, key: str, value) -> None:
        from backvault import db
        from backvault.models import AppSetting

        setting = db.session.get(AppSetting, key)
        if setting:
            setting.value = str(value)
            setting.updated_at = datetime.utcnow()
        else:
            db.session.add(AppSetting(key=key, value=str(value)))
        db.session.commit()


def get_retention_days(settings) -> int:
    """Configured retention in days; falls back to the default on bad values."""
    raw = settings.get(RETENTION_DAYS_KEY)
    if raw is None or raw == '':
        return DEFAULT_RETENTION_DAYS

    try:
        days = int(raw)
    except (TypeError, ValueError):
        logger.warning(f"Invalid {RETENTION_DAYS_KEY} value {raw!r}, using {DEFAULT_RETENTION_DAYS}")
        return DEFAULT_RETENTION_DAYS

    if days < 0:
        logger.warning(f"Negative {RETENTION_DAYS_KEY} value {days}, using {DEFAULT_RETENTION_DAYS}")
        return DEFAULT_RETENTION_DAYS

    return days


def get_schedule(settings) -> str:
    schedule = settings.get(SCHEDULE_KEY) or DEFAULT_SCHEDULE
    if schedule not in SCHEDULE_CHOICES:
        logger.warning(f"Unknown {SCHEDULE_KEY} value {schedule!r}, treating as manual")
        return DEFAULT_SCHEDULE
    return schedule
