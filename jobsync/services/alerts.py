"""
Alert gating for delivered notifications.
Respects the user's push preference and quiet hours.
"""
import uuid
from datetime import datetime, time
from typing import Callable, Optional, Dict

import pytz
import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import NotificationPreference


log = structlog.get_logger(__name__)


def is_quiet_hours(quiet_hours: Optional[Dict], timezone_str: Optional[str] = None, now: Optional[datetime] = None) -> bool:
    """
    Check if the given moment falls inside a user's quiet hours.

    Args:
        quiet_hours: {"start": "22:00", "end": "07:00", "timezone": "America/Vancouver"}
        timezone_str: Fallback timezone when the preference has none
        now: Moment to check (aware datetime); defaults to the current time

    Returns:
        True if within quiet hours
    """
    if not quiet_hours or not quiet_hours.get("start") or not quiet_hours.get("end"):
        return False

    try:
        tz = pytz.timezone(quiet_hours.get("timezone") or timezone_str or settings.tz_default)
        local = now.astimezone(tz) if now is not None else datetime.now(tz)
        current_time = local.time()

        start_time = time.fromisoformat(quiet_hours["start"])
        end_time = time.fromisoformat(quiet_hours["end"])
    except (pytz.UnknownTimeZoneError, ValueError) as exc:
        log.warning("invalid_quiet_hours", quiet_hours=quiet_hours, error=str(exc))
        return False

    # Handle quiet hours that span midnight
    if start_time <= end_time:
        return start_time <= current_time <= end_time
    return current_time >= start_time or current_time <= end_time


def should_alert(db: Session, user_id: uuid.UUID, now: Optional[datetime] = None) -> bool:
    """
    Decide whether a record delivered to `user_id` should also raise an
    in-app/OS alert. The ledger record itself is never affected.
    """
    if not settings.enable_push:
        return False

    pref = db.query(NotificationPreference).filter(NotificationPreference.user_id == user_id).first()
    if pref is None:
        return True
    if not pref.push:
        return False
    return not is_quiet_hours(pref.quiet_hours, now=now)


def make_alert_policy(session_factory) -> Callable[[uuid.UUID], bool]:
    """Bind `should_alert` to a session factory for use by the fan-out bus."""

    def _policy(user_id: uuid.UUID) -> bool:
        db = session_factory()
        try:
            return should_alert(db, user_id)
        finally:
            db.close()

    return _policy
