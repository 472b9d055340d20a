from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Optional

from tradegate.storage.models import Identity


def is_locked(identity: Identity, now: datetime) -> bool:
    """True while ``locked_until`` lies in the future.

    An elapsed lock reads as unlocked here; callers clear the stored state
    with ``reset_failed_attempts`` before counting new attempts.
    """
    return identity.locked_until is not None and now < identity.locked_until


def lock_has_elapsed(identity: Identity, now: datetime) -> bool:
    return identity.locked_until is not None and now >= identity.locked_until


def minutes_remaining(identity: Identity, now: datetime) -> int:
    if not is_locked(identity, now):
        return 0
    return max(1, math.ceil((identity.locked_until - now).total_seconds() / 60))


def lock_deadline(lockout_minutes: int, now: Optional[datetime] = None) -> datetime:
    return (now or datetime.now(timezone.utc)) + timedelta(minutes=lockout_minutes)
