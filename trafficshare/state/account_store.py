"""trafficshare/state/account_store.py — Redis-backed user point accounts.

One account per user, shared by every sampler of that user (foreground
WebSocket session, background Celery task, other devices):

    user:{user_id}                  HASH  points, last_point_time
    user:{user_id}:point_history    LIST  JSON {amount, reason, timestamp}

Counters are only ever changed with HINCRBY and history with RPUSH, so two
concurrent writers never lose an update.  grant_points() issues the
increment, the append and the cooldown stamp in one MULTI/EXEC block so
the balance and the audit trail cannot diverge.
"""
import json
import logging
from typing import Any, Dict, Optional

from trafficshare.models.schemas import PointHistoryEntry, UserAccount
from trafficshare.utils.time_utils import ms_to_iso8601

logger = logging.getLogger(__name__)

_COUNTER_FIELDS = ("points", "last_point_time")
_LIST_FIELDS = ("point_history",)


def _account_key(user_id: str) -> str:
    """Return the Redis key for the user's account hash."""
    return f"user:{user_id}"


def _history_key(user_id: str) -> str:
    """Return the Redis key for the user's point history list."""
    return f"user:{user_id}:point_history"


def _parse_history(raw_entries) -> list:
    entries = []
    for raw in raw_entries:
        try:
            entries.append(PointHistoryEntry.model_validate_json(raw))
        except ValueError as exc:
            logger.warning("Skipping unreadable point history entry: %s", exc)
    return entries


class AccountStore:
    """Remote document operations on user point accounts."""

    def __init__(self, client) -> None:
        self.client = client

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        """Return the account, or None if it has never been created."""
        data = self.client.hgetall(_account_key(user_id))
        if not data:
            return None
        history = _parse_history(self.client.lrange(_history_key(user_id), 0, -1))
        return UserAccount(
            user_id=user_id,
            points=int(data.get("points", 0)),
            point_history=history,
            last_point_time=int(data.get("last_point_time", 0)),
        )

    def get_last_point_time(self, user_id: str) -> Optional[int]:
        """Return the remote cooldown anchor, or None if the account has none."""
        raw = self.client.hget(_account_key(user_id), "last_point_time")
        return int(raw) if raw is not None else None

    def create_user(self, user_id: str, initial: Optional[UserAccount] = None) -> None:
        """Create the account hash; fields that already exist are left untouched."""
        initial = initial or UserAccount(user_id=user_id)
        pipe = self.client.pipeline(transaction=True)
        pipe.hsetnx(_account_key(user_id), "points", initial.points)
        pipe.hsetnx(_account_key(user_id), "last_point_time", initial.last_point_time)
        for entry in initial.point_history:
            pipe.rpush(_history_key(user_id), entry.model_dump_json())
        pipe.execute()
        logger.info("User account created: user=%s", user_id)

    def ensure_user(self, user_id: str) -> UserAccount:
        """Return the account, creating it or repairing missing fields first."""
        data = self.client.hgetall(_account_key(user_id))
        if not data:
            self.create_user(user_id)
        else:
            for name in _COUNTER_FIELDS:
                if name not in data:
                    self.client.hsetnx(_account_key(user_id), name, 0)
                    logger.info("Account field initialised: user=%s field=%s", user_id, name)
        return self.get_user(user_id)

    def atomic_increment(self, user_id: str, field: str, delta: int) -> int:
        """Atomically add delta to a counter field and return the new value."""
        if field not in _COUNTER_FIELDS:
            raise ValueError(f"{field} is not a counter field")
        return self.client.hincrby(_account_key(user_id), field, delta)

    def atomic_append(self, user_id: str, field: str, entry: Dict[str, Any]) -> None:
        """Atomically append an entry to a list field."""
        if field not in _LIST_FIELDS:
            raise ValueError(f"{field} is not a list field")
        self.client.rpush(_history_key(user_id), json.dumps(entry))

    def set_field(self, user_id: str, field: str, value: Any) -> None:
        """Overwrite a scalar field (last committed write wins)."""
        if field not in _COUNTER_FIELDS:
            raise ValueError(f"{field} is not a scalar field")
        self.client.hset(_account_key(user_id), field, value)

    def grant_points(self, user_id: str, amount: int, reason: str, now_ms: int) -> int:
        """Award points, record the audit entry and stamp the cooldown together.

        Raises redis.RedisError if the transaction does not commit.

        Returns:
            The new point balance.
        """
        entry = PointHistoryEntry(amount=amount, reason=reason, timestamp=ms_to_iso8601(now_ms))
        pipe = self.client.pipeline(transaction=True)
        pipe.hincrby(_account_key(user_id), "points", amount)
        pipe.rpush(_history_key(user_id), entry.model_dump_json())
        pipe.hset(_account_key(user_id), "last_point_time", now_ms)
        new_points, _, _ = pipe.execute()
        return int(new_points)
