# presence.py - cache-backed online/away/offline tracking
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from errors import NotFoundError
from events import emit, user_status_changed
from extensions import db
from models import Profile, User

PRESENCE_STATUSES = ("online", "offline", "away")
DEFAULT_TTL_SECONDS = 300

# returned by store reads when the backend could not be reached
STORE_UNAVAILABLE = object()


def presence_key(user_id) -> str:
    return f"user_status_{user_id}"


def _utcnow_iso(clock):
    return clock().replace(microsecond=0).isoformat() + "Z"


class PresenceTracker:
    """Presence lives in a key-value store with expiry.

    A user is online exactly while ``user_status_{id}`` exists; clients keep it
    alive by calling ``heartbeat`` more often than the TTL. ``Profile.online_status``
    is only a mirror for listing queries: it is set on heartbeat and cleared
    lazily whenever a read finds the record gone. The store being unreachable
    reads as offline, never fails the caller and leaves the flags untouched.
    """

    def __init__(self, store, session, ttl_seconds=DEFAULT_TTL_SECONDS, clock=datetime.utcnow):
        self.store = store
        self.session = session
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    # ------------------------------------------------------------------
    # store access (STORE_UNAVAILABLE on backend errors)
    # ------------------------------------------------------------------
    def _read(self, user_id):
        try:
            record = self.store.get(presence_key(user_id))
        except Exception as e:
            current_app.logger.warning("[PRESENCE] store read failed for user %s: %s", user_id, e)
            return STORE_UNAVAILABLE
        return record if isinstance(record, dict) else None

    def _read_many(self, user_ids):
        if not user_ids:
            return []
        try:
            records = self.store.get_many(*[presence_key(uid) for uid in user_ids])
        except Exception as e:
            current_app.logger.warning("[PRESENCE] store bulk read failed: %s", e)
            return STORE_UNAVAILABLE
        return [r if isinstance(r, dict) else None for r in records]

    def _write(self, record):
        try:
            ok = self.store.set(presence_key(record["user_id"]), record, timeout=self.ttl_seconds)
        except Exception as e:
            current_app.logger.warning("[PRESENCE] store write failed for user %s: %s", record["user_id"], e)
            return False
        if ok is False:
            current_app.logger.warning("[PRESENCE] store refused write for user %s", record["user_id"])
        return ok is not False

    # ------------------------------------------------------------------
    # profile flag mirror
    # ------------------------------------------------------------------
    def _set_flag(self, user_id, value):
        try:
            profile = self.session.query(Profile).filter(Profile.user_id == user_id).first()
            if profile is None or bool(profile.online_status) == value:
                return
            profile.online_status = value
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            current_app.logger.warning("[PRESENCE] could not update online flag for user %s: %s", user_id, e)

    def _clear_stale_flags(self, user_ids):
        if not user_ids:
            return
        try:
            stale = (
                self.session.query(Profile)
                .filter(Profile.online_status.is_(True), Profile.user_id.in_(list(user_ids)))
                .all()
            )
            if not stale:
                return
            for profile in stale:
                profile.online_status = False
            self.session.commit()
            current_app.logger.info("[PRESENCE] cleared %d stale online flag(s)", len(stale))
        except SQLAlchemyError as e:
            self.session.rollback()
            current_app.logger.warning("[PRESENCE] stale flag cleanup failed: %s", e)

    # ------------------------------------------------------------------
    # operations
    # ------------------------------------------------------------------
    def set_status(self, user_id, name, status):
        if status not in PRESENCE_STATUSES:
            raise ValueError(f"invalid presence status: {status!r}")
        record = {
            "user_id": user_id,
            "name": name,
            "status": status,
            "last_seen": _utcnow_iso(self.clock),
        }
        self._write(record)
        emit(user_status_changed, sender="presence", **record)
        return record

    def heartbeat(self, user_id, name):
        record = self.set_status(user_id, name, "online")
        self._set_flag(user_id, True)
        return record

    def get_status(self, user_id):
        user = self.session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found.")
        offline = {"user_id": user.id, "name": user.name, "status": "offline", "last_seen": None}
        record = self._read(user_id)
        if record is STORE_UNAVAILABLE:
            return offline
        if record is not None:
            return record
        self._clear_stale_flags([user_id])
        return offline

    def list_online(self):
        user_ids = [row.id for row in self.session.query(User.id).order_by(User.id.asc())]
        records = self._read_many(user_ids)
        if records is STORE_UNAVAILABLE:
            return []
        online = [r for r in records if r is not None]
        live = {r["user_id"] for r in online}
        self._clear_stale_flags([uid for uid in user_ids if uid not in live])
        return online

    def verify_online(self, profiles):
        """Keep only profiles with a live record; clear the flag on the others."""
        profiles = list(profiles)
        records = self._read_many([p.user_id for p in profiles])
        if records is STORE_UNAVAILABLE:
            return []
        verified, stale = [], []
        for profile, record in zip(profiles, records):
            (verified if record is not None else stale).append(profile)
        self._clear_stale_flags([p.user_id for p in stale])
        return verified

    def forget(self, user_id):
        """Drop the online flag on logout; any cached record simply expires."""
        self._set_flag(user_id, False)


def get_presence_tracker():
    return PresenceTracker(
        store=current_app.extensions["presence_store"],
        session=db.session,
        ttl_seconds=current_app.config.get("PRESENCE_TTL_SECONDS", DEFAULT_TTL_SECONDS),
    )
