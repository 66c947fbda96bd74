"""Shared fixtures for the test modules: app on in-memory SQLite, manual-clock presence store."""
import unittest
from datetime import datetime, timedelta

from app import create_app
from auth import create_user, issue_token
from extensions import db
from models import Therapist


class ManualClockCache:
    """Minimal Flask-Caching style store whose expiry follows ``advance()``."""

    def __init__(self):
        self.now = 0.0
        self._data = {}

    def advance(self, seconds):
        self.now += seconds

    def set(self, key, value, timeout=None):
        expires = self.now + timeout if timeout else None
        self._data[key] = (expires, value)
        return True

    def get(self, key):
        item = self._data.get(key)
        if item is None:
            return None
        expires, value = item
        if expires is not None and expires <= self.now:
            del self._data[key]
            return None
        return value

    def get_many(self, *keys):
        return [self.get(k) for k in keys]

    def delete(self, key):
        return self._data.pop(key, None) is not None


class UnreachableCache:
    """Store whose backend is down."""

    def _fail(self, *args, **kwargs):
        raise ConnectionError("cache backend unreachable")

    get = set = get_many = delete = _fail


def at(hour, minute=0, day=None):
    """A naive UTC datetime on a fixed future day."""
    day = day or (datetime.utcnow() + timedelta(days=7)).date()
    return datetime(day.year, day.month, day.day, hour, minute)


class PeerlyTestCase(unittest.TestCase):
    def setUp(self):
        self.app = create_app({
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "SQLALCHEMY_DATABASE_URI": "sqlite://",
            "CACHE_TYPE": "SimpleCache",
            "PERPLEXITY_API_KEY": "test-key",
            "AI_CHAT_URL": "https://ai.example.test/chat/completions",
            "AI_CHAT_MODEL": "sonar",
            "AI_CHAT_TIMEOUT": 30,
        })
        self.store = ManualClockCache()
        self.app.extensions["presence_store"] = self.store
        with self.app.app_context():
            db.create_all()
        self.client = self.app.test_client()

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()

    # ------------------------------------------------------------------
    def make_user(self, name="Alice", email=None, admin=False):
        """Return ``(user_id, bearer_token)``."""
        with self.app.app_context():
            user = create_user(name, email or f"{name.lower()}@example.com", "password123", is_admin=admin)
            return user.id, issue_token(user)

    def make_therapist(self, name="Dr. Rivera", email=None, specialty="Anxiety"):
        with self.app.app_context():
            therapist = Therapist(
                name=name,
                phone_number="+1 555 0100",
                email=email or f"{name.split()[-1].lower()}@clinic.example",
                specialty=specialty,
                bio="Licensed therapist.",
            )
            db.session.add(therapist)
            db.session.commit()
            return therapist.id

    @staticmethod
    def auth(token):
        return {"Authorization": f"Bearer {token}"}
