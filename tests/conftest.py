import base64
import io
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from analysis_policy import normalize_analysis
from main import app, get_analyzer, get_chat_streamer, get_store_factory, get_turnstile_verifier
from records_store import RecordsError


ALICE_TOKEN = "token-alice"
BOB_TOKEN = "token-bob"


# ------------------------------------------------
# in-memory Supabase
# ------------------------------------------------
class FakeDB:
    def __init__(self):
        self.users = {
            ALICE_TOKEN: {"id": "user-alice", "email": "alice@example.com"},
            BOB_TOKEN: {"id": "user-bob", "email": "bob@example.com"},
        }
        self.pets: List[Dict[str, Any]] = []
        self.scans: List[Dict[str, Any]] = []
        self.credits: Dict[str, Dict[str, Any]] = {}
        self.deduct_fails = False
        self.deduct_calls = 0

    def set_credits(self, user_id: str, credits: int, expires_at: Optional[str] = None):
        self.credits[user_id] = {"credits": credits, "expires_at": expires_at}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _uuid_column(value):
    # Postgres rejects a non-uuid literal on a uuid column (22P02)
    try:
        uuid.UUID(str(value))
    except ValueError:
        raise RecordsError(f"invalid input syntax for type uuid: \"{value}\"")


class FakeStore:
    def __init__(self, db: FakeDB, access_token: str):
        self.db = db
        self.access_token = access_token

    def get_user(self):
        user = self.db.users.get(self.access_token)
        if not user:
            raise RecordsError("invalid JWT")
        return dict(user)

    def fetch_credit_row(self, user_id):
        row = self.db.credits.get(user_id)
        return dict(row) if row else None

    def deduct_credit(self, user_id):
        self.db.deduct_calls += 1
        if self.db.deduct_fails:
            raise RecordsError("rpc deduct_credit failed")
        row = self.db.credits.get(user_id)
        if not row or row["credits"] <= 0:
            return None
        row["credits"] -= 1
        return row["credits"]

    def insert_scan(self, row):
        saved = {**row, "id": str(uuid.uuid4()), "created_at": _now()}
        self.db.scans.append(saved)
        return dict(saved)

    def delete_scan(self, user_id, scan_id):
        _uuid_column(scan_id)
        before = len(self.db.scans)
        self.db.scans = [s for s in self.db.scans if not (s["id"] == scan_id and s["user_id"] == user_id)]
        return len(self.db.scans) < before

    def list_scans(self, user_id, pet_id=None):
        if pet_id is not None:
            _uuid_column(pet_id)
        rows = [s for s in self.db.scans if s["user_id"] == user_id and (pet_id is None or s["pet_id"] == pet_id)]
        return sorted(rows, key=lambda s: s["created_at"], reverse=True)

    def get_scan(self, user_id, scan_id):
        _uuid_column(scan_id)
        for s in self.db.scans:
            if s["id"] == scan_id and s["user_id"] == user_id:
                return dict(s)
        return None

    def list_pets(self, user_id):
        rows = [p for p in self.db.pets if p["user_id"] == user_id]
        return sorted(rows, key=lambda p: p["created_at"], reverse=True)

    def get_pet(self, user_id, pet_id):
        _uuid_column(pet_id)
        for p in self.db.pets:
            if p["id"] == pet_id and p["user_id"] == user_id:
                return dict(p)
        return None

    def insert_pet(self, row):
        saved = {**row, "id": str(uuid.uuid4()), "created_at": _now()}
        self.db.pets.append(saved)
        return dict(saved)

    def update_pet(self, user_id, pet_id, fields):
        _uuid_column(pet_id)
        for p in self.db.pets:
            if p["id"] == pet_id and p["user_id"] == user_id:
                p.update(fields)
                return dict(p)
        return None

    def delete_pet(self, user_id, pet_id):
        _uuid_column(pet_id)
        before = len(self.db.pets)
        self.db.pets = [p for p in self.db.pets if not (p["id"] == pet_id and p["user_id"] == user_id)]
        return len(self.db.pets) < before


# ------------------------------------------------
# Gemini / Turnstile stand-ins
# ------------------------------------------------
SAMPLE_ANALYSIS = {
    "severity": "Moderate",
    "title": "Mild gingivitis with tartar on upper molars",
    "observations": ["Red gum line above upper premolars", "Yellow tartar on molars"],
    "possibleCauses": ["Plaque accumulation", "Early periodontal disease"],
    "vetWillExamine": ["Gum pocket depth", "Tooth mobility"],
    "questionsToAsk": ["Is a dental cleaning under anesthesia needed?"],
    "urgency": "Within 2-4 weeks",
    "nextSteps": "Book a dental check and start daily brushing.",
    "financialForecast": "Cleaning now ($300) avoids extractions later ($1200+).",
    "disclaimer": "AI generated, not a diagnosis.",
}


class FakeAnalyzer:
    def __init__(self):
        self.calls: List[Any] = []
        self.error: Optional[Exception] = None

    def __call__(self, image_jpeg, category):
        self.calls.append((image_jpeg, category))
        if self.error is not None:
            raise self.error
        return normalize_analysis(SAMPLE_ANALYSIS)


class FakeTurnstile:
    GOOD_TOKEN = "turnstile-ok"

    def __init__(self):
        self.calls: List[Any] = []
        self.error: Optional[Exception] = None

    def __call__(self, token, remote_ip):
        self.calls.append((token, remote_ip))
        if self.error is not None:
            raise self.error
        return token == self.GOOD_TOKEN


class FakeChatStreamer:
    def __init__(self):
        self.chunks: List[str] = []
        self.error: Optional[Exception] = None
        self.calls: List[Any] = []
        # raised after all chunks were sent
        self.mid_stream_error: Optional[Exception] = None

    def __call__(self, history, message, image_jpeg, config):
        self.calls.append(
            {"history": history, "message": message, "image": image_jpeg, "config": config}
        )
        if self.error is not None:
            raise self.error
        return self._chunks()

    def _chunks(self):
        for c in self.chunks:
            yield SimpleNamespace(text=c)
        if self.mid_stream_error is not None:
            raise self.mid_stream_error


# ------------------------------------------------
# fixtures
# ------------------------------------------------
@pytest.fixture
def db():
    return FakeDB()


@pytest.fixture
def analyzer():
    return FakeAnalyzer()


@pytest.fixture
def turnstile():
    return FakeTurnstile()


@pytest.fixture
def chat_streamer():
    return FakeChatStreamer()


@pytest.fixture
def client(db, analyzer, turnstile, chat_streamer):
    app.dependency_overrides[get_store_factory] = lambda: (lambda token: FakeStore(db, token))
    app.dependency_overrides[get_analyzer] = lambda: analyzer
    app.dependency_overrides[get_turnstile_verifier] = lambda: turnstile
    app.dependency_overrides[get_chat_streamer] = lambda: chat_streamer
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def alice_headers():
    return {"Authorization": f"Bearer {ALICE_TOKEN}"}


@pytest.fixture
def bob_headers():
    return {"Authorization": f"Bearer {BOB_TOKEN}"}


def make_image_b64(size=(64, 48), color=(200, 120, 90), fmt="PNG") -> str:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format=fmt)
    return base64.b64encode(buf.getvalue()).decode("ascii")


@pytest.fixture
def image_b64():
    return make_image_b64()
