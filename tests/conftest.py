import os
import time
from contextlib import redirect_stderr, redirect_stdout
from io import StringIO
from pathlib import Path

import jwt
import pytest
from alembic import command
from alembic.config import Config

# Settings objects are built at import time, so the environment comes first
os.environ.setdefault("DATABASE_URL", "sqlite:////tmp/quickcalories_test.db")
os.environ.setdefault("OPENAI_API_KEY", "test")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("USAGE_STORE", "memory")

from fastapi.testclient import TestClient  # noqa: E402

from app import dependencies  # noqa: E402
from app.config import Settings  # noqa: E402
from app.db import SessionLocal, init_db  # noqa: E402
from app.main import app  # noqa: E402
from app.models import Estimate, Profile, Subscription  # noqa: E402

JWT_SECRET = os.environ["SUPABASE_JWT_SECRET"]


@pytest.fixture(scope="session", autouse=True)
def apply_migrations():
    """Apply Alembic migrations before running tests."""
    cfg_path = Path(__file__).resolve().parent.parent / "alembic.ini"
    config = Config(str(cfg_path))
    stdout_buf, stderr_buf = StringIO(), StringIO()
    try:
        with redirect_stdout(stdout_buf), redirect_stderr(stderr_buf):
            command.upgrade(config, "head")
    except Exception as exc:
        print("Alembic upgrade failed:", exc)
        print("stdout:\n", stdout_buf.getvalue())
        print("stderr:\n", stderr_buf.getvalue())
        raise
    init_db(Settings())


@pytest.fixture(scope="session", autouse=True)
def remove_test_db():
    """Remove temporary SQLite database after tests finish."""
    yield
    db_url = os.environ.get("DATABASE_URL")
    if db_url and db_url.startswith("sqlite:///"):
        db_path = Path(db_url.replace("sqlite:///", ""))
        if db_path.exists():
            db_path.unlink()


@pytest.fixture(scope="module")
def client(apply_migrations):
    """Yields a TestClient with lifespan events."""
    with TestClient(app) as client:
        yield client


@pytest.fixture(autouse=True)
def clean_state(apply_migrations):
    """Fresh usage ledger and empty tables for every test."""
    dependencies.reset_gate()
    yield
    dependencies.reset_gate()
    with SessionLocal() as session:
        session.query(Estimate).delete()
        session.query(Subscription).delete()
        session.query(Profile).delete()
        session.commit()


def make_token(
    user_id: str,
    email: str | None = None,
    audience: str = "authenticated",
    secret: str = JWT_SECRET,
    ttl: int = 3600,
) -> str:
    payload = {"sub": user_id, "aud": audience, "exp": int(time.time()) + ttl}
    if email:
        payload["email"] = email
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def auth_headers():
    def _headers(user_id: str = "user-1", **kwargs) -> dict[str, str]:
        return {"Authorization": f"Bearer {make_token(user_id, **kwargs)}"}

    return _headers


@pytest.fixture
def fake_redis():
    class _Pipe:
        def __init__(self, redis):
            self.redis = redis
            self.ops = []

        def hset(self, key, mapping):
            self.ops.append(("hset", key, mapping))
            return self

        def hsetnx(self, key, field, value):
            self.ops.append(("hsetnx", key, field, value))
            return self

        def hincrby(self, key, field, amount):
            self.ops.append(("hincrby", key, field, amount))
            return self

        def expireat(self, key, when):
            self.ops.append(("expireat", key, when))
            return self

        async def execute(self):
            results = []
            for op in self.ops:
                if op[0] == "hset":
                    _, key, mapping = op
                    self.redis.hashes.setdefault(key, {}).update(
                        {k: str(v) for k, v in mapping.items()}
                    )
                    results.append(len(mapping))
                elif op[0] == "hsetnx":
                    _, key, field, value = op
                    bucket = self.redis.hashes.setdefault(key, {})
                    created = field not in bucket
                    bucket.setdefault(field, str(value))
                    results.append(int(created))
                elif op[0] == "hincrby":
                    _, key, field, amount = op
                    bucket = self.redis.hashes.setdefault(key, {})
                    bucket[field] = str(int(bucket.get(field, 0)) + amount)
                    results.append(int(bucket[field]))
                else:
                    self.redis.expiry[op[1]] = op[2]
                    results.append(True)
            self.ops.clear()
            return results

    class _Redis:
        def __init__(self):
            self.hashes = {}
            self.expiry = {}

        async def hgetall(self, key):
            return dict(self.hashes.get(key, {}))

        def pipeline(self):
            return _Pipe(self)

    return _Redis()
