import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before anything reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("WORKER_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")
# Live sessions and jobs stay in memory so TestClient's per-request event loops
# never share a Redis connection pool
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sessionguard.config import SessionPolicy  # noqa: E402
from sessionguard.service.jobs import JobScheduler  # noqa: E402
from sessionguard.service.passwords import CredentialVerifier  # noqa: E402
from sessionguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from sessionguard.service.sessions import SessionEngine  # noqa: E402
from sessionguard.service.tokens import TokenCodec  # noqa: E402
from sessionguard.service.worker import ReconciliationWorker  # noqa: E402
from sessionguard.storage.memory import (  # noqa: E402
    MemoryJobQueue,
    MemorySessionCache,
    MemoryStore,
)

ALICE_PASSWORD = "Correct-Horse-Battery-9"


class FakeClock:
    """Manually advanced UTC clock shared by the engine, cache and queue."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def cache(clock):
    return MemorySessionCache(clock=clock)


@pytest.fixture
def queue():
    return MemoryJobQueue(lease_seconds=30)


@pytest.fixture
def scheduler(queue, clock):
    return JobScheduler(queue, clock=clock)


@pytest.fixture
def verifier():
    # Cheap parameters keep hashing fast in tests
    return CredentialVerifier(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


@pytest.fixture
def codec():
    return TokenCodec(
        "unit-test-secret", issuer="sessionguard", audience="sessionguard-clients"
    )


@pytest.fixture
def policy():
    return SessionPolicy(session_ttl=timedelta(hours=1), max_sessions_per_user=2)


@pytest.fixture
def engine(memory_store, cache, scheduler, verifier, codec, policy, clock):
    return SessionEngine(
        memory_store, cache, scheduler, verifier, codec, policy, clock=clock
    )


@pytest.fixture
def worker(engine, scheduler, clock):
    return ReconciliationWorker(
        engine,
        scheduler,
        poll_interval=0.01,
        batch_size=10,
        concurrency=4,
        max_retries=3,
        retry_delay=5,
        clock=clock,
    )


@pytest.fixture
def alice_password():
    return ALICE_PASSWORD


@pytest.fixture
def alice(memory_store, verifier):
    pwd_hash, algo = verifier.hash(ALICE_PASSWORD)
    return memory_store.create_user("alice", pwd_hash, password_algo=algo)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


@pytest.fixture
def unbound_token(codec):
    """Factory for signed tokens that carry no session claim."""

    def _make(user_id, ttl=timedelta(minutes=5)):
        now = int(datetime.now(timezone.utc).timestamp())
        return codec._encode(
            {
                "iss": codec.issuer,
                "aud": codec.audience,
                "sub": user_id,
                "iat": now,
                "exp": now + int(ttl.total_seconds()),
            }
        )

    return _make
