import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

# Environment must be in place before anything imports campauth.config
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Counters stay in-process; the suite does not need a Redis server
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from campauth.config import Settings  # noqa: E402
from campauth.service.gate import AuthenticationGate  # noqa: E402
from campauth.service.passwords import PasswordVerifier  # noqa: E402
from campauth.service.keys import SigningKeyProvider  # noqa: E402
from campauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from campauth.service.tokens import TokenService  # noqa: E402
from campauth.service.two_factor import TwoFactorChallenge  # noqa: E402
from campauth.storage.counters import MemoryCounterStore  # noqa: E402
from campauth.storage.memory import MemoryStore  # noqa: E402

UNIT_SECRET = "unit-test-signing-secret-0123456789abcdef"


class FakeClock:
    """Shared clock for services (datetime) and counters (epoch seconds)."""

    def __init__(self, start=None):
        self.current = start or datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)

    def now(self):
        return self.current

    def time(self):
        return self.current.timestamp()

    def advance(self, seconds):
        self.current += timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def passwords():
    # Cheap parameters; production defaults are exercised by the HTTP tests
    return PasswordVerifier(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


@pytest.fixture
def make_services(clock, passwords):
    """Build an isolated service graph; keyword args override Settings fields.

    ``store_class`` and ``counters_class`` swap in subclasses of the memory
    backends.
    """

    def _build(store_class=MemoryStore, counters_class=MemoryCounterStore, **overrides):
        values = {"jwt_secret": UNIT_SECRET, "test_mode": True, "use_memory_store": True}
        values.update(overrides)
        settings = Settings(**values)
        store = store_class(mfa_encryption_key=settings.mfa_key_material())
        counters = counters_class(clock=clock.time)
        keys = SigningKeyProvider.from_settings(settings)
        tokens = TokenService(settings, keys, store, counters, clock=clock.now)
        two_factor = TwoFactorChallenge(
            settings, store, tokens, counters, clock=clock.time
        )
        gate = AuthenticationGate(
            settings, store, counters, tokens, two_factor, passwords=passwords
        )
        return SimpleNamespace(
            settings=settings,
            store=store,
            counters=counters,
            keys=keys,
            tokens=tokens,
            two_factor=two_factor,
            gate=gate,
            passwords=passwords,
            clock=clock,
        )

    return _build


@pytest.fixture
def services(make_services):
    return make_services()


@pytest.fixture
def make_account(passwords):
    def _create(store, email="a@x.com", password="Secret123!", **fields):
        fields.setdefault("email_verified", True)
        account = store.create_account(email, **fields)
        pwd_hash, algo = passwords.hash_password(password)
        store.save_password(account.id, pwd_hash, algo)
        return account

    return _create


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
