import asyncio
import inspect
import os
import sys
from datetime import timedelta
from pathlib import Path

# Configure the environment before any tenantauth import reads it
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ACCESS_TOKEN_SECRET", "test-access-secret-for-testing-only")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "test-refresh-secret-for-testing-only")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tenantauth.config import Settings, reset_settings_cache  # noqa: E402
from tenantauth.service.audit import AuditLogger  # noqa: E402
from tenantauth.service.auth import AuthService  # noqa: E402
from tenantauth.service.email import EmailService  # noqa: E402
from tenantauth.service.email_queue import EmailQueue  # noqa: E402
from tenantauth.service.metrics import AuthMetrics  # noqa: E402
from tenantauth.service.oauth.common import ProviderTokenCipher  # noqa: E402
from tenantauth.service.tokens import TokenService  # noqa: E402
from tenantauth.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def token_service():
    return TokenService(
        "unit-access-secret",
        "unit-refresh-secret",
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=30),
    )


@pytest.fixture
def metrics():
    return AuthMetrics()


@pytest.fixture
def email_queue():
    return EmailQueue(EmailService(), max_attempts=3, retry_base_seconds=0)


@pytest.fixture
def auth_service(memory_store, token_service, metrics, email_queue):
    return AuthService(
        memory_store,
        token_service,
        audit=AuditLogger(memory_store),
        email_queue=email_queue,
        metrics=metrics,
        cipher=ProviderTokenCipher("unit-provider-token-key"),
    )


@pytest.fixture
def settings():
    return Settings(
        use_memory_store=True,
        test_mode=True,
        access_token_secret="api-access-secret",
        refresh_token_secret="api-refresh-secret",
        login_rate_limit=1000,
        register_rate_limit=1000,
        password_reset_rate_limit=1000,
        email_verify_rate_limit=1000,
        email_retry_base_seconds=0,
    )


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
