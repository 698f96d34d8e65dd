import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tenantguard_test_")
os.environ.setdefault("SECRET_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL keeps the runtime on the in-process cache
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tenantguard.config import Settings  # noqa: E402
from tenantguard.service.auth import AuthService  # noqa: E402
from tenantguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from tenantguard.storage.memory import MemoryStore  # noqa: E402
from tenantguard.storage.models import DataScope  # noqa: E402
from tenantguard.storage.redis_cache import MemoryCache  # noqa: E402

TENANT = "T1"
PASSWORD = "Correct-Horse-Battery-9"


class FakeClock:
    """Manually advanced clock shared by the cache and the token issuer."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        session_ttl_minutes=30,
        token_ttl_minutes=60,
        store_timeout_seconds=1.0,
    )


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def store():
    """Tenant T1 with a small department tree and one role per data scope.

    Departments: 100 -> 101 -> 102, and a separate root 200.
    """

    store = MemoryStore()
    store.add_department(100, tenant_id=TENANT, parent_id=0, ancestors="0")
    store.add_department(101, tenant_id=TENANT, parent_id=100, ancestors="0,100")
    store.add_department(102, tenant_id=TENANT, parent_id=101, ancestors="0,100,101")
    store.add_department(200, tenant_id=TENANT, parent_id=0, ancestors="0")

    store.add_resource(10, "system:user:list")
    store.add_resource(11, "system:user:edit")
    store.add_resource(12, "")
    store.add_resource(13, None)
    store.add_resource(14, "system:role:list")

    store.add_role(1, "superadmin", tenant_id=TENANT, data_scope=DataScope.ALL)
    store.add_role(
        2, "dept_manager", tenant_id=TENANT, data_scope=DataScope.DEPT_AND_CHILD,
        resource_ids=[10, 11, 12],
    )
    store.add_role(
        3, "auditor", tenant_id=TENANT, data_scope=DataScope.CUSTOM,
        resource_ids=[10, 14], dept_ids=[200],
    )
    store.add_role(4, "member", tenant_id=TENANT, data_scope=DataScope.SELF, resource_ids=[13])
    store.add_role(5, "clerk", tenant_id=TENANT, data_scope=DataScope.DEPT, resource_ids=[10])
    store.add_role(6, "viewer", tenant_id=TENANT, data_scope=DataScope.ALL, resource_ids=[10])
    return store


@pytest.fixture
def auth_service(store, cache, settings, clock):
    return AuthService(store, cache, settings, clock=clock)


@pytest.fixture
def password_hash(auth_service):
    return auth_service.hash_password(PASSWORD)


@pytest.fixture
def alice(store, password_hash):
    """Department manager of 100 in tenant T1."""
    return store.add_principal(
        7, "alice", tenant_id=TENANT, password_hash=password_hash, dept_id=100, role_ids=[2]
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
