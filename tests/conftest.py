import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="sundaykit_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("RESUME_MONITORS_ON_STARTUP", "false")
# Leases live in the memory store during tests
os.environ["REDIS_URL"] = ""
os.environ.setdefault("NORTHFLANK_API_TOKEN", "nf-test-token")
os.environ.setdefault("TEMPLATE_DATABASE_URL", "postgresql://template:pw@neon.example.com/sunday")
os.environ.setdefault("GOOGLE_OAUTH_CLIENT_ID", "google-client-id")
os.environ.setdefault("GOOGLE_OAUTH_CLIENT_SECRET", "google-client-secret")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sundaykit.service.runtime import reset_runtime_for_tests  # noqa: E402
from tests.fakes import (  # noqa: E402
    FakeClock,
    FakePlatform,
    FakeUserDatabase,
    FakeWorkspaceApi,
)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def workspace_api():
    return FakeWorkspaceApi()


@pytest.fixture
def user_db():
    return FakeUserDatabase()


@pytest.fixture
def runtime(platform, workspace_api, user_db, clock):
    """Runtime wired to in-process fakes and a virtual clock."""
    return reset_runtime_for_tests(
        platform=platform,
        workspace_api=workspace_api,
        user_db=user_db,
        sleep=clock.sleep,
        clock=clock,
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
