import asyncio
import inspect
import os
import tempfile

# The runtime reads settings on first use, so the environment is pinned before
# anything from learnity is imported.
_secrets_dir = tempfile.mkdtemp(prefix="learnity_test_")
os.environ.setdefault("SECRETS_DIR", _secrets_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "learnity-test-signing-key-not-for-production-use")
os.environ.setdefault("IDENTITY_PROVIDER", "local")
# No Redis: role cache and login rate limits stay per-process
os.environ["REDIS_URL"] = ""
os.environ.pop("MEMORY_STORE_PATH", None)

import pytest  # noqa: E402

from learnity.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from learnity.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    """Every test starts from an empty memory store and a fresh role cache."""
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def store():
    return MemoryStore()


def pytest_pyfunc_call(pyfuncitem):
    # async tests run on a private event loop; no plugin required
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: run the coroutine test with asyncio.run")
