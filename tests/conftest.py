import asyncio
import inspect
import os
import tempfile

# Settings are read once per process, so these must precede any prismflow import
_TEST_ENV = {
    "SHARED_FS_ROOT": tempfile.mkdtemp(prefix="prismflow_test_"),
    "TEST_MODE": "true",
    "USE_MEMORY_STORE": "true",
    "ALLOW_REDIS_FALLBACK_DEV": "true",
    "JWT_SECRET": "prismflow-test-signing-key-not-for-production-use",
    "REDIS_URL": "",
    # TestClient speaks plain http
    "COOKIE_SECURE": "false",
    # Integration tests log in many times from the same client address
    "AUTH_RATE_LIMIT_PER_WINDOW": "1000",
}
for _name, _value in _TEST_ENV.items():
    os.environ.setdefault(_name, _value)

import pytest  # noqa: E402

from prismflow.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_runtime():
    """Every test starts from an empty memory store and freshly read settings."""
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: run the coroutine test on a fresh event loop")


def pytest_pyfunc_call(pyfuncitem):
    test_fn = pyfuncitem.obj
    if not inspect.iscoroutinefunction(test_fn):
        return None
    wanted = pyfuncitem._fixtureinfo.argnames
    kwargs = {name: value for name, value in pyfuncitem.funcargs.items() if name in wanted}
    asyncio.run(test_fn(**kwargs))
    return True
