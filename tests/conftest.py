import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before branchcore.config is first imported
os.environ.setdefault("SHARED_FS_ROOT", tempfile.mkdtemp(prefix="branchcore_test_"))
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Contention tests retry many times; sleeping between attempts only slows them down
os.environ.setdefault("SEQUENCE_RETRY_BACKOFF_MS", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from branchcore.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    """Run ``async def`` tests on a fresh event loop."""
    if not inspect.iscoroutinefunction(pyfuncitem.obj):
        return None
    argnames = pyfuncitem._fixtureinfo.argnames
    kwargs = {name: pyfuncitem.funcargs[name] for name in argnames if name in pyfuncitem.funcargs}
    asyncio.run(pyfuncitem.obj(**kwargs))
    return True
