import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Configure the environment before anything initializes settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="stepflow_test_")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WORKFLOW_TIMEOUT_MS", "20000")
os.environ.pop("MODEL_API_KEY", None)
os.environ.pop("SMTP_HOST", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from stepflow.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def scratch_dir() -> Path:
    path = Path(tempfile.mkdtemp(prefix="sandbox_", dir=_test_tmp_dir))
    return path


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
