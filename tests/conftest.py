import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Ensure project root is importable
ROOT = os.path.dirname(os.path.dirname(__file__))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

# Also add the inner `src` directory to support imports like `import alertgov`
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch, tmp_path):
    # Keep tests independent of the developer's config and database
    monkeypatch.setenv("ALERTGOV_CONFIG", str(tmp_path / "missing.yaml"))
    for name in ("ALERTGOV_DB_URL", "ALERTGOV_AUDIT_PATH", "ALERTGOV_ALLOW_SUPPRESS_CRITICAL"):
        monkeypatch.delenv(name, raising=False)
    yield
