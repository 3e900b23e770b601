import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture(autouse=True)
def _isolate_process_state(monkeypatch, tmp_path):
    """Fresh ledger singleton and notification buffer per test; files under tmp_path."""
    from src.assistant_sync.infrastructure import ledger
    from src.assistant_sync.services import notifications

    monkeypatch.setenv("ASSISTANT_LEDGER_FILE", str(tmp_path / "ledger.json"))
    ledger.reset_ledger()
    notifications.clear_notifications()
    yield
    ledger.reset_ledger()
    notifications.clear_notifications()


@pytest.fixture
def scope():
    from src.assistant_sync.domain.chat_models import TenantScope

    return TenantScope(tenant_id="tenant-1", user_id="user-1", user_email="pm@example.com")
