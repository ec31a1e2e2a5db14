from __future__ import annotations

from pathlib import Path

import pytest

_SECURITY_TEST_FILES = {
    "test_key_installers.py",
    "test_ssh_bootstrap.py",
    "test_transport.py",
}


@pytest.hookimpl(trylast=True)
def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    del config
    for item in items:
        path = Path(str(getattr(item, "path", item.fspath)))
        name = path.name

        if "integration" in path.parts:
            item.add_marker(pytest.mark.integration)
            item.add_marker(pytest.mark.slow)

        if name in _SECURITY_TEST_FILES:
            item.add_marker(pytest.mark.security)


@pytest.fixture(autouse=True)
def _isolate_remote_host_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SESSIONDOCK_REMOTE_HOST", raising=False)
