"""pytest configuration for Courier tests."""

import pytest

from courier.auth import authenticate, create_operator, create_token
from courier.db import get_db, init_db, set_db_path
from courier.hub import CourierHub, set_hub


# Configure asyncio mode for pytest-asyncio
def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


@pytest.fixture(autouse=True)
def _no_seed_env(monkeypatch):
    monkeypatch.delenv("COURIER_ADMIN_USER", raising=False)
    monkeypatch.delenv("COURIER_ADMIN_PASSWORD", raising=False)


@pytest.fixture()
def db_path(tmp_path):
    path = tmp_path / "test.db"
    set_db_path(path)
    init_db(path)
    return path


@pytest.fixture()
def hub(db_path):
    """A fresh hub with a short grace interval, installed as the process hub."""
    instance = CourierHub(grace_seconds=0.05, resync_seconds=0.05)
    set_hub(instance)
    yield instance
    set_hub(None)


@pytest.fixture()
def operator_credentials(hub):
    """An operator account created the way the CLI creates one."""
    credentials = ("admin", "correct-horse-1")
    create_operator(get_db(), *credentials)
    return credentials


@pytest.fixture()
def auth_header(operator_credentials):
    user = authenticate(get_db(), *operator_credentials)
    token = create_token(user["id"], user["username"])
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def package_dir(tmp_path):
    """A small package folder on disk."""
    folder = tmp_path / "content" / "starter"
    (folder / "media").mkdir(parents=True)
    (folder / "manifest.json").write_text('{"title": "Starter"}')
    (folder / "media" / "intro.txt").write_text("hello " * 200)
    return folder


class FakeSocket:
    """Records JSON messages sent to it, optionally failing every write."""

    def __init__(self, fail: bool = False):
        self.sent: list[dict] = []
        self.fail = fail

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(message)

    def of_type(self, msg_type: str) -> list[dict]:
        return [m for m in self.sent if m.get("type") == msg_type]


@pytest.fixture()
def fake_socket():
    return FakeSocket
