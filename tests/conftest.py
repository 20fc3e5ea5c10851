from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


class FakeGateway:
    """Stands in for SessionGateway so route tests never open a backend connection."""

    def __init__(self) -> None:
        self.active_sessions: dict = {}
        self.events: list = []

    async def accept_connection(self, inbound) -> None:
        self.events.append(await inbound.receive())
        await inbound.close(1000, "done")


@pytest.fixture(scope="session")
def app():
    # Must be set before importing modules that read settings.
    os.environ["OPENAI_API_KEY"] = "test-key"
    os.environ.pop("PUBLIC_BASE_URL", None)

    import importlib

    for module_name in [
        "config.settings",
        "api.dependencies",
        "api.routes",
        "api.twilio_routes",
        "main",
    ]:
        sys.modules.pop(module_name, None)

    main = importlib.import_module("main")
    return main.app


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def client(app, gateway):
    import api.dependencies as deps

    app.dependency_overrides[deps.get_gateway] = lambda: gateway

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
