"""Shared fixtures: isolated config, a logged-in project and a fake HTTP transport"""
import json
import os
from unittest.mock import Mock

import pytest
import requests

from sfsync import config as config_module
from sfsync.config import SyncConfig
from sfsync.models import Session
from sfsync.services.projects import ProjectRegistry
from sfsync.services.session import SessionStore

INSTANCE_URL = "https://na1.my.salesforce.com"


class FakeResponse:
    """The parts of requests.Response the clients read"""

    def __init__(self, status_code=200, body=None, text=None):
        if text is None:
            text = json.dumps(body) if body is not None else ""
        self.status_code = status_code
        self.text = text
        self.content = text.encode("utf-8")
        self.reason = "OK" if status_code < 400 else "Error"

    def json(self):
        return json.loads(self.text)

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} {self.reason}")


@pytest.fixture(autouse=True)
def sync_config(tmp_path, monkeypatch):
    config = SyncConfig(
        home_dir=str(tmp_path / "home"),
        workspace=str(tmp_path / "workspace"),
        deploy_poll_interval_seconds=0,
        retry_backoff_seconds=0,
    )
    monkeypatch.setattr(config_module, "_config", config)
    return config


@pytest.fixture
def make_response():
    return FakeResponse


@pytest.fixture
def registry(sync_config):
    return ProjectRegistry()


@pytest.fixture
def store(registry):
    return SessionStore(registry)


@pytest.fixture
def session(store):
    return store.set_session(Session(
        session_id="00D!old",
        instance_url=INSTANCE_URL,
        api_version=46,
        refresh_token="5Aep-refresh",
        user_id="005000000000001",
        project_name="demo",
    ))


@pytest.fixture
def http():
    return Mock()


@pytest.fixture
def project_src(registry):
    """``<workspace>/demo/src``"""
    path = os.path.join(registry.get_project_path("demo"), "src")
    os.makedirs(path, exist_ok=True)
    return path


@pytest.fixture
def write_file():
    def _write(path, content=""):
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)
        return path

    return _write
