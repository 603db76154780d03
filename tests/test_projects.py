"""Tests for the project registry, session store and authorization"""
import json
import os
from unittest.mock import Mock

import pytest
from simple_salesforce.exceptions import SalesforceAuthenticationFailed

from sfsync.exceptions import AuthenticationError, ProjectNotFoundError, SessionNotFoundError
from sfsync.models import Session
from sfsync.services import auth
from sfsync.services.auth import authorize_default_project, login_with_password, parse_id_url, refresh_session
from sfsync.utils.validators import ValidationError


class TestProjectRegistry:

    def test_missing_config_has_no_default(self, registry):
        with pytest.raises(ProjectNotFoundError):
            registry.get_default_project()

    def test_only_one_default(self, registry):
        registry.set_default_project("alpha")
        registry.set_default_project("beta")

        assert registry.get_projects() == {"alpha": False, "beta": True}
        assert registry.get_default_project() == "beta"

    def test_no_flagged_project(self, registry):
        os.makedirs(registry.home_dir)
        with open(registry.config_file, "w", encoding="utf-8") as f:
            json.dump({"alpha": False}, f)

        with pytest.raises(ProjectNotFoundError):
            registry.get_default_project()

    def test_malformed_config(self, registry):
        os.makedirs(registry.home_dir)
        with open(registry.config_file, "w", encoding="utf-8") as f:
            f.write("{not json")

        with pytest.raises(ProjectNotFoundError):
            registry.get_projects()

    def test_invalid_project_name(self, registry):
        with pytest.raises(ValidationError):
            registry.set_default_project("../escape")

    def test_project_path_is_created(self, registry, sync_config):
        path = registry.get_project_path("alpha")

        assert path == os.path.join(sync_config.workspace, "alpha")
        assert os.path.isdir(path)

    def test_remove_project_drops_session(self, registry, store, session):
        settings = registry.get_settings("demo")
        assert os.path.exists(settings.path_of("session.json"))

        registry.remove_project("demo")

        assert "demo" not in registry.get_projects()
        assert not os.path.exists(settings.settings_path)
        assert os.path.isdir(settings.project_path)

    def test_remove_unknown_project(self, registry):
        with pytest.raises(ProjectNotFoundError):
            registry.remove_project("ghost")


class TestProjectSettings:

    def test_malformed_cache_file_reads_as_default(self, registry):
        settings = registry.get_settings("demo")
        os.makedirs(settings.settings_path, exist_ok=True)
        with open(settings.path_of("globalDescribe.json"), "w", encoding="utf-8") as f:
            f.write("{")

        assert settings.get_config("globalDescribe.json", {}) == {}

    def test_nested_files_are_created(self, registry):
        settings = registry.get_settings("demo")

        settings.set_config_value(os.path.join("sobjects", "Account.json"), {"name": "Account"})

        assert settings.get_config(os.path.join("sobjects", "Account.json")) == {"name": "Account"}


class TestSessionStore:

    def test_session_is_persisted_with_camel_case_keys(self, registry, session):
        with open(registry.get_settings("demo").path_of("session.json"), encoding="utf-8") as f:
            data = json.load(f)

        assert data["sessionId"] == "00D!old"
        assert data["instanceUrl"] == "https://na1.my.salesforce.com"
        assert data["apiVersion"] == 46
        assert data["lastUpdatedTime"]

    def test_set_session_makes_project_default(self, registry, store, session):
        assert registry.get_default_project() == "demo"
        assert store.get_session().session_id == "00D!old"

    def test_set_session_replaces_wholesale(self, store, session):
        store.set_session(Session(session_id="00D!other", instance_url="https://cs1.salesforce.com",
                                  project_name="demo"))

        stored = store.get_session("demo")
        assert stored.session_id == "00D!other"
        assert stored.refresh_token is None

    def test_project_without_session(self, store, registry):
        registry.set_default_project("fresh")

        with pytest.raises(SessionNotFoundError):
            store.get_session()

    def test_clear_session(self, store, session):
        store.clear_session("demo")

        with pytest.raises(SessionNotFoundError):
            store.get_session("demo")


class TestAuth:

    def test_parse_id_url(self):
        assert parse_id_url("https://login.salesforce.com/id/00D1/0051") == \
            {"userId": "0051", "organizationId": "00D1"}

    def test_password_login(self, store, registry, monkeypatch):
        salesforce_login = Mock(return_value=("00D!sid", "na2.my.salesforce.com"))
        monkeypatch.setattr(auth, "SalesforceLogin", salesforce_login)

        session = login_with_password("sandbox", "me@example.com", "pw", "token",
                                      login_url="https://test.salesforce.com", store=store)

        assert session.session_id == "00D!sid"
        assert session.instance_url == "https://na2.my.salesforce.com"
        assert registry.get_default_project() == "sandbox"
        assert salesforce_login.call_args.kwargs["domain"] == "test"
        assert salesforce_login.call_args.kwargs["sf_version"] == "46.0"

    def test_password_login_failure(self, store, monkeypatch):
        monkeypatch.setattr(auth, "SalesforceLogin", Mock(side_effect=SalesforceAuthenticationFailed(
            "INVALID_LOGIN", "Invalid username, password, security token; or user locked out."
        )))

        with pytest.raises(AuthenticationError):
            login_with_password("sandbox", "me@example.com", "bad", store=store)

    def test_refresh_token_grant(self, store, session, monkeypatch, make_response):
        post = Mock(return_value=make_response(200, {
            "access_token": "00D!fresh",
            "instance_url": "https://na1.my.salesforce.com",
            "id": "https://login.salesforce.com/id/00D000000000001/005000000000001",
        }))
        monkeypatch.setattr(auth.requests, "post", post)

        refreshed = refresh_session(session, store=store)

        assert refreshed.session_id == "00D!fresh"
        assert refreshed.organization_id == "00D000000000001"
        assert store.get_session("demo").session_id == "00D!fresh"
        assert post.call_args.args[0] == "https://login.salesforce.com/services/oauth2/token"
        assert post.call_args.kwargs["data"]["grant_type"] == "refresh_token"
        assert post.call_args.kwargs["data"]["refresh_token"] == "5Aep-refresh"

    def test_refresh_rejected(self, store, session, monkeypatch, make_response):
        monkeypatch.setattr(auth.requests, "post", Mock(return_value=make_response(400, {"error": "invalid_grant"})))

        with pytest.raises(AuthenticationError):
            refresh_session(session, store=store)

    def test_missing_refresh_token(self, store):
        session = store.set_session(Session(session_id="x", instance_url="https://na1.my.salesforce.com",
                                            project_name="demo"))

        with pytest.raises(AuthenticationError):
            refresh_session(session, store=store)

    def test_authorize_project_without_session(self, store):
        with pytest.raises(AuthenticationError):
            authorize_default_project("nobody", store=store)
