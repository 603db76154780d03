"""Tests for the REST / Tooling API clients and their session retry policy"""
import threading
import time
from urllib.parse import parse_qs, urlparse
from unittest.mock import Mock

import pytest
import requests

from sfsync.exceptions import AuthenticationError, SalesforceApiError
from sfsync.models import Session
from sfsync.services.api import RestApi, ToolingApi

INVALID_SESSION = [{"errorCode": "INVALID_SESSION_ID", "message": "Session expired or invalid"}]


def query_of(url):
    return parse_qs(urlparse(url).query)["q"][0]


class TestBuildFullUrl:

    @pytest.fixture
    def api(self, session, store, http):
        return RestApi(session=session, session_store=store, http=http)

    def test_relative_path_goes_below_versioned_base(self, api):
        assert api.build_full_url("/sobjects/Account/describe") == \
            "https://na1.my.salesforce.com/services/data/v46.0/sobjects/Account/describe"

    def test_services_path_goes_below_instance(self, api):
        assert api.build_full_url("/services/data/v45.0/sobjects/Account/describe") == \
            "https://na1.my.salesforce.com/services/data/v45.0/sobjects/Account/describe"

    def test_apexrest_path(self, api):
        assert api.build_full_url("/apexrest/CustomApexService") == \
            "https://na1.my.salesforce.com/services/apexrest/CustomApexService"

    def test_absolute_url_is_kept(self, api):
        url = "https://other.my.salesforce.com/services/data/v46.0/limits"
        assert api.build_full_url("  " + url + " ") == url

    def test_tooling_base_url(self, session, store, http):
        api = ToolingApi(session=session, session_store=store, http=http)
        assert api.build_full_url("/query") == \
            "https://na1.my.salesforce.com/services/data/v46.0/tooling/query"


class TestRequests:

    def test_headers_and_batch_size(self, session, store, http, make_response):
        http.request.return_value = make_response(200, {"ok": True})
        api = RestApi(session=session, session_store=store, http=http)

        assert api.get("/limits") == {"ok": True}

        method, url = http.request.call_args.args
        headers = http.request.call_args.kwargs["headers"]
        assert method == "GET"
        assert url.endswith("/services/data/v46.0/limits")
        assert headers["Authorization"] == "OAuth 00D!old"
        assert headers["Sforce-Query-Options"] == "batchSize=2000"
        assert http.request.call_args.kwargs["timeout"] == 120

    def test_post_sends_json_body(self, session, store, http, make_response):
        http.request.return_value = make_response(201, {"id": "001", "success": True})
        api = RestApi(session=session, session_store=store, http=http)

        api.post("/sobjects/Account", {"Name": "Acme"})

        assert http.request.call_args.kwargs["json"] == {"Name": "Acme"}

    def test_no_content_is_empty_dict(self, session, store, http, make_response):
        http.request.return_value = make_response(204)
        api = RestApi(session=session, session_store=store, http=http)

        assert api.patch("/sobjects/User/005", {"LanguageLocaleKey": "en_US"}) == {}

    def test_error_body_is_raised_with_code(self, session, store, http, make_response):
        http.request.return_value = make_response(
            400, [{"errorCode": "MALFORMED_QUERY", "message": "unexpected token: FROM"}]
        )
        api = RestApi(session=session, session_store=store, http=http)

        with pytest.raises(SalesforceApiError) as exc_info:
            api.get("/query?q=SELECT+FROM")

        assert exc_info.value.error_code == "MALFORMED_QUERY"
        assert exc_info.value.status_code == 400
        assert "MALFORMED_QUERY" in str(exc_info.value)

    def test_ignore_error_gives_empty_dict(self, session, store, http, make_response):
        http.request.return_value = make_response(404, [{"errorCode": "NOT_FOUND", "message": "missing"}])
        api = RestApi(session=session, session_store=store, http=http)

        assert api.get("/sobjects/Nope/describe", ignore_error=True) == {}

    def test_ignore_error_covers_connection_errors(self, session, store, http):
        http.request.side_effect = requests.ConnectionError("reset")
        api = RestApi(session=session, session_store=store, http=http)

        assert api.get("/limits", ignore_error=True) == {}

    def test_progress_reaches_done(self, session, store, http, make_response):
        http.request.return_value = make_response(200, {})
        progress = Mock()
        api = RestApi(session=session, session_store=store, http=http, progress=progress)

        api.get("/limits", progress_message="Loading limits")

        assert progress.call_args_list[0].args == ("Loading limits", None)
        assert progress.call_args_list[-1].args[1] == 100


class TestSessionRetry:

    def test_expired_session_is_reauthorized_once(self, session, store, http, make_response):
        http.request.side_effect = [
            make_response(401, INVALID_SESSION),
            make_response(200, {"totalSize": 1, "done": True, "records": [{"Id": "001"}]}),
        ]
        authenticator = Mock(return_value=session.model_copy(update={"session_id": "00D!new"}))
        api = RestApi(session=session, session_store=store, authenticator=authenticator, http=http)

        result = api.get("/query?q=SELECT+Id+FROM+Account")

        assert result["records"] == [{"Id": "001"}]
        authenticator.assert_called_once_with("demo")
        assert http.request.call_count == 2
        assert http.request.call_args_list[1].kwargs["headers"]["Authorization"] == "OAuth 00D!new"

    def test_reauthorization_reads_store_when_nothing_returned(self, session, store, http, make_response):
        http.request.side_effect = [
            make_response(401, INVALID_SESSION),
            make_response(200, {"ok": True}),
        ]

        def authenticator(project_name):
            store.set_session(session.model_copy(update={"session_id": "00D!stored"}))

        api = RestApi(session=session, session_store=store, authenticator=authenticator, http=http)

        assert api.get("/limits") == {"ok": True}
        assert http.request.call_args_list[1].kwargs["headers"]["Authorization"] == "OAuth 00D!stored"

    def test_second_expiry_is_not_retried(self, session, store, http, make_response):
        http.request.side_effect = [
            make_response(401, INVALID_SESSION),
            make_response(401, INVALID_SESSION),
        ]
        authenticator = Mock(return_value=session)
        api = RestApi(session=session, session_store=store, authenticator=authenticator, http=http)

        with pytest.raises(SalesforceApiError):
            api.get("/limits")

        assert authenticator.call_count == 1
        assert http.request.call_count == 2

    def test_failed_reauthorization_returns_none(self, session, store, http, make_response):
        http.request.return_value = make_response(401, INVALID_SESSION)
        authenticator = Mock(side_effect=AuthenticationError("no refresh token"))
        api = RestApi(session=session, session_store=store, authenticator=authenticator, http=http)

        assert api.get("/limits") is None
        assert http.request.call_count == 1

    def test_failed_reauthorization_is_not_an_ignored_error(self, session, store, http, make_response):
        http.request.return_value = make_response(401, INVALID_SESSION)
        authenticator = Mock(side_effect=AuthenticationError("no refresh token"))
        api = RestApi(session=session, session_store=store, authenticator=authenticator, http=http)

        assert api.get("/limits", ignore_error=True) is None


class TestQuery:

    def test_wildcard_is_expanded_with_describe_fields(self, session, store, http, make_response):
        def handler(method, url, **kwargs):
            if url.endswith("/sobjects/Account/describe"):
                return make_response(200, {"name": "Account", "fields": [{"name": "Id"}, {"name": "Name"}]})
            return make_response(200, {"totalSize": 0, "done": True, "records": []})

        http.request.side_effect = handler
        api = RestApi(session=session, session_store=store, http=http)

        api.query("select * from Account where Name != null")

        assert query_of(http.request.call_args.args[1]) == "select Id, Name from Account where Name != null"

    def test_plain_query_is_sent_unchanged(self, session, store, http, make_response):
        http.request.return_value = make_response(200, {"totalSize": 0, "done": True, "records": []})
        api = RestApi(session=session, session_store=store, http=http)

        api.query("SELECT Id FROM Contact")

        assert http.request.call_count == 1
        assert query_of(http.request.call_args.args[1]) == "SELECT Id FROM Contact"

    def test_wildcard_stops_when_session_cannot_be_recovered(self, session, store, http, make_response):
        http.request.return_value = make_response(401, INVALID_SESSION)
        api = RestApi(session=session, session_store=store, http=http,
                      authenticator=Mock(side_effect=AuthenticationError("expired")))

        assert api.query("SELECT * FROM Account") is None
        assert http.request.call_count == 1

    def test_updated_records_url(self, session, store, http, make_response):
        http.request.return_value = make_response(200, {"ids": []})
        api = RestApi(session=session, session_store=store, http=http)

        api.get_updated_records("Account", "2019-01-01T00:00:00Z", "2019-01-02T00:00:00Z")

        url = http.request.call_args.args[1]
        assert "/sobjects/Account/updated/?" in url
        assert parse_qs(urlparse(url).query)["start"] == ["2019-01-01T00:00:00Z"]


class TestDescribeSobjects:

    def test_failures_keep_their_slot(self, session, store, http, make_response):
        failing = {"Bad1", "Bad2"}

        def handler(method, url, **kwargs):
            name = url.split("/sobjects/")[1].split("/")[0]
            if name in failing:
                return make_response(404, [{"errorCode": "NOT_FOUND", "message": name}])
            return make_response(200, {"name": name, "fields": []})

        http.request.side_effect = handler
        api = RestApi(session=session, session_store=store, http=http)
        names = ["Account", "Bad1", "Contact", "Bad2", "Lead"]

        results = api.describe_sobjects(names, max_workers=2)

        assert len(results) == 5
        assert [r.get("name") for r in results] == ["Account", None, "Contact", None, "Lead"]
        assert results[1] == {} and results[3] == {}

    def test_empty_input(self, session, store, http):
        api = RestApi(session=session, session_store=store, http=http)

        assert api.describe_sobjects([]) == []
        http.request.assert_not_called()


class TestToolingPages:

    def test_follows_next_records_url_until_done(self, session, store, http, make_response):
        next_1 = "/services/data/v46.0/tooling/query/01gD0000002HU6KIAW-200"
        next_2 = "/services/data/v46.0/tooling/query/01gD0000002HU6KIAW-400"
        http.request.side_effect = [
            make_response(200, {"done": False, "nextRecordsUrl": next_1, "records": [{"Name": "A"}]}),
            make_response(200, {"done": False, "nextRecordsUrl": next_2, "records": [{"Name": "B"}]}),
            make_response(200, {"done": True, "records": [{"Name": "C"}]}),
        ]
        api = ToolingApi(session=session, session_store=store, http=http)

        pages = list(api.iter_query_pages("SELECT Id, Name, SymbolTable FROM ApexClass"))

        assert [p["records"][0]["Name"] for p in pages] == ["A", "B", "C"]
        urls = [c.args[1] for c in http.request.call_args_list]
        assert "/tooling/query?" in urls[0]
        assert urls[1] == "https://na1.my.salesforce.com" + next_1
        assert urls[2] == "https://na1.my.salesforce.com" + next_2
        assert http.request.call_args_list[0].kwargs["headers"]["Sforce-Query-Options"] == "batchSize=200"

    def test_stops_when_a_page_is_lost(self, session, store, http, make_response):
        http.request.side_effect = [
            make_response(200, {"done": False, "nextRecordsUrl": "/services/data/v46.0/tooling/query/x-200",
                                "records": [{"Name": "A"}]}),
            make_response(401, INVALID_SESSION),
        ]
        api = ToolingApi(session=session, session_store=store, http=http,
                         authenticator=Mock(side_effect=AuthenticationError("expired")))

        pages = list(api.iter_query_pages("SELECT Id FROM ApexClass"))

        assert len(pages) == 1

    def test_execute_anonymous_url(self, session, store, http, make_response):
        http.request.return_value = make_response(200, {"compiled": True, "success": True})
        api = ToolingApi(session=session, session_store=store, http=http)

        api.execute_anonymous("System.debug('x');")

        url = http.request.call_args.args[1]
        assert "/tooling/executeAnonymous/?" in url
        assert parse_qs(urlparse(url).query)["anonymousBody"] == ["System.debug('x');"]


class TestConcurrentDescribes:

    @staticmethod
    def counting_handler(make_response, state, lock):
        def handler(method, url, **kwargs):
            with lock:
                state["in_flight"] += 1
                state["peak"] = max(state["peak"], state["in_flight"])
            try:
                time.sleep(0.005)
                name = url.split("/sobjects/")[1].split("/")[0]
                return make_response(200, {"name": name, "fields": []})
            finally:
                with lock:
                    state["in_flight"] -= 1

        return handler

    @pytest.mark.parametrize("limit,count", [(3, 10), (30, 45)])
    def test_in_flight_calls_stay_below_the_configured_limit(
        self, session, store, http, make_response, sync_config, limit, count
    ):
        sync_config.describe_concurrency = limit
        state = {"in_flight": 0, "peak": 0}
        http.request.side_effect = self.counting_handler(make_response, state, threading.Lock())
        api = RestApi(session=session, session_store=store, http=http)
        names = [f"Object{i}__c" for i in range(count)]

        results = api.describe_sobjects(names)

        assert [r["name"] for r in results] == names
        assert 1 <= state["peak"] <= limit

    def test_expired_session_is_refreshed_once_for_all_workers(self, session, store, http, make_response):
        def handler(method, url, **kwargs):
            time.sleep(0.005)
            if kwargs["headers"]["Authorization"] == "OAuth 00D!old":
                return make_response(401, INVALID_SESSION)
            return make_response(200, {"name": url.split("/sobjects/")[1].split("/")[0]})

        def refresh(project_name):
            time.sleep(0.02)
            return session.model_copy(update={"session_id": "00D!new"})

        http.request.side_effect = handler
        authenticator = Mock(side_effect=refresh)
        api = RestApi(session=session, session_store=store, authenticator=authenticator, http=http)
        names = ["Account", "Contact", "Lead", "Case", "Opportunity"]

        results = api.describe_sobjects(names, max_workers=5)

        assert [r["name"] for r in results] == names
        authenticator.assert_called_once_with("demo")
        assert api.session_id == "00D!new"


class TestReauthorizationFallback:

    def test_missing_stored_session_is_a_soft_failure(self, store, http, make_response):
        orphan = Session(session_id="00D!old", instance_url="https://na1.my.salesforce.com",
                         project_name="orphan")
        http.request.return_value = make_response(401, INVALID_SESSION)
        authenticator = Mock(return_value=None)
        api = RestApi(session=orphan, session_store=store, authenticator=authenticator, http=http)

        assert api.get("/limits") is None
        authenticator.assert_called_once_with("orphan")
