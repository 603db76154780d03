"""Tests for the SOAP Metadata API client"""
from unittest.mock import Mock

import pytest
import requests
from lxml import etree

from sfsync.exceptions import SalesforceApiError
from sfsync.services.metadata_api import MET_NS, SOAPENV_NS, MetadataApi
from sfsync.utils.results import component_failures

MET = f"{{{MET_NS}}}"


def soap(body_xml):
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<soapenv:Envelope xmlns:soapenv="{SOAPENV_NS}" xmlns="{MET_NS}" '
        'xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance">'
        f"<soapenv:Body>{body_xml}</soapenv:Body></soapenv:Envelope>"
    )


def fault(code, message):
    return (
        f'<soapenv:Envelope xmlns:soapenv="{SOAPENV_NS}"><soapenv:Body><soapenv:Fault>'
        f"<faultcode>{code}</faultcode><faultstring>{message}</faultstring>"
        "</soapenv:Fault></soapenv:Body></soapenv:Envelope>"
    )


def sent_envelope(call):
    return etree.fromstring(call.kwargs["data"])


@pytest.fixture
def api(session, store, http):
    return MetadataApi(session=session, session_store=store, http=http)


class TestDeploy:

    def test_submits_and_polls_until_done(self, api, http, make_response):
        http.request.side_effect = [
            make_response(200, text=soap("<deployResponse><result><id>0Af1</id><done>false</done>"
                                         "<state>Queued</state></result></deployResponse>")),
            make_response(200, text=soap("<checkDeployStatusResponse><result><id>0Af1</id><done>false</done>"
                                         "<status>InProgress</status></result></checkDeployStatusResponse>")),
            make_response(200, text=soap(
                "<checkDeployStatusResponse><result><id>0Af1</id><done>true</done><success>false</success>"
                "<status>Failed</status><details><componentFailures><fileName>classes/A.cls</fileName>"
                "<problem>Unexpected token</problem><lineNumber>3</lineNumber></componentFailures>"
                "</details></result></checkDeployStatusResponse>")),
        ]

        result = api.deploy("UEsFBgAAAAAAAAAAAAAAAAAAAAAAAA==", {"checkOnly": True})

        assert result["done"] is True
        assert result["success"] is False
        assert component_failures(result) == [
            {"fileName": "classes/A.cls", "problem": "Unexpected token", "lineNumber": "3"}
        ]
        assert http.request.call_count == 3
        assert http.request.call_args_list[0].args[1] == \
            "https://na1.my.salesforce.com/services/Soap/m/46.0"

    def test_envelope_carries_session_and_ordered_options(self, api, http, make_response):
        http.request.side_effect = [
            make_response(200, text=soap("<deployResponse><result><id>0Af1</id></result></deployResponse>")),
            make_response(200, text=soap("<checkDeployStatusResponse><result><done>true</done>"
                                         "<success>true</success></result></checkDeployStatusResponse>")),
        ]

        api.deploy("ZIP", {"runTests": ["ATest", "BTest"], "testLevel": "RunSpecifiedTests"})

        envelope = sent_envelope(http.request.call_args_list[0])
        assert envelope.findtext(f".//{MET}sessionId") == "00D!old"
        options = envelope.find(f".//{MET}DeployOptions")
        names = [etree.QName(child).localname for child in options]
        assert names == sorted(names)
        assert [c.text for c in options if etree.QName(c).localname == "runTests"] == ["ATest", "BTest"]
        assert options.findtext(f"{MET}rollbackOnError") == "true"

        check = sent_envelope(http.request.call_args_list[1])
        assert check.findtext(f".//{MET}checkDeployStatus/{MET}includeDetails") == "true"

    def test_polling_survives_a_dropped_connection(self, api, http, make_response):
        http.request.side_effect = [
            make_response(200, text=soap("<deployResponse><result><id>0Af1</id></result></deployResponse>")),
            requests.ConnectionError("reset by peer"),
            make_response(200, text=soap("<checkDeployStatusResponse><result><done>true</done>"
                                         "<success>true</success></result></checkDeployStatusResponse>")),
        ]

        result = api.deploy("ZIP")

        assert result["success"] is True
        assert http.request.call_count == 3

    def test_timeout(self, api, http, make_response, sync_config):
        sync_config.deploy_timeout_seconds = -1
        http.request.side_effect = [
            make_response(200, text=soap("<deployResponse><result><id>0Af1</id></result></deployResponse>")),
            make_response(200, text=soap("<checkDeployStatusResponse><result><done>false</done>"
                                         "</result></checkDeployStatusResponse>")),
        ]

        with pytest.raises(SalesforceApiError, match="Timed out"):
            api.deploy("ZIP")


class TestFaults:

    def test_fault_code_loses_its_prefix(self, api, http, make_response):
        http.request.return_value = make_response(500, text=fault("sf:INVALID_CROSS_REFERENCE_KEY", "bad id"))

        with pytest.raises(SalesforceApiError) as exc_info:
            api.describe_metadata()

        assert exc_info.value.error_code == "INVALID_CROSS_REFERENCE_KEY"
        assert str(exc_info.value) == "INVALID_CROSS_REFERENCE_KEY: bad id"

    @pytest.mark.parametrize("text", [
        "<html><body><h1>Down for maintenance",
        "<html><body>Service unavailable</body></html>",
    ])
    def test_non_soap_answer_is_an_api_error(self, api, http, make_response, text):
        http.request.return_value = make_response(200, text=text)

        with pytest.raises(SalesforceApiError, match="Unexpected response"):
            api.deploy("ZIP")

    def test_submit_without_id_is_an_api_error(self, api, http, make_response):
        http.request.return_value = make_response(
            200, text=soap("<deployResponse><result><done>false</done></result></deployResponse>")
        )

        with pytest.raises(SalesforceApiError, match="deploy request was not accepted"):
            api.deploy("ZIP")
        assert http.request.call_count == 1

    def test_expired_session_is_resent_with_new_header(self, session, store, http, make_response):
        http.request.side_effect = [
            make_response(500, text=fault("sf:INVALID_SESSION_ID", "Invalid Session ID found")),
            make_response(200, text=soap("<describeMetadataResponse><result><metadataObjects>"
                                         "<directoryName>classes</directoryName><xmlName>ApexClass</xmlName>"
                                         "</metadataObjects></result></describeMetadataResponse>")),
        ]
        authenticator = Mock(return_value=session.model_copy(update={"session_id": "00D!new"}))
        api = MetadataApi(session=session, session_store=store, authenticator=authenticator, http=http)

        result = api.describe_metadata()

        assert result["metadataObjects"]["xmlName"] == "ApexClass"
        assert sent_envelope(http.request.call_args_list[1]).findtext(f".//{MET}sessionId") == "00D!new"
        authenticator.assert_called_once_with("demo")


class TestRetrieve:

    def test_request_lists_sorted_types(self, api, http, make_response):
        http.request.side_effect = [
            make_response(200, text=soap("<retrieveResponse><result><id>09S1</id></result></retrieveResponse>")),
            make_response(200, text=soap("<checkRetrieveStatusResponse><result><done>true</done>"
                                         "<zipFile>UEsFBg==</zipFile><messages xsi:nil=\"true\"/>"
                                         "</result></checkRetrieveStatusResponse>")),
        ]

        result = api.retrieve({"ApexTrigger": ["T"], "ApexClass": ["A", "B"]})

        assert result["zipFile"] == "UEsFBg=="
        assert result["messages"] is None

        request = sent_envelope(http.request.call_args_list[0]).find(f".//{MET}retrieveRequest")
        types = request.findall(f"{MET}unpackaged/{MET}types")
        assert [t.findtext(f"{MET}name") for t in types] == ["ApexClass", "ApexTrigger"]
        assert [m.text for m in types[0].findall(f"{MET}members")] == ["A", "B"]
        assert request.findtext(f"{MET}singlePackage") == "true"

        check = sent_envelope(http.request.call_args_list[1])
        assert check.findtext(f".//{MET}checkRetrieveStatus/{MET}includeZip") == "true"
