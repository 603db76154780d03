"""Metadata API client (SOAP endpoint ``/services/Soap/m/NN.0``)

Requests are lxml body elements; the session header is added at send
time so a request re-sent after re-authorization carries the new session.
Responses are converted with ``xml_to_dict``; repeating elements are NOT
normalized here, callers apply ``as_list`` to the fields they iterate.
"""
import copy
import logging
import time
from typing import Any, Dict, List, Optional

import requests
from lxml import etree

from sfsync.config import get_config
from sfsync.exceptions import SalesforceApiError
from sfsync.models import ProgressSink, RequestOptions
from sfsync.services.api import BaseApi
from sfsync.utils.progress import ProgressNotification
from sfsync.utils.results import xml_to_dict
from sfsync.utils.retry import retry

logger = logging.getLogger(__name__)

SOAPENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
MET_NS = "http://soap.sforce.com/2006/04/metadata"
NSMAP = {"soapenv": SOAPENV_NS, "met": MET_NS}

DEFAULT_DEPLOY_OPTIONS = {
    "allowMissingFiles": False,
    "autoUpdatePackage": False,
    "checkOnly": False,
    "ignoreWarnings": False,
    "performRetrieve": False,
    "purgeOnDelete": False,
    "rollbackOnError": True,
    "singlePackage": True,
}


def _met(tag: str) -> str:
    return f"{{{MET_NS}}}{tag}"


def _sub(parent: etree._Element, tag: str, value: Any) -> etree._Element:
    child = etree.SubElement(parent, _met(tag))
    if isinstance(value, bool):
        child.text = "true" if value else "false"
    elif value is not None:
        child.text = str(value)
    return child


def _soap_fault(response: requests.Response) -> SalesforceApiError:
    message = f"HTTP Error {response.status_code}"
    error_code = None
    try:
        root = etree.fromstring(response.content)
        fault = root.find(f".//{{{SOAPENV_NS}}}Fault")
        if fault is not None:
            error_code = (fault.findtext("faultcode") or "").split(":")[-1] or None
            message = fault.findtext("faultstring") or message
    except etree.XMLSyntaxError:
        message = f"{message}: {response.text[:500]}"
    return SalesforceApiError(message, status_code=response.status_code, error_code=error_code)


def _soap_envelope(response: requests.Response) -> etree._Element:
    """Parse a 2xx answer, which must be a SOAP envelope."""
    try:
        root = etree.fromstring(response.content)
    except etree.XMLSyntaxError as e:
        raise SalesforceApiError(
            f"Unexpected response from the Metadata API ({e}): {response.text[:500]}",
            status_code=response.status_code,
        )
    if root.tag != etree.QName(SOAPENV_NS, "Envelope").text:
        raise SalesforceApiError(
            f"Unexpected response from the Metadata API: {response.text[:500]}",
            status_code=response.status_code,
        )
    return root


def _async_process_id(async_result: Any, request_type: str) -> str:
    if not isinstance(async_result, dict) or not async_result.get("id"):
        raise SalesforceApiError(f"{request_type} request was not accepted: {async_result}")
    return async_result["id"]


class MetadataApi(BaseApi):
    """describeMetadata, deploy and retrieve against the Metadata API"""

    def _initiate(self, session=None) -> "MetadataApi":
        super()._initiate(session)
        self.metadata_url = f"{self.instance_url}/services/Soap/m/{self.api_version}.0"
        return self

    def _envelope(self, body_request: etree._Element) -> bytes:
        envelope = etree.Element(etree.QName(SOAPENV_NS, "Envelope"), nsmap=NSMAP)
        header = etree.SubElement(envelope, etree.QName(SOAPENV_NS, "Header"))
        session_header = etree.SubElement(header, _met("SessionHeader"))
        _sub(session_header, "sessionId", self.session_id)
        body = etree.SubElement(envelope, etree.QName(SOAPENV_NS, "Body"))
        # Appending moves an lxml element; a re-sent request needs the original
        body.append(copy.deepcopy(body_request))
        return etree.tostring(envelope, encoding="UTF-8", xml_declaration=True)

    def _send(self, method: str, options: RequestOptions) -> Any:
        body_request: etree._Element = options.data
        request_type = etree.QName(body_request).localname

        headers = {"Content-Type": "text/xml;charset=utf-8", "SOAPAction": '""'}
        headers.update(options.headers)

        response = self.http.request(
            method,
            options.server_url or self.metadata_url,
            data=self._envelope(body_request),
            headers=headers,
            timeout=options.timeout or get_config().request_timeout_seconds,
        )
        if response.status_code >= 400:
            raise _soap_fault(response)

        root = _soap_envelope(response)
        results = root.findall(f".//{_met(request_type + 'Response')}/{_met('result')}")
        if not results:
            return {}
        if len(results) == 1:
            return xml_to_dict(results[0])
        return [xml_to_dict(r) for r in results]

    def _call(self, body_request: etree._Element, **kwargs) -> Any:
        options = RequestOptions(data=body_request, **kwargs)
        return self.invoke("POST", options)

    def describe_metadata(self, progress: Optional[ProgressSink] = None, **kwargs) -> Any:
        request = etree.Element(_met("describeMetadata"), nsmap={"met": MET_NS})
        _sub(request, "asOfVersion", f"{self.api_version}.0")
        return self._call(
            request, progress=progress,
            progress_message="Describing metadata", **kwargs
        )

    def deploy(
        self,
        zipfile: str,
        deploy_options: Optional[Dict[str, Any]] = None,
        progress: Optional[ProgressSink] = None,
        **kwargs,
    ) -> Any:
        """Deploy a base64 zip and wait for the DeployResult."""
        options = dict(DEFAULT_DEPLOY_OPTIONS)
        options.update(deploy_options or {})

        request = etree.Element(_met("deploy"), nsmap={"met": MET_NS})
        _sub(request, "ZipFile", zipfile)
        options_tag = etree.SubElement(request, _met("DeployOptions"))
        # DeployOptions is an xsd:sequence whose element order is alphabetical
        for name, value in sorted(options.items()):
            if name == "runTests":
                for test in value or []:
                    _sub(options_tag, "runTests", test)
            else:
                _sub(options_tag, name, value)

        async_result = self._call(
            request, progress=progress,
            progress_message=kwargs.pop("progress_message", "Submitting deploy request"), **kwargs
        )
        if async_result is None:
            return async_result

        return self._wait_for(
            "checkDeployStatus", _async_process_id(async_result, "deploy"), progress,
            includeDetails=True,
        )

    def retrieve(
        self,
        types: Dict[str, List[str]],
        progress: Optional[ProgressSink] = None,
        **kwargs,
    ) -> Any:
        """Retrieve ``{xmlName: [members]}`` and wait for the RetrieveResult."""
        request = etree.Element(_met("retrieve"), nsmap={"met": MET_NS})
        retrieve_request = etree.SubElement(request, _met("retrieveRequest"))
        _sub(retrieve_request, "apiVersion", f"{self.api_version}.0")
        _sub(retrieve_request, "singlePackage", True)
        unpackaged = etree.SubElement(retrieve_request, _met("unpackaged"))
        for xml_name in sorted(types):
            types_tag = etree.SubElement(unpackaged, _met("types"))
            for member in types[xml_name]:
                _sub(types_tag, "members", member)
            _sub(types_tag, "name", xml_name)
        _sub(unpackaged, "version", f"{self.api_version}.0")

        async_result = self._call(
            request, progress=progress,
            progress_message=kwargs.pop("progress_message", "Submitting retrieve request"), **kwargs
        )
        if async_result is None:
            return async_result

        return self._wait_for(
            "checkRetrieveStatus", _async_process_id(async_result, "retrieve"), progress,
            includeZip=True,
        )

    def _wait_for(self, request_type: str, async_process_id: str,
                  progress: Optional[ProgressSink], **flags) -> Any:
        config = get_config()
        start = time.time()
        while True:
            result = self._check_status(request_type, async_process_id, progress, **flags)
            if not result or result.get("done"):
                return result

            if time.time() - start > config.deploy_timeout_seconds:
                raise SalesforceApiError(
                    f"Timed out after {config.deploy_timeout_seconds}s waiting for {async_process_id}"
                )

            ProgressNotification.notify(
                progress,
                f"{request_type} {async_process_id}: {result.get('status', 'InProgress')} "
                f"({result.get('numberComponentsDeployed', 0)}/{result.get('numberComponentsTotal', 0)} components)",
            )
            time.sleep(config.deploy_poll_interval_seconds)

    @retry()
    def _check_status(self, request_type: str, async_process_id: str,
                      progress: Optional[ProgressSink], **flags) -> Any:
        request = etree.Element(_met(request_type), nsmap={"met": MET_NS})
        _sub(request, "asyncProcessId", async_process_id)
        for name, value in flags.items():
            _sub(request, name, value)
        return self._call(request, progress=progress, progress_message=f"Checking {async_process_id}")
