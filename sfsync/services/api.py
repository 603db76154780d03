"""REST and Tooling API clients

Every request goes through ``BaseApi.invoke``, which owns the session
expiry policy: when the platform answers INVALID_SESSION_ID the project is
re-authorized and the request is sent again, at most once.

``invoke`` can therefore finish three ways besides raising:

* the response body, when the request (or its single retry) succeeded;
* ``{}`` when ``ignore_error`` was set and the request failed;
* ``None`` (``SESSION_RECOVERY_FAILED``) when the session expired and
  re-authorization failed. Callers must not mistake it for an empty result.
"""
import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterator, List, Optional
from urllib.parse import urlencode

import requests

from sfsync.config import get_config
from sfsync.exceptions import SalesforceApiError
from sfsync.models import ProgressSink, RequestOptions, Session
from sfsync.services.auth import authorize_default_project
from sfsync.services.session import SessionStore
from sfsync.utils.progress import ProgressNotification

logger = logging.getLogger(__name__)

SESSION_RETRY_LIMIT = 1
SESSION_RECOVERY_FAILED = None

WILDCARD_QUERY = re.compile(r"(select\s+)\*(\s+from\s+(\w+))", re.IGNORECASE)

Authenticator = Callable[[Optional[str]], Optional[Session]]


class BaseApi:
    """Session handling and the retry policy shared by every endpoint family"""

    def __init__(
        self,
        session: Optional[Session] = None,
        session_store: Optional[SessionStore] = None,
        authenticator: Optional[Authenticator] = None,
        progress: Optional[ProgressSink] = None,
        http: Optional[requests.Session] = None,
    ):
        self.session_store = session_store or SessionStore()
        self.authenticator = authenticator or authorize_default_project
        self.progress = progress
        self.http = http or requests.Session()
        # describe_sobjects shares one client across worker threads
        self._auth_lock = threading.Lock()
        self._initiate(session)

    def _initiate(self, session: Optional[Session] = None) -> "BaseApi":
        self.session = session or self.session_store.get_session()
        self.session_id = self.session.session_id
        self.instance_url = self.session.instance_url.rstrip("/")
        self.api_version = self.session.api_version or get_config().api_version
        self.project_name = self.session.project_name
        return self

    def _send(self, method: str, options: RequestOptions) -> Any:
        raise NotImplementedError

    def _reauthenticate(self, expired_session_id: str) -> bool:
        """Re-authorize once for every request that failed with ``expired_session_id``."""
        with self._auth_lock:
            if self.session_id != expired_session_id:
                logger.debug("Session of project '%s' was already refreshed", self.project_name)
                return True

            logger.info("Session of project '%s' expired, re-authorizing", self.project_name)
            try:
                refreshed = self.authenticator(self.project_name)
                if not isinstance(refreshed, Session):
                    refreshed = self.session_store.get_session(self.project_name)
            except Exception as e:
                logger.warning("Re-authorization of project '%s' failed: %s", self.project_name, e)
                return False

            self._initiate(refreshed)
            return True

    def invoke(self, method: str, options: RequestOptions) -> Any:
        return self._invoke(method, options, SESSION_RETRY_LIMIT)

    def _invoke(self, method: str, options: RequestOptions, retries_left: int) -> Any:
        progress = options.progress or self.progress
        ProgressNotification.notify(
            progress, options.progress_message or f"Start {method} request..."
        )

        with self._auth_lock:
            session_id = self.session_id
        try:
            body = self._send(method, options)
        except (SalesforceApiError, requests.RequestException) as e:
            if isinstance(e, SalesforceApiError) and e.is_session_expired and retries_left > 0:
                if not self._reauthenticate(session_id):
                    ProgressNotification.notify(progress, f"{method} is aborted, session expired", 100)
                    return SESSION_RECOVERY_FAILED
                return self._invoke(method, options, retries_left - 1)

            if options.ignore_error:
                logger.warning("%s is ignored", e)
                return {}

            raise

        ProgressNotification.notify(progress, f"{method} is finished", 100)
        return body


class RestApi(BaseApi):
    """Client of the versioned REST API (``/services/data/vNN.0``)"""

    api_path = ""

    def _initiate(self, session: Optional[Session] = None) -> "RestApi":
        super()._initiate(session)
        self.base_url = f"{self.instance_url}/services/data/v{self.api_version}.0{self.api_path}"
        self.headers = {
            "Accept": "application/json",
            "Content-Type": "application/json;charset=utf-8",
            "Authorization": f"OAuth {self.session_id}",
        }
        return self

    def build_full_url(self, server_url: str) -> str:
        """Get full rest url from any of:

        1. /sobjects/Account/describe
        2. /services/data/v45.0/sobjects/Account/describe
        3. /apexrest/CustomApexService
        4. https://.../sobjects/Account/describe
        """
        server_url = (server_url or "").strip()

        if server_url.startswith("https://"):
            return server_url
        if "/services" in server_url:
            return self.instance_url + server_url
        if server_url.startswith("/apexrest"):
            return self.instance_url + "/services" + server_url
        return self.base_url + server_url

    def _send(self, method: str, options: RequestOptions) -> Any:
        headers = dict(self.headers)
        headers["Sforce-Query-Options"] = f"batchSize={options.batch_size}"
        headers.update(options.headers)

        kwargs: Dict[str, Any] = {}
        if options.data is not None:
            if isinstance(options.data, (dict, list)):
                kwargs["json"] = options.data
            else:
                kwargs["data"] = options.data

        url = self.build_full_url(options.server_url)
        response = self.http.request(
            method,
            url,
            headers=headers,
            timeout=options.timeout or get_config().request_timeout_seconds,
            **kwargs,
        )

        if response.status_code >= 400:
            raise _rest_error(response)

        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return response.text

    def _request(self, method: str, server_url: str, data: Any = None, **kwargs) -> Any:
        return self.invoke(method, RequestOptions(server_url=server_url, data=data, **kwargs))

    def get(self, server_url: str, **kwargs) -> Any:
        return self._request("GET", server_url, **kwargs)

    def post(self, server_url: str, data: Any = None, **kwargs) -> Any:
        return self._request("POST", server_url, data, **kwargs)

    def patch(self, server_url: str, data: Any = None, **kwargs) -> Any:
        return self._request("PATCH", server_url, data, **kwargs)

    def put(self, server_url: str, data: Any = None, **kwargs) -> Any:
        return self._request("PUT", server_url, data, **kwargs)

    def delete(self, server_url: str, **kwargs) -> Any:
        return self._request("DELETE", server_url, **kwargs)

    def query(self, soql: str, **kwargs) -> Any:
        """Run a SOQL query; ``SELECT * FROM X`` is expanded to X's fields first."""
        match = WILDCARD_QUERY.search(soql)
        if match:
            sobject = match.group(3)
            describe = self.describe_sobject(sobject, progress=kwargs.get("progress"))
            if not describe:
                return describe

            field_names = [f["name"] for f in describe.get("fields", [])]
            if not field_names:
                raise SalesforceApiError(f"Cannot expand * in query, {sobject} has no fields")
            soql = WILDCARD_QUERY.sub(
                lambda m: m.group(1) + ", ".join(field_names) + m.group(2), soql, count=1
            )

        return self.get("/query?" + urlencode({"q": soql}), **kwargs)

    def query_more(self, next_records_url: str, **kwargs) -> Any:
        return self.get(next_records_url, **kwargs)

    def query_all(self, soql: str, **kwargs) -> Any:
        return self.get("/queryAll?" + urlencode({"q": soql}), **kwargs)

    def search(self, sosl: str, **kwargs) -> Any:
        return self.get("/search?" + urlencode({"q": sosl}), **kwargs)

    def get_limits(self, **kwargs) -> Any:
        return self.get("/limits", **kwargs)

    def retrieve_apex_log(self, log_id: str, **kwargs) -> Any:
        return self.get(f"/sobjects/ApexLog/{log_id}/Body", **kwargs)

    def get_deleted_records(self, sobject: str, start: str, end: str, **kwargs) -> Any:
        return self.get(
            f"/sobjects/{sobject}/deleted/?" + urlencode({"start": start, "end": end}), **kwargs
        )

    def get_updated_records(self, sobject: str, start: str, end: str, **kwargs) -> Any:
        return self.get(
            f"/sobjects/{sobject}/updated/?" + urlencode({"start": start, "end": end}), **kwargs
        )

    def describe_global(self, **kwargs) -> Any:
        return self.get("/sobjects", **kwargs)

    def describe_sobject(self, sobject: str, **kwargs) -> Any:
        return self.get(f"/sobjects/{sobject}/describe", **kwargs)

    def describe_sobjects(
        self,
        sobjects: List[str],
        max_workers: Optional[int] = None,
        progress: Optional[ProgressSink] = None,
        timeout: Optional[float] = None,
    ) -> List[Any]:
        """Describe many sobjects with at most ``max_workers`` calls in flight.

        A failing object yields ``{}`` in its slot; results keep input order.
        """
        if not sobjects:
            return []

        max_workers = max_workers or get_config().describe_concurrency

        def describe(sobject: str) -> Any:
            return self.describe_sobject(
                sobject, progress=progress, timeout=timeout, ignore_error=True
            )

        with ThreadPoolExecutor(max_workers=min(max_workers, len(sobjects))) as pool:
            return list(pool.map(describe, sobjects))


class ToolingApi(RestApi):
    """Client of the Tooling API (``/services/data/vNN.0/tooling``)"""

    api_path = "/tooling"

    def iter_query_pages(self, soql: str, batch_size: int = 200, **kwargs) -> Iterator[Dict[str, Any]]:
        """Yield query result pages, following nextRecordsUrl until done.

        Stops early (without raising) if a page comes back empty because the
        session could not be recovered.
        """
        result = self.query(soql, batch_size=batch_size, **kwargs)
        while True:
            if not result:
                logger.warning("Query of '%s' stopped, no page returned", soql)
                return

            yield result

            next_records_url = result.get("nextRecordsUrl")
            if result.get("done", True) or not next_records_url:
                return

            result = self.query_more(next_records_url, batch_size=batch_size, **kwargs)

    def run_sync_tests(self, tests: List[Dict[str, Any]], **kwargs) -> Any:
        return self.post("/runTestsSynchronous/", {"tests": tests}, **kwargs)

    def execute_anonymous(self, apex_code: str, **kwargs) -> Any:
        return self.get("/executeAnonymous/?" + urlencode({"anonymousBody": apex_code}), **kwargs)


def _rest_error(response: requests.Response) -> SalesforceApiError:
    """Build an error from a REST error body ``[{"errorCode": .., "message": ..}]``."""
    error_code = None
    message = response.text or response.reason or f"HTTP {response.status_code}"
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, list) and body and isinstance(body[0], dict):
        body = body[0]
    if isinstance(body, dict):
        error_code = body.get("errorCode") or body.get("error")
        message = body.get("message") or body.get("error_description") or message

    return SalesforceApiError(message, status_code=response.status_code, error_code=error_code)
