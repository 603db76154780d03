"""Deploy / retrieve orchestration

``MetadataSync`` wires the package builder, the API clients and the local
caches together. It is the last layer that sees raw errors: every public
operation returns a ``SyncOutcome`` with a user-facing message, and local
files are only touched once the server reported success.
"""
import functools
import logging
import os
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Type

import requests

from sfsync.exceptions import SyncError
from sfsync.models import ProgressSink, SObjectReloadScope, SObjectSOQL, SyncOutcome
from sfsync.services.api import BaseApi, RestApi, ToolingApi
from sfsync.services.auth import authorize_default_project
from sfsync.services.describe_cache import Chooser, DescribeCache, MetadataCache
from sfsync.services.file_properties import FilePropertyStore
from sfsync.services.metadata_api import MetadataApi
from sfsync.services.projects import ProjectRegistry
from sfsync.services.session import SessionStore
from sfsync.utils.logging import log_operation
from sfsync.utils.package import (
    META_SUFFIX,
    build_deploy_package,
    build_destruct_package,
    extract_zip_file,
    get_file_attributes,
    get_retrieve_types,
    parse_manifest,
)
from sfsync.utils.progress import ProgressNotification
from sfsync.utils.results import (
    as_list,
    component_failures,
    format_problems,
    format_test_failures,
    run_test_failures,
)
from sfsync.utils.validators import (
    ValidationError,
    validate_api_name,
    validate_soql_query,
    validate_source_files,
)

logger = logging.getLogger(__name__)

SESSION_EXPIRED_MESSAGE = "Session expired and could not be refreshed, please login again"

SUBSCRIBED_META_OBJECTS_FILE = "subscribedMetaObjects.json"
SYMBOL_TABLES_DIR = "symbolTables"
SYMBOL_TABLE_QUERY = "SELECT Id, Name, SymbolTable FROM ApexClass"

# directoryName -> (sobject, field holding the source)
SOURCE_BODY_FIELDS = {
    "classes": ("ApexClass", "Body"),
    "triggers": ("ApexTrigger", "Body"),
    "pages": ("ApexPage", "Markup"),
    "components": ("ApexComponent", "Markup"),
}

REST_METHODS = {"GET", "POST", "PATCH", "PUT", "DELETE"}

ApiFactory = Callable[[Type[BaseApi]], BaseApi]


def sync_operation(name: str):
    """Turn errors of a ``MetadataSync`` operation into a failed outcome and log it."""

    def decorator(func: Callable[..., SyncOutcome]) -> Callable[..., SyncOutcome]:
        @functools.wraps(func)
        def wrapper(self: "MetadataSync", *args, **kwargs) -> SyncOutcome:
            start = time.time()
            try:
                outcome = func(self, *args, **kwargs)
            except (SyncError, requests.RequestException, OSError) as e:
                logger.error("%s failed: %s", name, e)
                outcome = SyncOutcome(False, str(e))

            log_operation(
                logger, name, (time.time() - start) * 1000, outcome.success,
                project=self.project_name, error=None if outcome.success else outcome.message,
            )
            return outcome

        return wrapper

    return decorator


def _expired() -> SyncOutcome:
    return SyncOutcome(False, SESSION_EXPIRED_MESSAGE)


class MetadataSync:
    """Deploy, retrieve and refresh metadata of one project"""

    def __init__(
        self,
        project_name: Optional[str] = None,
        registry: Optional[ProjectRegistry] = None,
        session_store: Optional[SessionStore] = None,
        api_factory: Optional[ApiFactory] = None,
        progress: Optional[ProgressSink] = None,
    ):
        self.registry = registry or ProjectRegistry()
        self.session_store = session_store or SessionStore(self.registry)
        self.project_name = project_name or self.registry.get_default_project()
        self.settings = self.registry.get_settings(self.project_name)
        self.api_factory = api_factory or self._build_api
        self.progress = progress

        self.metadata_cache = MetadataCache(self.settings)
        self.describe_cache = DescribeCache(self.settings, lambda: self.api_factory(RestApi))

    def _build_api(self, api_class: Type[BaseApi]) -> BaseApi:
        return api_class(
            session=self.session_store.get_session(self.project_name),
            session_store=self.session_store,
            authenticator=lambda name: authorize_default_project(name, store=self.session_store),
            progress=self.progress,
        )

    @property
    def types(self):
        return self.metadata_cache.get_types()

    @property
    def file_properties(self) -> FilePropertyStore:
        return FilePropertyStore(self.settings, self.types)

    def _call(self, api_class: Type[BaseApi], method_name: str, *args, **kwargs) -> Any:
        return ProgressNotification.show_progress(
            self.api_factory(api_class), method_name, *args, progress=self.progress, **kwargs
        )

    def _retrieve(self, types: Dict[str, List[str]], message: str) -> Any:
        return self._call(MetadataApi, "retrieve", types, progress_message=message)

    @staticmethod
    def _retrieve_problems(result: Dict[str, Any]) -> List[str]:
        problems = format_problems(as_list(result.get("messages")), "retrieve")
        if not problems and result.get("status") == "Failed":
            problems = [result.get("errorMessage") or "Retrieve failed"]
        return problems

    @staticmethod
    def _deploy_problems(result: Dict[str, Any]) -> List[str]:
        problems = format_problems(component_failures(result), "deploy")
        problems += format_test_failures(run_test_failures(result))
        if not problems:
            problems = [result.get("errorMessage") or f"Deploy finished with status {result.get('status')}"]
        return problems

    @sync_operation("deploy")
    def deploy_files(self, files: Iterable[str], deploy_options: Optional[Dict[str, Any]] = None) -> SyncOutcome:
        files = validate_source_files(files)
        api = self.api_factory(MetadataApi)
        zipfile = build_deploy_package(files, api.api_version, self.types)

        result = ProgressNotification.show_progress(
            api, "deploy", zipfile, deploy_options=deploy_options, progress=self.progress,
            progress_message="Deploying files to server",
        )
        if result is None:
            return _expired()
        if not result.get("success"):
            return SyncOutcome(False, "Deploy failed", problems=self._deploy_problems(result), files=files)

        self.file_properties.update_after_deploy(result)
        return SyncOutcome(
            True, "Files were deployed to server successfully", files=files,
            data={"id": result.get("id")},
        )

    @sync_operation("destruct")
    def destruct_files(self, files: Iterable[str], confirm: bool = True) -> SyncOutcome:
        if not confirm:
            return SyncOutcome(False, "Destruct cancelled")

        files = validate_source_files(files)
        api = self.api_factory(MetadataApi)
        zipfile = build_destruct_package(files, api.api_version, self.types)

        result = ProgressNotification.show_progress(
            api, "deploy", zipfile, progress=self.progress,
            progress_message="Destructing files from server",
        )
        if result is None:
            return _expired()
        if not result.get("success"):
            return SyncOutcome(False, "Destruct failed", problems=self._deploy_problems(result), files=files)

        self.file_properties.remove(files)
        removed = []
        for file_name in files:
            for path in (file_name, file_name + META_SUFFIX):
                if os.path.isfile(path):
                    os.remove(path)
                    removed.append(path)
        return SyncOutcome(True, "Files were deleted from server successfully", files=removed)

    @sync_operation("retrieve")
    def retrieve_files(self, file_names: Iterable[str]) -> SyncOutcome:
        file_names = [f for f in file_names if f]
        if not file_names:
            raise ValidationError("No files were specified")

        result = self._retrieve(get_retrieve_types(file_names, self.types), "Retrieving files from server")
        if result is None:
            return _expired()
        problems = self._retrieve_problems(result)
        if problems:
            return SyncOutcome(False, "Retrieve failed", problems=problems)

        written = extract_zip_file(result.get("zipFile"), self.settings.source_path)
        self.file_properties.set_file_properties(result.get("fileProperties"))
        return SyncOutcome(True, f"{len(written)} files were retrieved from server", files=written)

    @sync_operation("refreshFolders")
    def refresh_folders(self, folders: Iterable[str]) -> SyncOutcome:
        types = self.types
        retrieve_types = {}
        for folder in folders:
            xml_name = types.get_xml_name(os.path.basename(os.path.normpath(folder)))
            if xml_name:
                retrieve_types[xml_name] = ["*"]
        if not retrieve_types:
            raise ValidationError("None of the folders is a metadata folder")

        result = self._retrieve(retrieve_types, "Refresh folders from server")
        if result is None:
            return _expired()
        problems = self._retrieve_problems(result)
        if problems:
            return SyncOutcome(False, "Refresh failed", problems=problems)

        written = extract_zip_file(result.get("zipFile"), self.settings.source_path, ignore_package_xml=True)
        self.file_properties.set_file_properties(result.get("fileProperties"))
        return SyncOutcome(True, "Your folders were successfully refreshed", files=written)

    @sync_operation("retrieveByManifest")
    def retrieve_by_manifest(self, manifest_path: str) -> SyncOutcome:
        manifest = parse_manifest(os.path.abspath(manifest_path))
        retrieve_types = manifest.to_retrieve_types()
        if not retrieve_types:
            raise ValidationError(f"Manifest {manifest_path} lists no types")

        result = self._retrieve(retrieve_types, "Retrieving manifest from server")
        if result is None:
            return _expired()
        problems = self._retrieve_problems(result)
        if problems:
            return SyncOutcome(False, "Retrieve failed", problems=problems)

        # package.xml in the zip would overwrite the manifest itself
        extract_to = os.path.dirname(os.path.abspath(manifest_path))
        written = extract_zip_file(result.get("zipFile"), extract_to, ignore_package_xml=True)
        return SyncOutcome(True, f"Your manifest was retrieved to {extract_to}", files=written)

    def get_subscribed_meta_objects(self) -> List[str]:
        return self.settings.get_config(SUBSCRIBED_META_OBJECTS_FILE) or []

    def set_subscribed_meta_objects(self, xml_names: Iterable[str]) -> None:
        self.settings.set_config_value(SUBSCRIBED_META_OBJECTS_FILE, sorted(set(xml_names)))

    @sync_operation("createNewProject")
    def create_new_project(self, subscribed_types: Optional[Iterable[str]] = None,
                           reload_cache: bool = True) -> SyncOutcome:
        if subscribed_types:
            self.set_subscribed_meta_objects(subscribed_types)

        subscribed = self.get_subscribed_meta_objects()
        if not subscribed:
            if not self.metadata_cache.get_meta_objects():
                described = self.describe_metadata()
                if not described.success:
                    return described
            return SyncOutcome(
                False, "No subscribed metaObjects for this project",
                data={"available": sorted(o["xmlName"] for o in self.metadata_cache.get_meta_objects())},
            )

        result = self._retrieve({xml_name: ["*"] for xml_name in subscribed}, "Retrieving files from server")
        if result is None:
            return _expired()
        problems = self._retrieve_problems(result)
        if problems:
            return SyncOutcome(False, "Retrieve failed", problems=problems)

        written = extract_zip_file(result.get("zipFile"), self.settings.source_path)
        self.file_properties.set_file_properties(result.get("fileProperties"))

        data: Dict[str, Any] = {"project": self.project_name}
        if reload_cache:
            summary = self.describe_cache.reload_sobject_cache(scope=SObjectReloadScope.ALL, progress=self.progress)
            data["sobjects"] = len(summary.described)
            data["failed"] = summary.failed

        return SyncOutcome(True, f"Project '{self.project_name}' is ready at {self.settings.project_path}",
                           files=written, data=data)

    def update_project(self) -> SyncOutcome:
        return self.create_new_project(reload_cache=False)

    @sync_operation("describeMetadata")
    def describe_metadata(self) -> SyncOutcome:
        result = self._call(MetadataApi, "describe_metadata")
        if result is None:
            return _expired()

        self.metadata_cache.set_meta_objects(result)
        count = len(self.metadata_cache.get_meta_objects())
        return SyncOutcome(True, f"Metadata describe result with {count} objects has been kept to .config/metadata.json",
                           data={"count": count})

    @sync_operation("refreshFromServer")
    def refresh_file_from_server(self, file_name: str) -> SyncOutcome:
        attrs = get_file_attributes(file_name, self.types)
        if attrs.directory_name not in SOURCE_BODY_FIELDS:
            raise ValidationError(f"Cannot refresh {attrs.directory_name} files, retrieve them instead")

        file_property = self.file_properties.get_file_property(file_name)
        if not file_property.get("id"):
            return SyncOutcome(False, f"{attrs.full_name} has no server id, retrieve it first")

        sobject, field_name = SOURCE_BODY_FIELDS[attrs.directory_name]
        result = self._call(
            RestApi, "get", f"/sobjects/{sobject}/{file_property['id']}",
            progress_message="Refreshing file from server",
        )
        if result is None:
            return _expired()

        with open(file_name, "w", encoding="utf-8") as f:
            f.write(result.get(field_name) or "")
        return SyncOutcome(True, f"{attrs.full_name} was refreshed from server", files=[os.path.abspath(file_name)])

    @sync_operation("reloadSymbolTable")
    def reload_symbol_table(self) -> SyncOutcome:
        """Fetch ApexClass symbol tables page by page, saving each page as it arrives."""
        api = self.api_factory(ToolingApi)
        pages = records = 0
        for page in api.iter_query_pages(
            SYMBOL_TABLE_QUERY, batch_size=200, progress=self.progress,
            progress_message="This is a long time request, please wait...",
        ):
            pages += 1
            for record in page.get("records") or []:
                if record.get("SymbolTable"):
                    self.settings.set_config_value(
                        os.path.join(SYMBOL_TABLES_DIR, f"{record['Name']}.json"), record["SymbolTable"]
                    )
                    records += 1

        if not pages:
            return _expired()
        return SyncOutcome(True, f"Saved {records} symbol tables from {pages} pages",
                           data={"pages": pages, "records": records})

    @sync_operation("runSyncTests")
    def run_sync_tests(self, tests: List[Dict[str, Any]]) -> SyncOutcome:
        if not tests:
            raise ValidationError("No test classes were specified")

        result = self._call(ToolingApi, "run_sync_tests", tests, progress_message="Running test class, please wait")
        if result is None:
            return _expired()

        failures = format_test_failures(as_list(result.get("failures")))
        num_failures = int(result.get("numFailures") or len(failures))
        message = f"Ran {result.get('numTestsRun', 0)} tests, {num_failures} failed"
        return SyncOutcome(num_failures == 0, message, problems=failures, data=result)

    def run_test_class(self, file_name: str, test_methods: Optional[List[str]] = None) -> SyncOutcome:
        """Run the tests of a local, already synced test class."""
        class_id = self.file_properties.get_file_property(file_name).get("id")
        if not class_id:
            return SyncOutcome(False, f"{os.path.basename(file_name)} has no server id, retrieve it first")

        suite: Dict[str, Any] = {"classId": class_id}
        if test_methods:
            suite["testMethods"] = list(test_methods)
        return self.run_sync_tests([suite])

    @sync_operation("executeQuery")
    def execute_query(self, soql: str, tooling: bool = False) -> SyncOutcome:
        validate_soql_query(soql)
        result = self._call(ToolingApi if tooling else RestApi, "query", soql)
        if result is None:
            return _expired()
        return SyncOutcome(True, f"{result.get('totalSize', 0)} records", data=result)

    @sync_operation("executeAnonymous")
    def execute_anonymous(self, apex_code: str) -> SyncOutcome:
        if not apex_code or not apex_code.strip():
            return SyncOutcome(False, "There is no code to execute")

        result = self._call(ToolingApi, "execute_anonymous", apex_code)
        if result is None:
            return _expired()

        if not result.get("compiled"):
            return SyncOutcome(
                False, f"{result.get('compileProblem')} at line {result.get('line')} column {result.get('column')}",
                data=result,
            )
        if not result.get("success"):
            return SyncOutcome(
                False, result.get("exceptionMessage") or "Execution failed",
                problems=[result.get("exceptionStackTrace") or ""], data=result,
            )
        return SyncOutcome(True, "Anonymous code executed successfully", data=result)

    @sync_operation("executeRestTest")
    def execute_rest_test(self, method: str, server_url: str, data: Any = None) -> SyncOutcome:
        method = (method or "GET").upper()
        if method not in REST_METHODS:
            raise ValidationError(f"Unsupported HTTP method: {method}")

        kwargs = {} if method in ("GET", "DELETE") else {"data": data}
        result = self._call(RestApi, method.lower(), server_url, **kwargs)
        if result is None:
            return _expired()
        return SyncOutcome(True, f"{method} {server_url} succeeded", data={"body": result})

    @sync_operation("updateUserLanguage")
    def update_user_language(self, language: str) -> SyncOutcome:
        user_id = self.session_store.get_session(self.project_name).user_id
        if not user_id:
            return SyncOutcome(False, "Session has no user id, please login again")

        result = self._call(RestApi, "patch", f"/sobjects/User/{user_id}",
                            data={"LanguageLocaleKey": language}, progress_message="Updating user language")
        if result is None:
            return _expired()
        return SyncOutcome(True, f"Your language is updated to {language}")

    @sync_operation("executeGlobalDescribe")
    def execute_global_describe(self, reload: bool = False) -> SyncOutcome:
        result = self.describe_cache.execute_global_describe(reload=reload, progress=self.progress)
        if result is None:
            return _expired()
        sobjects = result.get("sobjects") or []
        return SyncOutcome(True, f"{len(sobjects)} sobjects", data={"sobjects": [s["name"] for s in sobjects]})

    @sync_operation("reloadSobjectCache")
    def reload_sobject_cache(self, sobjects: Optional[List[str]] = None,
                             scope: Optional[SObjectReloadScope] = None,
                             chooser: Optional[Chooser] = None) -> SyncOutcome:
        summary = self.describe_cache.reload_sobject_cache(sobjects, scope, chooser, progress=self.progress)
        if not summary.requested:
            return SyncOutcome(False, "No sobjects to reload")
        return SyncOutcome(
            not summary.failed or bool(summary.described),
            f"Your sobjects cache were saved at '{self.settings.settings_path}'",
            problems=[f"Describe of {name} failed" for name in summary.failed],
            data={"described": summary.described, "failed": summary.failed},
        )

    @sync_operation("buildSobjectSOQL")
    def build_sobject_soql(self, sobject: str, condition: SObjectSOQL = SObjectSOQL.ALL) -> SyncOutcome:
        validate_api_name(sobject)
        soql = self.describe_cache.build_sobject_soql(sobject, condition, progress=self.progress)
        if soql is None:
            return _expired()
        return SyncOutcome(True, soql, data={"soql": soql})
