"""
Describe, cache and execution tools - global/sobject describe, queries,
anonymous apex, synchronous tests and raw REST calls
"""
import json
import logging
from typing import Dict, List, Optional

from sfsync.exceptions import SyncError
from sfsync.mcp.server import register_tool
from sfsync.mcp.tools.sync_tools import get_sync
from sfsync.mcp.tools.utils import (
    ResponseSizeManager,
    format_error_response,
    format_outcome,
    format_success_response,
)
from sfsync.models import SObjectReloadScope, SObjectSOQL

logger = logging.getLogger(__name__)

MAX_QUERY_RECORDS = 200


@register_tool
def describe_metadata(project_name: Optional[str] = None) -> str:
    """
    Describe the org's metadata types and cache them in .config/metadata.json.

    Args:
        project_name: Project to describe (default project when omitted)
    """
    try:
        outcome = get_sync(project_name).describe_metadata()
        return format_outcome(outcome, context="describe_metadata")
    except SyncError as e:
        logger.exception("describe_metadata failed")
        return format_error_response(e, context="describe_metadata")


@register_tool
def global_describe(reload: bool = False, project_name: Optional[str] = None) -> str:
    """
    List the sobjects of the org, from cache unless reload is set.

    Args:
        reload: Ignore the cached global describe
        project_name: Project to describe (default project when omitted)
    """
    try:
        outcome = get_sync(project_name).execute_global_describe(reload=reload)
        return format_outcome(outcome, context="global_describe")
    except SyncError as e:
        logger.exception("global_describe failed")
        return format_error_response(e, context="global_describe")


@register_tool
def reload_sobject_cache(
    scope: str = "All",
    sobjects: Optional[List[str]] = None,
    project_name: Optional[str] = None
) -> str:
    """
    Describe sobjects and rebuild the local describe cache.

    Args:
        scope: "All", "Standard", "Custom" or "CustomScope"
        sobjects: Objects to describe; with scope "CustomScope" the names chosen from the queryable objects
        project_name: Project to reload (default project when omitted)
    """
    try:
        try:
            reload_scope = SObjectReloadScope(scope)
        except ValueError:
            return format_error_response(
                Exception(f"Invalid scope: {scope}. Must be: All, Standard, Custom or CustomScope"),
                context="reload_sobject_cache"
            )

        sync = get_sync(project_name)
        if reload_scope == SObjectReloadScope.CUSTOMSCOPE:
            chosen = set(sobjects or [])
            outcome = sync.reload_sobject_cache(
                scope=reload_scope, chooser=lambda names: [n for n in names if n in chosen]
            )
        else:
            outcome = sync.reload_sobject_cache(sobjects=sobjects, scope=reload_scope)
        return format_outcome(outcome, context="reload_sobject_cache")
    except SyncError as e:
        logger.exception("reload_sobject_cache failed")
        return format_error_response(e, context="reload_sobject_cache")


@register_tool
def get_sobject_describe(sobject: str, project_name: Optional[str] = None) -> str:
    """
    Return the cached describe of one sobject (reload the cache first if missing).

    Args:
        sobject: Object API name, case-insensitive
        project_name: Project of the cache (default project when omitted)
    """
    try:
        sync = get_sync(project_name)
        describe = sync.describe_cache.get_sobject_describe(sobject)
        if not describe:
            return format_error_response(
                Exception(f"INVALID_TYPE: {sobject} is not in the sobject cache"),
                context="get_sobject_describe"
            )

        return format_success_response({
            "name": describe.get("name"),
            "label": describe.get("label"),
            "fields": [
                {"name": f.get("name"), "type": f.get("type"), "referenceTo": f.get("referenceTo") or []}
                for f in describe.get("fields") or []
            ],
            "childRelationships": [
                r.get("relationshipName") for r in describe.get("childRelationships") or []
                if r.get("relationshipName")
            ],
        })
    except SyncError as e:
        logger.exception("get_sobject_describe failed")
        return format_error_response(e, context="get_sobject_describe")


@register_tool
def build_sobject_soql(sobject: str, condition: str = "All", project_name: Optional[str] = None) -> str:
    """
    Build a SELECT of the sobject's fields matching a condition.

    Args:
        sobject: Object API name
        condition: "All", "custom", "updateable" or "createable"
        project_name: Project whose session is used (default project when omitted)
    """
    try:
        try:
            soql_condition = SObjectSOQL(condition)
        except ValueError:
            return format_error_response(
                Exception(f"Invalid condition: {condition}. Must be: All, custom, updateable or createable"),
                context="build_sobject_soql"
            )
        outcome = get_sync(project_name).build_sobject_soql(sobject, soql_condition)
        return format_outcome(outcome, context="build_sobject_soql")
    except SyncError as e:
        logger.exception("build_sobject_soql failed")
        return format_error_response(e, context="build_sobject_soql")


@register_tool
def execute_query(soql: str, tooling: bool = False, project_name: Optional[str] = None) -> str:
    """
    Run a SOQL query; SELECT * FROM <object> selects every field.

    Args:
        soql: The query, e.g. "SELECT Id, Name FROM Account LIMIT 10"
        tooling: Run against the Tooling API
        project_name: Project whose session is used (default project when omitted)
    """
    try:
        outcome = get_sync(project_name).execute_query(soql, tooling=tooling)
        if not outcome.success:
            return format_outcome(outcome, context="execute_query")

        records, _, truncation = ResponseSizeManager.truncate_if_needed(
            outcome.data.get("records") or [], MAX_QUERY_RECORDS
        )
        response = {
            "total_size": outcome.data.get("totalSize", 0),
            "done": outcome.data.get("done", True),
            "records": records,
        }
        if truncation:
            response["truncation"] = truncation
        return format_success_response(response)
    except SyncError as e:
        logger.exception("execute_query failed")
        return format_error_response(e, context="execute_query")


@register_tool
def reload_symbol_table(project_name: Optional[str] = None) -> str:
    """
    Fetch the symbol table of every Apex class into .config/symbolTables.

    Args:
        project_name: Project to reload (default project when omitted)
    """
    try:
        outcome = get_sync(project_name).reload_symbol_table()
        return format_outcome(outcome, context="reload_symbol_table")
    except SyncError as e:
        logger.exception("reload_symbol_table failed")
        return format_error_response(e, context="reload_symbol_table")


@register_tool
def run_sync_tests(
    class_names: Optional[List[str]] = None,
    file_name: Optional[str] = None,
    test_methods: Optional[List[str]] = None,
    project_name: Optional[str] = None
) -> str:
    """
    Run Apex tests synchronously.

    Args:
        class_names: Test class names to run
        file_name: Local test class file to run instead of class_names
        test_methods: Only these methods of file_name's class
        project_name: Project whose session is used (default project when omitted)
    """
    try:
        sync = get_sync(project_name)
        if file_name:
            outcome = sync.run_test_class(file_name, test_methods)
        else:
            tests: List[Dict[str, str]] = [{"className": name} for name in class_names or []]
            outcome = sync.run_sync_tests(tests)
        return format_outcome(outcome, context="run_sync_tests")
    except SyncError as e:
        logger.exception("run_sync_tests failed")
        return format_error_response(e, context="run_sync_tests")


@register_tool
def execute_anonymous(apex_code: str, project_name: Optional[str] = None) -> str:
    """
    Execute anonymous Apex.

    Args:
        apex_code: Apex statements, e.g. "System.debug('hello');"
        project_name: Project whose session is used (default project when omitted)
    """
    try:
        outcome = get_sync(project_name).execute_anonymous(apex_code)
        return format_outcome(outcome, context="execute_anonymous")
    except SyncError as e:
        logger.exception("execute_anonymous failed")
        return format_error_response(e, context="execute_anonymous")


@register_tool
def execute_rest_test(
    server_url: str,
    method: str = "GET",
    data: Optional[str] = None,
    project_name: Optional[str] = None
) -> str:
    """
    Send a raw REST request, e.g. to test an Apex REST service.

    Args:
        server_url: "/sobjects/Account/describe", "/apexrest/MyService" or a full https URL
        method: GET, POST, PATCH, PUT or DELETE
        data: JSON request body
        project_name: Project whose session is used (default project when omitted)
    """
    try:
        body = json.loads(data) if data else None
    except json.JSONDecodeError as e:
        return format_error_response(Exception(f"Invalid JSON body: {e}"), context="execute_rest_test")

    try:
        outcome = get_sync(project_name).execute_rest_test(method, server_url, body)
        return format_outcome(outcome, context="execute_rest_test")
    except SyncError as e:
        logger.exception("execute_rest_test failed")
        return format_error_response(e, context="execute_rest_test")


@register_tool
def get_org_limits(project_name: Optional[str] = None) -> str:
    """
    Show the org's API and storage limits.

    Args:
        project_name: Project whose session is used (default project when omitted)
    """
    try:
        outcome = get_sync(project_name).execute_rest_test("GET", "/limits")
        return format_outcome(outcome, context="get_org_limits")
    except SyncError as e:
        logger.exception("get_org_limits failed")
        return format_error_response(e, context="get_org_limits")


@register_tool
def update_user_language(language: str, project_name: Optional[str] = None) -> str:
    """
    Change the language of the logged-in user.

    Args:
        language: LanguageLocaleKey, e.g. "en_US", "zh_CN", "ja"
        project_name: Project whose session is used (default project when omitted)
    """
    try:
        outcome = get_sync(project_name).update_user_language(language)
        return format_outcome(outcome, context="update_user_language")
    except SyncError as e:
        logger.exception("update_user_language failed")
        return format_error_response(e, context="update_user_language")
