"""
Metadata sync tools - deploy, destruct, retrieve and refresh project files
"""
import logging
from typing import List, Optional

from sfsync.exceptions import SyncError
from sfsync.mcp.server import register_tool
from sfsync.mcp.tools.utils import format_error_response, format_outcome, format_success_response
from sfsync.services.sync import MetadataSync
from sfsync.utils.logging import new_correlation_id

logger = logging.getLogger(__name__)


def get_sync(project_name: Optional[str] = None) -> MetadataSync:
    """Orchestrator of ``project_name``, or of the default project"""
    new_correlation_id()
    return MetadataSync(project_name or None)


@register_tool
def deploy_files(
    files: List[str],
    project_name: Optional[str] = None,
    check_only: bool = False,
    run_tests: Optional[List[str]] = None
) -> str:
    """
    Deploy local source files to the org.

    Companion -meta.xml files are added automatically; any file of an aura
    or lwc bundle deploys the whole bundle.

    Args:
        files: Absolute paths below <project>/src, e.g. ["/ws/demo/src/classes/A.cls"]
        project_name: Project to deploy to (default project when omitted)
        check_only: Validate the deployment without saving it
        run_tests: Test class names to run with the deployment

    Returns:
        JSON response with the deploy id, or the [sf:deploy] problems
    """
    try:
        deploy_options = {"checkOnly": check_only}
        if run_tests:
            deploy_options["runTests"] = run_tests
            deploy_options["testLevel"] = "RunSpecifiedTests"
        outcome = get_sync(project_name).deploy_files(files, deploy_options=deploy_options)
        return format_outcome(outcome, context="deploy_files")
    except SyncError as e:
        logger.exception("deploy_files failed")
        return format_error_response(e, context="deploy_files")


@register_tool
def destruct_files(files: List[str], confirm: bool = False, project_name: Optional[str] = None) -> str:
    """
    Delete components from the org and remove the local files.

    Args:
        files: Absolute paths of the local files whose components are deleted
        confirm: Must be true, nothing is deleted otherwise
        project_name: Project to delete from (default project when omitted)

    Returns:
        JSON response listing the removed local files
    """
    try:
        outcome = get_sync(project_name).destruct_files(files, confirm=confirm)
        return format_outcome(outcome, context="destruct_files")
    except SyncError as e:
        logger.exception("destruct_files failed")
        return format_error_response(e, context="destruct_files")


@register_tool
def retrieve_files(files: List[str], project_name: Optional[str] = None) -> str:
    """
    Retrieve the server version of local files, overwriting them.

    Args:
        files: Absolute paths below <project>/src
        project_name: Project to retrieve from (default project when omitted)
    """
    try:
        outcome = get_sync(project_name).retrieve_files(files)
        return format_outcome(outcome, context="retrieve_files")
    except SyncError as e:
        logger.exception("retrieve_files failed")
        return format_error_response(e, context="retrieve_files")


@register_tool
def refresh_folders(folders: List[str], project_name: Optional[str] = None) -> str:
    """
    Retrieve every component of the given metadata folders.

    Args:
        folders: Metadata folders, e.g. ["/ws/demo/src/classes"] or ["classes", "pages"]
        project_name: Project to refresh (default project when omitted)
    """
    try:
        outcome = get_sync(project_name).refresh_folders(folders)
        return format_outcome(outcome, context="refresh_folders")
    except SyncError as e:
        logger.exception("refresh_folders failed")
        return format_error_response(e, context="refresh_folders")


@register_tool
def retrieve_by_manifest(manifest_path: str, project_name: Optional[str] = None) -> str:
    """
    Retrieve the components listed in a package.xml next to it.

    Args:
        manifest_path: Absolute path of the package.xml
        project_name: Project whose session is used (default project when omitted)
    """
    try:
        outcome = get_sync(project_name).retrieve_by_manifest(manifest_path)
        return format_outcome(outcome, context="retrieve_by_manifest")
    except SyncError as e:
        logger.exception("retrieve_by_manifest failed")
        return format_error_response(e, context="retrieve_by_manifest")


@register_tool
def create_new_project(
    subscribed_types: Optional[List[str]] = None,
    reload_cache: bool = True,
    project_name: Optional[str] = None
) -> str:
    """
    Retrieve every subscribed metadata type into the project's src folder.

    When nothing is subscribed yet the response lists the available types.

    Args:
        subscribed_types: Metadata xml names to subscribe, e.g. ["ApexClass", "ApexTrigger"]
        reload_cache: Also rebuild the sobject describe cache
        project_name: Project to create (default project when omitted)
    """
    try:
        outcome = get_sync(project_name).create_new_project(subscribed_types, reload_cache=reload_cache)
        return format_outcome(outcome, context="create_new_project")
    except SyncError as e:
        logger.exception("create_new_project failed")
        return format_error_response(e, context="create_new_project")


@register_tool
def update_project(project_name: Optional[str] = None) -> str:
    """
    Retrieve the subscribed metadata types again, keeping the sobject cache.

    Args:
        project_name: Project to update (default project when omitted)
    """
    try:
        outcome = get_sync(project_name).update_project()
        return format_outcome(outcome, context="update_project")
    except SyncError as e:
        logger.exception("update_project failed")
        return format_error_response(e, context="update_project")


@register_tool
def refresh_file_from_server(file_name: str, project_name: Optional[str] = None) -> str:
    """
    Overwrite a local Apex class, trigger, page or component with its server body.

    Args:
        file_name: Absolute path of a previously retrieved file
        project_name: Project of the file (default project when omitted)
    """
    try:
        outcome = get_sync(project_name).refresh_file_from_server(file_name)
        return format_outcome(outcome, context="refresh_file_from_server")
    except SyncError as e:
        logger.exception("refresh_file_from_server failed")
        return format_error_response(e, context="refresh_file_from_server")


@register_tool
def get_file_property(file_name: str, project_name: Optional[str] = None) -> str:
    """
    Show the server properties (id, last modified...) kept for a local file.

    Args:
        file_name: Absolute path below <project>/src
        project_name: Project of the file (default project when omitted)
    """
    try:
        file_property = get_sync(project_name).file_properties.get_file_property(file_name)
        return format_success_response({"file_name": file_name, "property": file_property})
    except SyncError as e:
        logger.exception("get_file_property failed")
        return format_error_response(e, context="get_file_property")
