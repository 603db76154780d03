"""
Authentication and project tools - login, logout, switching and removing projects
"""
import logging
from typing import Optional

from sfsync.exceptions import SyncError
from sfsync.mcp.server import register_tool
from sfsync.mcp.tools.utils import format_error_response, format_success_response
from sfsync.models import DEFAULT_LOGIN_URL
from sfsync.services.auth import authorize_default_project, login_with_password
from sfsync.services.projects import ProjectRegistry
from sfsync.services.session import SessionStore
from sfsync.utils.logging import new_correlation_id
from sfsync.utils.validators import validate_project_name

logger = logging.getLogger(__name__)

SANDBOX_LOGIN_URL = "https://test.salesforce.com"


@register_tool
def login(
    project_name: str,
    username: str,
    password: str,
    security_token: str = "",
    sandbox: bool = False,
    api_version: Optional[int] = None
) -> str:
    """
    Log in with username and password and make the project the default one.

    Args:
        project_name: Local project (workspace folder) the session belongs to
        username: Salesforce username
        password: Salesforce password
        security_token: Security token, empty when the IP is trusted
        sandbox: Log in to test.salesforce.com
        api_version: API version, e.g. 46 (configured default when omitted)
    """
    new_correlation_id()
    try:
        validate_project_name(project_name)
        session = login_with_password(
            project_name,
            username,
            password,
            security_token=security_token,
            login_url=SANDBOX_LOGIN_URL if sandbox else DEFAULT_LOGIN_URL,
            api_version=api_version,
        )
        return format_success_response({
            "project": session.project_name,
            "instance_url": session.instance_url,
            "api_version": session.api_version,
        })
    except SyncError as e:
        logger.exception("login failed")
        return format_error_response(e, context="login")


@register_tool
def refresh_login(project_name: Optional[str] = None) -> str:
    """
    Refresh the session of a project with its refresh token.

    Args:
        project_name: Project to refresh (default project when omitted)
    """
    new_correlation_id()
    try:
        session = authorize_default_project(project_name)
        return format_success_response({
            "project": session.project_name,
            "last_updated_time": session.last_updated_time,
        })
    except SyncError as e:
        logger.exception("refresh_login failed")
        return format_error_response(e, context="refresh_login")


@register_tool
def logout(project_name: Optional[str] = None) -> str:
    """
    Forget the session of a project.

    Args:
        project_name: Project to log out (default project when omitted)
    """
    try:
        store = SessionStore()
        project_name = project_name or store.registry.get_default_project()
        store.clear_session(project_name)
        return format_success_response({"project": project_name})
    except SyncError as e:
        logger.exception("logout failed")
        return format_error_response(e, context="logout")


@register_tool
def list_projects() -> str:
    """
    List known projects and which one is the default.
    """
    try:
        projects = ProjectRegistry().get_projects()
        return format_success_response({
            "projects": sorted(projects),
            "default": next((name for name, is_default in projects.items() if is_default), None),
        })
    except SyncError as e:
        logger.exception("list_projects failed")
        return format_error_response(e, context="list_projects")


@register_tool
def switch_project(project_name: str) -> str:
    """
    Make an existing project the default one.

    Args:
        project_name: Project to switch to
    """
    try:
        registry = ProjectRegistry()
        if project_name not in registry.get_projects():
            return format_error_response(
                Exception(f"Unknown project: {project_name}"), context="switch_project"
            )
        registry.set_default_project(project_name)
        return format_success_response({"default": project_name})
    except SyncError as e:
        logger.exception("switch_project failed")
        return format_error_response(e, context="switch_project")


@register_tool
def remove_project(project_name: str, delete_files: bool = False) -> str:
    """
    Forget a project together with its session and caches.

    Args:
        project_name: Project to remove
        delete_files: Also delete the project's source files
    """
    try:
        ProjectRegistry().remove_project(project_name, delete_files=delete_files)
        return format_success_response({"removed": project_name, "files_deleted": delete_files})
    except SyncError as e:
        logger.exception("remove_project failed")
        return format_error_response(e, context="remove_project")
