"""Authorization of projects: password login and refresh-token re-authentication

``authorize_default_project`` is what the API clients call when the
platform reports INVALID_SESSION_ID.
"""
import logging
from typing import Dict, Optional

import requests
from simple_salesforce import SalesforceLogin
from simple_salesforce.exceptions import SalesforceAuthenticationFailed

from sfsync.config import get_config
from sfsync.exceptions import AuthenticationError, ProjectNotFoundError, SessionNotFoundError
from sfsync.models import DEFAULT_LOGIN_URL, Session
from sfsync.services.session import SessionStore
from sfsync.utils.validators import validate_url

logger = logging.getLogger(__name__)


def parse_id_url(id_url: str) -> Dict[str, Optional[str]]:
    """Split an identity URL ``.../id/<orgId>/<userId>`` into its ids."""
    parts = [p for p in (id_url or "").split("/") if p]
    user_id = parts.pop() if parts else None
    org_id = parts.pop() if parts else None
    return {"userId": user_id, "organizationId": org_id}


def _domain_of(login_url: str) -> str:
    """``https://test.salesforce.com`` -> ``test``, the domain simple_salesforce expects"""
    host = login_url.split("://", 1)[-1].rstrip("/")
    return host[:-len(".salesforce.com")] if host.endswith(".salesforce.com") else host


def login_with_password(
    project_name: str,
    username: str,
    password: str,
    security_token: str = "",
    login_url: str = DEFAULT_LOGIN_URL,
    api_version: Optional[int] = None,
    store: Optional[SessionStore] = None,
) -> Session:
    """Log in with username/password and make the project the default one."""
    validate_url(login_url, require_https=True)
    store = store or SessionStore()
    api_version = api_version or get_config().api_version

    try:
        session_id, sf_instance = SalesforceLogin(
            username=username,
            password=password,
            security_token=security_token,
            domain=_domain_of(login_url),
            sf_version=f"{api_version}.0",
        )
    except SalesforceAuthenticationFailed as e:
        raise AuthenticationError(f"Login failed for {username}: {e}") from e

    session = Session(
        session_id=session_id,
        instance_url=f"https://{sf_instance}",
        api_version=api_version,
        project_name=project_name,
        login_url=login_url,
    )
    return store.set_session(session)


def refresh_session(session: Session, store: Optional[SessionStore] = None) -> Session:
    """Exchange the session's refresh token for a new access token."""
    store = store or SessionStore()
    if not session.refresh_token:
        raise AuthenticationError(
            f"Project '{session.project_name}' has no refresh token, please login again"
        )

    config = get_config()
    data = {
        "grant_type": "refresh_token",
        "client_id": config.oauth_client_id,
        "refresh_token": session.refresh_token,
    }
    if config.oauth_client_secret:
        data["client_secret"] = config.oauth_client_secret

    token_url = f"{session.login_url.rstrip('/')}/services/oauth2/token"
    try:
        response = requests.post(token_url, data=data, timeout=30)
        response.raise_for_status()
        body = response.json()
    except (requests.RequestException, ValueError) as e:
        raise AuthenticationError(f"Token refresh failed: {e}") from e

    ids = parse_id_url(body.get("id", ""))
    refreshed = session.model_copy(update={
        "session_id": body["access_token"],
        "instance_url": body.get("instance_url", session.instance_url),
        "organization_id": ids["organizationId"] or session.organization_id,
        "user_id": ids["userId"] or session.user_id,
    })
    logger.info("Session of project '%s' refreshed", session.project_name)
    return store.set_session(refreshed, make_default=False)


def authorize_default_project(project_name: Optional[str] = None, store: Optional[SessionStore] = None) -> Session:
    """Re-authenticate ``project_name`` (default project when None).

    Raises:
        AuthenticationError: when the project cannot be re-authorized
    """
    store = store or SessionStore()
    try:
        session = store.get_session(project_name)
    except (SessionNotFoundError, ProjectNotFoundError) as e:
        raise AuthenticationError(str(e)) from e
    return refresh_session(session, store=store)
