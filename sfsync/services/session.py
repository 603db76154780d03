"""Session store: one active session per project, kept in session.json"""
import logging
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from sfsync.exceptions import SessionNotFoundError
from sfsync.models import Session
from sfsync.services.projects import ProjectRegistry

logger = logging.getLogger(__name__)

SESSION_FILE = "session.json"


class SessionStore:
    """Reads and replaces project sessions

    The store never mutates a Session in place; ``set_session`` replaces the
    stored one wholesale so snapshots held by API clients stay consistent.
    """

    def __init__(self, registry: Optional[ProjectRegistry] = None):
        self.registry = registry or ProjectRegistry()

    def get_session(self, project_name: Optional[str] = None) -> Session:
        project_name = project_name or self.registry.get_default_project()
        data = self.registry.get_settings(project_name).get_config(SESSION_FILE)
        if not data:
            raise SessionNotFoundError(
                f"No session for project '{project_name}', please login first"
            )

        try:
            session = Session.model_validate(data)
        except PydanticValidationError as e:
            raise SessionNotFoundError(f"Corrupted session for project '{project_name}': {e}") from e

        if not session.project_name:
            session = session.model_copy(update={"project_name": project_name})
        return session

    def set_session(self, session: Session, make_default: bool = True) -> Session:
        if not session.project_name:
            raise ValueError("Session must name its project")

        session = session.touched()
        self.registry.get_settings(session.project_name).set_config_value(
            SESSION_FILE, session.to_json_dict()
        )
        if make_default:
            self.registry.set_default_project(session.project_name)

        logger.info("Session of project '%s' saved", session.project_name)
        return session

    def clear_session(self, project_name: Optional[str] = None) -> None:
        project_name = project_name or self.registry.get_default_project()
        self.registry.get_settings(project_name).remove_config(SESSION_FILE)
        logger.info("Session of project '%s' cleared", project_name)
