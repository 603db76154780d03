"""Project registry and per-project settings files

Layout on disk::

    <home_dir>/config.json                 {"project": true|false, ...}
    <workspace>/<project>/src/...          metadata source tree
    <workspace>/<project>/.config/*.json   session, caches, file properties
"""
import json
import logging
import os
import shutil
from typing import Any, Dict, Optional

from sfsync.config import get_config
from sfsync.exceptions import ProjectNotFoundError
from sfsync.utils.validators import validate_project_name

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.json"
SETTINGS_DIR = ".config"
SOURCE_DIR = "src"


def _read_json(path: str, default: Any = None) -> Any:
    if not os.path.exists(path):
        return default
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _write_json(path: str, value: Any) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(value, f, indent=4)


class ProjectRegistry:
    """The set of known projects and which one is the default"""

    def __init__(self, home_dir: Optional[str] = None, workspace: Optional[str] = None):
        config = get_config()
        self.home_dir = home_dir or config.home_dir
        self.workspace = workspace or config.workspace

    @property
    def config_file(self) -> str:
        return os.path.join(self.home_dir, CONFIG_FILE)

    def get_projects(self) -> Dict[str, bool]:
        try:
            return _read_json(self.config_file, default=None) or {}
        except ValueError as e:
            raise ProjectNotFoundError(f"Malformed {self.config_file}: {e}") from e

    def set_default_project(self, project_name: str) -> None:
        """Flag ``project_name`` as default and every other project as not."""
        validate_project_name(project_name)
        projects = {name: False for name in self.get_projects()}
        projects[project_name] = True
        _write_json(self.config_file, projects)
        logger.info("Default project is now '%s'", project_name)

    def get_default_project(self) -> str:
        if not os.path.exists(self.config_file):
            raise ProjectNotFoundError(f"Not found config.json at {self.config_file}")

        for name, is_default in self.get_projects().items():
            if is_default:
                return name

        raise ProjectNotFoundError("No default project, please login first")

    def get_project_path(self, project_name: Optional[str] = None) -> str:
        project_name = project_name or self.get_default_project()
        path = os.path.join(self.workspace, project_name)
        os.makedirs(path, exist_ok=True)
        return path

    def get_settings(self, project_name: Optional[str] = None) -> "ProjectSettings":
        return ProjectSettings(self.get_project_path(project_name))

    def remove_project(self, project_name: str, delete_files: bool = False) -> None:
        """Forget a project; its session and caches go with it."""
        projects = self.get_projects()
        if project_name not in projects:
            raise ProjectNotFoundError(f"Unknown project: {project_name}")

        del projects[project_name]
        _write_json(self.config_file, projects)

        project_path = os.path.join(self.workspace, project_name)
        settings_path = os.path.join(project_path, SETTINGS_DIR)
        target = project_path if delete_files else settings_path
        if os.path.isdir(target):
            shutil.rmtree(target)
        logger.info("Removed project '%s'", project_name)


class ProjectSettings:
    """JSON files under ``<project>/.config``"""

    def __init__(self, project_path: str):
        self.project_path = project_path
        self.settings_path = os.path.join(project_path, SETTINGS_DIR)

    @property
    def project_name(self) -> str:
        return os.path.basename(os.path.normpath(self.project_path))

    @property
    def source_path(self) -> str:
        return os.path.join(self.project_path, SOURCE_DIR)

    def path_of(self, *parts: str) -> str:
        return os.path.join(self.settings_path, *parts)

    def get_config(self, file_name: str, default: Any = None) -> Any:
        try:
            return _read_json(self.path_of(file_name), default=default)
        except ValueError:
            logger.warning("Ignoring malformed settings file %s", self.path_of(file_name))
            return default

    def set_config_value(self, file_name: str, value: Any) -> None:
        _write_json(self.path_of(file_name), value)

    def remove_config(self, file_name: str) -> None:
        path = self.path_of(file_name)
        if os.path.exists(path):
            os.remove(path)
