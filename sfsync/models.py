"""Data models shared by the API client, caches and the sync orchestrator"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DEFAULT_API_VERSION = 46
DEFAULT_LOGIN_URL = "https://login.salesforce.com"


class Session(BaseModel):
    """Authentication data of one project, persisted as session.json"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    session_id: str
    instance_url: str
    api_version: int = DEFAULT_API_VERSION
    refresh_token: Optional[str] = None
    organization_id: Optional[str] = None
    user_id: Optional[str] = None
    project_name: Optional[str] = None
    login_url: str = DEFAULT_LOGIN_URL
    last_updated_time: Optional[str] = None

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)

    def touched(self) -> "Session":
        return self.model_copy(update={"last_updated_time": datetime.now().isoformat()})


class FileProperty(BaseModel):
    """Server-side properties of a deployed or retrieved file"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: Optional[str] = None
    file_name: str
    full_name: str = ""
    meta_folder: str = ""
    folder: str = ""
    type: Optional[str] = None
    last_modified_date: Optional[str] = None
    last_modified_by_name: Optional[str] = None


ProgressSink = Callable[[str, Optional[int]], None]


@dataclass
class RequestOptions:
    """Recognized options of a single API request"""

    server_url: str = ""
    data: Any = None
    batch_size: int = 2000
    timeout: Optional[float] = None
    ignore_error: bool = False
    progress: Optional[ProgressSink] = None
    progress_message: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class FileAttributes:
    """Metadata attributes derived from a local file path

    For ``.../src/aura/Campaign/CampaignController.js``::

        directory_name = "aura"
        folder = "Campaign"
        name = "CampaignController"
        extension = "js"
        full_name = "CampaignController.js"
        member_name = "Campaign"
    """

    file_name: str
    directory_name: str
    folder: str
    name: str
    extension: str
    full_name: str
    xml_name: Optional[str] = None
    member_name: str = ""
    in_bundle: bool = False
    is_meta_file: bool = False


@dataclass
class ManifestType:
    name: str
    members: List[str] = field(default_factory=list)


@dataclass
class Manifest:
    types: List[ManifestType] = field(default_factory=list)
    version: Optional[str] = None

    def to_retrieve_types(self) -> Dict[str, List[str]]:
        return {t.name: list(t.members) for t in self.types}


@dataclass
class SyncOutcome:
    """Result of an orchestrated operation, ready to show to the user"""

    success: bool
    message: str
    problems: List[str] = field(default_factory=list)
    files: List[str] = field(default_factory=list)
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ReloadSummary:
    requested: List[str] = field(default_factory=list)
    described: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class SObjectReloadScope(str, Enum):
    ALL = "All"
    STANDARD = "Standard"
    CUSTOM = "Custom"
    CUSTOMSCOPE = "CustomScope"


class SObjectSOQL(str, Enum):
    ALL = "All"
    CUSTOM = "custom"
    UPDATEABLE = "updateable"
    CREATEABLE = "createable"
