"""Server-side properties of local files (componentMetadata.json)

Records come from ``fileProperties`` of a retrieve result and
``componentSuccesses`` of a deploy result; they are keyed by metadata
folder, then by file name, e.g. ``{"classes": {"A.cls": {...}}}``.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from sfsync.exceptions import PackageError
from sfsync.services.projects import ProjectSettings
from sfsync.utils.package import PACKAGE_XML, UNPACKAGED, MetadataTypes, get_file_attributes
from sfsync.utils.results import as_list, component_successes

logger = logging.getLogger(__name__)

COMPONENT_METADATA_FILE = "componentMetadata.json"


def parse_file_name(file_name: str) -> Dict[str, str]:
    """Split a zip path into metaFolder / folder / fullName.

    Accepts ``[unpackaged/]triggers/RejectTrigger.trigger`` and
    ``[unpackaged/]aura/CampaignItem/CampaignItemController.js``; anything
    else gives ``{}``.
    """
    parts = (file_name or "").split("/")
    if parts and parts[0] == UNPACKAGED:
        parts = parts[1:]

    if len(parts) == 2:
        return {"metaFolder": parts[0], "folder": "", "fullName": parts[1]}
    if len(parts) == 3:
        return {"metaFolder": parts[0], "folder": parts[1], "fullName": parts[2]}
    return {}


class FilePropertyStore:

    def __init__(self, settings: ProjectSettings, types: Optional[MetadataTypes] = None):
        self.settings = settings
        self.types = types

    def get_all(self) -> Dict[str, Dict[str, Any]]:
        return self.settings.get_config(COMPONENT_METADATA_FILE) or {}

    def set_file_properties(self, file_properties: Any) -> int:
        """Merge retrieve ``fileProperties`` into the store; returns records kept."""
        component_metadata = self.get_all()
        count = 0
        for file_property in as_list(file_properties):
            attributes = parse_file_name(file_property.get("fileName", ""))
            if not attributes or attributes["fullName"] == PACKAGE_XML:
                continue

            record = dict(file_property)
            record.update(attributes)
            component_metadata.setdefault(attributes["metaFolder"], {})[attributes["fullName"]] = record
            count += 1

        self.settings.set_config_value(COMPONENT_METADATA_FILE, component_metadata)
        return count

    def get_file_property(self, file_name: str) -> Dict[str, Any]:
        """Record of a local file, ``{}`` when it was never synced."""
        try:
            attrs = get_file_attributes(file_name, self.types)
        except PackageError:
            return {}
        return self.get_all().get(attrs.directory_name, {}).get(attrs.full_name, {})

    def update_after_deploy(self, deploy_result: Optional[Dict[str, Any]]) -> int:
        """Stamp id and lastModifiedDate of every component the deploy touched."""
        component_metadata = self.get_all()
        now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")
        count = 0
        for success in component_successes(deploy_result):
            attributes = parse_file_name(success.get("fileName", ""))
            if not attributes or attributes["fullName"] == PACKAGE_XML:
                continue

            folder = component_metadata.setdefault(attributes["metaFolder"], {})
            record = folder.setdefault(attributes["fullName"], {
                "fileName": success["fileName"],
                "fullName": success.get("fullName", ""),
                "type": success.get("componentType"),
            })
            record.update(attributes)
            if success.get("id"):
                record["id"] = success["id"]
            record["lastModifiedDate"] = now
            count += 1

        if count:
            self.settings.set_config_value(COMPONENT_METADATA_FILE, component_metadata)
        return count

    def remove(self, file_names: Iterable[str]) -> None:
        component_metadata = self.get_all()
        for file_name in file_names:
            try:
                attrs = get_file_attributes(file_name, self.types)
            except PackageError:
                continue
            component_metadata.get(attrs.directory_name, {}).pop(attrs.full_name, None)
        self.settings.set_config_value(COMPONENT_METADATA_FILE, component_metadata)
