"""Local caches of describe results

Files under ``<project>/.config``:

* ``globalDescribe.json`` - describeGlobal result, replaced only on reload
* ``sobjects/<Name>.json`` - one describeSObject result per object
* ``sobjects.json`` - ``{"sobjects": {lower: Name}, "parentRelationships": {rel: [Name]}}``
* ``metadata.json`` - describeMetadata result
"""
import logging
import os
from typing import Any, Callable, Dict, Iterable, List, Optional

from sfsync.config import get_config
from sfsync.models import ProgressSink, ReloadSummary, SObjectReloadScope, SObjectSOQL
from sfsync.services.api import RestApi
from sfsync.services.projects import ProjectSettings
from sfsync.utils.package import MetadataTypes
from sfsync.utils.progress import ProgressNotification
from sfsync.utils.results import as_list
from sfsync.utils.validators import validate_api_name

logger = logging.getLogger(__name__)

GLOBAL_DESCRIBE_FILE = "globalDescribe.json"
SOBJECTS_FILE = "sobjects.json"
SOBJECTS_DIR = "sobjects"
METADATA_FILE = "metadata.json"

Chooser = Callable[[List[str]], Optional[List[str]]]


def merge_describes(index: Dict[str, Any], describes: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """Merge describe results into a sobjects index, in place.

    Only lookups with exactly one target are indexed; polymorphic fields
    (``referenceTo`` of several objects) are ambiguous and skipped. Targets
    accumulate per relationship name without duplicates.
    """
    sobjects = index.setdefault("sobjects", {})
    relationships = index.setdefault("parentRelationships", {})

    for describe in describes:
        if not describe or not describe.get("name"):
            continue

        sobjects[describe["name"].lower()] = describe["name"]

        for field in describe.get("fields") or []:
            reference_to = field.get("referenceTo") or []
            relationship_name = field.get("relationshipName")
            if len(reference_to) != 1 or not relationship_name:
                continue

            targets = relationships.setdefault(relationship_name, [])
            if reference_to[0] not in targets:
                targets.append(reference_to[0])

    return index


class DescribeCache:
    """Read-through cache of sobject describes for one project"""

    def __init__(self, settings: ProjectSettings, api_factory: Callable[[], RestApi] = RestApi):
        self.settings = settings
        self.api_factory = api_factory

    def get_global_describe(self) -> Optional[Dict[str, Any]]:
        return self.settings.get_config(GLOBAL_DESCRIBE_FILE)

    def save_global_describe(self, result: Dict[str, Any]) -> None:
        self.settings.set_config_value(GLOBAL_DESCRIBE_FILE, result)

    def execute_global_describe(self, reload: bool = False,
                                progress: Optional[ProgressSink] = None) -> Optional[Dict[str, Any]]:
        """Cached global describe, fetched from the server on a miss or reload."""
        if not reload:
            cached = self.get_global_describe()
            if cached and cached.get("sobjects"):
                return cached

        result = ProgressNotification.show_progress(
            self.api_factory(), "describe_global", progress=progress,
            progress_message="Executing global describe request",
        )
        if result and result.get("sobjects"):
            self.save_global_describe(result)
        return result

    def get_sobjects_index(self) -> Dict[str, Any]:
        index = self.settings.get_config(SOBJECTS_FILE) or {}
        index.setdefault("sobjects", {})
        index.setdefault("parentRelationships", {})
        return index

    def save_sobject_describe(self, describe: Dict[str, Any]) -> None:
        self.settings.set_config_value(os.path.join(SOBJECTS_DIR, f"{describe['name']}.json"), describe)

    def get_sobject_describe(self, sobject: str) -> Optional[Dict[str, Any]]:
        validate_api_name(sobject)
        name = self.get_sobjects_index()["sobjects"].get(sobject.lower(), sobject)
        return self.settings.get_config(os.path.join(SOBJECTS_DIR, f"{name}.json"))

    def resolve_scope(self, scope: SObjectReloadScope, chooser: Optional[Chooser] = None,
                      progress: Optional[ProgressSink] = None) -> List[str]:
        """Names of queryable sobjects in ``scope``; empty means abort."""
        scope = SObjectReloadScope(scope)
        global_describe = self.execute_global_describe(progress=progress) or {}

        names = []
        for summary in global_describe.get("sobjects") or []:
            if not summary.get("queryable"):
                continue
            if scope == SObjectReloadScope.STANDARD and summary.get("custom"):
                continue
            if scope == SObjectReloadScope.CUSTOM and not summary.get("custom"):
                continue
            names.append(summary["name"])

        if scope == SObjectReloadScope.CUSTOMSCOPE:
            if chooser is None:
                return []
            return list(chooser(names) or [])
        return names

    def reload_sobject_cache(
        self,
        sobjects: Optional[List[str]] = None,
        scope: Optional[SObjectReloadScope] = None,
        chooser: Optional[Chooser] = None,
        progress: Optional[ProgressSink] = None,
    ) -> ReloadSummary:
        """Describe ``sobjects`` (or those in ``scope``) and merge them into the cache.

        Failing objects are logged and skipped; the batch always completes.
        """
        if not sobjects:
            if scope is None:
                return ReloadSummary()
            sobjects = self.resolve_scope(scope, chooser, progress)
            if not sobjects:
                logger.info("No sobjects chosen, cache reload aborted")
                return ReloadSummary()
            ProgressNotification.notify(
                progress, "There is long time process to load sobjects cache, please wait..."
            )

        api = self.api_factory()
        describes = api.describe_sobjects(
            sobjects, max_workers=get_config().describe_concurrency, progress=progress
        )

        summary = ReloadSummary(requested=list(sobjects))
        succeeded = []
        for name, describe in zip(sobjects, describes):
            if not describe or not describe.get("name"):
                logger.warning("Describe of %s failed, skipped", name)
                summary.failed.append(name)
                continue
            self.save_sobject_describe(describe)
            succeeded.append(describe)
            summary.described.append(describe["name"])

        index = merge_describes(self.get_sobjects_index(), succeeded)
        self.settings.set_config_value(SOBJECTS_FILE, index)

        ProgressNotification.notify(
            progress, f"Your sobjects cache were saved at '{self.settings.settings_path}'", 100
        )
        return summary

    def build_sobject_soql(self, sobject: str, condition: SObjectSOQL = SObjectSOQL.ALL,
                           progress: Optional[ProgressSink] = None) -> Optional[str]:
        """``SELECT <fields matching condition> FROM sobject``"""
        condition = SObjectSOQL(condition)
        describe = ProgressNotification.show_progress(
            self.api_factory(), "describe_sobject", sobject, progress=progress,
            progress_message=f"Executing describe request for {sobject}",
        )
        if not describe:
            return None

        field_names = [
            f["name"] for f in describe.get("fields") or []
            if condition == SObjectSOQL.ALL or f.get(condition.value)
        ]
        return f"SELECT {', '.join(field_names)} FROM {describe.get('name', sobject)}"


class MetadataCache:
    """describeMetadata result kept in metadata.json"""

    def __init__(self, settings: ProjectSettings):
        self.settings = settings

    def set_meta_objects(self, result: Dict[str, Any]) -> None:
        result = dict(result)
        result["metadataObjects"] = as_list(result.get("metadataObjects"))
        self.settings.set_config_value(METADATA_FILE, result)

    def get_meta_objects(self) -> List[Dict[str, Any]]:
        return (self.settings.get_config(METADATA_FILE) or {}).get("metadataObjects") or []

    def get_types(self) -> MetadataTypes:
        return MetadataTypes(self.get_meta_objects())

    def get_xml_name(self, directory_name: str) -> Optional[str]:
        return self.get_types().get_xml_name(directory_name)

    def get_meta_object(self, xml_name: str) -> Optional[Dict[str, Any]]:
        return self.get_types().by_xml_name(xml_name)
