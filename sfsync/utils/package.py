"""Package builder: local source files <-> Metadata API zip archives

Source files live under ``<project>/src/<directoryName>/...``; the path
below ``src`` is also the path inside the zip, which is the layout the
Metadata API expects with ``singlePackage=true``.
"""
import base64
import io
import logging
import os
import posixpath
import zipfile
from pathlib import PurePath
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from lxml import etree

from sfsync.exceptions import PackageError
from sfsync.models import FileAttributes, Manifest, ManifestType
from sfsync.utils.results import as_list, xml_to_dict

logger = logging.getLogger(__name__)

PNS = "http://soap.sforce.com/2006/04/metadata"
META_SUFFIX = "-meta.xml"
PACKAGE_XML = "package.xml"
DESTRUCTIVE_CHANGES_XML = "destructiveChanges.xml"
UNPACKAGED = "unpackaged"

# Shape of describeMetadata().metadataObjects, used until the org's own
# describe result has been cached
DEFAULT_METADATA_OBJECTS: List[Dict[str, Any]] = [
    {"directoryName": "classes", "xmlName": "ApexClass", "suffix": "cls", "inFolder": False, "metaFile": True},
    {"directoryName": "triggers", "xmlName": "ApexTrigger", "suffix": "trigger", "inFolder": False, "metaFile": True},
    {"directoryName": "pages", "xmlName": "ApexPage", "suffix": "page", "inFolder": False, "metaFile": True},
    {"directoryName": "components", "xmlName": "ApexComponent", "suffix": "component", "inFolder": False, "metaFile": True},
    {"directoryName": "aura", "xmlName": "AuraDefinitionBundle", "inFolder": False, "metaFile": False},
    {"directoryName": "lwc", "xmlName": "LightningComponentBundle", "inFolder": False, "metaFile": False},
    {"directoryName": "staticresources", "xmlName": "StaticResource", "suffix": "resource", "inFolder": False, "metaFile": True},
    {"directoryName": "objects", "xmlName": "CustomObject", "suffix": "object", "inFolder": False, "metaFile": False},
    {"directoryName": "labels", "xmlName": "CustomLabels", "suffix": "labels", "inFolder": False, "metaFile": False},
    {"directoryName": "layouts", "xmlName": "Layout", "suffix": "layout", "inFolder": False, "metaFile": False},
    {"directoryName": "tabs", "xmlName": "CustomTab", "suffix": "tab", "inFolder": False, "metaFile": False},
    {"directoryName": "applications", "xmlName": "CustomApplication", "suffix": "app", "inFolder": False, "metaFile": False},
    {"directoryName": "flows", "xmlName": "Flow", "suffix": "flow", "inFolder": False, "metaFile": False},
    {"directoryName": "workflows", "xmlName": "Workflow", "suffix": "workflow", "inFolder": False, "metaFile": False},
    {"directoryName": "permissionsets", "xmlName": "PermissionSet", "suffix": "permissionset", "inFolder": False, "metaFile": False},
    {"directoryName": "profiles", "xmlName": "Profile", "suffix": "profile", "inFolder": False, "metaFile": False},
    {"directoryName": "customMetadata", "xmlName": "CustomMetadata", "suffix": "md", "inFolder": False, "metaFile": False},
    {"directoryName": "email", "xmlName": "EmailTemplate", "suffix": "email", "inFolder": True, "metaFile": True},
    {"directoryName": "documents", "xmlName": "Document", "inFolder": True, "metaFile": True},
    {"directoryName": "reports", "xmlName": "Report", "suffix": "report", "inFolder": True, "metaFile": False},
    {"directoryName": "dashboards", "xmlName": "Dashboard", "suffix": "dashboard", "inFolder": True, "metaFile": False},
]

BUNDLE_DIRECTORIES = {"aura", "lwc"}


class MetadataTypes:
    """Lookup of metadata object definitions by directory name or xml name"""

    def __init__(self, meta_objects: Optional[Iterable[Dict[str, Any]]] = None):
        objects = list(meta_objects or []) or DEFAULT_METADATA_OBJECTS
        self._by_directory = {o["directoryName"]: o for o in objects if o.get("directoryName")}
        self._by_xml_name = {o["xmlName"]: o for o in objects if o.get("xmlName")}

    def by_directory(self, directory_name: str) -> Optional[Dict[str, Any]]:
        return self._by_directory.get(directory_name)

    def by_xml_name(self, xml_name: str) -> Optional[Dict[str, Any]]:
        return self._by_xml_name.get(xml_name)

    def get_xml_name(self, directory_name: str) -> Optional[str]:
        meta_object = self.by_directory(directory_name)
        return meta_object["xmlName"] if meta_object else None


def _source_parts(file_name: str, types: MetadataTypes) -> Tuple[str, ...]:
    """Path segments of ``file_name`` below the ``src`` root."""
    parts = PurePath(os.path.abspath(file_name)).parts
    for index in range(len(parts) - 1, -1, -1):
        if parts[index] == "src" and len(parts) - index >= 3:
            return parts[index + 1:]

    # Not under src/: accept the nearest known metadata directory
    for index in range(len(parts) - 2, max(len(parts) - 5, -1), -1):
        if types.by_directory(parts[index]):
            return parts[index:]

    raise PackageError(f"{file_name} is not a metadata source file")


def get_file_attributes(file_name: str, types: Optional[MetadataTypes] = None) -> FileAttributes:
    types = types or MetadataTypes()
    parts = _source_parts(file_name, types)

    directory_name = parts[0]
    folder = parts[1] if len(parts) > 2 else ""
    full_name = parts[-1]

    is_meta_file = full_name.endswith(META_SUFFIX)
    base_name = full_name[:-len(META_SUFFIX)] if is_meta_file else full_name
    name, _, extension = base_name.partition(".")

    meta_object = types.by_directory(directory_name) or {}
    in_bundle = directory_name in BUNDLE_DIRECTORIES
    if in_bundle and not folder:
        raise PackageError(f"{file_name} is not inside a {directory_name} bundle folder")
    if in_bundle:
        member_name = folder
    elif folder and meta_object.get("inFolder"):
        member_name = f"{folder}/{name}"
    else:
        member_name = name

    return FileAttributes(
        file_name=file_name,
        directory_name=directory_name,
        folder=folder,
        name=name,
        extension=extension,
        full_name=full_name,
        xml_name=meta_object.get("xmlName"),
        member_name=member_name,
        in_bundle=in_bundle,
        is_meta_file=is_meta_file,
    )


def zip_path(file_name: str, types: Optional[MetadataTypes] = None) -> str:
    return posixpath.join(*_source_parts(file_name, types or MetadataTypes()))


def _package_root(types: Dict[str, Iterable[str]], api_version: Any = None) -> bytes:
    root = etree.Element(etree.QName(PNS, "Package"), nsmap={None: PNS})
    for xml_name in sorted(types):
        types_tag = etree.SubElement(root, etree.QName(PNS, "types"))
        for member in sorted(set(types[xml_name])):
            etree.SubElement(types_tag, etree.QName(PNS, "members")).text = member
        etree.SubElement(types_tag, etree.QName(PNS, "name")).text = xml_name
    if api_version is not None:
        etree.SubElement(root, etree.QName(PNS, "version")).text = _version(api_version)
    return etree.tostring(root, encoding="UTF-8", xml_declaration=True, pretty_print=True)


def _version(api_version: Any) -> str:
    text = str(api_version)
    return text if "." in text else f"{text}.0"


def build_package_xml(types: Dict[str, Iterable[str]], api_version: Any) -> bytes:
    """package.xml listing ``{xmlName: members}``"""
    return _package_root(types, api_version)


def build_destructive_changes_xml(types: Dict[str, Iterable[str]]) -> bytes:
    """destructiveChanges.xml, same shape as package.xml without a version"""
    return _package_root(types)


def _collect_deploy_files(files: Iterable[str], types: MetadataTypes) -> List[str]:
    """Files plus their -meta.xml companions and, for bundles, the whole bundle."""
    collected: List[str] = []
    seen: Set[str] = set()

    def add(path: str) -> None:
        path = os.path.abspath(path)
        if path not in seen and os.path.isfile(path):
            seen.add(path)
            collected.append(path)

    for file_name in files:
        attrs = get_file_attributes(file_name, types)
        if attrs.in_bundle:
            depth = len(_source_parts(file_name, types)) - 2
            bundle_dir = os.path.abspath(file_name)
            for _ in range(depth):
                bundle_dir = os.path.dirname(bundle_dir)
            for dir_path, _, names in os.walk(bundle_dir):
                for name in sorted(names):
                    add(os.path.join(dir_path, name))
            continue

        if attrs.is_meta_file:
            add(file_name[:-len(META_SUFFIX)])
            add(file_name)
        else:
            add(file_name)
            add(file_name + META_SUFFIX)

    return collected


def _types_of(files: Iterable[str], types: MetadataTypes) -> Dict[str, Set[str]]:
    result: Dict[str, Set[str]] = {}
    for file_name in files:
        attrs = get_file_attributes(file_name, types)
        if not attrs.xml_name:
            raise PackageError(f"Unknown metadata folder '{attrs.directory_name}' of {file_name}")
        result.setdefault(attrs.xml_name, set()).add(attrs.member_name)
    return result


def _to_base64(entries: List[Tuple[str, bytes]]) -> str:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        for arcname, content in entries:
            zf.writestr(arcname, content)
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def build_deploy_package(files: Iterable[str], api_version: Any,
                         types: Optional[MetadataTypes] = None) -> str:
    """Base64 zip with package.xml and every file to deploy."""
    types = types or MetadataTypes()
    deploy_files = _collect_deploy_files(files, types)
    if not deploy_files:
        raise PackageError("No files to deploy")

    entries = [(PACKAGE_XML, build_package_xml(_types_of(deploy_files, types), api_version))]
    for path in deploy_files:
        with open(path, "rb") as f:
            entries.append((zip_path(path, types), f.read()))

    logger.info("Built deploy package with %d files", len(deploy_files))
    return _to_base64(entries)


def build_destruct_package(files: Iterable[str], api_version: Any,
                           types: Optional[MetadataTypes] = None) -> str:
    """Base64 zip with an empty package.xml and destructiveChanges.xml."""
    types = types or MetadataTypes()
    files = list(files)
    if not files:
        raise PackageError("No files to destruct")

    entries = [
        (PACKAGE_XML, build_package_xml({}, api_version)),
        (DESTRUCTIVE_CHANGES_XML, build_destructive_changes_xml(_types_of(files, types))),
    ]
    return _to_base64(entries)


def get_retrieve_types(file_names: Iterable[str], types: Optional[MetadataTypes] = None) -> Dict[str, List[str]]:
    """``{xmlName: [members]}`` for a retrieve request of ``file_names``"""
    types = types or MetadataTypes()
    return {name: sorted(members) for name, members in _types_of(file_names, types).items()}


def extract_zip_file(zipfile_b64: str, extract_to: str, ignore_package_xml: bool = False) -> List[str]:
    """Unpack a base64 zip below ``extract_to`` and return the written paths.

    A leading ``unpackaged/`` folder is dropped so retrieved files land in
    the same place the deploy package took them from.
    """
    if not zipfile_b64:
        return []

    try:
        data = base64.b64decode(zipfile_b64)
        archive = zipfile.ZipFile(io.BytesIO(data))
    except (ValueError, zipfile.BadZipFile) as e:
        raise PackageError(f"Retrieved zip file is invalid: {e}") from e

    root = os.path.abspath(extract_to)
    written: List[str] = []
    with archive:
        for info in archive.infolist():
            if info.is_dir():
                continue

            name = info.filename
            if name.startswith(UNPACKAGED + "/"):
                name = name[len(UNPACKAGED) + 1:]
            if ignore_package_xml and name == PACKAGE_XML:
                continue

            target = os.path.abspath(os.path.join(root, *name.split("/")))
            if os.path.commonpath([root, target]) != root:
                raise PackageError(f"Zip entry escapes the target directory: {info.filename}")

            os.makedirs(os.path.dirname(target), exist_ok=True)
            with open(target, "wb") as f:
                f.write(archive.read(info))
            written.append(target)

    logger.info("Extracted %d files to %s", len(written), root)
    return written


def parse_manifest(source: str) -> Manifest:
    """Parse package.xml content or a path to it.

    ``types`` and ``members`` come back as lists whatever their count.
    """
    try:
        if source.lstrip().startswith("<"):
            root = etree.fromstring(source.encode("utf-8"))
        else:
            root = etree.parse(source).getroot()
    except (OSError, etree.XMLSyntaxError) as e:
        raise PackageError(f"Cannot parse manifest: {e}") from e

    package = xml_to_dict(root)
    if not isinstance(package, dict):
        raise PackageError("Manifest has no types")

    manifest = Manifest(version=package.get("version") or None)
    for type_record in as_list(package.get("types")):
        if not isinstance(type_record, dict) or not type_record.get("name"):
            raise PackageError("Manifest type without name")
        manifest.types.append(ManifestType(
            name=type_record["name"],
            members=[str(m) for m in as_list(type_record.get("members"))],
        ))
    return manifest
