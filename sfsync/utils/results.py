"""Helpers for Metadata API results

The Metadata API answers with XML where a repeating element appears once
when there is a single record and several times otherwise. After
conversion to dicts that means a value is sometimes a dict and sometimes a
list; ``as_list`` is applied at the boundary so nothing downstream has to
care about the shape.
"""
import html
from typing import Any, Dict, Iterable, List, Optional

from lxml import etree

XSI_NIL = "{http://www.w3.org/2001/XMLSchema-instance}nil"


def as_list(value: Any) -> List[Any]:
    """Normalize ``None`` / a single record / a list of records to a list."""
    if value is None or value == "":
        return []
    if isinstance(value, list):
        return value
    return [value]


def _coerce(text: Optional[str]) -> Any:
    if text is None:
        return ""
    if text == "true":
        return True
    if text == "false":
        return False
    return text


def xml_to_dict(element: etree._Element) -> Any:
    """Convert an lxml element to plain Python values.

    Leaf elements become strings (``true``/``false`` become booleans,
    ``xsi:nil`` becomes None); repeated child tags become lists.
    """
    if element.get(XSI_NIL) == "true":
        return None

    children = [c for c in element if isinstance(c.tag, str)]
    if not children:
        return _coerce(element.text)

    result: Dict[str, Any] = {}
    for child in children:
        key = etree.QName(child).localname
        value = xml_to_dict(child)
        if key in result:
            if not isinstance(result[key], list):
                result[key] = [result[key]]
            result[key].append(value)
        else:
            result[key] = value
    return result


def unescape(text: Any) -> str:
    return html.unescape(str(text)) if text is not None else ""


def format_problems(records: Iterable[Dict[str, Any]], prefix: str) -> List[str]:
    """One ``[sf:deploy] classes/A.cls - problem`` line per failure record."""
    problems = []
    for record in records:
        location = ""
        if record.get("lineNumber"):
            location = f" (line {record['lineNumber']}, column {record.get('columnNumber', '?')})"
        problems.append(
            f"[sf:{prefix}] {record.get('fileName', '')} - {unescape(record.get('problem'))}{location}"
        )
    return problems


def component_failures(deploy_result: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    details = (deploy_result or {}).get("details") or {}
    if not isinstance(details, dict):
        return []
    return as_list(details.get("componentFailures"))


def component_successes(deploy_result: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    details = (deploy_result or {}).get("details") or {}
    if not isinstance(details, dict):
        return []
    return as_list(details.get("componentSuccesses"))


def run_test_failures(deploy_result: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    details = (deploy_result or {}).get("details") or {}
    if not isinstance(details, dict):
        return []
    run_test_result = details.get("runTestResult") or {}
    if not isinstance(run_test_result, dict):
        return []
    return as_list(run_test_result.get("failures"))


def format_test_failures(failures: Iterable[Dict[str, Any]]) -> List[str]:
    return [
        f"[sf:test] {f.get('name', '')}.{f.get('methodName', '')} - {unescape(f.get('message'))}"
        for f in failures
    ]
