"""Input validation for queries, object names, projects and local source files"""
import os
import re
from typing import Iterable, List

from sfsync.exceptions import SyncError

STRING_LITERAL = re.compile(r"'(?:[^'\\]|\\.)*'")


class ValidationError(SyncError):
    """Custom exception for validation errors"""
    pass


def validate_api_name(name: str) -> bool:
    """
    Validate Salesforce API name format.

    Rules:
    - Must start with a letter
    - Can contain letters, numbers, underscores
    - Optional namespace prefix and custom suffix (__c, __mdt, __e...)
    - Max 80 characters

    Args:
        name: API name to validate

    Returns:
        True if valid

    Raises:
        ValidationError: If validation fails
    """
    if not name:
        raise ValidationError("API name cannot be empty")

    if len(name) > 80:
        raise ValidationError(f"API name too long (max 80 chars): {name}")

    if not re.match(r'^[a-zA-Z]', name):
        raise ValidationError(f"API name must start with a letter: {name}")

    if not re.match(r'^[a-zA-Z][a-zA-Z0-9_]*$', name):
        raise ValidationError(
            f"API name contains invalid characters (only letters, numbers, underscore allowed): {name}"
        )

    return True


def validate_soql_query(query: str) -> bool:
    """
    Basic SOQL validation before a query is sent.

    ``SELECT * FROM Object`` is accepted; the client expands the wildcard.

    Args:
        query: SOQL query string

    Returns:
        True if safe

    Raises:
        ValidationError: If empty, not a SELECT, or carrying DML/comment patterns
    """
    if not query or not query.strip():
        raise ValidationError("SOQL query cannot be empty")

    query_upper = query.upper().strip()

    if not query_upper.startswith('SELECT'):
        raise ValidationError("SOQL query must start with SELECT")

    # Patterns inside string literals are data, not statements
    query = STRING_LITERAL.sub("''", query)
    query_upper = query.upper()

    dangerous_patterns = [
        '--',
        '/*',
        ';',
        'DELETE FROM',
        'UPDATE ',
        'INSERT ',
    ]

    for pattern in dangerous_patterns:
        if pattern in query_upper:
            raise ValidationError(f"SOQL query contains potentially dangerous pattern: {pattern}")

    if query.count('(') != query.count(')'):
        raise ValidationError("SOQL query has unbalanced parentheses")

    return True


def validate_project_name(name: str) -> bool:
    """Project names become folder names in the workspace."""
    if not name or not name.strip():
        raise ValidationError("Project name cannot be empty")

    if not re.match(r'^[\w.\- ]+$', name) or name.strip('.') == '':
        raise ValidationError(f"Project name contains invalid characters: {name}")

    return True


def validate_url(url: str, require_https: bool = False) -> bool:
    """
    Validate URL format.

    Args:
        url: URL to validate
        require_https: Require HTTPS protocol

    Returns:
        True if valid

    Raises:
        ValidationError: If invalid
    """
    if not url:
        raise ValidationError("URL cannot be empty")

    if require_https and not url.startswith('https://'):
        raise ValidationError(f"URL must use HTTPS: {url}")

    if not url.startswith(('http://', 'https://')):
        raise ValidationError(f"URL must start with http:// or https://: {url}")

    return True


def validate_source_files(files: Iterable[str]) -> List[str]:
    """Return absolute paths of ``files``, failing on empty input or missing files."""
    paths = [os.path.abspath(f) for f in files if f]
    if not paths:
        raise ValidationError("No files were specified")

    missing = [p for p in paths if not os.path.isfile(p)]
    if missing:
        raise ValidationError(f"Files not found: {', '.join(missing)}")

    return paths
