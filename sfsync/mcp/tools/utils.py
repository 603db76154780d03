"""Utility functions for MCP tools - error handling and response management"""
import json
import logging
from dataclasses import asdict
from typing import Any, Dict, Optional

from sfsync.models import SyncOutcome

logger = logging.getLogger(__name__)

# Token limits
TOKEN_LIMIT = 25000
TOKEN_WARNING_THRESHOLD = 20000  # 80% of limit


class MCPError:
    """Enhanced error handling with troubleshooting hints"""

    # Common error patterns and their solutions
    ERROR_PATTERNS = {
        "INVALID_SESSION_ID": {
            "hint": "Your session has expired or is invalid.",
            "suggestions": [
                "Re-authenticate with the login tool",
                "Check that the project has a refresh token",
                "Verify the OAuth client id in your .env configuration"
            ]
        },
        "Session expired": {
            "hint": "The session expired and could not be refreshed.",
            "suggestions": [
                "Log in again with the login tool",
                "Check that the project has a refresh token"
            ]
        },
        "MALFORMED_QUERY": {
            "hint": "SOQL query syntax error.",
            "suggestions": [
                "Remove 'AS' keyword from field aliases",
                "Verify field names and relationships are correct",
                "Use SELECT * FROM <object> to select every field"
            ]
        },
        "INVALID_FIELD": {
            "hint": "Field does not exist on this object or is not accessible.",
            "suggestions": [
                "Verify the field API name is correct (check spelling and __c suffix)",
                "Reload the sobject cache to refresh field names",
                "Check field-level security permissions"
            ]
        },
        "INVALID_TYPE": {
            "hint": "Object type not found or not accessible.",
            "suggestions": [
                "Verify the object API name is correct",
                "Run the global describe to list objects of this org"
            ]
        },
        "not a metadata source file": {
            "hint": "The file is not inside a src/<metadata folder> tree.",
            "suggestions": [
                "Pass paths like <project>/src/classes/MyClass.cls",
                "Create the project first so the src tree exists"
            ]
        },
        "No default project": {
            "hint": "No project has been selected.",
            "suggestions": [
                "Log in, which makes the project the default one",
                "Switch to an existing project with switch_project"
            ]
        },
        "INSUFFICIENT_ACCESS": {
            "hint": "You don't have permission to perform this operation.",
            "suggestions": [
                "Contact your Salesforce administrator",
                "Check the Modify All Data or Author Apex permission"
            ]
        },
        "REQUEST_LIMIT_EXCEEDED": {
            "hint": "API request limit exceeded.",
            "suggestions": [
                "Wait and retry later",
                "Check org limits with get_org_limits()",
                "Reload the sobject cache with a narrower scope"
            ]
        },
        "Timed out": {
            "hint": "The deploy or retrieve did not finish in time.",
            "suggestions": [
                "Raise SFSYNC_DEPLOY_TIMEOUT_SECONDS",
                "Check Deployment Status in Setup"
            ]
        }
    }

    @classmethod
    def enhance_error(cls, error_msg: str, context: Optional[str] = None) -> Dict[str, Any]:
        """Enhance error message with troubleshooting hints

        Args:
            error_msg: Original error message
            context: Additional context (e.g., tool name, file name)

        Returns:
            Enhanced error dict with hints and suggestions
        """
        enhanced = {
            "error": error_msg,
            "success": False
        }

        if context:
            enhanced["context"] = context

        for error_code, info in cls.ERROR_PATTERNS.items():
            if error_code.lower() in error_msg.lower():
                enhanced["hint"] = info["hint"]
                enhanced["suggestions"] = info["suggestions"]
                enhanced["error_type"] = error_code
                break

        if "hint" not in enhanced:
            enhanced["hint"] = "An unexpected error occurred."
            enhanced["suggestions"] = [
                "Check the error message for details",
                "Verify your Salesforce connection",
                "Consult Salesforce Metadata API documentation"
            ]
            enhanced["error_type"] = "UNKNOWN"

        return enhanced


class ResponseSizeManager:
    """Manage response sizes and provide warnings"""

    @staticmethod
    def estimate_token_count(text: str) -> int:
        """Rough estimation: 1 token ≈ 4 characters"""
        return len(text) // 4

    @staticmethod
    def check_response_size(response_dict: Dict[str, Any]) -> Dict[str, Any]:
        """Add size metadata, and a warning when the response nears the token limit"""
        response_json = json.dumps(response_dict, indent=2, default=str)
        estimated_tokens = ResponseSizeManager.estimate_token_count(response_json)

        response_dict["_metadata"] = response_dict.get("_metadata", {})
        response_dict["_metadata"]["estimated_tokens"] = estimated_tokens
        response_dict["_metadata"]["response_size_bytes"] = len(response_json)

        if estimated_tokens > TOKEN_WARNING_THRESHOLD:
            response_dict["_metadata"]["size_warning"] = {
                "message": f"Response size ({estimated_tokens} tokens) is approaching the limit ({TOKEN_LIMIT} tokens)",
                "level": "warning" if estimated_tokens < TOKEN_LIMIT else "error",
                "recommendations": [
                    "Filter results with WHERE conditions",
                    "Select only necessary fields",
                    "Add a LIMIT clause"
                ]
            }

            logger.warning(
                f"Response size warning: {estimated_tokens} tokens "
                f"(threshold: {TOKEN_WARNING_THRESHOLD}, limit: {TOKEN_LIMIT})"
            )

        return response_dict

    @staticmethod
    def truncate_if_needed(
        data: list,
        max_items: int,
        message: str = "Results truncated due to size limit"
    ) -> tuple:
        """Truncate data if it exceeds max_items

        Returns:
            Tuple of (truncated_data, was_truncated, truncation_info)
        """
        if len(data) > max_items:
            return (
                data[:max_items],
                True,
                {
                    "truncated": True,
                    "message": message,
                    "original_count": len(data),
                    "returned_count": max_items,
                    "omitted_count": len(data) - max_items
                }
            )
        return data, False, None


def format_success_response(
    data: Any,
    context: Optional[Dict[str, Any]] = None,
    check_size: bool = True
) -> str:
    """Format a success response with optional size checking

    Args:
        data: Main data to return
        context: Additional context (metadata, counts, etc.)
        check_size: Whether to check response size and add warnings

    Returns:
        JSON string with formatted response
    """
    response = {
        "success": True,
        **data
    }

    if context:
        response.update(context)

    if check_size:
        response = ResponseSizeManager.check_response_size(response)

    return json.dumps(response, indent=2, default=str)


def format_error_response(
    error: Exception,
    context: Optional[str] = None,
    include_hints: bool = True
) -> str:
    """Format an error response with troubleshooting hints

    Args:
        error: Exception object
        context: Additional context about the operation
        include_hints: Whether to include troubleshooting hints

    Returns:
        JSON string with formatted error response
    """
    error_msg = str(error)

    if include_hints:
        response = MCPError.enhance_error(error_msg, context)
    else:
        response = {
            "success": False,
            "error": error_msg
        }
        if context:
            response["context"] = context

    return json.dumps(response, indent=2)


def format_outcome(outcome: SyncOutcome, context: Optional[str] = None) -> str:
    """Format a SyncOutcome as a success or an error response

    Failed outcomes keep their problem lines next to the hints.
    """
    if outcome.success:
        return format_success_response(asdict(outcome))

    response = MCPError.enhance_error(outcome.message, context)
    if outcome.problems:
        response["problems"] = outcome.problems
    if outcome.files:
        response["files"] = outcome.files
    if outcome.data:
        response["data"] = outcome.data
    return json.dumps(response, indent=2, default=str)
