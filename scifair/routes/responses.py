"""
scifair/routes/responses.py
Shared response helpers for the engine routers.
"""
from typing import Any, Dict

from scifair.errors import OperationResult, raise_for_result


def result_response(result: OperationResult) -> Dict[str, Any]:
    """Body for a successful engine result; failed results raise their APIError."""
    raise_for_result(result)
    body = {
        "success": True,
        "message": result.message,
        "data": result.data,
    }
    if result.details:
        body["details"] = result.details
    return body
