from typing import Any, Dict, List, Optional

from pydantic.alias_generators import to_camel


class MinesError(Exception):
    """Base error for the mines API, rendered as {"success": false, "error": ...}"""
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"success": False, "error": self.message}
        body.update({to_camel(k): v for k, v in self.extra.items() if v is not None})
        return body


class InvalidParameter(MinesError):
    status_code = 400
    default_message = "Invalid parameter"


class Unauthorized(MinesError):
    status_code = 401
    default_message = "Unauthorized"


class NotFound(MinesError):
    status_code = 404
    default_message = "Active game not found"


class Conflict(MinesError):
    """Raised by start when the user already has an active game; carries its id"""
    status_code = 409
    default_message = "You already have an active game"


class InvalidOperation(MinesError):
    status_code = 400
    default_message = "Invalid operation"


class PersistenceError(MinesError):
    status_code = 500
    default_message = "Failed to save game"


def describe_validation_errors(errors: List[Dict[str, Any]]) -> str:
    """Turn pydantic error dicts into one human readable message"""
    for err in errors:
        if err.get("type") in ("union_tag_invalid", "union_tag_not_found"):
            return "Invalid action"
    if not errors:
        return "Invalid request"
    first = errors[0]
    loc = first.get("loc") or ("request",)
    return f"Invalid {loc[-1]}: {first.get('msg')}"
