"""
Procurement Hub - Identifier Validation

All cross-entity references are short string ids validated against fixed
patterns, so company/vendor/entity identifiers stay stable across storage
migrations.
"""

import re
import secrets
import string
from typing import Dict, Optional

GENERIC_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,50}$")
NUMERIC_ID_PATTERN = re.compile(r"^\d{6,12}$")

_ID_ALPHABET = string.ascii_uppercase + string.digits


class ValidationError(Exception):
    """Malformed or missing input. Surfaced immediately, never retried."""

    error_type = "validation"

    def __init__(self, message: str, field: str = None, details: Dict = None):
        self.message = message
        self.field = field
        self.status_code = 400
        self.details = details or {}
        if field:
            self.details.setdefault("field", field)
        super().__init__(self.message)

    def to_dict(self) -> Dict:
        return {"error": self.message, "type": self.error_type, **self.details}


def validate_id(value: Optional[str], field: str) -> str:
    """Validate a generic alphanumeric id and return it."""
    if value is None or not isinstance(value, str) or not GENERIC_ID_PATTERN.match(value):
        raise ValidationError(
            f"{field} must be alphanumeric (1-50 characters, '_' and '-' allowed)",
            field=field,
        )
    return value


def validate_scope_id(value: Optional[str], field: str = "company_id") -> str:
    """Like validate_id, but also accepts the global scope marker '*'."""
    if value == "*":
        return value
    return validate_id(value, field)


def validate_numeric_id(value: Optional[str], field: str) -> str:
    if value is None or not isinstance(value, str) or not NUMERIC_ID_PATTERN.match(value):
        raise ValidationError(f"{field} must be a numeric string of 6-12 digits", field=field)
    return value


def generate_id(prefix: str, length: int = 10) -> str:
    """Generate a prefixed business id, e.g. APR-7K2M9QX4LZ."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))
    return f"{prefix}-{suffix}"


def generate_numeric_id(digits: int = 10) -> str:
    """Generate a numeric log id matching NUMERIC_ID_PATTERN."""
    first = secrets.choice("123456789")
    rest = "".join(secrets.choice(string.digits) for _ in range(digits - 1))
    return first + rest
