"""
Validation of user-supplied mapping resources.

Specs are checked against a JSON Schema (Draft 7); names and namespaces
follow the Kubernetes DNS label / subdomain rules.
"""

import logging
import re
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator

logger = logging.getLogger(__name__)

_OBJECT_REF_SCHEMA = {
    "type": "object",
    "properties": {
        "namespace": {"type": "string"},
        "name": {"type": "string"},
    },
    "additionalProperties": False,
}

MAPPING_SPEC_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["mapping", "adminAPIAccessSecret"],
    "properties": {
        "mapping": {
            "type": "object",
            "required": ["serviceInstanceID"],
            "properties": {
                "serviceInstanceID": {"type": "string", "minLength": 1},
                "targetNamespace": {"type": "string"},
            },
            "additionalProperties": False,
        },
        "adminAPIAccessSecret": {
            **_OBJECT_REF_SCHEMA,
            "required": ["namespace", "name"],
            "properties": {
                "namespace": {"type": "string", "minLength": 1},
                "name": {"type": "string", "minLength": 1},
            },
        },
        "btpOperatorConfigmap": _OBJECT_REF_SCHEMA,
    },
    "additionalProperties": False,
}

_validator = Draft7Validator(MAPPING_SPEC_SCHEMA)

# RFC 1123 label, used for namespaces
DNS_LABEL_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
DNS_LABEL_MAX_LENGTH = 63

# RFC 1123 subdomain, used for object names
DNS_SUBDOMAIN_PATTERN = re.compile(
    r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$"
)
DNS_SUBDOMAIN_MAX_LENGTH = 253


def validate_mapping_spec(spec: Any) -> Tuple[bool, Optional[str]]:
    """
    Validate a mapping resource spec in its wire form (camelCase keys).

    Returns:
        Tuple of (is_valid, error_message). All violations are reported,
        each as ``path: message``.
    """
    errors = sorted(_validator.iter_errors(spec), key=lambda e: list(e.absolute_path))
    if not errors:
        return True, None

    messages = []
    for error in errors:
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        messages.append(f"{path}: {error.message}")
    return False, "; ".join(messages)


def validate_namespace(namespace: str) -> Tuple[bool, Optional[str]]:
    """Check a namespace against the DNS label rules."""
    if not namespace:
        return False, "namespace must not be empty"
    if len(namespace) > DNS_LABEL_MAX_LENGTH:
        return False, (
            f"namespace must be no more than {DNS_LABEL_MAX_LENGTH} characters"
        )
    if not DNS_LABEL_PATTERN.match(namespace):
        return False, (
            f"invalid namespace {namespace!r}: must consist of lower case "
            "alphanumeric characters or '-', and must start and end with an "
            "alphanumeric character"
        )
    return True, None


def validate_name(name: str) -> Tuple[bool, Optional[str]]:
    """Check an object name against the DNS subdomain rules."""
    if not name:
        return False, "name must not be empty"
    if len(name) > DNS_SUBDOMAIN_MAX_LENGTH:
        return False, f"name must be no more than {DNS_SUBDOMAIN_MAX_LENGTH} characters"
    if not DNS_SUBDOMAIN_PATTERN.match(name):
        return False, (
            f"invalid name {name!r}: must consist of lower case alphanumeric "
            "characters, '-' or '.', and must start and end with an "
            "alphanumeric character"
        )
    return True, None
