"""
Spec Validation - JSON Schema checks for primary resource specs.

Schemas are Draft 7 (the dialect OpenAPI v3 builds on). A schema check is
exposed as a reconciler precondition so an invalid spec fails the pass
before any dependent resource is touched.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator, SchemaError

from context import Context
from reconciler import Precondition, PreconditionResult
from resources import Resource

logger = logging.getLogger(__name__)


def validate_openapi_schema(schema: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """
    Check that ``schema`` is itself a valid Draft 7 schema.

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        Draft7Validator.check_schema(schema)
        return True, None
    except SchemaError as e:
        return False, f"Invalid schema: {e.message}"


def validate_spec_against_schema(
    spec: Dict[str, Any], schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a resource spec against a schema.

    All violations are reported, joined with "; ", each prefixed with the
    path of the offending field ("(root)" for the spec itself).

    Returns:
        Tuple of (is_valid, error_message)
    """
    validator = Draft7Validator(schema, format_checker=Draft7Validator.FORMAT_CHECKER)
    errors = sorted(
        validator.iter_errors(spec),
        key=lambda e: [str(p) for p in e.absolute_path],
    )
    if not errors:
        return True, None

    messages = []
    for error in errors:
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        messages.append(f"{path}: {error.message}")
    return False, "; ".join(messages)


def schema_precondition(schema: Dict[str, Any]) -> Precondition:
    """
    Build a precondition that validates the primary's spec.

    Raises:
        ValueError: If ``schema`` is not a valid schema.
    """
    is_valid, error = validate_openapi_schema(schema)
    if not is_valid:
        raise ValueError(error)

    def check(primary: Resource, context: Context) -> PreconditionResult:
        ok, message = validate_spec_against_schema(primary.spec, schema)
        if ok:
            return PreconditionResult.ok()
        logger.warning(f"Invalid spec for {primary.kind} {primary.resource_id}: {message}")
        return PreconditionResult.fail(f"Invalid spec: {message}")

    return check
