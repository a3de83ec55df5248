"""Unit tests for validation.py - Spec schema validation."""

import pytest
from unittest.mock import MagicMock

from context import Context
from resources import Resource
from validation import (
    schema_precondition,
    validate_openapi_schema,
    validate_spec_against_schema,
)

SCHEMA = {
    "type": "object",
    "required": ["html"],
    "properties": {
        "html": {"type": "string"},
        "replicas": {"type": "integer", "minimum": 1},
    },
}


class TestValidateOpenAPISchema:
    """Tests for validate_openapi_schema function."""

    def test_valid_schema(self):
        is_valid, error = validate_openapi_schema(SCHEMA)
        assert is_valid is True
        assert error is None

    def test_invalid_type(self):
        is_valid, error = validate_openapi_schema({"type": "not-a-type"})
        assert is_valid is False
        assert error.startswith("Invalid schema:")

    def test_invalid_required(self):
        is_valid, _ = validate_openapi_schema({"type": "object", "required": "html"})
        assert is_valid is False


class TestValidateSpecAgainstSchema:
    """Tests for validate_spec_against_schema function."""

    def test_valid_spec(self):
        assert validate_spec_against_schema({"html": "<h1>hi</h1>"}, SCHEMA) == (
            True,
            None,
        )

    def test_missing_required_reports_root(self):
        is_valid, error = validate_spec_against_schema({}, SCHEMA)
        assert is_valid is False
        assert error.startswith("(root): ")
        assert "'html' is a required property" in error

    def test_field_errors_carry_path(self):
        is_valid, error = validate_spec_against_schema(
            {"html": 5, "replicas": 0}, SCHEMA
        )
        assert is_valid is False
        parts = error.split("; ")
        assert len(parts) == 2
        assert parts[0].startswith("html: ")
        assert parts[1].startswith("replicas: ")


class TestSchemaPrecondition:
    def test_rejects_invalid_schema(self):
        with pytest.raises(ValueError):
            schema_precondition({"type": "not-a-type"})

    def test_passes_valid_spec(self):
        check = schema_precondition(SCHEMA)
        primary = Resource(kind="WebPage", name="site1", spec={"html": "x"})

        result = check(primary, Context(store=MagicMock()))

        assert result.passed is True

    def test_fails_invalid_spec(self):
        check = schema_precondition(SCHEMA)
        primary = Resource(kind="WebPage", name="site1", spec={})

        result = check(primary, Context(store=MagicMock()))

        assert result.passed is False
        assert result.message.startswith("Invalid spec: (root): ")
