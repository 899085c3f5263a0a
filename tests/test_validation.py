"""Unit tests for operation payload validation.

Tests cover:
- Required fields, including conditionally required notes and remarks
- Type, enum and range failures
- Error path extraction and error codes
- Aggregation of several failures into one ValidationError
"""

import jsonschema
import pytest

from deedflow.errors import ValidationError
from deedflow.types import FieldErrorCode
from deedflow.validation import PayloadValidator


@pytest.fixture(scope="module")
def validator():
    return PayloadValidator()


class TestRequiredFields:
    """Missing fields are reported as REQUIRED with their path."""

    def test_assign_without_staff(self, validator):
        errors = validator.errors_for("assign", {})
        assert len(errors) == 1
        assert errors[0].code == FieldErrorCode.REQUIRED
        assert errors[0].path == "staffId"
        assert errors[0].expected == "required field"

    def test_submit_without_fields(self, validator):
        errors = validator.errors_for("submit", {"serviceType": "sale-deed"})
        assert [(e.path, e.code) for e in errors] == [("fields", FieldErrorCode.REQUIRED)]

    def test_rejection_requires_notes(self, validator):
        errors = validator.errors_for("verify", {"approved": False})
        assert [(e.path, e.code) for e in errors] == [("notes", FieldErrorCode.REQUIRED)]

    def test_approval_does_not_require_notes(self, validator):
        assert validator.errors_for("verify", {"approved": True}) == []

    def test_final_rejection_requires_remarks(self, validator):
        errors = validator.errors_for("final_approval", {"decision": "rejected", "lock": True})
        assert [(e.path, e.code) for e in errors] == [("finalRemarks", FieldErrorCode.REQUIRED)]

    def test_final_approval_without_remarks(self, validator):
        assert validator.errors_for("final_approval", {"decision": "approved"}) == []


class TestBlankText:
    """Whitespace-only text counts as missing."""

    def test_blank_rejection_notes(self, validator):
        errors = validator.errors_for("verify", {"approved": False, "notes": "   "})
        assert len(errors) == 1
        assert errors[0].path == "notes"
        assert errors[0].code == FieldErrorCode.INVALID_FORMAT

    def test_empty_correction_request(self, validator):
        errors = validator.errors_for("request_correction", {"notes": ""})
        assert [e.code for e in errors] == [FieldErrorCode.TOO_SHORT, FieldErrorCode.INVALID_FORMAT]

    def test_correction_needs_at_least_one_field(self, validator):
        errors = validator.errors_for("correct", {"fields": {}})
        assert [(e.path, e.code) for e in errors] == [("fields", FieldErrorCode.TOO_SHORT)]


class TestValueErrors:
    """Wrong types and out-of-range values."""

    def test_wrong_type(self, validator):
        errors = validator.errors_for("verify", {"approved": "yes"})
        assert len(errors) == 1
        assert errors[0].code == FieldErrorCode.INVALID_TYPE
        assert errors[0].received == "str"

    def test_unknown_decision(self, validator):
        errors = validator.errors_for("final_approval", {"decision": "maybe"})
        assert errors[0].code == FieldErrorCode.INVALID_VALUE
        assert errors[0].received == "maybe"

    def test_unknown_stage(self, validator):
        errors = validator.errors_for("verify", {"approved": True, "stage": "staff9"})
        assert [(e.path, e.code) for e in errors] == [("stage", FieldErrorCode.INVALID_VALUE)]

    def test_unknown_service_type(self, validator):
        errors = validator.errors_for("save", {"fields": {}, "serviceType": "gift-deed"})
        assert errors[0].path == "serviceType"

    def test_negative_property_value(self, validator):
        errors = validator.errors_for("calculate_stamp", {"propertyValue": -1})
        assert errors[0].code == FieldErrorCode.INVALID_VALUE
        assert errors[0].received == -1

    def test_title_too_long(self, validator):
        errors = validator.errors_for("save", {"fields": {}, "formTitle": "x" * 201})
        assert errors[0].code == FieldErrorCode.TOO_LONG
        assert errors[0].received == "201 characters"

    def test_list_paging(self, validator):
        errors = validator.errors_for("list", {"skip": -1, "limit": 0})
        assert [e.path for e in errors] == ["limit", "skip"]


class TestValidate:
    """validate raises one ValidationError carrying every field error."""

    def test_valid_payload(self, validator):
        validator.validate("calculate_stamp", {"propertyValue": 250000, "location": "Pune"})

    def test_errors_are_aggregated(self, validator):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate("save", {"fields": [], "totalFields": 0})
        error = exc_info.value
        assert [f.path for f in error.fields] == ["fields", "totalFields"]
        assert error.reason.startswith("invalid save payload: ")
        assert error.to_dict()["kind"] == "validation_error"

    def test_non_object_payload(self, validator):
        with pytest.raises(ValidationError):
            validator.validate("assign", None)

    def test_custom_schemas(self):
        custom = PayloadValidator({"ping": {"type": "object", "required": ["id"]}})
        assert custom.errors_for("ping", {"id": 1}) == []

    def test_invalid_schema_is_rejected(self):
        with pytest.raises(jsonschema.SchemaError):
            PayloadValidator({"broken": {"type": "object", "required": "id"}})
