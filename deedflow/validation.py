"""Payload validation for workflow operations.

Each inbound operation has a JSON Schema describing its payload. The
PayloadValidator runs the schema with jsonschema and translates failures into
FieldError objects, raised together as one ValidationError. Validation runs
before any gate check or write, so a malformed payload never changes state.

Form content (``fields``) is only checked to be an object: its per-service
schema is validated outside the engine.
"""

from typing import Any, Dict, List

import jsonschema
from jsonschema import Draft7Validator

from deedflow.errors import FieldError, ValidationError
from deedflow.types import Decision, FieldErrorCode, FormStatus, Role, ServiceType, Stage

_NON_BLANK = {"type": "string", "minLength": 1, "pattern": r"\S"}
_STAGE = {"type": "string", "enum": [s.value for s in Stage]}

SAVE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "serviceType": {"type": "string", "enum": [s.value for s in ServiceType]},
        "fields": {"type": "object"},
        "formTitle": {"type": "string", "maxLength": 200},
        "formDescription": {"type": "string", "maxLength": 2000},
        "submissionKey": {"type": "string", "minLength": 1},
        "filledFields": {"type": "integer", "minimum": 0},
        "totalFields": {"type": "integer", "minimum": 1},
    },
    "required": ["fields"],
}

SUBMIT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "serviceType": {"type": "string", "enum": [s.value for s in ServiceType]},
        "fields": {"type": "object"},
        "formTitle": {"type": "string", "maxLength": 200},
        "formDescription": {"type": "string", "maxLength": 2000},
        "submissionKey": {"type": "string", "minLength": 1},
    },
    "required": ["fields"],
}

ASSIGN_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {"staffId": _NON_BLANK},
    "required": ["staffId"],
}

CORRECT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "fields": {"type": "object", "minProperties": 1},
        "notes": {"type": "string"},
        "stage": _STAGE,
    },
    "required": ["fields"],
}

VERIFY_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "approved": {"type": "boolean"},
        "notes": {"type": "string"},
        "stage": _STAGE,
    },
    "required": ["approved"],
    "if": {"properties": {"approved": {"const": False}}},
    "then": {"properties": {"notes": _NON_BLANK}, "required": ["notes"]},
}

REQUEST_CORRECTION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {"notes": _NON_BLANK, "stage": _STAGE},
    "required": ["notes"],
}

FINAL_APPROVAL_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "decision": {"type": "string", "enum": [d.value for d in Decision]},
        "finalRemarks": {"type": "string"},
        "lock": {"type": "boolean"},
    },
    "required": ["decision"],
    "if": {"properties": {"decision": {"const": Decision.REJECTED.value}}},
    "then": {"properties": {"finalRemarks": _NON_BLANK}, "required": ["finalRemarks"]},
}

STAMP_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "propertyValue": {"type": "number", "minimum": 0},
        "propertyType": {"type": "string"},
        "location": {"type": "string"},
        "calculationMethod": {"type": "string"},
        "applicableRules": {"type": "array", "items": {"type": "string"}},
        "notes": {"type": "string"},
        "stage": _STAGE,
    },
    "required": ["propertyValue"],
}

SUBMIT_REPORTS_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "workSummary": {"type": "string"},
        "issuesEncountered": {"type": "string"},
        "recommendations": {"type": "string"},
    },
}

LIST_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "serviceType": {"type": "string", "enum": [s.value for s in ServiceType]},
        "status": {"type": "string", "enum": [s.value for s in FormStatus]},
        "submitterId": {"type": "string"},
        "assignedTo": {"type": "string"},
        "search": {"type": "string"},
        "actionableBy": {"type": "string", "enum": [r.value for r in Role]},
        "includeProcessedLegacy": {"type": "boolean"},
        "includeLegacy": {"type": "boolean"},
        "skip": {"type": "integer", "minimum": 0},
        "limit": {"type": "integer", "minimum": 1},
    },
}

OPERATION_SCHEMAS: Dict[str, Dict[str, Any]] = {
    "save": SAVE_SCHEMA,
    "submit": SUBMIT_SCHEMA,
    "assign": ASSIGN_SCHEMA,
    "correct": CORRECT_SCHEMA,
    "verify": VERIFY_SCHEMA,
    "request_correction": REQUEST_CORRECTION_SCHEMA,
    "final_approval": FINAL_APPROVAL_SCHEMA,
    "calculate_stamp": STAMP_SCHEMA,
    "submit_reports": SUBMIT_REPORTS_SCHEMA,
    "list": LIST_SCHEMA,
}


class PayloadValidator:
    """Validates operation payloads against their JSON Schemas.

    Examples:
        >>> validator = PayloadValidator()
        >>> validator.validate("assign", {"staffId": "s_1"})
        >>> validator.validate("assign", {})
        Traceback (most recent call last):
        ...
        deedflow.errors.ValidationError: invalid assign payload: Field 'staffId' is required but was not provided
    """

    def __init__(self, schemas: Dict[str, Dict[str, Any]] = None) -> None:
        self._validators: Dict[str, Draft7Validator] = {}
        for name, schema in (schemas or OPERATION_SCHEMAS).items():
            Draft7Validator.check_schema(schema)
            self._validators[name] = Draft7Validator(schema)

    def errors_for(self, operation: str, payload: Any) -> List[FieldError]:
        """Return the translated field errors for a payload (empty if valid)."""
        validator = self._validators[operation]
        errors = sorted(validator.iter_errors(payload), key=lambda e: list(e.path))
        return [self._translate_error(e) for e in errors if e.validator not in ("if", "then")]

    def validate(self, operation: str, payload: Any) -> None:
        """Raise ValidationError when the payload does not match its schema."""
        field_errors = self.errors_for(operation, payload)
        if field_errors:
            summary = "; ".join(f.message for f in field_errors)
            raise ValidationError(f"invalid {operation} payload: {summary}", fields=field_errors)

    def _translate_error(self, error: jsonschema.ValidationError) -> FieldError:
        """Translate a jsonschema ValidationError to a FieldError.

        Error mapping:
            - 'required' property errors -> REQUIRED
            - 'type' errors -> INVALID_TYPE
            - 'enum' or 'const' errors -> INVALID_VALUE
            - 'minLength' / 'pattern' errors on strings -> TOO_SHORT / INVALID_FORMAT
            - 'maxLength' errors -> TOO_LONG
            - Other constraint errors -> INVALID_VALUE or CUSTOM
        """
        path = ".".join(str(p) for p in error.path)

        if error.validator == "required":
            missing_prop = error.message.split("'")[1] if "'" in error.message else "field"
            full_path = f"{path}.{missing_prop}" if path else missing_prop
            return FieldError(
                path=full_path,
                code=FieldErrorCode.REQUIRED,
                message=f"Field '{full_path}' is required but was not provided",
                expected="required field",
            )

        if error.validator == "type":
            received_type = type(error.instance).__name__
            return FieldError(
                path=path,
                code=FieldErrorCode.INVALID_TYPE,
                message=f"Field '{path}' has invalid type. Expected {error.validator_value}, got {received_type}",
                expected=error.validator_value,
                received=received_type,
            )

        if error.validator in ("enum", "const"):
            return FieldError(
                path=path,
                code=FieldErrorCode.INVALID_VALUE,
                message=f"Field '{path}' has invalid value. Must be one of: {error.validator_value}",
                expected=error.validator_value,
                received=error.instance,
            )

        if error.validator in ("minLength", "minProperties"):
            return FieldError(
                path=path,
                code=FieldErrorCode.TOO_SHORT,
                message=f"Field '{path}' must not be empty",
                expected=f"{error.validator}: {error.validator_value}",
            )

        if error.validator == "maxLength":
            actual_length = len(error.instance) if error.instance else 0
            return FieldError(
                path=path,
                code=FieldErrorCode.TOO_LONG,
                message=f"Field '{path}' is too long. Maximum length: {error.validator_value}, got: {actual_length}",
                expected=f"maximum {error.validator_value} characters",
                received=f"{actual_length} characters",
            )

        if error.validator == "pattern":
            return FieldError(
                path=path,
                code=FieldErrorCode.INVALID_FORMAT,
                message=f"Field '{path}' must contain non-whitespace text",
                expected=f"pattern: {error.validator_value}",
                received=error.instance,
            )

        if error.validator in ("minimum", "maximum", "exclusiveMinimum", "exclusiveMaximum"):
            return FieldError(
                path=path,
                code=FieldErrorCode.INVALID_VALUE,
                message=f"Field '{path}' violates {error.validator} constraint: {error.validator_value}",
                expected=f"{error.validator}: {error.validator_value}",
                received=error.instance,
            )

        return FieldError(
            path=path,
            code=FieldErrorCode.CUSTOM,
            message=f"Field '{path}' validation failed: {error.message}",
            expected=error.validator_value,
            received=error.instance,
        )


__all__ = [
    "PayloadValidator",
    "OPERATION_SCHEMAS",
]
