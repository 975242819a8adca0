"""Record validation against entity definitions.

Runs before any SQL is issued. Errors are collected per field so callers can
report every problem at once instead of failing on the first one.
"""

from __future__ import annotations

import math
import re
import uuid
from collections.abc import Callable, Mapping
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from neodb.core.types import (
    INTEGER_FIELD_TYPES,
    JSON_FIELD_TYPES,
    NUMERIC_FIELD_TYPES,
    EntityDefinition,
    FieldDefinition,
    FieldType,
)
from neodb.exceptions import ValidationError

# Returns an error message, or None when the value passes
Validator = Callable[[Any, FieldDefinition], str | None]

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
URL_PATTERN = re.compile(r"^https?://[^\s/$.?#][^\s]*$", re.IGNORECASE)
SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
COLOR_PATTERN = re.compile(r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6}|[0-9a-fA-F]{8})$")
TIME_PATTERN = re.compile(r"^\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?$")
MIN_PHONE_DIGITS = 7

_STRING_TYPES = frozenset(
    {
        FieldType.STRING,
        FieldType.TEXT,
        FieldType.RICHTEXT,
        FieldType.EMAIL,
        FieldType.PHONE,
        FieldType.URL,
        FieldType.IMAGE,
        FieldType.FILE,
        FieldType.ENUM,
        FieldType.COLOR,
        FieldType.BARCODE,
        FieldType.SIGNATURE,
    }
)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, date):
        moment = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    return moment if moment.tzinfo else moment.replace(tzinfo=UTC)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _is_finite(value: int | float | Decimal) -> bool:
    if isinstance(value, Decimal):
        return value.is_finite()
    return isinstance(value, int) or math.isfinite(value)


def luhn_valid(number: str) -> bool:
    """Luhn checksum over the digits of ``number``."""
    digits = [int(c) for c in number if c.isdigit()]
    if len(digits) < 12:
        return False
    total = 0
    for i, digit in enumerate(reversed(digits)):
        if i % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


# === Named Validators ===


def _credit_card(value: Any, field_def: FieldDefinition) -> str | None:
    return None if luhn_valid(str(value)) else "Invalid credit card number"


def _uuid(value: Any, field_def: FieldDefinition) -> str | None:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return "Must be a valid UUID"
    return None


def _slug(value: Any, field_def: FieldDefinition) -> str | None:
    if isinstance(value, str) and SLUG_PATTERN.match(value):
        return None
    return "Must contain only lowercase letters, numbers and hyphens"


def _positive(value: Any, field_def: FieldDefinition) -> str | None:
    return None if _is_number(value) and value > 0 else "Must be a positive number"


def _non_negative(value: Any, field_def: FieldDefinition) -> str | None:
    return None if _is_number(value) and value >= 0 else "Must not be negative"


def _future_date(value: Any, field_def: FieldDefinition) -> str | None:
    moment = _as_datetime(value)
    if moment is not None and moment > datetime.now(UTC):
        return None
    return "Must be a date in the future"


def _past_date(value: Any, field_def: FieldDefinition) -> str | None:
    moment = _as_datetime(value)
    if moment is not None and moment < datetime.now(UTC):
        return None
    return "Must be a date in the past"


BUILTIN_VALIDATORS: dict[str, Validator] = {
    "credit_card": _credit_card,
    "uuid": _uuid,
    "slug": _slug,
    "positive": _positive,
    "non_negative": _non_negative,
    "future_date": _future_date,
    "past_date": _past_date,
}


class ValidationEngine:
    """Validates and sanitizes record data for an entity.

    Checks required fields, type compatibility, numeric bounds, string lengths
    and patterns, email/url/phone formats, enum membership, and any named
    validators a field lists in ``validation.validators``.
    """

    def __init__(self) -> None:
        self._validators: dict[str, Validator] = dict(BUILTIN_VALIDATORS)

    def register_validator(self, name: str, validator: Validator) -> None:
        """Register a named validator usable from ``validation.validators``.

        Args:
            name: Validator name referenced by field definitions
            validator: Callable returning an error message or None
        """
        self._validators[name] = validator

    def validate(
        self,
        entity: EntityDefinition,
        data: Mapping[str, Any],
        partial: bool = False,
    ) -> dict[str, str]:
        """Validate record data.

        Args:
            entity: Entity the data belongs to
            data: Record data keyed by field or column name
            partial: Update mode: only present keys are checked, and a required
                field fails only when explicitly set to None

        Returns:
            Field name -> error message (empty when the data is valid)
        """
        errors: dict[str, str] = {}
        for field_def in entity.stored_fields:
            present, value = self._lookup(entity, data, field_def)

            if field_def.required:
                if partial:
                    if present and value is None:
                        errors[field_def.name] = f"{field_def.name} is required"
                        continue
                elif _is_blank(value) and field_def.default_value is None:
                    errors[field_def.name] = f"{field_def.name} is required"
                    continue

            if value is None:
                continue

            message = self._check_value(field_def, value)
            if message:
                errors[field_def.name] = message
        return errors

    def validate_or_raise(
        self,
        entity: EntityDefinition,
        data: Mapping[str, Any],
        partial: bool = False,
    ) -> None:
        """Validate record data and raise if any field fails.

        Raises:
            ValidationError: With every failing field in ``field_errors``
        """
        errors = self.validate(entity, data, partial=partial)
        if errors:
            summary = "; ".join(f"{name}: {message}" for name, message in errors.items())
            raise ValidationError(f"Validation failed for '{entity.name}': {summary}", errors)

    def sanitize(self, entity: EntityDefinition, data: Mapping[str, Any]) -> dict[str, Any]:
        """Normalize values before validation.

        Strings are trimmed, numeric strings are converted for numeric fields,
        and "true"/"false" strings become booleans. Keys are kept as given.
        """
        result = dict(data)
        for key, value in data.items():
            field_def = entity.get_field(key)
            if field_def is None or not isinstance(value, str):
                continue
            cleaned = value.strip()
            field_type = FieldType(field_def.type)
            if field_type in NUMERIC_FIELD_TYPES and cleaned:
                result[key] = self._parse_number(cleaned, field_type)
            elif field_type == FieldType.BOOLEAN and cleaned.lower() in ("true", "false"):
                result[key] = cleaned.lower() == "true"
            elif field_type not in (FieldType.RICHTEXT, FieldType.SIGNATURE):
                result[key] = cleaned
        return result

    # === Helpers ===

    @staticmethod
    def _lookup(
        entity: EntityDefinition, data: Mapping[str, Any], field_def: FieldDefinition
    ) -> tuple[bool, Any]:
        """Value for a field under any key CRUD would write to its column.

        Keys resolve through ``entity.get_field`` (name, column name or id). When
        several keys hit the same field the last one wins, as it does on write.
        """
        present, found = False, None
        for key, value in data.items():
            match = entity.get_field(key)
            if match is not None and match.id == field_def.id:
                present, found = True, value
        return present, found

    @staticmethod
    def _parse_number(text: str, field_type: FieldType) -> Any:
        try:
            if field_type in INTEGER_FIELD_TYPES:
                number = Decimal(text)
                return int(number) if number == number.to_integral_value() else text
            return float(text)
        except (InvalidOperation, ValueError, OverflowError):
            return text

    def _check_value(self, field_def: FieldDefinition, value: Any) -> str | None:
        field_type = FieldType(field_def.type)
        rules = field_def.validation

        message = self._check_type(field_type, value, field_def)
        if message:
            return message

        if rules is not None:
            if field_type in NUMERIC_FIELD_TYPES:
                if rules.min is not None and value < rules.min:
                    return rules.message or f"Must be at least {rules.min:g}"
                if rules.max is not None and value > rules.max:
                    return rules.message or f"Must be at most {rules.max:g}"
            if isinstance(value, str):
                if rules.min_length is not None and len(value) < rules.min_length:
                    return rules.message or f"Must be at least {rules.min_length} characters"
                if rules.max_length is not None and len(value) > rules.max_length:
                    return rules.message or f"Must be at most {rules.max_length} characters"
                if rules.pattern and not re.search(rules.pattern, value):
                    return rules.message or "Invalid format"
            for name in rules.validators:
                validator = self._validators.get(name)
                if validator is None:
                    return f"Unknown validator '{name}'"
                message = validator(value, field_def)
                if message:
                    return rules.message or message
        return None

    @staticmethod
    def _check_type(field_type: FieldType, value: Any, field_def: FieldDefinition) -> str | None:
        if field_type in NUMERIC_FIELD_TYPES:
            if not _is_number(value):
                return "Must be a number"
            if not _is_finite(value):
                return "Must be a finite number"
            if field_type in INTEGER_FIELD_TYPES and value != int(value):
                return "Must be a whole number"
            return None

        if field_type == FieldType.BOOLEAN:
            return None if isinstance(value, bool) else "Must be true or false"

        if field_type in (FieldType.DATE, FieldType.DATETIME, FieldType.TIMESTAMP):
            return None if _as_datetime(value) is not None else "Must be a valid date"

        if field_type == FieldType.TIME:
            if isinstance(value, str) and TIME_PATTERN.match(value):
                return None
            return "Must be a time (HH:MM or HH:MM:SS)"

        if field_type == FieldType.REFERENCE:
            return _uuid(value, field_def) and "Must be a valid record id"

        if field_type in JSON_FIELD_TYPES:
            if isinstance(value, (dict, list)):
                return None
            return "Must be an object or a list"

        if field_type in _STRING_TYPES and not isinstance(value, str):
            return "Must be text"

        if field_type == FieldType.EMAIL and not EMAIL_PATTERN.match(value):
            return "Invalid email address"
        if field_type == FieldType.URL and not URL_PATTERN.match(value):
            return "Invalid URL"
        if field_type == FieldType.PHONE:
            if sum(c.isdigit() for c in value) < MIN_PHONE_DIGITS:
                return f"Phone number needs at least {MIN_PHONE_DIGITS} digits"
        if field_type == FieldType.COLOR and not COLOR_PATTERN.match(value):
            return "Must be a hex color like #1a2b3c"
        if field_type == FieldType.ENUM and field_def.enum_options:
            if value not in field_def.enum_options:
                return f"Must be one of: {', '.join(field_def.enum_options)}"
        return None
