"""
Record validation.

``ValidationGateway`` is the interface the CRUD service calls before any
write. ``PropertyValidator`` is the default implementation: a type check per
property type followed by class-validator style rules taken from the entity
description.

Rules supported:
    required / isNotEmpty, isDefined, isOptional, isEmpty,
    min, max, minLength, maxLength, contains, notContains, matches,
    isIn, isNotIn, equals, notEquals, isEmail, isPositive, isNegative
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Protocol
from urllib.parse import urlparse

from manifest_back.specs.entity import EntitySpec, PropertySpec, PropType

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Rules whose argument is a flag; ``False`` disables them.
BOOLEAN_RULES = frozenset(
    {
        "required",
        "isNotEmpty",
        "isDefined",
        "isOptional",
        "isEmpty",
        "isEmail",
        "isPositive",
        "isNegative",
    }
)
PRESENCE_RULES = frozenset({"required", "isNotEmpty", "isDefined"})


@dataclass
class Violation:
    """All failed constraints of one property, keyed by constraint name."""

    property: str
    constraints: dict[str, str] = field(default_factory=dict)
    value: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"property": self.property, "value": self.value, "constraints": self.constraints}


class ValidationGateway(Protocol):
    """Validates a candidate record against its entity description."""

    def validate(
        self,
        record: Mapping[str, Any],
        entity: EntitySpec,
        *,
        is_update: bool = False,
        children: Mapping[str, EntitySpec] | None = None,
    ) -> list[Violation]:
        """Return every violation; an empty list means the record is valid.

        ``children`` maps nested one-to-many relation names to their child
        entity so nested payloads can be validated too.
        """
        ...


# =============================================================================
# Type checks
# =============================================================================


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_iso_date(value: Any) -> bool:
    if isinstance(value, date):
        return True
    if not isinstance(value, str):
        return False
    try:
        date.fromisoformat(value[:10])
        return True
    except ValueError:
        return False


def _is_iso_timestamp(value: Any) -> bool:
    if isinstance(value, datetime):
        return True
    if not isinstance(value, str):
        return False
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
        return True
    except ValueError:
        return False


def _is_email(value: Any) -> bool:
    return isinstance(value, str) and bool(_EMAIL_RE.match(value))


def _is_url(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _is_location(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and _is_number(value.get("lat"))
        and _is_number(value.get("lng"))
    )


def _type_check(prop: PropertySpec, value: Any) -> tuple[str, str] | None:
    """Return ``(constraint, message)`` when ``value`` has the wrong type."""
    name = prop.name
    prop_type = prop.type
    if prop_type in (
        PropType.STRING,
        PropType.TEXT,
        PropType.RICH_TEXT,
        PropType.PASSWORD,
        PropType.FILE,
    ):
        if not isinstance(value, str):
            return "isString", f"{name} must be a string"
    elif prop_type in (PropType.NUMBER, PropType.MONEY):
        if not _is_number(value):
            return "isNumber", f"{name} must be a number"
    elif prop_type == PropType.BOOLEAN:
        if not isinstance(value, bool):
            return "isBoolean", f"{name} must be a boolean value"
    elif prop_type == PropType.DATE:
        if not _is_iso_date(value):
            return "isDateString", f"{name} must be a valid ISO 8601 date string"
    elif prop_type == PropType.TIMESTAMP:
        if not _is_iso_timestamp(value):
            return "isISO8601", f"{name} must be a valid ISO 8601 date string"
    elif prop_type == PropType.EMAIL:
        if not _is_email(value):
            return "isEmail", f"{name} must be an email"
    elif prop_type == PropType.LINK:
        if not _is_url(value):
            return "isUrl", f"{name} must be a URL address"
    elif prop_type == PropType.CHOICE:
        values = prop.options.get("values") or []
        if value not in values:
            allowed = ", ".join(str(v) for v in values)
            return "isIn", f"{name} must be one of the following values: {allowed}"
    elif prop_type == PropType.LOCATION:
        if not _is_location(value):
            return "isLocation", f"{name} must be an object with numeric lat and lng"
    elif prop_type == PropType.IMAGE:
        if not isinstance(value, dict):
            return "isObject", f"{name} must be an object"
    return None


# =============================================================================
# Rules
# =============================================================================


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == []


def _sized(value: Any) -> bool:
    return isinstance(value, (str, list))


RuleCheck = Callable[[str, Any, Any], str | None]


def _rule_min(name: str, value: Any, arg: Any) -> str | None:
    if not _is_number(value) or value < arg:
        return f"{name} must not be less than {arg}"
    return None


def _rule_max(name: str, value: Any, arg: Any) -> str | None:
    if not _is_number(value) or value > arg:
        return f"{name} must not be greater than {arg}"
    return None


def _rule_min_length(name: str, value: Any, arg: Any) -> str | None:
    if not _sized(value) or len(value) < arg:
        return f"{name} must be longer than or equal to {arg} characters"
    return None


def _rule_max_length(name: str, value: Any, arg: Any) -> str | None:
    if not _sized(value) or len(value) > arg:
        return f"{name} must be shorter than or equal to {arg} characters"
    return None


def _rule_contains(name: str, value: Any, arg: Any) -> str | None:
    if not isinstance(value, str) or str(arg) not in value:
        return f"{name} must contain a {arg} string"
    return None


def _rule_not_contains(name: str, value: Any, arg: Any) -> str | None:
    if not isinstance(value, str) or str(arg) in value:
        return f"{name} should not contain a {arg} string"
    return None


def _rule_matches(name: str, value: Any, arg: Any) -> str | None:
    if not isinstance(value, str) or re.search(str(arg), value) is None:
        return f"{name} must match {arg} regular expression"
    return None


def _rule_is_in(name: str, value: Any, arg: Any) -> str | None:
    if value not in arg:
        return f"{name} must be one of the following values: {', '.join(map(str, arg))}"
    return None


def _rule_is_not_in(name: str, value: Any, arg: Any) -> str | None:
    if value in arg:
        return f"{name} should not be one of the following values: {', '.join(map(str, arg))}"
    return None


def _rule_equals(name: str, value: Any, arg: Any) -> str | None:
    if value != arg:
        return f"{name} must be equal to {arg}"
    return None


def _rule_not_equals(name: str, value: Any, arg: Any) -> str | None:
    if value == arg:
        return f"{name} should not be equal to {arg}"
    return None


def _rule_is_email(name: str, value: Any, arg: Any) -> str | None:
    if not _is_email(value):
        return f"{name} must be an email"
    return None


def _rule_is_positive(name: str, value: Any, arg: Any) -> str | None:
    if not _is_number(value) or value <= 0:
        return f"{name} must be a positive number"
    return None


def _rule_is_negative(name: str, value: Any, arg: Any) -> str | None:
    if not _is_number(value) or value >= 0:
        return f"{name} must be a negative number"
    return None


def _rule_is_empty(name: str, value: Any, arg: Any) -> str | None:
    if not _is_empty(value):
        return f"{name} must be empty"
    return None


VALUE_RULES: dict[str, RuleCheck] = {
    "min": _rule_min,
    "max": _rule_max,
    "minLength": _rule_min_length,
    "maxLength": _rule_max_length,
    "contains": _rule_contains,
    "notContains": _rule_not_contains,
    "matches": _rule_matches,
    "isIn": _rule_is_in,
    "isNotIn": _rule_is_not_in,
    "equals": _rule_equals,
    "notEquals": _rule_not_equals,
    "isEmail": _rule_is_email,
    "isPositive": _rule_is_positive,
    "isNegative": _rule_is_negative,
    "isEmpty": _rule_is_empty,
}


# =============================================================================
# Default gateway
# =============================================================================


class PropertyValidator:
    """Default ``ValidationGateway``: type checks plus declared rules."""

    def validate(
        self,
        record: Mapping[str, Any],
        entity: EntitySpec,
        *,
        is_update: bool = False,
        children: Mapping[str, EntitySpec] | None = None,
    ) -> list[Violation]:
        violations: list[Violation] = []

        for prop in entity.all_properties:
            value = record.get(prop.name)
            constraints = self._check_property(entity, prop, value, is_update=is_update)
            if constraints:
                violations.append(Violation(prop.name, constraints, value))

        for relation_name, child_entity in (children or {}).items():
            items = record.get(relation_name)
            if not isinstance(items, list):
                continue
            for index, item in enumerate(items):
                if not isinstance(item, Mapping):
                    violations.append(
                        Violation(
                            f"{relation_name}[{index}]",
                            {"isObject": f"{relation_name}[{index}] must be an object"},
                            item,
                        )
                    )
                    continue
                for violation in self.validate(item, child_entity, is_update=is_update):
                    violations.append(
                        Violation(
                            f"{relation_name}[{index}].{violation.property}",
                            violation.constraints,
                            violation.value,
                        )
                    )

        return violations

    def _check_property(
        self, entity: EntitySpec, prop: PropertySpec, value: Any, *, is_update: bool
    ) -> dict[str, str]:
        rules = {
            k: v
            for k, v in entity.rules_for(prop).items()
            if not (k in BOOLEAN_RULES and v is False)
        }
        name = prop.name

        # Password presence is only enforced on create.
        if is_update and prop.type == PropType.PASSWORD:
            rules = {k: v for k, v in rules.items() if k not in PRESENCE_RULES}

        if value is None:
            if rules.get("isOptional"):
                return {}
            missing: dict[str, str] = {}
            if rules.get("isDefined"):
                missing["isDefined"] = f"{name} should not be null or undefined"
            for rule in ("required", "isNotEmpty"):
                if rules.get(rule):
                    missing[rule] = f"{name} should not be empty"
            return missing

        constraints: dict[str, str] = {}
        for rule in ("required", "isNotEmpty"):
            if rules.get(rule) and _is_empty(value):
                constraints[rule] = f"{name} should not be empty"

        type_error = _type_check(prop, value)
        if type_error is not None:
            constraint, message = type_error
            constraints[constraint] = message

        for rule, arg in rules.items():
            check = VALUE_RULES.get(rule)
            if check is None or rule in constraints:
                continue
            message = check(name, value, arg)
            if message is not None:
                constraints[rule] = message

        return constraints
