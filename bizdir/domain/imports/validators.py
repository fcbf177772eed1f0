"""
Row validation for business imports.

Each attribute has an independent format rule; every rule is evaluated for
every row so operators see all problems at once. Format failures are soft
warnings unless strict validation is configured. The required ``name``
check is always a hard error and cannot be skipped.
"""

import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence
from urllib.parse import urlparse

from bizdir.core.config import settings
from bizdir.utils.phone import strip_whitespace
from .field_mapper import REQUIRED_FIELDS, apply_field_mapping


PRESET_PATTERNS = {
    "email": r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$",
    "phone_au": r"^(\+61|0)[2-9]\d{8}$",
    "abn": r"^\d{11}$",
}

PRESET_DESCRIPTIONS = {
    "email": "Invalid email format",
    "phone_au": "Invalid Australian phone format",
    "abn": "Invalid ABN format (should be 11 digits)",
    "url": "Invalid website URL format",
}

ERROR = "error"
WARNING = "warning"


@dataclass
class ValidationIssue:
    field: Optional[str]
    message: str
    severity: str = WARNING

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"field": self.field, "message": self.message}


@dataclass
class ValidationOutcome:
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    @property
    def is_rejected(self) -> bool:
        return bool(self.errors)


@dataclass
class ValidationPolicy:
    strict_validation: bool = False
    skip_validation: bool = False
    phone_pattern: str = PRESET_PATTERNS["phone_au"]

    @classmethod
    def from_settings(cls, skip_validation: bool = False, strict_validation: Optional[bool] = None) -> "ValidationPolicy":
        return cls(
            strict_validation=settings.strict_validation if strict_validation is None else strict_validation,
            skip_validation=skip_validation,
            phone_pattern=settings.phone_pattern,
        )


@dataclass(frozen=True)
class FieldRule:
    """A format check applied to one attribute when it is present."""
    field: str
    check: Callable[[str], bool]
    message: str


def matches_pattern(pattern: str, normalize: Callable[[str], str] = str.strip) -> Callable[[str], bool]:
    compiled = re.compile(pattern)

    def _check(value: str) -> bool:
        return bool(compiled.match(normalize(value)))

    return _check


def is_absolute_url(value: str) -> bool:
    try:
        parsed = urlparse(value.strip())
    except ValueError:
        return False
    return bool(parsed.scheme) and bool(parsed.netloc)


def build_field_rules(policy: ValidationPolicy) -> List[FieldRule]:
    return [
        FieldRule("email", matches_pattern(PRESET_PATTERNS["email"]), PRESET_DESCRIPTIONS["email"]),
        FieldRule("phone", matches_pattern(policy.phone_pattern, strip_whitespace), PRESET_DESCRIPTIONS["phone_au"]),
        FieldRule("abn", matches_pattern(PRESET_PATTERNS["abn"], strip_whitespace), PRESET_DESCRIPTIONS["abn"]),
        FieldRule("website", is_absolute_url, PRESET_DESCRIPTIONS["url"]),
    ]


class RowValidator:
    """Checks candidate records against the required-field and format rules."""

    def __init__(self, policy: Optional[ValidationPolicy] = None, rules: Optional[Sequence[FieldRule]] = None):
        self.policy = policy or ValidationPolicy()
        self.rules = list(rules) if rules is not None else build_field_rules(self.policy)

    def validate(self, record: Dict[str, str]) -> ValidationOutcome:
        outcome = ValidationOutcome()

        for required in REQUIRED_FIELDS:
            if not (record.get(required) or "").strip():
                outcome.errors.append(
                    ValidationIssue(required, f"Business {required} is required", ERROR)
                )

        if self.policy.skip_validation:
            return outcome

        severity = ERROR if self.policy.strict_validation else WARNING
        for rule in self.rules:
            value = record.get(rule.field)
            if not value:
                continue
            if not rule.check(value):
                issue = ValidationIssue(rule.field, rule.message, severity)
                if severity == ERROR:
                    outcome.errors.append(issue)
                else:
                    outcome.warnings.append(issue)

        return outcome


def summarize_sample_issues(
    headers: Sequence[str],
    sample_rows: Sequence[Sequence[str]],
    mapping: Dict[str, str],
    validator: RowValidator,
) -> List[Dict[str, object]]:
    """
    Light validation pass for the import preview.

    Reports required attributes that no column maps to, then aggregates the
    per-row issues found in the sample by field.
    """
    issues: List[Dict[str, object]] = []
    mapped_fields = set(mapping.values())

    for required in REQUIRED_FIELDS:
        if required not in mapped_fields:
            issues.append({
                "type": ERROR,
                "message": f'Required field "{required}" is not mapped',
                "field": required,
                "count": None,
            })

    counts: Dict[tuple, int] = {}
    for row in sample_rows:
        record = apply_field_mapping(headers, row, mapping)
        outcome = validator.validate(record)
        for issue in outcome.errors + outcome.warnings:
            # Unmapped required fields are already reported above
            if issue.field in REQUIRED_FIELDS and issue.field not in mapped_fields:
                continue
            key = (issue.severity, issue.field, issue.message)
            counts[key] = counts.get(key, 0) + 1

    for (severity, field_name, message), count in counts.items():
        issues.append({
            "type": severity,
            "message": f"{count} sample rows: {message}",
            "field": field_name,
            "count": count,
        })

    return issues
