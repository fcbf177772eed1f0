"""
Infer how arbitrary CSV headers map onto directory business attributes.

Headers are matched exactly against the canonical attribute names first,
then against a static synonym table. Operator overrides are merged last and
always win. The synonym table is plain data so alternative tables can be
passed in without touching the import orchestrator.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

CANONICAL_FIELDS: Tuple[str, ...] = (
    "name",
    "email",
    "phone",
    "website",
    "address",
    "suburb",
    "postcode",
    "category",
    "bio",
    "abn",
    "abn_status",
    "source",
)

REQUIRED_FIELDS: Tuple[str, ...] = ("name",)

# Headers shorter than this ("id", "co") are too ambiguous to match inside a synonym
MIN_REVERSE_MATCH_LENGTH = 3

# Checked in order; the first attribute whose synonym matches wins.
DEFAULT_SYNONYMS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("name", ("business_name", "business name", "company", "company name", "trading name", "title")),
    ("email", ("email_address", "e-mail", "business_email", "contact_email", "email address")),
    ("phone", ("telephone", "mobile", "contact_number", "phone_number", "phone number")),
    ("website", ("url", "web", "homepage", "site")),
    ("address", ("street", "location", "street_address")),
    ("suburb", ("city", "town", "locality")),
    ("postcode", ("post_code", "postal_code", "zip")),
    ("category", ("type", "industry", "sector", "business_type")),
    ("abn", ("abn_number", "australian_business_number", "tax_id")),
)


@dataclass
class FieldMappingResult:
    """Final header -> attribute mapping plus the notes shown to operators."""
    mapping: Dict[str, str]
    rationales: List[str] = field(default_factory=list)
    unmapped_headers: List[str] = field(default_factory=list)

    @property
    def mapped_fields(self) -> List[str]:
        return list(dict.fromkeys(self.mapping.values()))


def normalize_header(header: str) -> str:
    return (header or "").strip().lower()


def match_synonym(
    normalized_header: str,
    synonyms: Sequence[Tuple[str, Sequence[str]]] = DEFAULT_SYNONYMS,
) -> Optional[str]:
    """Return the first attribute whose synonym contains, or is contained in, the header."""
    if not normalized_header:
        return None
    allow_reverse = len(normalized_header) >= MIN_REVERSE_MATCH_LENGTH
    for attribute, variants in synonyms:
        for variant in variants:
            if variant in normalized_header or (allow_reverse and normalized_header in variant):
                return attribute
    return None


def infer_field_mapping(
    headers: Sequence[str],
    overrides: Optional[Dict[str, str]] = None,
    synonyms: Sequence[Tuple[str, Sequence[str]]] = DEFAULT_SYNONYMS,
) -> FieldMappingResult:
    """
    Build the header -> attribute mapping for an upload.

    Args:
        headers: Header row in file order
        overrides: Operator-supplied mapping merged over the inferred one
        synonyms: Ordered (attribute, variants) table used for fuzzy matching

    Returns:
        FieldMappingResult with mapping, rationales and unmapped headers

    Raises:
        ValueError: If an override targets an unknown attribute
    """
    inferred: Dict[str, str] = {}
    rationales: List[str] = []

    for header in headers:
        normalized = normalize_header(header)
        if normalized in CANONICAL_FIELDS:
            inferred[header] = normalized
            continue

        attribute = match_synonym(normalized, synonyms)
        if attribute:
            inferred[header] = attribute
            rationales.append(f'Mapped "{header}" to "{attribute}" based on similarity')

    overrides = overrides or {}
    invalid = {header: target for header, target in overrides.items() if target not in CANONICAL_FIELDS}
    if invalid:
        raise ValueError(
            f"Field mapping targets must be one of {', '.join(CANONICAL_FIELDS)}; got {invalid}"
        )

    final_mapping = {**inferred, **overrides}
    for header, target in overrides.items():
        if inferred.get(header) != target:
            rationales.append(f'Mapped "{header}" to "{target}" by operator override')

    unmapped = [header for header in headers if header not in final_mapping]
    logger.debug("Inferred field mapping %s (unmapped: %s)", final_mapping, unmapped)
    return FieldMappingResult(mapping=final_mapping, rationales=rationales, unmapped_headers=unmapped)


def apply_field_mapping(
    headers: Sequence[str],
    row: Sequence[str],
    mapping: Dict[str, str],
) -> Dict[str, str]:
    """
    Turn one CSV row into a candidate record.

    Only mapped columns with a non-empty cell are kept; values are trimmed.
    Rows shorter than the header simply lack the trailing attributes. When
    two columns map to the same attribute the first non-empty one wins.
    """
    record: Dict[str, str] = {}
    for index, header in enumerate(headers):
        attribute = mapping.get(header)
        if not attribute or index >= len(row):
            continue
        value = row[index]
        if value is None:
            continue
        value = str(value).strip()
        if value and attribute not in record:
            record[attribute] = value
    return record
