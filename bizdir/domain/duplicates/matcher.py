"""
Rule-based duplicate detection for directory businesses.

Matching is deterministic and explainable so operators can audit why a row
was flagged:

- ``strict``: one shared strong identifier (phone, email or ABN) is enough.
- ``loose``: business name similar (case-insensitive substring by default)
  and suburb identical.
- ``none``: nothing ever matches.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from bizdir.core.config import settings
from bizdir.db.business_store import BusinessStore, lookup_keys

logger = logging.getLogger(__name__)


class MatchMode(str, Enum):
    STRICT = "strict"
    LOOSE = "loose"
    NONE = "none"


CONFIDENCE_BY_MODE = {
    MatchMode.STRICT: "high",
    MatchMode.LOOSE: "medium",
}

STRICT_IDENTIFIERS = (("phone", "phone_key"), ("email", "email_key"), ("abn", "abn_key"))


@dataclass(frozen=True)
class LooseMatchConfig:
    name_strategy: str = "substring"  # "substring", "exact" or "similarity"
    similarity_threshold: float = 0.8
    suburb_case_sensitive: bool = True

    @classmethod
    def from_settings(cls) -> "LooseMatchConfig":
        return cls(
            name_strategy=settings.loose_name_strategy,
            similarity_threshold=settings.loose_name_similarity_threshold,
            suburb_case_sensitive=settings.loose_suburb_case_sensitive,
        )


@dataclass
class DuplicateMatch:
    existing_id: str
    mode: MatchMode
    matched_fields: List[str] = field(default_factory=list)

    @property
    def confidence(self) -> str:
        return CONFIDENCE_BY_MODE.get(self.mode, "low")

    @property
    def reason(self) -> str:
        fields = ", ".join(self.matched_fields) or "n/a"
        return f"Duplicate detected ({self.mode.value} mode; matched on {fields})"


def identity_keys(record: Dict[str, Any]) -> Dict[str, Optional[str]]:
    if all(key in record for _, key in STRICT_IDENTIFIERS):
        return {key: record.get(key) for _, key in STRICT_IDENTIFIERS}
    return lookup_keys(record)


def _normalize_name(value: Optional[str]) -> str:
    return " ".join((value or "").lower().split())


def strict_matched_fields(a: Dict[str, Any], b: Dict[str, Any]) -> List[str]:
    keys_a, keys_b = identity_keys(a), identity_keys(b)
    return [
        attribute
        for attribute, key in STRICT_IDENTIFIERS
        if keys_a.get(key) and keys_a.get(key) == keys_b.get(key)
    ]


def names_match(candidate_name: str, existing_name: str, config: LooseMatchConfig) -> bool:
    candidate = _normalize_name(candidate_name)
    existing = _normalize_name(existing_name)
    if not candidate or not existing:
        return False
    if config.name_strategy == "exact":
        return candidate == existing
    if config.name_strategy == "similarity":
        return SequenceMatcher(None, candidate, existing).ratio() >= config.similarity_threshold
    return candidate in existing


def suburbs_match(a: Optional[str], b: Optional[str], config: LooseMatchConfig) -> bool:
    a = (a or "").strip()
    b = (b or "").strip()
    if not a or not b:
        return False
    if config.suburb_case_sensitive:
        return a == b
    return a.lower() == b.lower()


def loose_matched_fields(
    candidate: Dict[str, Any],
    existing: Dict[str, Any],
    config: LooseMatchConfig,
) -> List[str]:
    if not suburbs_match(candidate.get("suburb"), existing.get("suburb"), config):
        return []
    if not names_match(candidate.get("name"), existing.get("name"), config):
        return []
    return ["name", "suburb"]


def explain_match(
    candidate: Dict[str, Any],
    existing: Dict[str, Any],
    mode: MatchMode,
    config: Optional[LooseMatchConfig] = None,
) -> List[str]:
    """Fields that make ``existing`` a duplicate of ``candidate``; empty when they don't match."""
    mode = MatchMode(mode)
    if mode == MatchMode.STRICT:
        return strict_matched_fields(candidate, existing)
    if mode == MatchMode.LOOSE:
        return loose_matched_fields(candidate, existing, config or LooseMatchConfig())
    return []


def records_match(
    candidate: Dict[str, Any],
    existing: Dict[str, Any],
    mode: MatchMode,
    config: Optional[LooseMatchConfig] = None,
) -> bool:
    return bool(explain_match(candidate, existing, mode, config))


class DuplicateMatcher:
    """Finds the first existing record a candidate collides with under one mode."""

    def __init__(self, mode: MatchMode, loose_config: Optional[LooseMatchConfig] = None):
        self.mode = MatchMode(mode)
        self.loose_config = loose_config or LooseMatchConfig.from_settings()

    def match_against(self, candidate: Dict[str, Any], records: Iterable[Dict[str, Any]]) -> Optional[DuplicateMatch]:
        if self.mode == MatchMode.NONE:
            return None
        for existing in records:
            matched = explain_match(candidate, existing, self.mode, self.loose_config)
            if matched:
                return DuplicateMatch(existing_id=existing["id"], mode=self.mode, matched_fields=matched)
        return None

    def fetch_candidates(
        self,
        candidate: Dict[str, Any],
        store: BusinessStore,
        exclude_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Narrow the store to records that could match, using its indexed lookup fields."""
        if self.mode == MatchMode.STRICT:
            keys = identity_keys(candidate)
            return store.find_candidates(exclude_id=exclude_id, **keys)
        if self.mode == MatchMode.LOOSE:
            if not candidate.get("name") or not candidate.get("suburb"):
                return []
            return store.find_candidates(
                suburb=candidate["suburb"].strip(),
                suburb_case_sensitive=self.loose_config.suburb_case_sensitive,
                exclude_id=exclude_id,
            )
        return []

    def find_match(
        self,
        candidate: Dict[str, Any],
        store: Optional[BusinessStore] = None,
        accepted: Iterable[Dict[str, Any]] = (),
    ) -> Optional[DuplicateMatch]:
        """
        Check a candidate against rows accepted earlier in the same import,
        then against stored records.
        """
        if self.mode == MatchMode.NONE:
            return None

        match = self.match_against(candidate, accepted)
        if match or store is None:
            return match

        return self.match_against(candidate, self.fetch_candidates(candidate, store))


class AcceptedRecordIndex:
    """
    Rows accepted earlier in one import, bucketed the way the store indexes
    them (identifier keys for strict mode, suburb for loose mode).
    """

    def __init__(self, mode: MatchMode, loose_config: Optional[LooseMatchConfig] = None):
        self.mode = MatchMode(mode)
        self.loose_config = loose_config or LooseMatchConfig.from_settings()
        self._blocks: Dict[tuple, List[tuple]] = defaultdict(list)
        self._count = 0

    def __len__(self) -> int:
        return self._count

    def _block_keys(self, record: Dict[str, Any]) -> List[tuple]:
        if self.mode == MatchMode.STRICT:
            keys = identity_keys(record)
            return [(key, keys[key]) for _, key in STRICT_IDENTIFIERS if keys.get(key)]
        if self.mode == MatchMode.LOOSE:
            suburb = (record.get("suburb") or "").strip()
            if not suburb:
                return []
            return [("suburb", suburb if self.loose_config.suburb_case_sensitive else suburb.lower())]
        return []

    def add(self, record: Dict[str, Any]) -> None:
        seq = self._count
        self._count += 1
        for block_key in self._block_keys(record):
            self._blocks[block_key].append((seq, record))

    def candidates_for(self, candidate: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Accepted rows sharing a block with the candidate, in acceptance order."""
        found: Dict[int, Dict[str, Any]] = {}
        for block_key in self._block_keys(candidate):
            for seq, record in self._blocks.get(block_key, ()):
                found[seq] = record
        return [found[seq] for seq in sorted(found)]
