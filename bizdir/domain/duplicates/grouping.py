"""
Cluster stored businesses into duplicate groups.

Edges come from the matcher (plus existing ``duplicate_of_id`` links left by
earlier merges); groups are the connected components, so a group contains
every record transitively linked to another. Candidate pairs are blocked by
identifier (strict) or suburb (loose) instead of comparing every pair.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from bizdir.core.config import settings
from bizdir.db.business_store import BusinessStore, open_store
from .matcher import (
    CONFIDENCE_BY_MODE,
    STRICT_IDENTIFIERS,
    LooseMatchConfig,
    MatchMode,
    identity_keys,
    explain_match,
)

logger = logging.getLogger(__name__)

Edge = Tuple[str, str]

GROUP_MEMBER_FIELDS = (
    "id", "name", "phone", "email", "website", "suburb", "category", "abn",
    "approval_status", "quality_score", "duplicate_of_id", "created_at",
)


class DisjointSet:
    """Union-find with path compression and union by size."""

    def __init__(self, items: Iterable[str] = ()):
        self._parent: Dict[str, str] = {}
        self._size: Dict[str, int] = {}
        for item in items:
            self.add(item)

    def add(self, item: str) -> None:
        if item not in self._parent:
            self._parent[item] = item
            self._size[item] = 1

    def find(self, item: str) -> str:
        self.add(item)
        root = item
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[item] != root:
            self._parent[item], item = root, self._parent[item]
        return root

    def union(self, a: str, b: str) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a == root_b:
            return
        if self._size[root_a] < self._size[root_b]:
            root_a, root_b = root_b, root_a
        self._parent[root_b] = root_a
        self._size[root_a] += self._size[root_b]

    def components(self) -> List[List[str]]:
        groups: Dict[str, List[str]] = defaultdict(list)
        for item in self._parent:
            groups[self.find(item)].append(item)
        return list(groups.values())


@dataclass
class DuplicateGroup:
    id: str
    businesses: List[Dict[str, Any]]
    duplicate_type: str
    confidence: str
    resolved: bool
    merged_into: Optional[str] = None
    edges: List[Edge] = field(default_factory=list)


def _pairs_within(block: Sequence[str]) -> Iterable[Edge]:
    for i in range(len(block)):
        for j in range(i + 1, len(block)):
            yield block[i], block[j]


def build_candidate_edges(
    records: Sequence[Dict[str, Any]],
    mode: MatchMode,
    config: Optional[LooseMatchConfig] = None,
) -> List[Edge]:
    """
    Return every (id, id) pair the matcher considers a duplicate.

    Pairs are only compared inside blocks that could possibly match: records
    sharing an identifier key for strict mode, records in the same suburb
    for loose mode.
    """
    mode = MatchMode(mode)
    if mode == MatchMode.NONE:
        return []
    config = config or LooseMatchConfig()
    by_id = {record["id"]: record for record in records}

    blocks: Dict[Tuple[str, str], List[str]] = defaultdict(list)
    for record in records:
        if mode == MatchMode.STRICT:
            keys = identity_keys(record)
            for _, key in STRICT_IDENTIFIERS:
                if keys.get(key):
                    blocks[(key, keys[key])].append(record["id"])
        else:
            suburb = (record.get("suburb") or "").strip()
            if suburb:
                block_key = suburb if config.suburb_case_sensitive else suburb.lower()
                blocks[("suburb", block_key)].append(record["id"])

    edges: List[Edge] = []
    seen = set()
    for block in blocks.values():
        for a, b in _pairs_within(block):
            pair = (a, b) if a < b else (b, a)
            if pair in seen:
                continue
            # Loose name matching is directional; either direction links the pair
            if explain_match(by_id[a], by_id[b], mode, config) or explain_match(by_id[b], by_id[a], mode, config):
                seen.add(pair)
                edges.append(pair)
    return edges


def cluster_duplicate_groups(
    records: Sequence[Dict[str, Any]],
    edges: Sequence[Edge],
    mode: MatchMode,
) -> List[DuplicateGroup]:
    """
    Turn records and duplicate edges into groups.

    Existing ``duplicate_of_id`` links are treated as edges too, so records
    absorbed by a merge stay grouped with their survivor. A group is resolved
    when exactly one member is still canonical and every other member points
    at a record inside the group.
    """
    mode = MatchMode(mode)
    by_id = {record["id"]: record for record in records}
    dsu = DisjointSet()
    for a, b in edges:
        dsu.union(a, b)
    for record in records:
        target = record.get("duplicate_of_id")
        if target and target in by_id:
            dsu.union(record["id"], target)

    edges_by_root: Dict[str, List[Edge]] = defaultdict(list)
    for a, b in edges:
        edges_by_root[dsu.find(a)].append((a, b))

    groups: List[DuplicateGroup] = []
    for member_ids in dsu.components():
        if len(member_ids) < 2:
            continue
        members = sorted((by_id[i] for i in member_ids), key=lambda r: (str(r.get("created_at") or ""), r["id"]))
        canonical = [m for m in members if not m.get("duplicate_of_id")]
        ids = set(member_ids)
        resolved = len(canonical) == 1 and all(
            m.get("duplicate_of_id") in ids for m in members if m is not canonical[0]
        )
        anchor = canonical[0]["id"] if canonical else members[0]["id"]
        groups.append(
            DuplicateGroup(
                id=f"group-{anchor}",
                businesses=[{key: m.get(key) for key in GROUP_MEMBER_FIELDS} for m in members],
                duplicate_type=mode.value,
                confidence=CONFIDENCE_BY_MODE.get(mode, "low"),
                resolved=resolved,
                merged_into=anchor if resolved else None,
                edges=sorted(edges_by_root.get(dsu.find(member_ids[0]), [])),
            )
        )

    # Most recently created activity first
    groups.sort(key=lambda g: max(str(b.get("created_at") or "") for b in g.businesses), reverse=True)
    return groups


def list_duplicate_groups(
    *,
    mode: MatchMode = MatchMode.STRICT,
    suburb: Optional[str] = None,
    category: Optional[str] = None,
    resolved: Optional[bool] = None,
    limit: int = 50,
    offset: int = 0,
    config: Optional[LooseMatchConfig] = None,
    store: Optional[BusinessStore] = None,
) -> Dict[str, Any]:
    """
    Build, filter and paginate duplicate groups over the stored businesses.

    Returns:
        Dict with ``groups`` (the requested page), ``pagination`` and ``stats``
    """
    config = config or LooseMatchConfig.from_settings()

    def _load(active_store: BusinessStore) -> List[Dict[str, Any]]:
        return active_store.list_records(
            suburb_contains=suburb,
            category=category,
            limit=settings.duplicate_scan_limit,
        )

    if store is not None:
        records = _load(store)
    else:
        with open_store() as active_store:
            records = _load(active_store)

    edges = build_candidate_edges(records, mode, config)
    groups = cluster_duplicate_groups(records, edges, mode)
    logger.info(
        "Built %d duplicate groups from %d records and %d edges (%s mode)",
        len(groups), len(records), len(edges), MatchMode(mode).value,
    )

    stats = {
        "total_groups": len(groups),
        "unresolved_groups": sum(1 for g in groups if not g.resolved),
        "resolved_groups": sum(1 for g in groups if g.resolved),
        "businesses_involved": sum(len(g.businesses) for g in groups),
        "records_scanned": len(records),
    }

    if resolved is not None:
        groups = [g for g in groups if g.resolved == resolved]

    page = groups[offset:offset + limit]
    return {
        "groups": page,
        "pagination": {
            "total": len(groups),
            "limit": limit,
            "offset": offset,
            "has_more": offset + limit < len(groups),
        },
        "stats": stats,
    }
