"""
Merge engine: consolidate duplicate businesses into one primary record.

A merge runs in a single transaction: it locks the referenced rows, applies
the strategy's data changes to the primary, moves inquiries and ownership
claims across and archives each duplicate (``duplicate_of_id`` + REJECTED).
Duplicates are never deleted. Any failed precondition aborts with no side
effects.
"""
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from sqlalchemy.engine import Engine

from bizdir.api.schemas.shared import BulkOperation, MergeStrategy
from bizdir.db.audit import BULK_DUPLICATE_OPERATION, MERGE_DUPLICATES, UNMARK_DUPLICATE, AuditSink, audit_sink
from bizdir.db.business_store import (
    APPROVAL_STATUSES,
    BUSINESS_FIELDS,
    BusinessStore,
    open_store,
    run_in_transaction,
)
from .matcher import DuplicateMatch, DuplicateMatcher, LooseMatchConfig, MatchMode, explain_match

logger = logging.getLogger(__name__)

# Attributes ``merge_data`` may backfill onto the primary
MERGEABLE_FIELDS = tuple(name for name in BUSINESS_FIELDS if name not in ("name", "source"))

ARCHIVED_STATUS = "REJECTED"


class MergeError(Exception):
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class MergeValidationError(MergeError):
    """The request itself is unusable (no duplicates, bad strategy or fields)."""


class MergeNotFoundError(MergeError):
    def __init__(self, missing_ids: Sequence[str]):
        self.missing_ids = sorted(missing_ids)
        super().__init__(f"Businesses not found: {', '.join(self.missing_ids)}")


class MergeConflictError(MergeError):
    """The records are in a state that does not allow the operation."""


@dataclass
class MergeResult:
    primary_business_id: str
    merged_business_ids: List[str]
    strategy: str
    merged_data: Dict[str, Any] = field(default_factory=dict)
    inquiries_transferred: int = 0
    claims_transferred: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def backfill_fields(primary: Dict[str, Any], duplicates: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Values to copy onto the primary: attributes it lacks, taken from the
    first duplicate (in the given order) that has them. Never overwrites.
    """
    merged: Dict[str, Any] = {}
    for duplicate in duplicates:
        for name in MERGEABLE_FIELDS:
            if name in merged or not _is_empty(primary.get(name)):
                continue
            if not _is_empty(duplicate.get(name)):
                merged[name] = duplicate[name]
    return merged


def _manual_updates(updates: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    updates = dict(updates or {})
    unknown = sorted(set(updates) - set(BUSINESS_FIELDS))
    if unknown:
        raise MergeValidationError(f"Cannot update unknown business fields: {', '.join(unknown)}")
    if "name" in updates and _is_empty(updates["name"]):
        raise MergeValidationError("Business name cannot be empty")
    return updates


def _normalize_duplicate_ids(primary_id: str, duplicate_ids: Sequence[str]) -> List[str]:
    ids = [business_id for business_id in dict.fromkeys(duplicate_ids) if business_id and business_id != primary_id]
    if not ids:
        raise MergeValidationError("At least one duplicate business other than the primary is required")
    return ids


def merge_duplicates(
    primary_id: str,
    duplicate_ids: Sequence[str],
    strategy: Union[MergeStrategy, str] = MergeStrategy.KEEP_PRIMARY,
    reason: Optional[str] = None,
    actor_id: Optional[str] = None,
    updates: Optional[Dict[str, Any]] = None,
    audit: AuditSink = audit_sink,
    engine: Optional[Engine] = None,
) -> MergeResult:
    """
    Merge ``duplicate_ids`` into ``primary_id`` atomically.

    Raises:
        MergeValidationError: Empty duplicate list, unknown strategy or update fields
        MergeNotFoundError: Any referenced id does not exist
        MergeConflictError: The primary is itself archived as a duplicate
    """
    try:
        strategy = MergeStrategy(strategy)
    except ValueError as exc:
        raise MergeValidationError(f"Unknown merge strategy '{strategy}'") from exc
    ids = _normalize_duplicate_ids(primary_id, duplicate_ids)
    manual_patch = _manual_updates(updates) if strategy == MergeStrategy.MANUAL else {}

    def _merge(store: BusinessStore) -> MergeResult:
        records = store.get_many([primary_id, *ids], for_update=True)
        missing = [business_id for business_id in [primary_id, *ids] if business_id not in records]
        if missing:
            raise MergeNotFoundError(missing)

        primary = records[primary_id]
        if primary.get("duplicate_of_id"):
            raise MergeConflictError(
                f"Primary business {primary_id} is itself archived as a duplicate of {primary['duplicate_of_id']}"
            )

        duplicates = [records[business_id] for business_id in ids]
        if strategy == MergeStrategy.MERGE_DATA:
            patch = backfill_fields(primary, duplicates)
        elif strategy == MergeStrategy.MANUAL:
            patch = manual_patch
        else:
            patch = {}
        if patch:
            store.update_many([primary_id], patch)

        moved = store.reassign_relations(ids, primary_id)
        store.repoint_duplicates(ids, primary_id)
        store.update_many(ids, {"duplicate_of_id": primary_id, "approval_status": ARCHIVED_STATUS})

        return MergeResult(
            primary_business_id=primary_id,
            merged_business_ids=ids,
            strategy=strategy.value,
            merged_data=patch,
            inquiries_transferred=moved.get("inquiries", 0),
            claims_transferred=moved.get("ownership_claims", 0),
        )

    result = run_in_transaction(_merge, engine)
    logger.info(
        "Merged %d businesses into %s (%s): %d inquiries, %d claims moved",
        len(ids), primary_id, strategy.value, result.inquiries_transferred, result.claims_transferred,
    )

    audit.record(
        MERGE_DUPLICATES,
        primary_id,
        actor_id,
        {
            "primary_business_id": primary_id,
            "duplicate_business_ids": ids,
            "merge_strategy": strategy.value,
            "merge_result": result.to_dict(),
            "reason": reason,
        },
    )
    return result


def _restore_status(value: Optional[str]) -> str:
    value = (value or "").upper()
    if value not in APPROVAL_STATUSES:
        raise MergeValidationError(f"restore_status must be one of {', '.join(APPROVAL_STATUSES)}")
    return value


def _state(record: Dict[str, Any]) -> Dict[str, Any]:
    return {"duplicate_of_id": record.get("duplicate_of_id"), "approval_status": record.get("approval_status")}


def _unmark_one(store: BusinessStore, business_id: str, restore_status: str) -> Dict[str, Any]:
    """Clear one duplicate link; returns the record's previous state."""
    record = store.get_many([business_id], for_update=True).get(business_id)
    if record is None:
        raise MergeNotFoundError([business_id])
    if not record.get("duplicate_of_id"):
        raise MergeConflictError("Business is not marked as duplicate")
    store.update_many([business_id], {"duplicate_of_id": None, "approval_status": restore_status})
    return _state(record)


def unmark_duplicate(
    business_id: str,
    restore_status: str = "PENDING",
    actor_id: Optional[str] = None,
    reason: Optional[str] = None,
    audit: AuditSink = audit_sink,
    engine: Optional[Engine] = None,
) -> Dict[str, Any]:
    """
    Undo the archival of one duplicate: clear ``duplicate_of_id`` and restore
    an approval status. Relations moved by the merge stay with the primary.
    """
    restore_status = _restore_status(restore_status)

    def _unmark(store: BusinessStore) -> Dict[str, Any]:
        previous = _unmark_one(store, business_id, restore_status)
        return {"previous_duplicate_of_id": previous["duplicate_of_id"], "record": store.get(business_id)}

    outcome = run_in_transaction(_unmark, engine)
    logger.info("Unmarked business %s as duplicate of %s", business_id, outcome["previous_duplicate_of_id"])

    audit.record(
        UNMARK_DUPLICATE,
        business_id,
        actor_id,
        {
            "business_id": business_id,
            "previous_duplicate_of_id": outcome["previous_duplicate_of_id"],
            "restored_status": restore_status,
            "reason": reason,
        },
    )
    return outcome["record"]


def _bulk_report(operation: BulkOperation, results: List[Dict[str, Any]]) -> Dict[str, Any]:
    successful = sum(1 for result in results if result["success"])
    return {
        "operation": operation.value,
        "summary": {
            "operation": operation.value,
            "total": len(results),
            "successful": successful,
            "failed": len(results) - successful,
        },
        "results": results,
    }


def _audit_bulk(
    audit: AuditSink,
    report: Dict[str, Any],
    business_ids: Sequence[str],
    actor_id: Optional[str],
    **details: Any,
) -> None:
    audit.record(
        BULK_DUPLICATE_OPERATION,
        details.get("primary_business_id"),
        actor_id,
        {
            "operation": report["operation"],
            "business_ids": list(business_ids),
            "results": report["summary"],
            **details,
        },
    )


def mark_as_duplicate(
    primary_id: str,
    business_ids: Sequence[str],
    reason: Optional[str] = None,
    actor_id: Optional[str] = None,
    audit: AuditSink = audit_sink,
    engine: Optional[Engine] = None,
) -> Dict[str, Any]:
    """
    Archive businesses as duplicates of ``primary_id`` without moving any data
    or relations.

    Every id gets a result entry with its state before and after; an unknown
    id is reported as failed and does not stop the others. The primary is
    skipped if listed.

    Raises:
        MergeValidationError: No ids other than the primary
        MergeNotFoundError: The primary does not exist
        MergeConflictError: The primary is itself archived as a duplicate
    """
    ids = _normalize_duplicate_ids(primary_id, business_ids)
    new_state = {"duplicate_of_id": primary_id, "approval_status": ARCHIVED_STATUS}

    def _mark(store: BusinessStore) -> List[Dict[str, Any]]:
        records = store.get_many([primary_id, *ids], for_update=True)
        primary = records.get(primary_id)
        if primary is None:
            raise MergeNotFoundError([primary_id])
        if primary.get("duplicate_of_id"):
            raise MergeConflictError(
                f"Primary business {primary_id} is itself archived as a duplicate of {primary['duplicate_of_id']}"
            )

        results = []
        for business_id in ids:
            record = records.get(business_id)
            if record is None:
                results.append({"business_id": business_id, "success": False, "error": "Business not found"})
                continue
            store.update_many([business_id], new_state)
            results.append({
                "business_id": business_id,
                "success": True,
                "original_state": _state(record),
                "new_state": dict(new_state),
            })

        # Keep duplicate chains one level deep
        store.repoint_duplicates([r["business_id"] for r in results if r["success"]], primary_id)
        return results

    report = _bulk_report(BulkOperation.MARK_AS_DUPLICATE, run_in_transaction(_mark, engine))
    logger.info(
        "Marked %d of %d businesses as duplicates of %s",
        report["summary"]["successful"], len(ids), primary_id,
    )
    _audit_bulk(audit, report, ids, actor_id, primary_business_id=primary_id, reason=reason)
    return report


def bulk_unmark_duplicates(
    business_ids: Sequence[str],
    restore_status: str = "PENDING",
    actor_id: Optional[str] = None,
    reason: Optional[str] = None,
    audit: AuditSink = audit_sink,
    engine: Optional[Engine] = None,
) -> Dict[str, Any]:
    """Unmark several businesses, reporting success or the reason for failure per id."""
    restore_status = _restore_status(restore_status)
    ids = [business_id for business_id in dict.fromkeys(business_ids) if business_id]
    if not ids:
        raise MergeValidationError("No business IDs provided")

    def _unmark_all(store: BusinessStore) -> List[Dict[str, Any]]:
        results = []
        for business_id in ids:
            try:
                original = _unmark_one(store, business_id, restore_status)
            except MergeNotFoundError:
                results.append({"business_id": business_id, "success": False, "error": "Business not found"})
                continue
            except MergeConflictError as exc:
                results.append({"business_id": business_id, "success": False, "error": exc.message})
                continue
            results.append({
                "business_id": business_id,
                "success": True,
                "original_state": original,
                "new_state": {"duplicate_of_id": None, "approval_status": restore_status},
            })
        return results

    report = _bulk_report(BulkOperation.UNMARK, run_in_transaction(_unmark_all, engine))
    logger.info("Unmarked %d of %d businesses", report["summary"]["successful"], len(ids))
    _audit_bulk(audit, report, ids, actor_id, restore_status=restore_status, reason=reason)
    return report


def bulk_duplicate_operation(
    operation: Union[BulkOperation, str],
    business_ids: Sequence[str],
    primary_id: Optional[str] = None,
    merge_strategy: Union[MergeStrategy, str] = MergeStrategy.KEEP_PRIMARY,
    restore_status: str = "PENDING",
    reason: Optional[str] = None,
    actor_id: Optional[str] = None,
    audit: AuditSink = audit_sink,
    engine: Optional[Engine] = None,
) -> Dict[str, Any]:
    """
    Run one merge, unmark or mark-as-duplicate operation over a list of ids.

    For ``merge`` the primary must be part of ``business_ids``; the others are
    merged into it through ``merge_duplicates``.
    """
    try:
        operation = BulkOperation(operation)
    except ValueError as exc:
        raise MergeValidationError(f"Unknown bulk operation '{operation}'") from exc
    if not business_ids:
        raise MergeValidationError("No business IDs provided")

    if operation == BulkOperation.UNMARK:
        return bulk_unmark_duplicates(business_ids, restore_status, actor_id, reason, audit, engine)

    if not primary_id:
        raise MergeValidationError(f"Primary business ID required for {operation.value} operations")
    if operation == BulkOperation.MARK_AS_DUPLICATE:
        return mark_as_duplicate(primary_id, business_ids, reason, actor_id, audit, engine)

    if primary_id not in business_ids:
        raise MergeValidationError("Primary business ID must be included in business IDs list")
    others = [business_id for business_id in business_ids if business_id != primary_id]
    result = merge_duplicates(
        primary_id, others, merge_strategy, reason=reason, actor_id=actor_id, audit=audit, engine=engine
    )
    report = _bulk_report(operation, [{"operation": operation.value, "success": True, "result": result.to_dict()}])
    _audit_bulk(audit, report, business_ids, actor_id, primary_business_id=primary_id, reason=reason)
    return report


def detect_duplicates_for_business(
    business_id: str,
    mode: Union[MatchMode, str] = MatchMode.STRICT,
    include_resolved: bool = False,
    loose_config: Optional[LooseMatchConfig] = None,
) -> Dict[str, Any]:
    """
    Stored records the matcher links to one business, with the fields that matched.

    Archived duplicates are left out unless ``include_resolved`` is set.
    """
    matcher = DuplicateMatcher(mode, loose_config)
    with open_store() as store:
        business = store.get(business_id)
        if business is None:
            raise MergeNotFoundError([business_id])
        candidates = matcher.fetch_candidates(business, store, exclude_id=business_id)

    duplicates = []
    for candidate in candidates:
        if candidate.get("duplicate_of_id") and not include_resolved:
            continue
        matched = explain_match(business, candidate, matcher.mode, matcher.loose_config)
        if not matched:
            continue
        match = DuplicateMatch(existing_id=candidate["id"], mode=matcher.mode, matched_fields=matched)
        duplicates.append({
            "existing_business_id": match.existing_id,
            "mode": match.mode,
            "confidence": match.confidence,
            "matched_fields": match.matched_fields,
            "reason": match.reason,
            "business": candidate,
        })

    return {"business": business, "mode": matcher.mode, "duplicates": duplicates}
