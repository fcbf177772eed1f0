"""
Audit trail for admin actions on the directory.

Recording is fire-and-forget: a failure to write an audit entry is logged
and never fails the import or merge that triggered it.
"""
import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine

from bizdir.db.session import get_engine
from bizdir.utils.date import utcnow_db
from bizdir.utils.serialization import dump_json, load_json

logger = logging.getLogger(__name__)

# Event types emitted by the pipeline
IMPORT_INITIATED = "ADMIN_CSV_IMPORT_INITIATED"
IMPORT_COMPLETED = "ADMIN_CSV_IMPORT_COMPLETED"
IMPORT_FAILED = "ADMIN_CSV_IMPORT_FAILED"
IMPORT_CANCELLED = "ADMIN_CSV_IMPORT_CANCELLED"
MERGE_DUPLICATES = "ADMIN_MERGE_DUPLICATES"
UNMARK_DUPLICATE = "ADMIN_UNMARK_DUPLICATE"
BULK_DUPLICATE_OPERATION = "ADMIN_BULK_DUPLICATE_OPERATION"


class AuditSink:
    """Writes audit events to the ``audit_log`` table."""

    def __init__(self, engine: Optional[Engine] = None):
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    def record(
        self,
        event_type: str,
        subject_id: Optional[str],
        actor_id: Optional[str],
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    text("""
                        INSERT INTO audit_log (id, event_type, subject_id, actor_id, details, created_at)
                        VALUES (:id, :event_type, :subject_id, :actor_id, :details, :created_at)
                    """),
                    {
                        "id": str(uuid.uuid4()),
                        "event_type": event_type,
                        "subject_id": subject_id,
                        "actor_id": actor_id,
                        "details": dump_json(details or {}),
                        "created_at": utcnow_db(),
                    },
                )
        except Exception as exc:
            logger.error("Failed to record audit event %s: %s", event_type, exc)

    def list_events(self, event_type: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        where = "WHERE event_type = :event_type" if event_type else ""
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(f"""
                    SELECT id, event_type, subject_id, actor_id, details, created_at
                    FROM audit_log
                    {where}
                    ORDER BY created_at DESC
                    LIMIT :limit
                """),
                {"event_type": event_type, "limit": limit},
            ).mappings().all()
        return [
            {**dict(row), "details": load_json(row["details"], default={})}
            for row in rows
        ]


audit_sink = AuditSink()
