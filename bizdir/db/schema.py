"""
Table bootstrap for the directory store and the import pipeline.

DDL is kept portable between PostgreSQL (production) and SQLite (tests):
ids are uuid strings generated in Python and JSON payloads are stored as
text.
"""
import logging
import threading
from typing import Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine

from bizdir.db.session import get_engine

logger = logging.getLogger(__name__)

_tables_initialized = False
_init_lock = threading.Lock()


BUSINESSES_DDL = [
    """
    CREATE TABLE IF NOT EXISTS businesses (
        id VARCHAR(36) PRIMARY KEY,
        name VARCHAR(255) NOT NULL,
        slug VARCHAR(140) NOT NULL,
        email VARCHAR(255),
        phone VARCHAR(64),
        website VARCHAR(512),
        address VARCHAR(512),
        suburb VARCHAR(128),
        postcode VARCHAR(16),
        category VARCHAR(128),
        bio TEXT,
        abn VARCHAR(32),
        abn_status VARCHAR(32),
        source VARCHAR(64),
        approval_status VARCHAR(16) NOT NULL DEFAULT 'PENDING',
        quality_score INTEGER DEFAULT 50,
        duplicate_of_id VARCHAR(36),
        phone_key VARCHAR(32),
        email_key VARCHAR(255),
        abn_key VARCHAR(32),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_businesses_phone_key ON businesses(phone_key)",
    "CREATE INDEX IF NOT EXISTS idx_businesses_email_key ON businesses(email_key)",
    "CREATE INDEX IF NOT EXISTS idx_businesses_abn_key ON businesses(abn_key)",
    "CREATE INDEX IF NOT EXISTS idx_businesses_suburb ON businesses(suburb)",
    "CREATE INDEX IF NOT EXISTS idx_businesses_duplicate_of ON businesses(duplicate_of_id)",
]

RELATIONS_DDL = [
    """
    CREATE TABLE IF NOT EXISTS inquiries (
        id VARCHAR(36) PRIMARY KEY,
        business_id VARCHAR(36) NOT NULL REFERENCES businesses(id),
        customer_name VARCHAR(255),
        message TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_inquiries_business ON inquiries(business_id)",
    """
    CREATE TABLE IF NOT EXISTS ownership_claims (
        id VARCHAR(36) PRIMARY KEY,
        business_id VARCHAR(36) NOT NULL REFERENCES businesses(id),
        claimant_id VARCHAR(64),
        status VARCHAR(32) DEFAULT 'PENDING',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_ownership_claims_business ON ownership_claims(business_id)",
]

IMPORT_JOBS_DDL = [
    """
    CREATE TABLE IF NOT EXISTS import_jobs (
        id VARCHAR(36) PRIMARY KEY,
        filename VARCHAR(512) NOT NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'pending',
        progress INTEGER DEFAULT 0,
        total_rows INTEGER DEFAULT 0,
        processed_rows INTEGER DEFAULT 0,
        success_count INTEGER DEFAULT 0,
        error_count INTEGER DEFAULT 0,
        warning_count INTEGER DEFAULT 0,
        duplicate_count INTEGER DEFAULT 0,
        estimated_time_remaining INTEGER,
        cancel_requested INTEGER DEFAULT 0,
        options TEXT,
        preview TEXT,
        created_by VARCHAR(64),
        started_at TIMESTAMP,
        ended_at TIMESTAMP,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_import_jobs_status ON import_jobs(status)",
    """
    CREATE TABLE IF NOT EXISTS import_job_issues (
        id VARCHAR(36) PRIMARY KEY,
        job_id VARCHAR(36) NOT NULL REFERENCES import_jobs(id),
        seq INTEGER NOT NULL,
        kind VARCHAR(16) NOT NULL,
        row_index INTEGER,
        field VARCHAR(64),
        message TEXT,
        existing_business_id VARCHAR(36),
        row_data TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_import_job_issues_job ON import_job_issues(job_id, seq)",
]

AUDIT_LOG_DDL = [
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id VARCHAR(36) PRIMARY KEY,
        event_type VARCHAR(64) NOT NULL,
        subject_id VARCHAR(36),
        actor_id VARCHAR(64),
        details TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_log_event ON audit_log(event_type)",
]


def _execute_ddl(engine: Engine, statements) -> None:
    with engine.begin() as conn:
        for statement in statements:
            conn.execute(text(statement))


def init_database(engine: Optional[Engine] = None, force: bool = False) -> None:
    """Create all tables the pipeline reads or writes. Idempotent."""
    global _tables_initialized
    if _tables_initialized and not force:
        return

    with _init_lock:
        if _tables_initialized and not force:
            return
        engine = engine or get_engine()
        _execute_ddl(engine, BUSINESSES_DDL)
        _execute_ddl(engine, RELATIONS_DDL)
        _execute_ddl(engine, IMPORT_JOBS_DDL)
        _execute_ddl(engine, AUDIT_LOG_DDL)
        _tables_initialized = True
        logger.info("Directory and import tables ready")
