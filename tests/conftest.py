"""
Pytest configuration and fixtures for the directory ingestion tests.

Tests that touch storage get their own SQLite database with every directory
and import table created, so no rows leak between tests.
"""

import os

# Tables are created per test by the db_engine fixture, not by the app lifespan.
os.environ.setdefault("SKIP_DB_INIT", "1")

import csv
import io
import uuid

import pytest
from sqlalchemy import text

from bizdir.core.security import Caller, require_admin
from bizdir.db.business_store import run_in_transaction
from bizdir.db.schema import init_database
from bizdir.db.session import configure_engine


@pytest.fixture
def db_engine(tmp_path):
    engine = configure_engine(f"sqlite:///{tmp_path / 'directory.db'}")
    init_database(engine, force=True)
    yield engine
    engine.dispose()


@pytest.fixture
def make_business(db_engine):
    """Insert a business and return its stored values."""

    def _make(**fields):
        fields.setdefault("name", "Acme Plumbing")
        return run_in_transaction(lambda store: store.create(fields))

    return _make


@pytest.fixture
def add_relation(db_engine):
    """Insert an inquiry or ownership claim owned by a business."""

    def _add(table, business_id):
        now = "2026-01-01 00:00:00"
        with db_engine.begin() as conn:
            if table == "inquiries":
                conn.execute(
                    text("""
                        INSERT INTO inquiries (id, business_id, customer_name, message, created_at)
                        VALUES (:id, :business_id, 'Pat', 'Do you service Richmond?', :now)
                    """),
                    {"id": str(uuid.uuid4()), "business_id": business_id, "now": now},
                )
            else:
                conn.execute(
                    text("""
                        INSERT INTO ownership_claims (id, business_id, claimant_id, status, created_at)
                        VALUES (:id, :business_id, 'user-7', 'PENDING', :now)
                    """),
                    {"id": str(uuid.uuid4()), "business_id": business_id, "now": now},
                )

    return _add


@pytest.fixture
def admin_client(db_engine):
    from fastapi.testclient import TestClient
    from bizdir.main import app

    app.dependency_overrides[require_admin] = lambda: Caller(id="admin-1", role="admin")
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


def build_csv(header, rows) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(header)
    writer.writerows(rows)
    return buffer.getvalue().encode("utf-8")


def count_businesses(engine) -> int:
    with engine.connect() as conn:
        return conn.execute(text("SELECT COUNT(*) FROM businesses")).scalar()
