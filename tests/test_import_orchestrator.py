"""
Tests for the CSV import pipeline: submission, row processing and job outcomes.
"""

import threading

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from conftest import build_csv, count_businesses

from bizdir.core.config import settings
from bizdir.db.audit import IMPORT_COMPLETED, IMPORT_FAILED, IMPORT_INITIATED, audit_sink
from bizdir.db.business_store import BusinessStore, open_store
from bizdir.domain.imports import orchestrator
from bizdir.domain.imports.jobs import (
    create_import_job,
    get_import_job,
    list_import_jobs,
    request_job_cancellation,
)
from bizdir.domain.imports.orchestrator import JobCounters, run_import_job, submit_import
from bizdir.domain.imports.processors.csv_processor import ImportInputError

HEADER = ["name", "phone", "email", "suburb"]

JOES = [
    ["Joe's Plumbing", "0412 345 678", "", "Richmond"],
    ["Joe's Plumbing Services", "+61412345678", "", "Richmond"],
]


def _submit(rows, header=HEADER, **options):
    options.setdefault("dry_run", False)
    options.setdefault("dedupe_mode", "strict")
    result = submit_import("businesses.csv", build_csv(header, rows), options, actor_id="admin-1")
    return result, get_import_job(result["job_id"])


class TestRowOutcomes:
    def test_every_row_is_accounted_for(self, db_engine):
        rows = [
            ["Acme", "0412345678", "acme@example.com", "Richmond"],
            ["", "0398765432", "", "Carlton"],
            ["Acme Again", "0412 345 678", "", "Richmond"],
            ["Beta", "", "bad-email", "Fitzroy"],
        ]
        _, job = _submit(rows)

        assert job["status"] == "completed"
        assert job["total_rows"] == job["processed_rows"] == 4
        assert job["success_count"] + job["error_count"] + job["duplicate_count"] == 4
        assert (job["success_count"], job["error_count"], job["duplicate_count"]) == (2, 1, 1)
        assert job["warning_count"] == 1
        assert job["progress"] == 100
        assert job["estimated_time_remaining"] == 0
        assert job["ended_at"] is not None

    def test_duplicate_within_one_file(self, db_engine):
        _, job = _submit(JOES)

        assert job["success_count"] == 1
        assert job["duplicate_count"] == 1
        duplicate = job["duplicates"][0]
        assert duplicate["row"] == 2
        assert duplicate["reason"] == "Duplicate detected (strict mode; matched on phone)"

        with open_store() as store:
            stored = store.find_first(phone_key="0412345678")
        assert duplicate["existing_business_id"] == stored["id"]
        assert count_businesses(db_engine) == 1

    def test_reimporting_the_same_file_adds_nothing(self, db_engine):
        _submit(JOES)
        _, second = _submit(JOES)

        assert second["success_count"] == 0
        assert second["duplicate_count"] == 2
        assert count_businesses(db_engine) == 1

    def test_missing_name_is_a_row_error(self, db_engine):
        _, job = _submit([["", "0412345678", "", "Richmond"]])

        assert job["status"] == "completed"
        assert job["error_count"] == 1
        assert job["errors"] == [{
            "row": 1,
            "field": "name",
            "message": "Business name is required",
            "data": {"phone": "0412345678", "suburb": "Richmond"},
        }]
        assert count_businesses(db_engine) == 0

    def test_warnings_do_not_reject_the_row(self, db_engine):
        _, job = _submit([["Acme", "", "not-an-email", "Richmond"]])

        assert job["success_count"] == 1
        assert job["warning_count"] == 1
        assert job["warnings"][0]["field"] == "email"
        assert job["warnings"][0]["message"] == "Invalid email format"
        assert count_businesses(db_engine) == 1

    def test_rejected_rows_record_no_warnings(self, db_engine):
        _, job = _submit([["", "", "not-an-email", "Richmond"]])

        assert job["error_count"] == 1
        assert job["warning_count"] == 0
        assert job["warnings"] == []
        assert [e["field"] for e in job["errors"]] == ["name"]

    def test_import_only_scope_keeps_flagged_rows(self, db_engine):
        _, job = _submit(JOES, dedupe_scope="import_only")

        assert job["success_count"] == 1
        assert job["duplicate_count"] == 1
        assert count_businesses(db_engine) == 2

    def test_dedupe_none_accepts_everything(self, db_engine):
        _, job = _submit(JOES, dedupe_mode="none")

        assert job["success_count"] == 2
        assert job["duplicate_count"] == 0

    def test_loose_mode_matches_on_name_and_suburb(self, db_engine):
        rows = [
            ["Joe's Plumbing Services", "", "", "Richmond"],
            ["Joe's Plumbing", "", "", "Richmond"],
            ["Joe's Plumbing", "", "", "Carlton"],
        ]
        _, job = _submit(rows, dedupe_mode="loose")

        assert job["success_count"] == 2
        assert [d["row"] for d in job["duplicates"]] == [2]


class TestDryRun:
    def test_dry_run_reports_the_same_outcome_without_writing(self, db_engine):
        rows = JOES + [["", "0398765432", "", "Carlton"], ["Beta", "0398765432", "", "Carlton"]]

        _, dry = _submit(rows, dry_run=True)
        assert count_businesses(db_engine) == 0

        _, real = _submit(rows, dry_run=False)

        for counter in ("success_count", "error_count", "duplicate_count", "warning_count"):
            assert dry[counter] == real[counter]
        assert [d["row"] for d in dry["duplicates"]] == [d["row"] for d in real["duplicates"]]
        assert dry["duplicates"][0]["existing_business_id"] == "dry-run-row-1"
        assert count_businesses(db_engine) == 2

    def test_dry_run_matches_existing_records(self, make_business):
        stored = make_business(name="Joe's Plumbing", phone="0412345678")
        _, job = _submit(JOES[:1], dry_run=True)

        assert job["duplicates"][0]["existing_business_id"] == stored["id"]

    def test_dry_run_keeps_preview_on_job(self, db_engine):
        result, job = _submit(JOES, dry_run=True)

        assert result["message"] == "Dry run started"
        assert result["preview"]["total_rows"] == 2
        assert job["preview"]["headers"] == HEADER


class TestJobLimits:
    def test_max_errors_stops_the_job(self, db_engine):
        rows = [["", f"04123456{i:02d}", "", "Richmond"] for i in range(4)]
        _, job = _submit(rows, max_errors=2)

        assert job["status"] == "failed"
        assert job["error_count"] == 2
        assert job["processed_rows"] == 2
        assert job["errors"][-1]["row"] is None
        assert job["errors"][-1]["message"] == "Maximum error limit (2) reached"
        assert job["estimated_time_remaining"] is None

    def test_cancel_before_processing(self, db_engine):
        rows = [["Acme", "", "", "Richmond"]]
        job = create_import_job(filename="businesses.csv", total_rows=1)
        request_job_cancellation(job["id"])

        final = run_import_job(job["id"], HEADER, rows, {"dry_run": False})

        assert final["status"] == "cancelled"
        assert final["processed_rows"] == 0
        assert count_businesses(db_engine) == 0

    def test_cancel_between_batches(self, db_engine, monkeypatch):
        checks = []

        def cancel_after_first_batch(job_id):
            checks.append(job_id)
            return len(checks) > 1

        monkeypatch.setattr(orchestrator, "is_cancel_requested", cancel_after_first_batch)
        rows = [["Acme", "", "", "Richmond"], ["Beta", "", "", "Carlton"], ["Gamma", "", "", "Fitzroy"]]

        _, job = _submit(rows, batch_size=1)

        assert job["status"] == "cancelled"
        assert job["processed_rows"] == 1
        # Rows committed before the cancellation stay
        assert count_businesses(db_engine) == 1

    def test_finished_job_is_not_rerun(self, db_engine):
        _, job = _submit(JOES)
        again = run_import_job(job["id"], HEADER, JOES, {"dry_run": False, "dedupe_mode": "strict"})

        assert again["status"] == "completed"
        assert again["processed_rows"] == 2
        assert count_businesses(db_engine) == 1


class TestConcurrentImports:
    def test_parallel_imports_of_one_file_store_each_business_once(self, db_engine):
        rows = [[f"Business {i}", f"04123456{i:02d}", "", "Richmond"] for i in range(12)]
        content = build_csv(HEADER, rows)
        options = {"dry_run": False, "dedupe_mode": "strict", "dedupe_scope": "global", "batch_size": 5}
        results, failures = [], []

        def worker():
            try:
                results.append(submit_import("businesses.csv", content, options, actor_id="admin-1"))
            except Exception as exc:  # surfaced by the assertion below
                failures.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(3)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert failures == []
        jobs = [get_import_job(result["job_id"]) for result in results]
        assert len(jobs) == 3
        for job in jobs:
            assert job["status"] == "completed"
            assert job["success_count"] + job["duplicate_count"] == len(rows)
        assert sum(job["success_count"] for job in jobs) == len(rows)
        assert count_businesses(db_engine) == len(rows)

        with db_engine.connect() as conn:
            distinct_phones = conn.execute(text("SELECT COUNT(DISTINCT phone_key) FROM businesses")).scalar()
        assert distinct_phones == len(rows)


class TestStorageFailures:
    def test_constraint_violation_is_a_row_error(self, db_engine, monkeypatch):
        def reject(self, record):
            raise IntegrityError("INSERT INTO businesses", {}, Exception("duplicate key value"))

        monkeypatch.setattr(BusinessStore, "create", reject)
        _, job = _submit([["Acme", "", "", "Richmond"]])

        assert job["status"] == "completed"
        assert job["error_count"] == 1
        assert job["errors"][0]["message"] == "Failed to store business: duplicate key value"

    def test_unexpected_error_fails_the_job(self, db_engine, monkeypatch):
        def explode(self, record):
            raise RuntimeError("disk full")

        monkeypatch.setattr(BusinessStore, "create", explode)
        _, job = _submit([["Acme", "", "", "Richmond"]])

        assert job["status"] == "failed"
        assert job["errors"][-1] == {"row": None, "field": None, "message": "Processing failed: disk full", "data": None}
        assert audit_sink.list_events(IMPORT_FAILED)[0]["subject_id"] == job["id"]


class TestSubmission:
    def test_preview_only_creates_no_job(self, db_engine):
        content = build_csv(["Business Name", "Telephone", "Notes"], [["Acme", "0412345678", "call after 5"]])

        result = submit_import("businesses.csv", content, {"preview_only": True})

        assert result["job_id"] is None
        assert result["status"] == "preview_ready"
        preview = result["preview"]
        assert preview["field_mapping"] == {"Business Name": "name", "Telephone": "phone"}
        assert preview["unmapped_headers"] == ["Notes"]
        assert 'Column "Notes" is not mapped and will be ignored' in preview["recommendations"]
        assert preview["sample_rows"] == [["Acme", "0412345678", "call after 5"]]
        _, summary = list_import_jobs()
        assert summary["total"] == 0

    def test_skip_unmapped_fields_drops_the_recommendation(self, db_engine):
        content = build_csv(["name", "email", "Notes"], [["Acme", "a@example.com", "x"]])
        result = submit_import("b.csv", content, {"preview_only": True, "skip_unmapped_fields": True})
        assert result["preview"]["recommendations"] == []

    def test_missing_contact_fields_are_flagged(self, db_engine):
        content = build_csv(["name", "suburb"], [["Acme", "Richmond"]])

        preview = submit_import("b.csv", content, {"preview_only": True})["preview"]

        assert preview["recommendations"] == [
            "No contact information mapped - consider adding email or phone for better business profiles"
        ]

    def test_large_files_are_flagged(self, db_engine):
        header = HEADER + [f"Extra {i}" for i in range(7)]
        rows = [[f"Business {i}", "", "", "Richmond"] + [""] * 7 for i in range(1001)]

        preview = submit_import("big.csv", build_csv(header, rows), {"preview_only": True})["preview"]

        assert "Large CSV with 11 columns - consider mapping only essential fields" in preview["recommendations"]
        assert "Large dataset with 1001 rows - consider using batch processing" in preview["recommendations"]
        assert not any(r.startswith("No contact information") for r in preview["recommendations"])

    def test_size_thresholds_are_exclusive(self, db_engine):
        header = HEADER + [f"Extra {i}" for i in range(6)]
        rows = [[f"Business {i}", "", "", "Richmond"] + [""] * 6 for i in range(1000)]

        preview = submit_import("edge.csv", build_csv(header, rows), {"preview_only": True})["preview"]

        assert not any(r.startswith("Large") for r in preview["recommendations"])


    def test_empty_file_is_rejected_before_a_job_exists(self, db_engine):
        with pytest.raises(ImportInputError):
            submit_import("empty.csv", b"")
        _, summary = list_import_jobs()
        assert summary["total"] == 0

    def test_oversized_file_is_rejected(self, db_engine, monkeypatch):
        monkeypatch.setattr(settings, "upload_max_file_size_mb", 0)
        with pytest.raises(ImportInputError) as exc_info:
            submit_import("big.csv", build_csv(HEADER, JOES))
        assert exc_info.value.message == "File too large"

    def test_dispatch_receives_the_worker(self, db_engine):
        calls = []
        result = submit_import(
            "businesses.csv",
            build_csv(HEADER, JOES),
            {"dry_run": False},
            dispatch=lambda fn, *args: calls.append((fn, args)),
        )

        assert result["status"] == "pending"
        assert result["message"] == "Import started"
        assert result["preview"] is None
        assert calls[0][0] is run_import_job
        assert calls[0][1][0] == result["job_id"]
        assert get_import_job(result["job_id"])["status"] == "pending"

    def test_options_are_stored_on_the_job(self, db_engine):
        _, job = _submit(JOES, batch_size=50)
        assert job["options"]["dedupe_mode"] == "strict"
        assert job["options"]["batch_size"] == 50
        assert job["created_by"] == "admin-1"

    def test_audit_trail(self, db_engine):
        _, job = _submit(JOES)

        initiated = audit_sink.list_events(IMPORT_INITIATED)
        completed = audit_sink.list_events(IMPORT_COMPLETED)

        assert initiated[0]["subject_id"] == job["id"]
        assert initiated[0]["actor_id"] == "admin-1"
        assert initiated[0]["details"]["filename"] == "businesses.csv"
        assert completed[0]["details"]["success_count"] == 1
        assert completed[0]["details"]["duplicate_count"] == 1


class TestJobCounters:
    def test_progress_and_eta(self):
        counters = JobCounters(total_rows=10, processed_rows=4)
        assert counters.progress == 40
        assert counters.estimate_remaining(2.0) == 3

    def test_eta_unknown_before_first_row(self):
        assert JobCounters(total_rows=10).estimate_remaining(1.0) is None

    def test_empty_job_is_complete(self):
        assert JobCounters(total_rows=0).progress == 100

    def test_issues_keep_their_order(self):
        counters = JobCounters(total_rows=2)
        counters.add_issue("warning", row=1, message="a")
        counters.add_issue("error", row=2, message="b")

        issues = counters.take_issues()

        assert [issue["seq"] for issue in issues] == [0, 1]
        assert counters.take_issues() == []
