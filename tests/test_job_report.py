"""
Tests for the downloadable import job report.
"""

import csv
import io

from bizdir.domain.imports.reports import build_job_report, job_report_csv


def _job():
    return {
        "id": "job-1",
        "errors": [
            {"row": 3, "field": "name", "message": "Business name is required", "data": {"phone": "0412345678"}},
            {"row": None, "field": None, "message": "Maximum error limit (1) reached", "data": None},
        ],
        "warnings": [
            {"row": 1, "field": "email", "message": "Invalid email format", "data": {"name": "Acme", "email": "bad"}},
        ],
        "duplicates": [
            {"row": 2, "reason": "Duplicate detected (strict mode; matched on phone)",
             "existing_business_id": "biz-1", "data": {"name": "Acme Again", "phone": "0412345678"}},
        ],
    }


def test_lines_are_sorted_by_row_with_job_level_last():
    frame = build_job_report(_job())

    assert frame["kind"].tolist() == ["warning", "duplicate", "error", "error"]
    assert frame["row"].tolist()[:3] == [1, 2, 3]
    assert frame["message"].iloc[1] == "Duplicate detected (strict mode; matched on phone)"
    assert frame["existing_business_id"].iloc[1] == "biz-1"


def test_only_attributes_present_in_some_row_become_columns():
    frame = build_job_report(_job())

    assert "phone" in frame.columns
    assert "email" in frame.columns
    assert "suburb" not in frame.columns
    assert "abn" not in frame.columns


def test_csv_output():
    content = job_report_csv(_job())
    rows = list(csv.DictReader(io.StringIO(content)))

    assert len(rows) == 4
    assert rows[0]["kind"] == "warning"
    assert rows[0]["row"] == "1"
    assert rows[0]["name"] == "Acme"
    assert rows[-1]["row"] == ""
    assert rows[-1]["message"] == "Maximum error limit (1) reached"


def test_job_without_issues_has_only_a_header():
    content = job_report_csv({"id": "job-2", "errors": [], "warnings": [], "duplicates": []})

    assert content.strip().split(",")[:5] == ["kind", "row", "field", "message", "existing_business_id"]
    assert len(content.strip().splitlines()) == 1
