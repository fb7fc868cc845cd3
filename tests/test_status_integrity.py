"""Tests — status integrity diagnostics and CLI commands."""

import json
from datetime import datetime, timedelta, timezone

from cra_tracker.models import db
from cra_tracker.models.request import CraRequest, RequestHistoryEntry
from cra_tracker.services.status_integrity import (
    generate_status_integrity_report,
    generate_status_snapshot,
    get_allowed_status_transitions,
    get_status_rank,
    is_allowed_status_transition,
    is_known_request_status,
    submit_after_clarification_count,
)

T0 = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


def _seed(rid, current, statuses):
    req = CraRequest(id=rid, status=current, created_by="s1", updated_at=T0)
    for seq, status in enumerate(statuses):
        req.history.append(RequestHistoryEntry(
            seq=seq, status=status, actor_id="u", actor_role="sales",
            timestamp=T0 + timedelta(minutes=seq),
        ))
    db.session.add(req)
    db.session.commit()
    return req


class TestGraph:
    def test_known_statuses(self):
        assert is_known_request_status("gm_rejected")
        assert not is_known_request_status("edited")
        assert not is_known_request_status("cancelled")

    def test_rank(self):
        assert get_status_rank("draft") == 0
        assert get_status_rank("closed") > get_status_rank("gm_approved")
        assert get_status_rank("bogus") == -1

    def test_legacy_edges(self):
        assert is_allowed_status_transition("gm_approval_pending", "gm_rejected")
        assert is_allowed_status_transition("gm_rejected", "sales_followup")
        assert not is_allowed_status_transition("closed", "draft")
        assert is_allowed_status_transition("closed", "closed")

    def test_allowed_in_workflow_order(self):
        assert get_allowed_status_transitions("under_review") == [
            "clarification_needed", "feasibility_confirmed", "design_result",
        ]
        assert get_allowed_status_transitions("nope") == []


class TestSnapshot:
    def test_loop_count(self):
        statuses = ["submitted", "clarification_needed", "submitted", "clarification_needed", "submitted"]
        assert submit_after_clarification_count(statuses) == 2

    def test_latest_ignores_edited(self):
        _seed("CRA1", "submitted", ["submitted", "edited"])
        snap = generate_status_snapshot()
        entry = snap["items"][0]
        assert snap["count"] == 1
        assert entry["latestHistoryStatus"] == "submitted"
        assert entry["currentStatus"] == "submitted"


class TestReport:
    def test_mismatch_and_loops(self):
        _seed("CRA1", "under_review", ["submitted"])
        _seed("CRA2", "submitted", ["submitted", "clarification_needed", "submitted",
                                    "clarification_needed", "submitted"])
        _seed("CRA3", "draft", [])
        report = generate_status_integrity_report()
        assert report["totalRequests"] == 3
        assert report["mismatchCount"] == 1
        assert report["mismatches"][0]["id"] == "CRA1"
        assert report["repeatedSubmitLoopCount"] == 1
        assert report["repeatedSubmitLoops"][0]["id"] == "CRA2"

    def test_limit_truncates_lists_not_counts(self):
        for i in range(3):
            _seed(f"CRA{i}", "closed", ["submitted"])
        report = generate_status_integrity_report(limit=0)
        assert report["mismatchCount"] == 3
        assert len(report["mismatches"]) == 1


class TestCli:
    def test_status_integrity_command(self, app):
        _seed("CRA1", "under_review", ["submitted"])
        result = app.test_cli_runner().invoke(args=["status-integrity", "--limit", "5"])
        assert result.exit_code == 0
        assert json.loads(result.output)["mismatchCount"] == 1

    def test_status_snapshot_to_file(self, app, tmp_path):
        _seed("CRA1", "submitted", ["submitted"])
        out = tmp_path / "snapshot.json"
        result = app.test_cli_runner().invoke(args=["status-snapshot", "--output", str(out)])
        assert result.exit_code == 0
        assert json.loads(out.read_text(encoding="utf-8"))["count"] == 1
