#!/usr/bin/env python3
# tests/test_conditions.py
"""
Tests for the health condition checkers.

These tests verify the checkers:
- Answer Unknown when the status lacks the information they need
- Report False as soon as the checked aspect is unhealthy
- Never raise on malformed but well-typed status
"""

import os
import sys
import unittest
from datetime import datetime, timedelta, timezone

# Add src directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from conditions import (
    AllMembersReadyCheck,
    BackupReadyCheck,
    CheckContext,
    Condition,
    ConditionStatus,
    ReadyCheck,
    default_checkers,
    format_time,
    parse_time,
)

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def members(*states):
    return [{"name": f"etcd-main-{i}", "status": state} for i, state in enumerate(states)]


class TestAllMembersReadyCheck(unittest.TestCase):
    def setUp(self):
        self.ctx = CheckContext(now=NOW)
        self.check = AllMembersReadyCheck()

    def test_no_members_is_unknown(self):
        for status in ({}, {"members": []}, {"members": None}):
            result = self.check.check(self.ctx, status)
            self.assertEqual(result.type, "AllMembersReady")
            self.assertEqual(result.status, ConditionStatus.UNKNOWN)
            self.assertEqual(result.reason, "NoMembersInStatus")

    def test_one_member_not_ready_is_false(self):
        result = self.check.check(self.ctx, {"members": members("Ready", "NotReady", "Ready")})
        self.assertEqual(result.status, ConditionStatus.FALSE)
        self.assertEqual(result.reason, "NotAllMembersReady")

    def test_all_ready_is_true(self):
        result = self.check.check(self.ctx, {"members": members("Ready", "Ready", "Ready")})
        self.assertEqual(result.status, ConditionStatus.TRUE)
        self.assertEqual(result.reason, "AllMembersReady")

    def test_member_without_status_counts_as_not_ready(self):
        result = self.check.check(self.ctx, {"members": [{"name": "etcd-main-0"}]})
        self.assertEqual(result.status, ConditionStatus.FALSE)

    def test_result_independent_of_which_member(self):
        first = self.check.check(self.ctx, {"members": members("Unknown", "Ready", "Ready")})
        last = self.check.check(self.ctx, {"members": members("Ready", "Ready", "NotReady")})
        self.assertEqual(first, last)

    def test_malformed_members_is_unknown(self):
        result = self.check.check(self.ctx, {"members": "etcd-main-0"})
        self.assertEqual(result.status, ConditionStatus.UNKNOWN)
        self.assertEqual(result.reason, "MalformedMemberStatus")

    def test_non_dict_member_does_not_raise(self):
        result = self.check.check(self.ctx, {"members": ["etcd-main-0"]})
        self.assertEqual(result.status, ConditionStatus.FALSE)


class TestReadyCheck(unittest.TestCase):
    def setUp(self):
        self.ctx = CheckContext(now=NOW)
        self.check = ReadyCheck()

    def test_no_members_is_unknown(self):
        result = self.check.check(self.ctx, {"members": []})
        self.assertEqual(result.type, "Ready")
        self.assertEqual(result.status, ConditionStatus.UNKNOWN)

    def test_quorum_held(self):
        result = self.check.check(self.ctx, {"members": members("Ready", "NotReady", "Ready")})
        self.assertEqual(result.status, ConditionStatus.TRUE)
        self.assertEqual(result.reason, "Quorate")

    def test_quorum_lost(self):
        result = self.check.check(self.ctx, {"members": members("Ready", "NotReady", "NotReady")})
        self.assertEqual(result.status, ConditionStatus.FALSE)
        self.assertEqual(result.reason, "QuorumLost")

    def test_even_member_count_needs_strict_majority(self):
        result = self.check.check(self.ctx, {"members": members("Ready", "Ready", "NotReady", "NotReady")})
        self.assertEqual(result.status, ConditionStatus.FALSE)

    def test_single_member(self):
        result = self.check.check(self.ctx, {"members": members("Ready")})
        self.assertEqual(result.status, ConditionStatus.TRUE)


class TestBackupReadyCheck(unittest.TestCase):
    def setUp(self):
        self.ctx = CheckContext(now=NOW)
        self.check = BackupReadyCheck()

    def backup(self, **kwargs):
        data = {"configured": True, "deltaSnapshotPeriodSeconds": 300}
        data.update(kwargs)
        return {"backup": data}

    def test_not_observed(self):
        result = self.check.check(self.ctx, {})
        self.assertEqual(result.status, ConditionStatus.UNKNOWN)
        self.assertEqual(result.reason, "NoBackupInfo")

    def test_not_configured(self):
        result = self.check.check(self.ctx, {"backup": {"configured": False}})
        self.assertEqual(result.status, ConditionStatus.UNKNOWN)
        self.assertEqual(result.reason, "BackupNotConfigured")

    def test_no_snapshots_yet(self):
        result = self.check.check(self.ctx, self.backup())
        self.assertEqual(result.status, ConditionStatus.UNKNOWN)
        self.assertEqual(result.reason, "NoSnapshotInfo")

    def test_recent_delta_snapshot(self):
        recent = format_time(NOW - timedelta(minutes=4))
        result = self.check.check(self.ctx, self.backup(lastDeltaSnapshotTime=recent))
        self.assertEqual(result.status, ConditionStatus.TRUE)
        self.assertEqual(result.reason, "BackupSucceeded")

    def test_latest_of_full_and_delta_counts(self):
        old = format_time(NOW - timedelta(hours=5))
        recent = format_time(NOW - timedelta(minutes=1))
        result = self.check.check(
            self.ctx, self.backup(lastDeltaSnapshotTime=old, lastFullSnapshotTime=recent)
        )
        self.assertEqual(result.status, ConditionStatus.TRUE)

    def test_stale_snapshot(self):
        stale = format_time(NOW - timedelta(minutes=11))
        result = self.check.check(self.ctx, self.backup(lastDeltaSnapshotTime=stale))
        self.assertEqual(result.status, ConditionStatus.FALSE)
        self.assertEqual(result.reason, "BackupFailed")

    def test_unparsable_time(self):
        result = self.check.check(self.ctx, self.backup(lastDeltaSnapshotTime="yesterday"))
        self.assertEqual(result.status, ConditionStatus.UNKNOWN)
        self.assertEqual(result.reason, "UnparsableSnapshotTime")

    def test_missing_period(self):
        recent = format_time(NOW)
        result = self.check.check(
            self.ctx, self.backup(deltaSnapshotPeriodSeconds=None, lastDeltaSnapshotTime=recent)
        )
        self.assertEqual(result.status, ConditionStatus.UNKNOWN)
        self.assertEqual(result.reason, "NoSnapshotPeriod")


class TestConditionSerialization(unittest.TestCase):
    def test_to_dict_and_back(self):
        condition = Condition(
            type="Ready",
            status=ConditionStatus.TRUE,
            reason="Quorate",
            message="ok",
            last_transition_time=NOW,
            last_update_time=NOW,
        )
        data = condition.to_dict()
        self.assertEqual(data["status"], "True")
        self.assertEqual(data["lastTransitionTime"], "2024-05-01T12:00:00Z")
        self.assertEqual(Condition.from_dict(data), condition)

    def test_to_dict_omits_unset_times(self):
        data = Condition("Ready", ConditionStatus.UNKNOWN, "r", "m").to_dict()
        self.assertNotIn("lastTransitionTime", data)
        self.assertNotIn("lastUpdateTime", data)

    def test_parse_time(self):
        self.assertIsNone(parse_time(None))
        self.assertIsNone(parse_time("garbage"))
        self.assertEqual(parse_time("2024-05-01T12:00:00Z"), NOW)
        self.assertEqual(parse_time(datetime(2024, 5, 1, 12, 0, 0)), NOW)


class TestDefaultCheckers(unittest.TestCase):
    def test_distinct_condition_types(self):
        types = [checker.condition_type for checker in default_checkers()]
        self.assertEqual(types, ["Ready", "AllMembersReady", "BackupReady"])


if __name__ == "__main__":
    unittest.main()
