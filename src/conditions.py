#!/usr/bin/env python3
# src/conditions.py
"""
Health conditions for etcd clusters.

A Checker inspects the observed status of an Etcd resource and reports
exactly one Condition. Checkers are side-effect free and must not raise on
odd-but-well-typed input: when the status does not carry enough
information they answer Unknown rather than guessing True or False.

Adding a health aspect means adding a Checker subclass; the aggregator in
health.py does not need to change.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger("etcd-manager.conditions")

# Condition types
CONDITION_TYPE_READY = "Ready"
CONDITION_TYPE_ALL_MEMBERS_READY = "AllMembersReady"
CONDITION_TYPE_BACKUP_READY = "BackupReady"

MEMBER_STATUS_READY = "Ready"


class ConditionStatus(Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class Condition:
    type: str
    status: ConditionStatus
    reason: str
    message: str
    last_transition_time: Optional[datetime] = None
    last_update_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "type": self.type,
            "status": self.status.value,
            "reason": self.reason,
            "message": self.message,
        }
        if self.last_transition_time is not None:
            result["lastTransitionTime"] = format_time(self.last_transition_time)
        if self.last_update_time is not None:
            result["lastUpdateTime"] = format_time(self.last_update_time)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            type=data["type"],
            status=ConditionStatus(data.get("status", "Unknown")),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_transition_time=parse_time(data.get("lastTransitionTime")),
            last_update_time=parse_time(data.get("lastUpdateTime")),
        )


def format_time(value: datetime) -> str:
    """Format a timestamp the way the API server does (RFC 3339, second precision)."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_time(value: Any) -> Optional[datetime]:
    """Parse a Kubernetes timestamp (str or datetime) into an aware datetime, or None."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Could not parse timestamp: {value}")
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass
class CheckContext:
    """Deadline and cancellation for one evaluation pass.

    ``cancelled`` is set by the caller once ``timeout`` has elapsed;
    long-running checkers should poll ``done()`` and give up.
    """

    timeout: float = 5.0
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    cancelled: threading.Event = field(default_factory=threading.Event)

    def done(self) -> bool:
        return self.cancelled.is_set()


class Checker(ABC):
    """Evaluates one health aspect of an etcd cluster.

    Each check runs on its own daemon thread. Once ctx.timeout passes the
    result is discarded and ctx.cancelled is set; long running checks should
    poll ctx.done() and return early.
    """

    condition_type: str = ""

    @abstractmethod
    def check(self, ctx: CheckContext, status: Dict[str, Any]) -> Condition:
        """Return the condition for ``status`` (the Etcd resource status dict)."""

    def _result(self, status: ConditionStatus, reason: str, message: str) -> Condition:
        return Condition(type=self.condition_type, status=status, reason=reason, message=message)


class AllMembersReadyCheck(Checker):
    condition_type = CONDITION_TYPE_ALL_MEMBERS_READY

    def check(self, ctx, status):
        members = status.get("members")
        if members is not None and not isinstance(members, list):
            return self._result(
                ConditionStatus.UNKNOWN,
                "MalformedMemberStatus",
                "Cannot determine readiness since status.members is not a list",
            )
        if not members:
            return self._result(
                ConditionStatus.UNKNOWN,
                "NoMembersInStatus",
                "Cannot determine readiness since status has no members",
            )

        for member in members:
            if _member_status(member) != MEMBER_STATUS_READY:
                return self._result(
                    ConditionStatus.FALSE,
                    "NotAllMembersReady",
                    "At least one member is not ready",
                )

        return self._result(ConditionStatus.TRUE, "AllMembersReady", "All members are ready")


class ReadyCheck(Checker):
    """Reports whether a quorum of members is ready."""

    condition_type = CONDITION_TYPE_READY

    def check(self, ctx, status):
        members = status.get("members")
        if not isinstance(members, list) or not members:
            return self._result(
                ConditionStatus.UNKNOWN,
                "NoMembersInStatus",
                "Cannot determine readiness of cluster since status has no members",
            )

        quorum = len(members) // 2 + 1
        ready = sum(1 for member in members if _member_status(member) == MEMBER_STATUS_READY)
        if ready < quorum:
            return self._result(
                ConditionStatus.FALSE,
                "QuorumLost",
                f"The majority of ETCD members is not ready ({ready}/{len(members)} ready)",
            )
        return self._result(
            ConditionStatus.TRUE,
            "Quorate",
            f"The majority of ETCD members is ready ({ready}/{len(members)} ready)",
        )


class BackupReadyCheck(Checker):
    """Reports whether snapshots are being taken within the configured period.

    Reads ``status["backup"]``, which the reconciler fills with
    ``configured``, ``deltaSnapshotPeriodSeconds``, ``lastFullSnapshotTime``
    and ``lastDeltaSnapshotTime``.
    """

    condition_type = CONDITION_TYPE_BACKUP_READY

    # snapshots may lag this many delta periods before backups count as failed
    STALENESS_FACTOR = 2

    def check(self, ctx, status):
        backup = status.get("backup")
        if not isinstance(backup, dict):
            return self._result(
                ConditionStatus.UNKNOWN,
                "NoBackupInfo",
                "Backup state has not been observed",
            )
        if not backup.get("configured"):
            return self._result(
                ConditionStatus.UNKNOWN,
                "BackupNotConfigured",
                "Backup store is not configured for this cluster",
            )

        raw_times = [backup.get("lastDeltaSnapshotTime"), backup.get("lastFullSnapshotTime")]
        if not any(raw_times):
            return self._result(
                ConditionStatus.UNKNOWN,
                "NoSnapshotInfo",
                "No snapshot has been reported yet",
            )

        times = [parse_time(value) for value in raw_times if value]
        if any(t is None for t in times):
            return self._result(
                ConditionStatus.UNKNOWN,
                "UnparsableSnapshotTime",
                "Cannot determine backup health since a snapshot time is unparsable",
            )

        period = backup.get("deltaSnapshotPeriodSeconds")
        if not isinstance(period, (int, float)) or period <= 0:
            return self._result(
                ConditionStatus.UNKNOWN,
                "NoSnapshotPeriod",
                "Cannot determine backup health without a delta snapshot period",
            )

        latest = max(times)
        age = (ctx.now - latest).total_seconds()
        if age > period * self.STALENESS_FACTOR:
            return self._result(
                ConditionStatus.FALSE,
                "BackupFailed",
                f"Latest snapshot is {int(age)}s old, expected one every {int(period)}s",
            )
        return self._result(ConditionStatus.TRUE, "BackupSucceeded", "Snapshot backup succeeded")


def _member_status(member: Any) -> Optional[str]:
    if isinstance(member, dict):
        return member.get("status")
    return None


def default_checkers():
    """The checkers evaluated for every Etcd resource, in status order."""
    return [ReadyCheck(), AllMembersReadyCheck(), BackupReadyCheck()]
