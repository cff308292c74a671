#!/usr/bin/env python3
# src/health.py
"""
Condition aggregation for etcd clusters.

ConditionAggregator runs a set of Checkers against one observed status,
in parallel and under a deadline, and merges their conditions with the
conditions already recorded on the resource. A checker that raises or
does not finish in time only affects its own condition, which becomes
Unknown with a reason naming the checker.
"""

import logging
import threading
from collections import OrderedDict
from concurrent.futures import Future, wait
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

from conditions import CheckContext, Checker, Condition, ConditionStatus

logger = logging.getLogger("etcd-manager.health")

REASON_CHECK_FAILED = "CheckFailed"
REASON_CHECK_TIMED_OUT = "CheckTimedOut"


class AggregatedStatus:
    """Conditions keyed by type, in a stable order."""

    def __init__(self, conditions: Optional[Iterable[Condition]] = None):
        self._conditions: "OrderedDict[str, Condition]" = OrderedDict()
        for condition in conditions or ():
            if condition.type in self._conditions:
                raise ValueError(f"duplicate condition type {condition.type!r}")
            self._conditions[condition.type] = condition

    def get(self, condition_type: str) -> Optional[Condition]:
        return self._conditions.get(condition_type)

    def types(self) -> List[str]:
        return list(self._conditions)

    def __iter__(self):
        return iter(self._conditions.values())

    def __len__(self):
        return len(self._conditions)

    def __contains__(self, condition_type):
        return condition_type in self._conditions

    def to_list(self) -> List[Dict[str, Any]]:
        return [condition.to_dict() for condition in self._conditions.values()]

    @classmethod
    def from_list(cls, items: Optional[List[Dict[str, Any]]]) -> "AggregatedStatus":
        """Parse status.conditions, skipping malformed and repeated entries."""
        conditions: "OrderedDict[str, Condition]" = OrderedDict()
        for item in items or ():
            try:
                condition = Condition.from_dict(item)
            except (KeyError, ValueError, TypeError, AttributeError) as e:
                logger.warning(f"Ignoring malformed condition {item!r}: {e}")
                continue
            if condition.type in conditions:
                logger.warning(f"Ignoring repeated condition of type {condition.type}")
                continue
            conditions[condition.type] = condition
        return cls(conditions.values())


class ConditionAggregator:
    """Runs checkers and merges their conditions into an AggregatedStatus."""

    def __init__(self, checkers: Iterable[Checker]):
        self._checkers: "OrderedDict[str, Checker]" = OrderedDict()
        for checker in checkers:
            condition_type = checker.condition_type
            if not condition_type:
                raise ValueError(f"{type(checker).__name__} does not declare a condition_type")
            if condition_type in self._checkers:
                raise ValueError(f"a checker for condition type {condition_type!r} is already registered")
            self._checkers[condition_type] = checker

    @property
    def condition_types(self) -> List[str]:
        return list(self._checkers)

    def evaluate(
        self,
        ctx: CheckContext,
        status: Dict[str, Any],
        previous: Optional[AggregatedStatus] = None,
    ) -> AggregatedStatus:
        results = self._run_checkers(ctx, status)

        previous = previous or AggregatedStatus()
        merged: List[Condition] = []
        for condition_type in self._checkers:
            merged.append(_merge(previous.get(condition_type), results[condition_type], ctx))

        # keep conditions owned by someone else untouched
        for condition in previous:
            if condition.type not in self._checkers:
                merged.append(condition)

        return AggregatedStatus(merged)

    def _run_checkers(self, ctx: CheckContext, status: Dict[str, Any]) -> Dict[str, Condition]:
        results: Dict[str, Condition] = {}
        if not self._checkers:
            return results

        futures: Dict[Future, Tuple[str, Checker]] = {}
        for condition_type, checker in self._checkers.items():
            future: Future = Future()
            futures[future] = (condition_type, checker)
            # daemon: a checker ignoring ctx.cancelled must not hold up interpreter exit
            threading.Thread(
                target=_run_check,
                args=(future, checker, ctx, status),
                name=f"condition-check-{condition_type}",
                daemon=True,
            ).start()

        _, not_done = wait(futures, timeout=ctx.timeout)
        if not_done:
            # stragglers are not joined; they were told to stop via ctx.cancelled
            ctx.cancelled.set()

        for future, (condition_type, checker) in futures.items():
            name = type(checker).__name__
            if future in not_done:
                logger.warning(f"Checker {name} did not finish within {ctx.timeout}s")
                results[condition_type] = _unknown(
                    condition_type,
                    REASON_CHECK_TIMED_OUT,
                    f"Checker {name} did not finish within {ctx.timeout}s",
                )
                continue

            try:
                condition = future.result()
            except Exception as e:
                logger.error(f"Checker {name} failed: {e}")
                results[condition_type] = _unknown(
                    condition_type, REASON_CHECK_FAILED, f"Checker {name} failed: {e}"
                )
                continue

            if not isinstance(condition, Condition) or condition.type != condition_type:
                logger.error(f"Checker {name} returned an invalid condition: {condition!r}")
                results[condition_type] = _unknown(
                    condition_type,
                    REASON_CHECK_FAILED,
                    f"Checker {name} returned an invalid condition",
                )
                continue

            results[condition_type] = condition

        return results


def _run_check(future: Future, checker: Checker, ctx: CheckContext, status: Dict[str, Any]):
    """Thread target: run one checker and hand its outcome to ``future``."""
    if not future.set_running_or_notify_cancel():
        return
    try:
        future.set_result(checker.check(ctx, status))
    except Exception as e:
        future.set_exception(e)


def _unknown(condition_type: str, reason: str, message: str) -> Condition:
    return Condition(type=condition_type, status=ConditionStatus.UNKNOWN, reason=reason, message=message)


def _merge(old: Optional[Condition], new: Condition, ctx: CheckContext) -> Condition:
    """Stamp times on ``new``, keeping the transition time while the status holds."""
    transition_time = ctx.now
    if old is not None and old.status == new.status and old.last_transition_time is not None:
        transition_time = old.last_transition_time
    return replace(new, last_transition_time=transition_time, last_update_time=ctx.now)
