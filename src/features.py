#!/usr/bin/env python3
# src/features.py
"""
Feature gates for the etcd manager.

A FeatureGate is built once at process start, populated from the
FEATURE_GATES environment variable (same syntax as the Kubernetes
--feature-gates flag, e.g. "BackupCompaction=true"), closed, and then
handed to every component that needs to branch on optional behaviour.

Every feature gate should add a constant here following this template:

    # MyFeature enables Foo.
    # alpha: v0.5.0
    MY_FEATURE = "MyFeature"
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

logger = logging.getLogger("etcd-manager.features")


class PreRelease(Enum):
    ALPHA = "ALPHA"
    BETA = "BETA"
    GA = ""
    DEPRECATED = "DEPRECATED"


@dataclass(frozen=True)
class FeatureSpec:
    default: bool
    pre_release: PreRelease = PreRelease.ALPHA
    # GA features are usually locked so they can no longer be switched off
    lock_to_default: bool = False


class FeatureGateError(Exception):
    """Raised on feature gate misuse (duplicate or unknown gates, bad values)."""


# BackupCompaction enables an event count based compaction for etcd backups.
# alpha: v0.7.0
BACKUP_COMPACTION = "BackupCompaction"

DEFAULT_FEATURE_GATES: Dict[str, FeatureSpec] = {
    BACKUP_COMPACTION: FeatureSpec(default=False, pre_release=PreRelease.ALPHA),
}


class FeatureGate:
    """Named on/off switches with maturity metadata."""

    def __init__(self):
        self._known: Dict[str, FeatureSpec] = {}
        self._enabled: Dict[str, bool] = {}
        self._closed = False

    def add(self, specs: Dict[str, FeatureSpec]):
        """Register feature specs. Re-registering a name is an error."""
        if self._closed:
            raise FeatureGateError("cannot add features after the gate is closed")

        for name in specs:
            if name in self._known:
                raise FeatureGateError(f"feature gate {name!r} is already registered")

        for name, spec in specs.items():
            self._known[name] = spec

    def set_from_map(self, overrides: Dict[str, bool]):
        """Override defaults, validating every name before applying any."""
        if self._closed:
            raise FeatureGateError("cannot set features after the gate is closed")

        for name, value in overrides.items():
            spec = self._known.get(name)
            if spec is None:
                raise FeatureGateError(f"unrecognized feature gate: {name}")
            if not isinstance(value, bool):
                raise FeatureGateError(
                    f"invalid value {value!r} for feature gate {name}, expected a bool"
                )
            if spec.lock_to_default and value != spec.default:
                raise FeatureGateError(
                    f"cannot set feature gate {name} to {value}, "
                    f"feature is locked to {spec.default}"
                )

        for name, value in overrides.items():
            spec = self._known[name]
            if spec.pre_release == PreRelease.DEPRECATED:
                logger.warning(f"Setting deprecated feature gate {name}={value}")
            elif spec.pre_release == PreRelease.GA:
                logger.warning(
                    f"Setting GA feature gate {name}={value}. "
                    "It will be removed in a future release."
                )
            self._enabled[name] = value

    def set(self, value: str):
        """Parse a "Name=bool,Name=bool" string and apply it."""
        overrides: Dict[str, bool] = {}
        for item in value.split(","):
            item = item.strip()
            if not item:
                continue
            name, sep, raw = item.partition("=")
            name, raw = name.strip(), raw.strip().lower()
            if not sep or not name:
                raise FeatureGateError(f"missing bool value for {item!r}")
            if raw not in ("true", "false"):
                raise FeatureGateError(f"invalid value of {name}={raw}, err: not a bool")
            overrides[name] = raw == "true"

        self.set_from_map(overrides)

    def enabled(self, name: str) -> bool:
        """Return whether the named feature is on. Unknown names raise."""
        if name in self._enabled:
            return self._enabled[name]
        spec = self._known.get(name)
        if spec is None:
            raise FeatureGateError(f"feature {name!r} is not registered in FeatureGate")
        return spec.default

    def close(self):
        """Freeze the gate; it is read-only from here on."""
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def known_features(self) -> List[str]:
        """Describe every registered, non-GA feature (for startup logging)."""
        known = []
        for name in sorted(self._known):
            spec = self._known[name]
            if spec.pre_release == PreRelease.GA:
                continue
            known.append(
                f"{name}=true|false ({spec.pre_release.value} - "
                f"default={str(spec.default).lower()})"
            )
        return known

    def __repr__(self):
        state = ",".join(
            f"{name}={str(self.enabled(name)).lower()}" for name in sorted(self._known)
        )
        return f"FeatureGate({state})"


def new_feature_gate(overrides: Optional[str] = None) -> FeatureGate:
    """Build a closed gate holding the default features plus ``overrides``."""
    gate = FeatureGate()
    gate.add(DEFAULT_FEATURE_GATES)
    if overrides:
        gate.set(overrides)
    gate.close()
    return gate
