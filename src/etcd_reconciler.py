#!/usr/bin/env python3
# src/etcd_reconciler.py
"""
Reconciliation of Etcd custom resources.

This module provides functionality for:
- Watching Etcd resources and resyncing them periodically
- Keeping each cluster's etcd.conf.yaml ConfigMap in line with its spec
- Evaluating health conditions and writing them back to the status
- Deciding the compaction strategy, gated by the BackupCompaction feature

At most one reconcile runs at a time for a given cluster (keyed by uid);
different clusters reconcile concurrently.
"""

import logging
import os
import threading
import time
from typing import Any, Dict, Optional

from kubernetes import client, watch
from kubernetes.client.rest import ApiException
from prometheus_client import Counter, Gauge

import features
from conditions import CheckContext, ConditionStatus, default_checkers
from etcd_config import EtcdClusterSpec, InvalidEtcdSpecError, prepare_config_map
from health import AggregatedStatus, ConditionAggregator

logger = logging.getLogger("etcd-manager.reconciler")

# CRD configuration
CRD_GROUP = os.environ.get("CRD_GROUP", "druid.gardener.cloud")
CRD_VERSION = os.environ.get("CRD_VERSION", "v1alpha1")
CRD_PLURAL = os.environ.get("CRD_PLURAL", "etcds")

RESYNC_INTERVAL = int(os.environ.get("RESYNC_INTERVAL", "30"))
CHECK_TIMEOUT = float(os.environ.get("CHECK_TIMEOUT", "5"))
WATCH_TIMEOUT = int(os.environ.get("WATCH_TIMEOUT", "30"))

CHECKSUM_ANNOTATION = "checksum/etcd-configmap"

_CONDITION_VALUES = {
    ConditionStatus.TRUE: 1,
    ConditionStatus.FALSE: 0,
    ConditionStatus.UNKNOWN: -1,
}

reconciliations_total = Counter(
    "etcd_manager_reconciliations_total",
    "Total number of Etcd reconciliations",
    ["result"],
)
condition_status = Gauge(
    "etcd_manager_condition_status",
    "Condition status per cluster (1=True, 0=False, -1=Unknown)",
    ["cluster", "type"],
)


def build_observed_status(spec: Optional[EtcdClusterSpec], status: Dict[str, Any]) -> Dict[str, Any]:
    """Status as seen by the checkers: the resource status plus backup state.

    Snapshot times are written to the status by the backup sidecar.
    """
    observed = dict(status)
    if spec is None:
        return observed

    backup: Dict[str, Any] = {"configured": spec.backup is not None}
    if spec.backup is not None:
        backup.update(
            {
                "deltaSnapshotPeriodSeconds": spec.backup.delta_snapshot_period_seconds,
                "lastFullSnapshotTime": status.get("lastFullSnapshotTime"),
                "lastDeltaSnapshotTime": status.get("lastDeltaSnapshotTime"),
            }
        )
    observed["backup"] = backup
    return observed


class EtcdReconciler:
    """Converges Etcd resources in one namespace toward their spec."""

    def __init__(
        self,
        custom_objects_api: client.CustomObjectsApi,
        core_v1_api: client.CoreV1Api,
        feature_gate: features.FeatureGate,
        namespace: str = "",
        aggregator: Optional[ConditionAggregator] = None,
        check_timeout: float = CHECK_TIMEOUT,
    ):
        self.api = custom_objects_api
        self.core_api = core_v1_api
        self.feature_gate = feature_gate
        self._namespace = namespace or os.environ.get("NAMESPACE", "default")
        self.aggregator = aggregator or ConditionAggregator(default_checkers())
        self.check_timeout = check_timeout

        # State tracking
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._reported_types: Dict[str, set] = {}
        self._watch_thread: Optional[threading.Thread] = None
        self._resync_thread: Optional[threading.Thread] = None
        self._shutdown_event = threading.Event()
        self._last_resync = None

        logger.info(
            f"Etcd reconciler initialized: namespace={self._namespace}, "
            f"checks={self.aggregator.condition_types}, features={self.feature_gate!r}"
        )

    def start(self):
        """Start the watch and resync threads."""
        self._watch_thread = threading.Thread(target=self._watch_etcds, daemon=True)
        self._watch_thread.start()
        logger.info("Started Etcd watch thread")

        self._resync_thread = threading.Thread(target=self._resync_loop, daemon=True)
        self._resync_thread.start()
        logger.info(f"Started resync thread (interval: {RESYNC_INTERVAL}s)")

    def stop(self):
        """Stop all reconciler threads."""
        logger.info("Stopping Etcd reconciler")
        self._shutdown_event.set()

        if self._watch_thread and self._watch_thread.is_alive():
            self._watch_thread.join(timeout=5)

        if self._resync_thread and self._resync_thread.is_alive():
            self._resync_thread.join(timeout=5)

    @property
    def last_resync(self):
        return self._last_resync

    def _lock_for(self, uid: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(uid, threading.Lock())

    def forget(self, uid: str, name: str = ""):
        """Drop per-cluster state once the Etcd resource is gone.

        Waits for an in-flight reconcile of the same cluster to finish first.
        """
        with self._lock_for(uid):
            with self._locks_guard:
                self._locks.pop(uid, None)

        if name:
            cluster = f"{self._namespace}/{name}"
            for condition_type in self._reported_types.pop(cluster, set()):
                condition_status.remove(cluster, condition_type)

    def reconcile(self, etcd: Dict[str, Any]) -> bool:
        """Reconcile one Etcd resource. Never raises; returns False on failure."""
        metadata = etcd.get("metadata", {})
        name = metadata.get("name", "")
        uid = metadata.get("uid") or f"{metadata.get('namespace')}/{name}"

        with self._lock_for(uid):
            try:
                return self._reconcile(etcd)
            except Exception as e:
                reconciliations_total.labels(result="error").inc()
                logger.error(f"Unexpected error reconciling Etcd {name}: {e}")
                return False

    def _reconcile(self, etcd: Dict[str, Any]) -> bool:
        metadata = etcd.get("metadata", {})
        name = metadata.get("name", "")
        status = etcd.get("status") or {}

        try:
            spec = EtcdClusterSpec.from_resource(etcd)
        except InvalidEtcdSpecError as e:
            logger.warning(f"Etcd {name} has an invalid spec: {e}")
            self._patch_status(
                name,
                {
                    "conditions": self._evaluate(name, None, status),
                    "observedGeneration": metadata.get("generation"),
                    "lastError": f"invalid spec: {e}",
                },
            )
            reconciliations_total.labels(result="invalid_spec").inc()
            return False

        checksum = self._ensure_config_map(spec)
        patched = self._patch_status(
            name,
            {
                "conditions": self._evaluate(name, spec, status),
                "observedGeneration": spec.generation,
                "configChecksum": checksum,
                "compaction": self.compaction_policy(spec),
                "lastError": None,
            },
        )
        reconciliations_total.labels(result="success" if patched else "error").inc()
        return patched

    def _evaluate(self, name: str, spec: Optional[EtcdClusterSpec], status: Dict[str, Any]):
        ctx = CheckContext(timeout=self.check_timeout)
        previous = AggregatedStatus.from_list(status.get("conditions"))
        aggregated = self.aggregator.evaluate(ctx, build_observed_status(spec, status), previous)

        cluster = f"{self._namespace}/{name}"
        reported = self._reported_types.setdefault(cluster, set())
        for condition in aggregated:
            condition_status.labels(cluster=cluster, type=condition.type).set(
                _CONDITION_VALUES[condition.status]
            )
            reported.add(condition.type)
        return aggregated.to_list()

    def compaction_policy(self, spec: EtcdClusterSpec) -> Dict[str, Any]:
        """Pick the compaction strategy. The gate is read on every call."""
        if (
            self.feature_gate.enabled(features.BACKUP_COMPACTION)
            and spec.backup is not None
            and spec.backup.events_threshold is not None
        ):
            return {"strategy": "EventCount", "eventsThreshold": spec.backup.events_threshold}
        return {"strategy": "Periodic"}

    def _ensure_config_map(self, spec: EtcdClusterSpec) -> str:
        """Create or update the etcd config ConfigMap. Returns the config checksum."""
        body, checksum = prepare_config_map(spec, owner_api_version=f"{CRD_GROUP}/{CRD_VERSION}")

        try:
            existing = self.core_api.read_namespaced_config_map(
                name=spec.config_map_name, namespace=spec.namespace
            )
        except ApiException as e:
            if e.status != 404:
                logger.error(f"Error reading config map {spec.config_map_name}: {e}")
                raise
            existing = None

        if existing is None:
            logger.info(f"Creating config map {spec.namespace}/{spec.config_map_name}")
            try:
                self.core_api.create_namespaced_config_map(namespace=spec.namespace, body=body)
                return checksum
            except ApiException as e:
                if e.status != 409:
                    raise
                # created concurrently, fall through to replace
                logger.info(f"Config map {spec.config_map_name} already exists, replacing")
                self.core_api.replace_namespaced_config_map(
                    name=spec.config_map_name, namespace=spec.namespace, body=body
                )
                return checksum

        annotations = (existing.metadata.annotations or {}) if existing.metadata else {}
        if annotations.get(CHECKSUM_ANNOTATION) == checksum:
            logger.debug(f"Config map {spec.config_map_name} is up to date")
            return checksum

        logger.info(
            f"Updating config map {spec.namespace}/{spec.config_map_name}: "
            f"checksum {annotations.get(CHECKSUM_ANNOTATION, 'none')[:12]} -> {checksum[:12]}"
        )
        self.core_api.replace_namespaced_config_map(
            name=spec.config_map_name, namespace=spec.namespace, body=body
        )
        return checksum

    def _patch_status(self, name: str, status: Dict[str, Any]) -> bool:
        try:
            self.api.patch_namespaced_custom_object_status(
                group=CRD_GROUP,
                version=CRD_VERSION,
                namespace=self._namespace,
                plural=CRD_PLURAL,
                name=name,
                body={"status": status},
            )
            logger.debug(f"Updated Etcd {name} status")
            return True
        except ApiException as e:
            if e.status == 404:
                logger.info(f"Etcd {name} no longer exists, skipping status update")
            else:
                logger.warning(f"Failed to update Etcd {name} status: {e}")
            return False

    def _watch_etcds(self):
        """Watch Etcd resources and reconcile on spec changes."""
        logger.info("Starting Etcd watch")

        while not self._shutdown_event.is_set():
            try:
                w = watch.Watch()
                for event in w.stream(
                    self.api.list_namespaced_custom_object,
                    group=CRD_GROUP,
                    version=CRD_VERSION,
                    namespace=self._namespace,
                    plural=CRD_PLURAL,
                    timeout_seconds=WATCH_TIMEOUT,
                ):
                    if self._shutdown_event.is_set():
                        break
                    self._handle_event(event)

                w.stop()

            except ApiException as e:
                if e.status == 410:  # Resource version too old
                    logger.info("Etcd watch resource version expired, restarting")
                    continue
                logger.error(f"Etcd watch error: {e}")
                time.sleep(5)

            except Exception as e:
                logger.error(f"Unexpected Etcd watch error: {e}")
                time.sleep(5)

        logger.info("Etcd watch stopped")

    def _handle_event(self, event: Dict[str, Any]):
        event_type = event["type"]
        obj = event["object"]
        metadata = obj.get("metadata", {})
        name = metadata.get("name", "")
        logger.debug(f"Received Etcd event: {event_type} for {name}")

        if event_type == "DELETED":
            self.forget(metadata.get("uid", ""), name)
            return

        # Status writes come back as MODIFIED events; only spec changes
        # (a new generation) are reconciled here, the rest waits for resync.
        observed = (obj.get("status") or {}).get("observedGeneration")
        if event_type == "ADDED" or metadata.get("generation") != observed:
            self.reconcile(obj)

    def _resync_loop(self):
        """Reconcile every Etcd resource periodically to refresh conditions."""
        logger.info("Starting resync loop")

        while not self._shutdown_event.is_set():
            try:
                self.resync()

                if self._shutdown_event.wait(RESYNC_INTERVAL):
                    break

            except Exception as e:
                logger.error(f"Resync loop error: {e}")
                time.sleep(5)

        logger.info("Resync loop stopped")

    def resync(self):
        """Reconcile all Etcd resources in the namespace once."""
        result = self.api.list_namespaced_custom_object(
            group=CRD_GROUP,
            version=CRD_VERSION,
            namespace=self._namespace,
            plural=CRD_PLURAL,
        )
        items = result.get("items", [])
        logger.debug(f"Resyncing {len(items)} Etcd resources")
        for item in items:
            if self._shutdown_event.is_set():
                break
            self.reconcile(item)
        self._last_resync = time.time()
