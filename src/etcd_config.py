#!/usr/bin/env python3
# src/etcd_config.py
"""
Runtime configuration synthesis for etcd cluster members.

This module provides functionality for:
- Parsing an Etcd custom resource into an immutable EtcdClusterSpec
- Deriving the etcd.conf.yaml document every member starts with
- Rendering the ConfigMap that carries that document, with a checksum

create_etcd_config() is a pure function of its input: the same spec always
renders a byte-identical document. The reconciler relies on this, since a
changed checksum triggers a rollout of the cluster members.
"""

import hashlib
import logging
import re
from dataclasses import dataclass, fields
from decimal import ROUND_CEILING
from typing import Any, Dict, List, Optional, Tuple

import yaml
from kubernetes.utils import parse_quantity

logger = logging.getLogger("etcd-manager.config")

# Well-known mount paths inside the etcd pod
VOLUME_MOUNT_PATH_ETCD_DATA = "/var/etcd/data"
VOLUME_MOUNT_PATH_ETCD_CONFIG = "/var/etcd/config"
VOLUME_MOUNT_PATH_ETCD_CA = "/var/etcd/ssl/ca"
VOLUME_MOUNT_PATH_ETCD_SERVER_TLS = "/var/etcd/ssl/server"
VOLUME_MOUNT_PATH_ETCD_PEER_CA = "/var/etcd/ssl/peer/ca"
VOLUME_MOUNT_PATH_ETCD_PEER_SERVER_TLS = "/var/etcd/ssl/peer/server"

ETCD_CONFIG_FILE_NAME = "etcd.conf.yaml"
ETCD_API_VERSION = "druid.gardener.cloud/v1alpha1"

DEFAULT_PORT_ETCD_PEER = 2380
DEFAULT_PORT_ETCD_CLIENT = 2379

# default values
DEFAULT_DB_QUOTA_BYTES = 8 * 1024 * 1024 * 1024  # 8Gi
DEFAULT_AUTO_COMPACTION_MODE = "periodic"
DEFAULT_AUTO_COMPACTION_RETENTION = "30m"
DEFAULT_INITIAL_CLUSTER_TOKEN = "etcd-cluster"
DEFAULT_INITIAL_CLUSTER_STATE = "new"
DEFAULT_METRICS_LEVEL = "basic"
DEFAULT_TLS_CA_SECRET_KEY = "ca.crt"
# Raft log retention, see https://etcd.io/docs/v3.4/op-guide/maintenance/#raft-log-retention
# TODO: make this configurable on the Etcd resource; it drives the memory needs of the etcd container.
DEFAULT_SNAPSHOT_COUNT = 75000
DEFAULT_DATA_DIR = f"{VOLUME_MOUNT_PATH_ETCD_DATA}/new.etcd"

MEMBER_NAME_UID_PREFIX_LENGTH = 6

COMPACTION_MODES = ("periodic", "revision")
METRICS_LEVELS = ("basic", "extensive")

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1,
    "m": 60,
    "h": 3600,
}


class InvalidEtcdSpecError(ValueError):
    """The Etcd resource holds a value that is present but unusable."""


def parse_duration(value: str) -> float:
    """Parse a Go style duration ("30s", "1h30m") into seconds."""
    text = str(value).strip()
    if not text:
        raise InvalidEtcdSpecError("empty duration")
    pos = 0
    total = 0.0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise InvalidEtcdSpecError(f"invalid duration: {value!r}")
    return total


def _quantity_to_bytes(quota: Any) -> int:
    """Convert a Kubernetes quantity to an integer, rounding up like resource.Quantity.Value()."""
    try:
        value = parse_quantity(quota)
    except (ValueError, TypeError) as e:
        raise InvalidEtcdSpecError(f"invalid quota {quota!r}: {e}") from e
    if value < 0:
        raise InvalidEtcdSpecError(f"quota must not be negative, got {quota!r}")
    return int(value.to_integral_value(rounding=ROUND_CEILING))


@dataclass(frozen=True)
class TLSConfig:
    """TLS settings for one transport (client or peer)."""

    ca_secret_name: str
    server_secret_name: str
    ca_data_key: Optional[str] = None
    client_secret_name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], target: str) -> "TLSConfig":
        if not isinstance(data, dict):
            raise InvalidEtcdSpecError(f"{target} TLS config must be a mapping, got {data!r}")
        ca_ref = data.get("tlsCASecretRef") or {}
        server_ref = data.get("serverTLSSecretRef") or {}
        client_ref = data.get("clientTLSSecretRef") or {}
        for key, ref in (
            ("tlsCASecretRef", ca_ref),
            ("serverTLSSecretRef", server_ref),
            ("clientTLSSecretRef", client_ref),
        ):
            if not isinstance(ref, dict):
                raise InvalidEtcdSpecError(f"{target} TLS config {key} must be a mapping, got {ref!r}")
        if not ca_ref.get("name"):
            raise InvalidEtcdSpecError(f"{target} TLS config is missing tlsCASecretRef.name")
        if not server_ref.get("name"):
            raise InvalidEtcdSpecError(f"{target} TLS config is missing serverTLSSecretRef.name")
        data_key = ca_ref.get("dataKey")
        if data_key is not None and not str(data_key).strip():
            raise InvalidEtcdSpecError(f"{target} TLS config has an empty tlsCASecretRef.dataKey")
        return cls(
            ca_secret_name=ca_ref["name"],
            server_secret_name=server_ref["name"],
            ca_data_key=data_key,
            client_secret_name=client_ref.get("name"),
        )


@dataclass(frozen=True)
class MemberURLs:
    name: str
    urls: Tuple[str, ...]


@dataclass(frozen=True)
class BackupSpec:
    delta_snapshot_period_seconds: Optional[float] = None
    events_threshold: Optional[int] = None


@dataclass(frozen=True)
class EtcdClusterSpec:
    """Desired state of one etcd cluster, as declared on the Etcd resource."""

    name: str
    namespace: str
    uid: str
    replicas: int
    client_tls: Optional[TLSConfig] = None
    peer_tls: Optional[TLSConfig] = None
    quota: Optional[Any] = None
    metrics: Optional[str] = None
    auto_compaction_mode: Optional[str] = None
    auto_compaction_retention: Optional[str] = None
    client_port: Optional[int] = None
    server_port: Optional[int] = None
    initial_cluster: Optional[Tuple[MemberURLs, ...]] = None
    peer_urls: Optional[Tuple[MemberURLs, ...]] = None
    client_urls: Optional[Tuple[MemberURLs, ...]] = None
    backup: Optional[BackupSpec] = None
    generation: int = 0

    @property
    def peer_service_name(self) -> str:
        return f"{self.name}-peer"

    @property
    def config_map_name(self) -> str:
        return f"{self.name}-config"

    def ordinal_pod_name(self, ordinal: int) -> str:
        return f"{self.name}-{ordinal}"

    @classmethod
    def from_resource(cls, obj: Dict[str, Any]) -> "EtcdClusterSpec":
        """Build a spec from an Etcd custom resource dict.

        Raises:
            InvalidEtcdSpecError: if a field is present but invalid.
        """
        metadata = _mapping(obj.get("metadata"), "metadata")
        spec = _mapping(obj.get("spec"), "spec")
        etcd = _mapping(spec.get("etcd"), "spec.etcd")
        common = _mapping(spec.get("common"), "spec.common")

        name = metadata.get("name")
        namespace = metadata.get("namespace")
        uid = metadata.get("uid") or ""
        if not name or not namespace:
            raise InvalidEtcdSpecError("Etcd resource must have metadata.name and metadata.namespace")
        if len(uid) < MEMBER_NAME_UID_PREFIX_LENGTH:
            raise InvalidEtcdSpecError(
                f"metadata.uid {uid!r} is shorter than {MEMBER_NAME_UID_PREFIX_LENGTH} characters"
            )

        replicas = spec.get("replicas", 0)
        if not isinstance(replicas, int) or isinstance(replicas, bool) or replicas < 0:
            raise InvalidEtcdSpecError(f"spec.replicas must be a non-negative integer, got {replicas!r}")

        quota = etcd.get("quota")
        if quota is not None:
            # bad quotas fail at parse time
            _quantity_to_bytes(quota)

        metrics = etcd.get("metrics")
        if metrics is not None and metrics not in METRICS_LEVELS:
            raise InvalidEtcdSpecError(f"unknown metrics level {metrics!r}")

        compaction_mode = common.get("autoCompactionMode")
        if compaction_mode is not None and compaction_mode not in COMPACTION_MODES:
            raise InvalidEtcdSpecError(f"unknown auto compaction mode {compaction_mode!r}")

        retention = common.get("autoCompactionRetention")
        if retention is not None and not isinstance(retention, str):
            raise InvalidEtcdSpecError(
                f"spec.common.autoCompactionRetention must be a string such as \"30m\", got {retention!r}"
            )

        client_tls = etcd.get("clientUrlTls")
        peer_tls = etcd.get("peerUrlTls")

        return cls(
            name=name,
            namespace=namespace,
            uid=uid,
            replicas=replicas,
            client_tls=TLSConfig.from_dict(client_tls, "client") if client_tls is not None else None,
            peer_tls=TLSConfig.from_dict(peer_tls, "peer") if peer_tls is not None else None,
            quota=quota,
            metrics=metrics,
            auto_compaction_mode=compaction_mode,
            auto_compaction_retention=retention,
            client_port=_optional_port(etcd, "clientPort"),
            server_port=_optional_port(etcd, "serverPort"),
            initial_cluster=_member_urls(etcd, "initialCluster"),
            peer_urls=_member_urls(etcd, "peerURLs"),
            client_urls=_member_urls(etcd, "clientURLs"),
            backup=_backup_spec(spec.get("backup")),
            generation=metadata.get("generation", 0),
        )


def _mapping(value: Any, path: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise InvalidEtcdSpecError(f"{path} must be a mapping, got {value!r}")
    return value


def _optional_port(etcd: Dict[str, Any], key: str) -> Optional[int]:
    port = etcd.get(key)
    if port is None:
        return None
    if not isinstance(port, int) or isinstance(port, bool) or not 0 < port < 65536:
        raise InvalidEtcdSpecError(f"spec.etcd.{key} must be a valid port, got {port!r}")
    return port


def _member_urls(etcd: Dict[str, Any], key: str) -> Optional[Tuple[MemberURLs, ...]]:
    members = etcd.get(key)
    if members is None:
        return None
    if not isinstance(members, list):
        raise InvalidEtcdSpecError(f"spec.etcd.{key} must be a list, got {members!r}")
    result = []
    for member in members:
        if not isinstance(member, dict):
            raise InvalidEtcdSpecError(f"spec.etcd.{key} entries must be mappings, got {member!r}")
        if not member.get("name"):
            raise InvalidEtcdSpecError(f"spec.etcd.{key} entry is missing a name")
        urls = member.get("urls") or []
        if not isinstance(urls, list) or not all(isinstance(url, str) for url in urls):
            raise InvalidEtcdSpecError(
                f"spec.etcd.{key} entry {member['name']!r} must list its urls as strings, got {urls!r}"
            )
        result.append(MemberURLs(name=member["name"], urls=tuple(urls)))
    return tuple(result)


def _backup_spec(backup: Optional[Dict[str, Any]]) -> Optional[BackupSpec]:
    backup = _mapping(backup, "spec.backup")
    if not backup.get("store"):
        return None
    period = backup.get("deltaSnapshotPeriod")
    threshold = backup.get("eventsThreshold")
    if threshold is not None and (not isinstance(threshold, int) or threshold <= 0):
        raise InvalidEtcdSpecError(f"spec.backup.eventsThreshold must be positive, got {threshold!r}")
    return BackupSpec(
        delta_snapshot_period_seconds=parse_duration(period) if period is not None else None,
        events_threshold=threshold,
    )


@dataclass(frozen=True)
class SecurityConfig:
    cert_file: str
    key_file: str
    client_cert_auth: bool
    trusted_ca_file: str
    auto_tls: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cert-file": self.cert_file,
            "key-file": self.key_file,
            "client-cert-auth": self.client_cert_auth,
            "trusted-ca-file": self.trusted_ca_file,
            "auto-tls": self.auto_tls,
        }


@dataclass(frozen=True)
class EtcdConfig:
    """The etcd.conf.yaml document for one cluster member."""

    name: str
    data_dir: str
    metrics: str
    snapshot_count: int
    enable_v2: bool
    quota_backend_bytes: int
    initial_cluster_token: str
    initial_cluster_state: str
    initial_cluster: str
    auto_compaction_mode: str
    auto_compaction_retention: str
    listen_peer_urls: str
    listen_client_urls: str
    advertise_peer_urls: str
    advertise_client_urls: str
    client_security: Optional[SecurityConfig] = None
    peer_security: Optional[SecurityConfig] = None

    # etcd flag name for every field, in document order
    _KEYS = {
        "name": "name",
        "data_dir": "data-dir",
        "metrics": "metrics",
        "snapshot_count": "snapshot-count",
        "enable_v2": "enable-v2",
        "quota_backend_bytes": "quota-backend-bytes",
        "initial_cluster_token": "initial-cluster-token",
        "initial_cluster_state": "initial-cluster-state",
        "initial_cluster": "initial-cluster",
        "auto_compaction_mode": "auto-compaction-mode",
        "auto_compaction_retention": "auto-compaction-retention",
        "listen_peer_urls": "listen-peer-urls",
        "listen_client_urls": "listen-client-urls",
        "advertise_peer_urls": "initial-advertise-peer-urls",
        "advertise_client_urls": "advertise-client-urls",
        "client_security": "client-transport-security",
        "peer_security": "peer-transport-security",
    }

    def to_dict(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, SecurityConfig):
                value = value.to_dict()
            elif value is None:
                # absent security block means plaintext transport
                continue
            doc[self._KEYS[f.name]] = value
        return doc

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False, default_flow_style=False)


def create_etcd_config(spec: EtcdClusterSpec) -> EtcdConfig:
    """Synthesize the runtime configuration of a cluster member."""
    client_scheme, client_security = get_scheme_and_security_config(
        spec.client_tls, VOLUME_MOUNT_PATH_ETCD_CA, VOLUME_MOUNT_PATH_ETCD_SERVER_TLS
    )
    peer_scheme, peer_security = get_scheme_and_security_config(
        spec.peer_tls, VOLUME_MOUNT_PATH_ETCD_PEER_CA, VOLUME_MOUNT_PATH_ETCD_PEER_SERVER_TLS
    )
    server_port = _or_default(spec.server_port, DEFAULT_PORT_ETCD_PEER)
    client_port = _or_default(spec.client_port, DEFAULT_PORT_ETCD_CLIENT)

    return EtcdConfig(
        name=f"etcd-{spec.uid[:MEMBER_NAME_UID_PREFIX_LENGTH]}",
        data_dir=DEFAULT_DATA_DIR,
        metrics=_or_default(spec.metrics, DEFAULT_METRICS_LEVEL),
        snapshot_count=DEFAULT_SNAPSHOT_COUNT,
        enable_v2=False,
        quota_backend_bytes=get_db_quota_bytes(spec),
        initial_cluster_token=DEFAULT_INITIAL_CLUSTER_TOKEN,
        initial_cluster_state=DEFAULT_INITIAL_CLUSTER_STATE,
        initial_cluster=prepare_initial_cluster(spec, peer_scheme),
        auto_compaction_mode=_or_default(spec.auto_compaction_mode, DEFAULT_AUTO_COMPACTION_MODE),
        auto_compaction_retention=_or_default(
            spec.auto_compaction_retention, DEFAULT_AUTO_COMPACTION_RETENTION
        ),
        listen_peer_urls=f"{peer_scheme}://0.0.0.0:{server_port}",
        listen_client_urls=f"{client_scheme}://0.0.0.0:{client_port}",
        advertise_peer_urls=prepare_advertise_urls(spec.peer_urls, peer_scheme, spec, server_port),
        advertise_client_urls=prepare_advertise_urls(spec.client_urls, client_scheme, spec, client_port),
        client_security=client_security,
        peer_security=peer_security,
    )


def _or_default(value, default):
    return default if value is None else value


def get_db_quota_bytes(spec: EtcdClusterSpec) -> int:
    if spec.quota is None:
        return DEFAULT_DB_QUOTA_BYTES
    return _quantity_to_bytes(spec.quota)


def get_scheme_and_security_config(
    tls_config: Optional[TLSConfig], ca_path: str, server_tls_path: str
) -> Tuple[str, Optional[SecurityConfig]]:
    if tls_config is None:
        return "http", None
    data_key = _or_default(tls_config.ca_data_key, DEFAULT_TLS_CA_SECRET_KEY)
    return "https", SecurityConfig(
        cert_file=f"{server_tls_path}/tls.crt",
        key_file=f"{server_tls_path}/tls.key",
        client_cert_auth=True,
        trusted_ca_file=f"{ca_path}/{data_key}",
        auto_tls=False,
    )


def _flatten_member_urls(members: Tuple[MemberURLs, ...]) -> str:
    return ",".join(f"{member.name}={url}" for member in members for url in member.urls)


def prepare_initial_cluster(spec: EtcdClusterSpec, peer_scheme: str) -> str:
    """Build the bootstrap member list, ordered by ordinal when generated."""
    if spec.initial_cluster is not None:
        return _flatten_member_urls(spec.initial_cluster)

    domain_name = f"{spec.peer_service_name}.{spec.namespace}.svc"
    server_port = _or_default(spec.server_port, DEFAULT_PORT_ETCD_PEER)
    entries: List[str] = []
    for ordinal in range(spec.replicas):
        pod_name = spec.ordinal_pod_name(ordinal)
        entries.append(f"{pod_name}={peer_scheme}://{pod_name}.{domain_name}:{server_port}")
    return ",".join(entries)


def prepare_advertise_urls(
    override: Optional[Tuple[MemberURLs, ...]], scheme: str, spec: EtcdClusterSpec, port: int
) -> str:
    """Flatten an override list, or emit the placeholder the etcd wrapper expands per pod."""
    if override is not None:
        return _flatten_member_urls(override)
    return f"{scheme}@{spec.peer_service_name}@{spec.namespace}@{port}"


def prepare_config_map(
    spec: EtcdClusterSpec, owner_api_version: str = ETCD_API_VERSION
) -> Tuple[Dict[str, Any], str]:
    """Render the ConfigMap body carrying etcd.conf.yaml and its sha256 checksum."""
    rendered = create_etcd_config(spec).to_yaml()
    checksum = hashlib.sha256(rendered.encode("utf-8")).hexdigest()

    body = {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {
            "name": spec.config_map_name,
            "namespace": spec.namespace,
            "labels": {
                "app.kubernetes.io/name": spec.name,
                "app.kubernetes.io/component": "etcd-config",
                "app.kubernetes.io/managed-by": "etcd-manager",
            },
            "annotations": {"checksum/etcd-configmap": checksum},
            "ownerReferences": [
                {
                    "apiVersion": owner_api_version,
                    "kind": "Etcd",
                    "name": spec.name,
                    "uid": spec.uid,
                    "controller": True,
                    "blockOwnerDeletion": True,
                }
            ],
        },
        "data": {ETCD_CONFIG_FILE_NAME: rendered},
    }
    logger.debug(f"Rendered config map {spec.namespace}/{spec.config_map_name} (checksum {checksum[:12]})")
    return body, checksum
