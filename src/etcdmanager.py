#!/usr/bin/env python3
# src/etcdmanager.py
"""
Etcd Manager - Kubernetes controller for etcd clusters

Watches Etcd custom resources, keeps each cluster's member configuration
in sync with its spec and reports cluster health as status conditions.
"""

import json
import logging
import os
import signal
import sys
import threading
import time
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Optional
from urllib.parse import urlparse

from kubernetes import client, config
from prometheus_client import Info, generate_latest

import features
from etcd_reconciler import RESYNC_INTERVAL, EtcdReconciler

# -----------------------------
# Environment variables
# -----------------------------
NAMESPACE = os.environ.get("NAMESPACE", "default")
POD_NAME = os.environ.get("POD_NAME", "")
METRICS_PORT = int(os.environ.get("METRICS_PORT", 8000))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
FEATURE_GATES = os.environ.get("FEATURE_GATES", "")
SLEEP_INTERVAL = int(os.environ.get("SLEEP_INTERVAL", 5))

# -----------------------------
# Logging Setup
# -----------------------------
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s",
)
logger = logging.getLogger("etcd-manager")

# -----------------------------
# Prometheus Metrics
# -----------------------------
info_metric = Info("etcd_manager_info", "Information about the etcd manager instance")

# -----------------------------
# Global State
# -----------------------------
reconciler: Optional[EtcdReconciler] = None
shutdown_event = threading.Event()


def load_kubernetes_config():
    """Load in-cluster configuration, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded local Kubernetes configuration")


def build_feature_gate(value: str = "") -> features.FeatureGate:
    """Build the process feature gate from a --feature-gates style string."""
    gate = features.new_feature_gate(value or None)
    logger.info(f"Feature gates: {gate!r}")
    for known in gate.known_features():
        logger.debug(f"Known feature gate: {known}")
    return gate


def is_ready() -> bool:
    """Ready once a resync has completed recently."""
    if reconciler is None or reconciler.last_resync is None:
        return False
    return time.time() - reconciler.last_resync < RESYNC_INTERVAL * 3


# -----------------------------
# HTTP Server for Metrics and Probes
# -----------------------------


class EtcdManagerHTTPHandler(BaseHTTPRequestHandler):
    """Serves Prometheus metrics and liveness/readiness probes."""

    def do_GET(self):
        path = urlparse(self.path).path

        if path == "/metrics":
            try:
                metrics_data = generate_latest()
                self.send_response(200)
                self.send_header("Content-Type", "text/plain; version=0.0.4; charset=utf-8")
                self.end_headers()
                self.wfile.write(metrics_data)
            except Exception as e:
                logger.error(f"Error generating metrics: {e}")
                self._send_text(500, b"Error generating metrics")

        elif path == "/healthz":
            self._send_text(200, b"OK")

        elif path == "/readyz":
            ready = is_ready()
            response = {
                "status": "ready" if ready else "not_ready",
                "lastResync": (
                    datetime.fromtimestamp(reconciler.last_resync, timezone.utc).isoformat()
                    if reconciler is not None and reconciler.last_resync is not None
                    else None
                ),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
            self.send_response(200 if ready else 503)
            self.send_header("Content-Type", "application/json")
            self.end_headers()
            self.wfile.write(json.dumps(response).encode())

        else:
            self._send_text(404, b"Not Found")

    def _send_text(self, code: int, body: bytes):
        self.send_response(code)
        self.send_header("Content-Type", "text/plain")
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        """Override to use our logger instead of stderr."""
        logger.debug(f"HTTP: {format % args}")


def start_metrics_server():
    """Start the HTTP server for metrics and probes in a background thread."""

    def run_server():
        try:
            server = HTTPServer(("0.0.0.0", METRICS_PORT), EtcdManagerHTTPHandler)
            logger.info(f"HTTP server started on port {METRICS_PORT} (/metrics, /healthz, /readyz)")
            server.serve_forever()
        except Exception as e:
            logger.error(f"HTTP server error: {e}")

    server_thread = threading.Thread(target=run_server, daemon=True)
    server_thread.start()


# -----------------------------
# Main Loop
# -----------------------------


def main():
    """Wire up the reconciler and block until shutdown."""
    global reconciler

    logger.info(f"Starting Etcd Manager (pod: {POD_NAME or 'unknown'}) in namespace {NAMESPACE}")

    try:
        feature_gate = build_feature_gate(FEATURE_GATES)
    except features.FeatureGateError as e:
        logger.error(f"Invalid FEATURE_GATES: {e}")
        return 1

    info_metric.info(
        {
            "pod_name": POD_NAME,
            "namespace": NAMESPACE,
            "version": "0.1.0",
            "feature_gates": repr(feature_gate),
        }
    )

    load_kubernetes_config()
    reconciler = EtcdReconciler(
        client.CustomObjectsApi(), client.CoreV1Api(), feature_gate, namespace=NAMESPACE
    )

    start_metrics_server()
    reconciler.start()

    try:
        while not shutdown_event.wait(SLEEP_INTERVAL):
            logger.debug(f"Etcd manager alive, ready={is_ready()}")
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    finally:
        reconciler.stop()
        logger.info("Etcd Manager shutdown complete")

    return 0


def signal_handler(signum, frame):
    """Handle termination signals gracefully."""
    logger.info(f"Received signal {signum}, initiating graceful shutdown")
    shutdown_event.set()


if __name__ == "__main__":
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    if not NAMESPACE:
        logger.error("NAMESPACE environment variable is required")
        sys.exit(1)

    sys.exit(main())
