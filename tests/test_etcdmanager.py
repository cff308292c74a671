#!/usr/bin/env python3
# tests/test_etcdmanager.py
"""
Tests for the etcd manager entrypoint.

These tests verify:
- Feature gate parsing from FEATURE_GATES
- Readiness tracking based on the last resync
- The /metrics, /healthz and /readyz endpoints
"""

import json
import os
import sys
import threading
import time
import unittest
import urllib.error
import urllib.request
from http.server import HTTPServer
from unittest.mock import Mock, patch

# Add src directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import etcdmanager
import features


class TestFeatureGates(unittest.TestCase):
    def test_defaults(self):
        gate = etcdmanager.build_feature_gate("")
        self.assertFalse(gate.enabled(features.BACKUP_COMPACTION))

    def test_override(self):
        gate = etcdmanager.build_feature_gate("BackupCompaction=true")
        self.assertTrue(gate.enabled(features.BACKUP_COMPACTION))

    def test_invalid_value_stops_startup(self):
        with patch.object(etcdmanager, "FEATURE_GATES", "Bogus=true"), patch.object(
            etcdmanager, "load_kubernetes_config"
        ) as mock_load:
            self.assertEqual(etcdmanager.main(), 1)
            mock_load.assert_not_called()


class TestReadiness(unittest.TestCase):
    def tearDown(self):
        etcdmanager.reconciler = None

    def test_not_ready_without_reconciler(self):
        etcdmanager.reconciler = None
        self.assertFalse(etcdmanager.is_ready())

    def test_not_ready_before_first_resync(self):
        etcdmanager.reconciler = Mock(last_resync=None)
        self.assertFalse(etcdmanager.is_ready())

    def test_ready_after_recent_resync(self):
        etcdmanager.reconciler = Mock(last_resync=time.time())
        self.assertTrue(etcdmanager.is_ready())

    def test_stale_resync_is_not_ready(self):
        etcdmanager.reconciler = Mock(last_resync=time.time() - etcdmanager.RESYNC_INTERVAL * 10)
        self.assertFalse(etcdmanager.is_ready())


class TestHTTPEndpoints(unittest.TestCase):
    """Exercise the handler against a real server on an ephemeral port."""

    def setUp(self):
        self.server = HTTPServer(("127.0.0.1", 0), etcdmanager.EtcdManagerHTTPHandler)
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()
        self.base_url = f"http://127.0.0.1:{self.server.server_address[1]}"

    def tearDown(self):
        self.server.shutdown()
        self.server.server_close()
        etcdmanager.reconciler = None

    def get(self, path):
        try:
            with urllib.request.urlopen(self.base_url + path, timeout=5) as response:
                return response.status, response.read()
        except urllib.error.HTTPError as e:
            return e.code, e.read()

    def test_healthz(self):
        status, body = self.get("/healthz")
        self.assertEqual(status, 200)
        self.assertEqual(body, b"OK")

    def test_readyz_not_ready(self):
        etcdmanager.reconciler = None
        status, body = self.get("/readyz")
        self.assertEqual(status, 503)
        data = json.loads(body)
        self.assertEqual(data["status"], "not_ready")
        self.assertIsNone(data["lastResync"])

    def test_readyz_ready(self):
        etcdmanager.reconciler = Mock(last_resync=time.time())
        status, body = self.get("/readyz")
        self.assertEqual(status, 200)
        data = json.loads(body)
        self.assertEqual(data["status"], "ready")
        self.assertIsNotNone(data["lastResync"])

    def test_metrics(self):
        status, body = self.get("/metrics")
        self.assertEqual(status, 200)
        self.assertIn(b"etcd_manager_info", body)

    def test_unknown_path(self):
        status, _ = self.get("/nope")
        self.assertEqual(status, 404)


if __name__ == "__main__":
    unittest.main()
