#!/usr/bin/env python3
# tests/test_features.py
"""
Tests for the feature gate registry.
"""

import os
import sys
import unittest

# Add src directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import features
from features import FeatureGate, FeatureGateError, FeatureSpec, PreRelease


class TestFeatureGate(unittest.TestCase):
    def setUp(self):
        self.gate = FeatureGate()
        self.gate.add(
            {
                "Alpha": FeatureSpec(default=False, pre_release=PreRelease.ALPHA),
                "Beta": FeatureSpec(default=True, pre_release=PreRelease.BETA),
                "Stable": FeatureSpec(default=True, pre_release=PreRelease.GA, lock_to_default=True),
            }
        )

    def test_defaults(self):
        self.assertFalse(self.gate.enabled("Alpha"))
        self.assertTrue(self.gate.enabled("Beta"))
        self.assertTrue(self.gate.enabled("Stable"))

    def test_duplicate_registration_fails(self):
        with self.assertRaises(FeatureGateError):
            self.gate.add({"Alpha": FeatureSpec(default=True)})
        # the first registration is untouched
        self.assertFalse(self.gate.enabled("Alpha"))

    def test_duplicate_in_batch_leaves_gate_unchanged(self):
        with self.assertRaises(FeatureGateError):
            self.gate.add({"New": FeatureSpec(default=True), "Beta": FeatureSpec(default=False)})
        with self.assertRaises(FeatureGateError):
            self.gate.enabled("New")

    def test_unknown_feature_query_fails(self):
        with self.assertRaises(FeatureGateError):
            self.gate.enabled("DoesNotExist")

    def test_set_from_map(self):
        self.gate.set_from_map({"Alpha": True, "Beta": False})
        self.assertTrue(self.gate.enabled("Alpha"))
        self.assertFalse(self.gate.enabled("Beta"))

    def test_set_from_map_unknown_name_applies_nothing(self):
        with self.assertRaises(FeatureGateError):
            self.gate.set_from_map({"Alpha": True, "Nope": True})
        self.assertFalse(self.gate.enabled("Alpha"))

    def test_set_from_map_rejects_non_bool(self):
        with self.assertRaises(FeatureGateError):
            self.gate.set_from_map({"Alpha": "true"})

    def test_locked_feature_cannot_change(self):
        with self.assertRaises(FeatureGateError):
            self.gate.set_from_map({"Stable": False})
        # setting it to its default is fine
        self.gate.set_from_map({"Stable": True})

    def test_set_parses_flag_syntax(self):
        self.gate.set("Alpha=true, Beta=FALSE")
        self.assertTrue(self.gate.enabled("Alpha"))
        self.assertFalse(self.gate.enabled("Beta"))

    def test_set_ignores_empty_items(self):
        self.gate.set("")
        self.gate.set("Alpha=true,,")
        self.assertTrue(self.gate.enabled("Alpha"))

    def test_set_rejects_bad_syntax(self):
        for value in ("Alpha", "Alpha=yes", "=true"):
            with self.assertRaises(FeatureGateError, msg=value):
                self.gate.set(value)

    def test_closed_gate_is_read_only(self):
        self.gate.close()
        self.assertTrue(self.gate.closed)
        with self.assertRaises(FeatureGateError):
            self.gate.add({"Later": FeatureSpec(default=True)})
        with self.assertRaises(FeatureGateError):
            self.gate.set_from_map({"Alpha": True})
        # reads still work
        self.assertFalse(self.gate.enabled("Alpha"))

    def test_known_features_skips_ga(self):
        known = self.gate.known_features()
        self.assertEqual(
            known,
            [
                "Alpha=true|false (ALPHA - default=false)",
                "Beta=true|false (BETA - default=true)",
            ],
        )

    def test_gates_are_independent(self):
        other = FeatureGate()
        other.add({"Alpha": FeatureSpec(default=True)})
        self.gate.set_from_map({"Alpha": False})
        self.assertTrue(other.enabled("Alpha"))


class TestDefaultFeatureGate(unittest.TestCase):
    def test_backup_compaction_is_alpha_and_off(self):
        gate = features.new_feature_gate()
        self.assertFalse(gate.enabled(features.BACKUP_COMPACTION))
        self.assertTrue(gate.closed)
        spec = features.DEFAULT_FEATURE_GATES[features.BACKUP_COMPACTION]
        self.assertEqual(spec.pre_release, PreRelease.ALPHA)

    def test_overrides(self):
        gate = features.new_feature_gate("BackupCompaction=true")
        self.assertTrue(gate.enabled(features.BACKUP_COMPACTION))

    def test_unknown_override_fails(self):
        with self.assertRaises(FeatureGateError):
            features.new_feature_gate("Unknown=true")

    def test_repr(self):
        gate = features.new_feature_gate()
        self.assertEqual(repr(gate), "FeatureGate(BackupCompaction=false)")


if __name__ == "__main__":
    unittest.main()
