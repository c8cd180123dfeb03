"""Tests for top-level package lazy exports."""

from __future__ import annotations

import unittest

import sidechat


class PackageExportTests(unittest.TestCase):
    """Ensure __getattr__ and exported symbols behave as expected."""

    def test_lazy_exports_resolve_known_symbols(self) -> None:
        self.assertTrue(callable(sidechat.load_config))
        self.assertTrue(callable(sidechat.build_config))
        self.assertTrue(callable(sidechat.create_session))
        self.assertIsNotNone(sidechat.ConversationSession)
        self.assertIsNotNone(sidechat.RequestOrchestrator)
        self.assertIsNotNone(sidechat.UploadCoordinator)
        self.assertIsNotNone(sidechat.ResponseVersionStore)
        self.assertIsNotNone(sidechat.HttpxTransport)
        self.assertIsNotNone(sidechat.GenerationCancelled)
        self.assertEqual(sidechat.ErrorKind.CANCELLED.value, "cancelled")

    def test_every_name_in_all_resolves(self) -> None:
        for name in sidechat.__all__:
            self.assertIsNotNone(getattr(sidechat, name), name)

    def test_unknown_symbol_raises_attribute_error(self) -> None:
        with self.assertRaises(AttributeError):
            getattr(sidechat, "THIS_DOES_NOT_EXIST")


if __name__ == "__main__":
    unittest.main()
