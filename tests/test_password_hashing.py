"""Tests for the bcrypt password helpers."""

from __future__ import annotations

import sys
import unittest
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from portal.database import dummy_verify, hash_password, verify_password


class PasswordHashingTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.password = "correct horse battery staple"
        cls.hashed = hash_password(cls.password)

    def test_hash_verifies_only_the_original_password(self) -> None:
        self.assertTrue(verify_password(self.password, self.hashed))
        self.assertFalse(verify_password(self.password + "!", self.hashed))
        self.assertFalse(verify_password("", self.hashed))

    def test_stored_representation_is_salted_and_not_plaintext(self) -> None:
        self.assertNotEqual(self.hashed, self.password)
        self.assertNotIn(self.password, self.hashed)
        self.assertTrue(self.hashed.startswith("$2"))
        self.assertNotEqual(hash_password(self.password), self.hashed)

    def test_php_style_2y_hashes_verify(self) -> None:
        legacy = "$2y$" + self.hashed[4:]
        self.assertTrue(verify_password(self.password, legacy))
        self.assertFalse(verify_password("wrong", legacy))

    def test_unusable_hashes_never_verify(self) -> None:
        self.assertFalse(verify_password(self.password, ""))
        self.assertFalse(verify_password(self.password, "not-a-hash"))

    def test_empty_password_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            hash_password("")

    def test_dummy_verify_runs(self) -> None:
        dummy_verify()


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
