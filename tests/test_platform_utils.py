# Copyright 2021 The Android Open Source Project
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Unittests for the platform_utils.py module."""

import os
import tempfile
import unittest

from error import UnsafeDeleteError
import platform_utils


class RemoveTests(unittest.TestCase):
    """Check remove() helper."""

    def testMissingOk(self):
        """Check missing_ok handling."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "test")

            # Should not fail.
            platform_utils.remove(path, missing_ok=True)

            # Should fail.
            self.assertRaises(OSError, platform_utils.remove, path)
            self.assertRaises(
                OSError, platform_utils.remove, path, missing_ok=False
            )

            # Should not fail if it exists.
            open(path, "w").close()
            platform_utils.remove(path, missing_ok=True)
            self.assertFalse(os.path.exists(path))

            open(path, "w").close()
            platform_utils.remove(path)
            self.assertFalse(os.path.exists(path))

            open(path, "w").close()
            platform_utils.remove(path, missing_ok=False)
            self.assertFalse(os.path.exists(path))


class SafeToDeleteTests(unittest.TestCase):
    """Check IsSafeToDelete() and CheckSafeToDelete()."""

    def setUp(self):
        self.tempdirobj = tempfile.TemporaryDirectory(prefix="reposync_tests")
        self.root = os.path.join(self.tempdirobj.name, "client")
        os.makedirs(self.root)

    def tearDown(self):
        self.tempdirobj.cleanup()

    def testRejected(self):
        """Paths that must never be removed."""
        for path in (
            "",
            ".",
            "..",
            "../sibling",
            "/",
            self.root,
            self.root + os.sep,
            os.path.join(self.tempdirobj.name, "other"),
            os.path.join(self.root, "..", "escape"),
        ):
            with self.subTest(path=path):
                self.assertFalse(platform_utils.IsSafeToDelete(path, self.root))

    def testAccepted(self):
        """Paths strictly below the workspace root."""
        for path in (
            "foo",
            os.path.join("foo", "bar"),
            os.path.join(self.root, "platform", "build"),
        ):
            with self.subTest(path=path):
                self.assertTrue(platform_utils.IsSafeToDelete(path, self.root))

    def testCheckRaises(self):
        with self.assertRaises(UnsafeDeleteError) as e:
            platform_utils.CheckSafeToDelete("/", self.root)
        self.assertEqual(e.exception.path, "/")

    def testPrefixIsNotContainment(self):
        """A sibling sharing the root's name prefix is outside."""
        path = self.root + "-backup"
        self.assertFalse(platform_utils.IsSafeToDelete(path, self.root))
