# Copyright (C) 2026 The Android Open Source Project
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

"""Unittests for the main.py module."""

import io
import json
import os
import tempfile
import unittest
from unittest import mock

from git_command import VERSION
import main


MANIFEST = """<manifest>
  <remote name="origin" fetch="https://example.com" />
  <default remote="origin" revision="main" />
  <project name="platform/build" path="build" />
  <project name="platform/art" path="art" groups="extra" />
</manifest>
"""


class MainTests(unittest.TestCase):
    """Check the command line entry point."""

    def setUp(self):
        self.tempdirobj = tempfile.TemporaryDirectory(prefix="reposync_tests")
        self.topdir = self.tempdirobj.name
        os.mkdir(os.path.join(self.topdir, ".repo"))
        with open(os.path.join(self.topdir, ".repo", "manifest.xml"), "w") as f:
            f.write(MANIFEST)

    def tearDown(self):
        self.tempdirobj.cleanup()

    def run_main(self, *argv):
        """Run main() and return (exit code, stdout)."""
        with mock.patch("sys.stdout", new_callable=io.StringIO) as out:
            with self.assertRaises(SystemExit) as e:
                main.main(list(argv))
        return e.exception.code, out.getvalue()

    def test_version(self):
        code, out = self.run_main("--version")
        self.assertEqual(0, code)
        self.assertEqual(f"reposync version {VERSION}\n", out)

    def test_help(self):
        code, out = self.run_main()
        self.assertEqual(0, code)
        for name in main.COMMANDS:
            self.assertIn(name, out)

    def test_unknown_command(self):
        code, _ = self.run_main("-C", self.topdir, "bogus")
        self.assertEqual(1, code)

    def test_list(self):
        code, out = self.run_main("-C", self.topdir, "list")
        self.assertEqual(0, code)
        self.assertEqual("art : platform/art\nbuild : platform/build\n", out)

    def test_list_names_and_groups(self):
        code, out = self.run_main(
            "-C", self.topdir, "list", "-n", "-g", "-extra"
        )
        self.assertEqual(0, code)
        self.assertEqual("platform/build\n", out)

        _, out = self.run_main("-C", self.topdir, "list", "-p", "art")
        self.assertEqual("art\n", out)

    def test_list_unknown_project(self):
        code, _ = self.run_main("-C", self.topdir, "list", "nope")
        self.assertEqual(1, code)

    def test_manifest_json(self):
        code, out = self.run_main(
            "-C", self.topdir, "manifest", "--format=json"
        )
        self.assertEqual(0, code)
        data = json.loads(out)
        self.assertEqual(2, len(data["project"]))

    def test_manifest_to_file(self):
        path = os.path.join(self.topdir, "out.xml")
        code, _ = self.run_main("-C", self.topdir, "manifest", "-o", path)
        self.assertEqual(0, code)
        with open(path) as f:
            self.assertIn('name="platform/art"', f.read())

    def test_not_initialized(self):
        with tempfile.TemporaryDirectory() as empty:
            code, _ = self.run_main("-C", empty, "list")
        self.assertEqual(1, code)

    def test_sync_rejects_arguments(self):
        code, _ = self.run_main("-C", self.topdir, "sync", "extra")
        self.assertEqual(1, code)

    def test_sync_git_lfs(self):
        with mock.patch("main.SyncEngine") as engine:
            code, _ = self.run_main("-C", self.topdir, "sync", "--git-lfs")
        self.assertEqual(0, code)
        options = engine.return_value.Sync.call_args[0][0]
        self.assertTrue(options.git_lfs)

        with mock.patch("main.SyncEngine") as engine:
            self.run_main("-C", self.topdir, "sync")
        self.assertFalse(engine.return_value.Sync.call_args[0][0].git_lfs)
