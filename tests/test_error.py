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

"""Unittests for the error.py module."""

import inspect
import pickle
import unittest

import error
import git_command


class PickleTests(unittest.TestCase):
    """Make sure all our custom exceptions can be pickled."""

    def getExceptions(self):
        """Return all our custom exceptions."""
        for name in dir(error):
            cls = getattr(error, name)
            if isinstance(cls, type) and issubclass(cls, Exception):
                yield cls
        yield git_command.GitCommandError
        yield git_command.GitPopenCommandError

    def testExceptionLookup(self):
        """Make sure our introspection logic works."""
        classes = list(self.getExceptions())
        self.assertIn(error.SyncError, classes)
        # Don't assert the exact number to avoid being a change-detector test.
        self.assertGreater(len(classes), 10)

    def testPickle(self):
        """Try to pickle all the exceptions."""
        for cls in self.getExceptions():
            args = inspect.getfullargspec(cls.__init__).args[1:]
            obj = cls(*args)
            p = pickle.dumps(obj)
            try:
                newobj = pickle.loads(p)
            except Exception as e:  # pylint: disable=broad-except
                self.fail(
                    "Class %s is unable to be pickled: %s\n"
                    "Incomplete super().__init__(...) call?" % (cls, e)
                )
            self.assertIsInstance(newobj, cls)
            self.assertEqual(str(obj), str(newobj))


class HierarchyTests(unittest.TestCase):
    """Check which errors end the program and which are handled."""

    def test_sync_errors_exit(self):
        for cls in (
            error.SyncError,
            error.SyncFailFastError,
            error.ManifestServerError,
            error.SuperprojectError,
        ):
            with self.subTest(cls=cls):
                self.assertTrue(issubclass(cls, error.SyncError))
                self.assertTrue(issubclass(cls, error.RepoExitError))

    def test_project_errors_are_handled(self):
        for cls in (
            error.GitError,
            error.NetworkError,
            error.CheckoutConflictError,
            error.DeleteDirtyWorktreeError,
            error.UnsafeDeleteError,
            error.OperationCancelledError,
        ):
            with self.subTest(cls=cls):
                self.assertTrue(issubclass(cls, error.RepoError))
                self.assertFalse(issubclass(cls, error.RepoExitError))

    def test_manifest_errors(self):
        self.assertTrue(
            issubclass(error.IncludeResolutionError, error.ManifestParseError)
        )
        self.assertTrue(
            issubclass(error.NoManifestException, error.ManifestParseError)
        )

    def test_aggregate_errors(self):
        inner = [error.GitError("a"), error.GitError("b")]
        e = error.SyncError("sync failed", aggregate_errors=inner)
        self.assertEqual(e.aggregate_errors, inner)
        self.assertEqual(e.exit_code, 1)

    def test_project_name(self):
        e = error.CheckoutConflictError("dirty", project="platform/build")
        self.assertEqual(e.project, "platform/build")
        self.assertEqual(str(e), "dirty")

    def test_include_message(self):
        e = error.IncludeResolutionError("extra.xml", "not found")
        self.assertEqual(str(e), "include extra.xml: not found")

    def test_unsafe_delete_message(self):
        e = error.UnsafeDeleteError("/", "filesystem root")
        self.assertIn("'/'", str(e))
        self.assertIn("filesystem root", str(e))
