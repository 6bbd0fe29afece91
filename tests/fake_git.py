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

"""A GitRunner stand-in for tests that must not spawn git."""

import os
import threading

from git_command import GitCommandError


class FakeGitRunner:
    """Records git invocations and fakes their effect on disk.

    A clone creates <dest>/.git/objects so the project Exists afterwards.
    `status` reports changes only for worktrees in |dirty|.  Commands fail
    when a registered needle equals one of their arguments or their
    working directory.
    """

    def __init__(self):
        self.calls = []
        self.timeouts = []
        self.dirty = set()
        # (cwd, subcommand) -> stdout
        self.outputs = {}
        self._failures = []
        self._lock = threading.Lock()

    def Fail(
        self, needle, output="fatal: repository not found", rc=128, times=None
    ):
        """Make commands matching |needle| fail, |times| times or forever."""
        self._failures.append([needle, output, rc, times])

    def Run(self, *args):
        return self._Run(None, args)

    def RunInDir(self, dir, *args):
        return self._Run(dir, args)

    def RunWithTimeout(self, timeout, *args):
        with self._lock:
            self.timeouts.append(timeout)
        cwd = None
        if args[:1] == ("-C",):
            cwd, args = args[1], args[2:]
        return self._Run(cwd, args)

    def Calls(self, cmd, cwd=None):
        """Argument tuples of every |cmd| call, optionally in |cwd|."""
        with self._lock:
            return [
                args
                for d, args in self.calls
                if args[0] == cmd and (cwd is None or d == cwd)
            ]

    def Dirs(self, cmd):
        """Working directories |cmd| ran in."""
        with self._lock:
            return [d for d, args in self.calls if args[0] == cmd]

    def _Run(self, cwd, args):
        with self._lock:
            self.calls.append((cwd, tuple(args)))
            for failure in self._failures:
                needle, output, rc, times = failure
                if times == 0:
                    continue
                if needle in args or needle == cwd:
                    if times is not None:
                        failure[3] = times - 1
                    raise GitCommandError(
                        git_rc=rc, git_output=output, command_args=list(args)
                    )

        if args[0] == "clone":
            objdir = os.path.join(args[-1], ".git", "objects")
            os.makedirs(objdir, exist_ok=True)
        if args[0] == "status":
            return b" M file\n" if cwd in self.dirty else b""
        return self.outputs.get((cwd, args[0]), b"")
