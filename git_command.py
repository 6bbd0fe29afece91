# Copyright (C) 2008 The Android Open Source Project
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

import functools
import os
import re
import subprocess
import sys
from typing import Optional

from error import GitError
import platform_utils
from repo_logging import RepoLogger


GIT = "git"
GIT_DIR = "GIT_DIR"

DEFAULT_GIT_FAIL_MESSAGE = "git command failure"
# Common line length limit
GIT_ERROR_OUTPUT_LINES = 10
VERSION = "1.0"

logger = RepoLogger(__file__)


class UserAgent:
    """Mange User-Agent settings when talking to external services

    We follow the style as documented here:
    https://developer.mozilla.org/en-US/docs/Web/HTTP/Headers/User-Agent
    """

    _os = None
    _repo_ua = None

    @property
    def os(self):
        """The operating system name."""
        if self._os is None:
            os_name = sys.platform
            if os_name.lower().startswith("linux"):
                os_name = "Linux"
            elif os_name == "win32":
                os_name = "Win32"
            elif os_name == "cygwin":
                os_name = "Cygwin"
            elif os_name == "darwin":
                os_name = "Darwin"
            self._os = os_name

        return self._os

    @property
    def repo(self):
        """The UA when connecting directly from reposync."""
        if self._repo_ua is None:
            py_version = sys.version_info
            self._repo_ua = "reposync/%s (%s) Python/%d.%d.%d" % (
                VERSION,
                self.os,
                py_version.major,
                py_version.minor,
                py_version.micro,
            )

        return self._repo_ua


user_agent = UserAgent()


def _GetBasicEnv():
    """Return a basic env for running git under.

    This is guaranteed to be side-effect free.
    """
    env = os.environ.copy()
    for key in (
        GIT_DIR,
        "GIT_ALTERNATE_OBJECT_DIRECTORIES",
        "GIT_OBJECT_DIRECTORY",
        "GIT_WORK_TREE",
        "GIT_GRAFT_FILE",
        "GIT_INDEX_FILE",
    ):
        env.pop(key, None)
    return env


def _build_env(
    _kwargs_only=(),
    bare: Optional[bool] = False,
    disable_editor: Optional[bool] = True,
    gitdir: Optional[str] = None,
):
    """Constucts an env dict for command execution."""

    assert _kwargs_only == (), "_build_env only accepts keyword arguments."

    env = _GetBasicEnv()

    if disable_editor:
        env["GIT_EDITOR"] = ":"
    # Never block a worker on a credential prompt.
    env["GIT_TERMINAL_PROMPT"] = "0"
    if "GIT_ALLOW_PROTOCOL" not in env:
        env[
            "GIT_ALLOW_PROTOCOL"
        ] = "file:git:http:https:ssh:persistent-http:persistent-https:sso:rpc"
    env["GIT_HTTP_USER_AGENT"] = user_agent.repo

    if bare and gitdir is not None:
        env[GIT_DIR] = gitdir

    return env


class GitCommand:
    """Wrapper around a single git invocation.

    stdout and stderr are merged so callers see the same text git would have
    printed to a terminal.
    """

    def __init__(
        self,
        cmdv,
        cwd=None,
        gitdir=None,
        bare=False,
        input=None,
        timeout=None,
        verify_command=False,
        log=None,
    ):
        self.cmdv = list(cmdv)
        self.cwd = cwd
        self.timeout = timeout
        self.verify_command = verify_command
        self.stdout = b""
        self.rc = None
        self._log = log or logger

        # Git on Windows wants its paths only using / for reliability.
        if platform_utils.isWindows() and gitdir:
            gitdir = gitdir.replace("\\", "/")

        env = _build_env(gitdir=gitdir, bare=bare)
        if bare:
            cwd = None

        command = [GIT] + self.cmdv
        self._RunCommand(command, env, cwd=cwd, input=input)
        if verify_command:
            self.VerifyCommand()

    def _RunCommand(self, command, env, cwd=None, input=None):
        self._log.debug(
            ": %s%s", f"cd {cwd} && " if cwd else "", " ".join(command)
        )
        try:
            p = subprocess.run(
                command,
                cwd=cwd,
                env=env,
                input=input,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise GitCommandError(
                message=f"{command[1]}: timed out after {self.timeout}s",
                command_args=self.cmdv,
                git_output=_Truncate(e.output),
            )
        except OSError as e:
            raise GitPopenCommandError(
                message=f"{command[1]}: {e}",
                command_args=self.cmdv,
            )
        self.stdout = p.stdout or b""
        self.rc = p.returncode

    def VerifyCommand(self):
        if self.rc == 0:
            return None
        raise GitCommandError(
            command_args=self.cmdv,
            git_rc=self.rc,
            git_output=_Truncate(self.stdout),
        )

    def Wait(self):
        if self.verify_command:
            self.VerifyCommand()
        return self.rc


def _Truncate(output):
    if not output:
        return None
    if isinstance(output, bytes):
        output = output.decode("utf-8", "backslashreplace")
    lines = output.rstrip("\n").split("\n")
    return "\n".join(lines[-GIT_ERROR_OUTPUT_LINES:])


class GitRunner:
    """Runs the git executable on behalf of projects.

    Every method returns the combined stdout/stderr as bytes, or raises
    GitCommandError when git exits non-zero.
    """

    def __init__(self, log=None):
        self._log = log or logger

    def Run(self, *args):
        """Runs `git <args>` in the current directory."""
        return self._Run(args)

    def RunInDir(self, dir, *args):
        """Runs `git <args>` with |dir| as the working directory."""
        return self._Run(args, cwd=dir)

    def RunWithTimeout(self, timeout, *args):
        """Runs `git <args>`, failing when it takes more than |timeout|s."""
        return self._Run(args, timeout=timeout)

    def _Run(self, args, cwd=None, timeout=None):
        p = GitCommand(
            args,
            cwd=cwd,
            timeout=timeout,
            verify_command=True,
            log=self._log,
        )
        return p.stdout


class GitCommandError(GitError):
    """
    Error raised from a failed git command.
    Note that GitError can refer to any Git related error, while
    GitCommandError is raised exclusively from git commands that exited
    non-zero or did not finish.
    """

    # Tuples with error formats and suggestions for those errors.
    _ERROR_TO_SUGGESTION = [
        (
            re.compile("couldn't find remote ref .*"),
            "Check if the provided ref exists in the remote.",
        ),
        (
            re.compile("unable to access '.*': .*"),
            (
                "Please make sure you have the correct access rights and the "
                "repository exists."
            ),
        ),
        (
            re.compile("'.*' does not appear to be a git repository"),
            "Check the remote fetch URL and project name in the manifest.",
        ),
        (
            re.compile("would be overwritten by checkout"),
            "Commit or stash local changes, or sync with --force-sync.",
        ),
    ]

    def __init__(
        self,
        message: str = DEFAULT_GIT_FAIL_MESSAGE,
        git_rc: int = None,
        git_output: str = None,
        **kwargs,
    ):
        super().__init__(
            message,
            **kwargs,
        )
        self.git_rc = git_rc
        self.git_output = git_output

    @property
    @functools.lru_cache(maxsize=None)
    def suggestion(self):
        """Returns helpful next steps for the given output."""
        if not self.git_output:
            return None

        for err, suggestion in self._ERROR_TO_SUGGESTION:
            if err.search(self.git_output):
                return suggestion

        return None

    def __str__(self):
        args = "[]" if not self.command_args else " ".join(self.command_args)
        error_type = type(self).__name__
        string = f"{error_type}: 'git {args}'"
        if self.project:
            string += f" on {self.project}"
        string += " failed"

        if self.git_rc is not None:
            string += f" (exit status {self.git_rc})"

        if self.message != DEFAULT_GIT_FAIL_MESSAGE:
            string += f": {self.message}"

        if self.git_output:
            string += f"\noutput: {self.git_output}"

        if self.suggestion:
            string += f"\nsuggestion: {self.suggestion}"

        return string


class GitPopenCommandError(GitError):
    """
    Error raised when subprocess.Popen fails for a GitCommand
    """
