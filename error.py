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

from typing import List


class BaseRepoError(Exception):
    """All reposync specific exceptions derive from BaseRepoError."""


class RepoError(BaseRepoError):
    """Exceptions thrown inside reposync that can be handled."""

    def __init__(self, *args, project: str = None) -> None:
        super().__init__(*args)
        self.project = project


class RepoExitError(BaseRepoError):
    """Exception thrown that result in termination of the program.
    - Should only be handled in main.py
    """

    def __init__(
        self,
        *args,
        exit_code: int = 1,
        aggregate_errors: List[Exception] = None,
        **kwargs,
    ) -> None:
        super().__init__(*args, **kwargs)
        self.exit_code = exit_code
        self.aggregate_errors = aggregate_errors


class ManifestParseError(RepoExitError):
    """Failed to parse the manifest file."""


class ManifestInvalidPathError(ManifestParseError):
    """A path used in <copyfile> or <linkfile> is incorrect."""


class NoManifestException(ManifestParseError):
    """The required manifest does not exist."""

    def __init__(self, path, reason, initialized=True, **kwargs):
        super().__init__(path, reason, **kwargs)
        self.path = path
        self.reason = reason
        # False when the workspace itself (the .repo directory) is missing.
        self.initialized = initialized

    def __str__(self):
        return self.reason


class IncludeResolutionError(ManifestParseError):
    """An <include> could not be found or forms a cycle."""

    def __init__(self, name, reason, **kwargs):
        super().__init__(name, reason, **kwargs)
        self.name = name
        self.reason = reason

    def __str__(self):
        return f"include {self.name}: {self.reason}"


class MergeError(RepoExitError):
    """Manifests could not be merged."""


class GitError(RepoError):
    """Unspecified git related error."""

    def __init__(self, message, command_args=None, **kwargs):
        super().__init__(message, **kwargs)
        self.message = message
        self.command_args = command_args

    def __str__(self):
        return self.message


class NetworkError(RepoError):
    """A clone or fetch of a project failed."""

    def __init__(self, message, retryable=False, **kwargs):
        super().__init__(message, **kwargs)
        self.message = message
        self.retryable = retryable

    def __str__(self):
        return self.message


class CheckoutConflictError(RepoError):
    """The working tree has local changes that block the checkout."""


class DeleteWorktreeError(RepoError):
    """Failure to delete worktree."""

    def __init__(
        self, *args, aggregate_errors: List[Exception] = None, **kwargs
    ) -> None:
        super().__init__(*args, **kwargs)
        self.aggregate_errors = aggregate_errors or []


class DeleteDirtyWorktreeError(DeleteWorktreeError):
    """Failure to delete worktree due to uncommitted changes."""


class UnsafeDeleteError(RepoError):
    """A path was refused for deletion."""

    def __init__(self, path, reason, **kwargs):
        super().__init__(path, reason, **kwargs)
        self.path = path
        self.reason = reason

    def __str__(self):
        return f"refusing to delete {self.path!r}: {self.reason}"


class OperationCancelledError(RepoError):
    """The operation was cancelled before it could finish."""


class NoSuchProjectError(RepoExitError):
    """A specified project does not exist in the manifest."""

    def __init__(self, name=None, **kwargs):
        super().__init__(**kwargs)
        self.name = name

    def __str__(self):
        if self.name is None:
            return "in current directory"
        return self.name


class InvalidArgumentsError(RepoExitError):
    """Invalid command Arguments."""


class SyncError(RepoExitError):
    """Cannot sync the workspace."""


class SyncFailFastError(SyncError):
    """Sync exit error when --fail-fast set."""


class ManifestServerError(SyncError):
    """The manifest server could not be reached or returned an error."""


class SuperprojectError(SyncError):
    """The superproject could not be synced or read."""
