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

import datetime
import errno
import filecmp
import glob
import os
import re
import shutil
import stat
import time
from typing import List, NamedTuple

from error import CheckoutConflictError
from error import DeleteDirtyWorktreeError
from error import DeleteWorktreeError
from error import GitError
from error import ManifestInvalidPathError
from error import NetworkError
from error import OperationCancelledError
from git_command import GitRunner
from manifest_xml import MatchesGroups
import platform_utils
from repo_logging import RepoLogger
from retry import IsRetryableGitError
from retry import RetryOptions
from retry import RetryWithBackoff


logger = RepoLogger(__file__)

R_HEADS = "refs/heads/"
R_TAGS = "refs/tags/"

_CHECKOUT_CONFLICT = "would be overwritten by checkout"
_ID_RE = re.compile(r"^[0-9a-f]{40}$")


def IsId(rev):
    return bool(rev) and _ID_RE.match(rev) is not None


class SyncNetworkHalfResult(NamedTuple):
    """Sync_NetworkHalf return value."""

    # Whether the project was cloned rather than fetched.
    cloned: bool
    # Error from Sync_NetworkHalf
    error: Exception = None

    @property
    def success(self) -> bool:
        return not self.error


def _SafeExpandPath(base, subpath, skipfinal=False):
    """Make sure |subpath| is completely safe under |base|.

    We make sure no intermediate symlinks are traversed, and that the final path
    is not a special file (e.g. not a socket or fifo).
    """
    # Split up the path by its components.  We can't use os.path.sep exclusively
    # as some platforms (like Windows) will convert / to \ and that bypasses all
    # our constructed logic here.  Especially since manifest authors only use
    # / in their paths.
    resep = re.compile(r"[/%s]" % re.escape(os.path.sep))
    components = resep.split(subpath)
    if skipfinal:
        # Whether the caller handles the final component itself.
        finalpart = components.pop()

    path = base
    for part in components:
        if part in {".", ".."}:
            raise ManifestInvalidPathError(
                f'{subpath}: "{part}" not allowed in paths'
            )

        path = os.path.join(path, part)
        if platform_utils.islink(path):
            raise ManifestInvalidPathError(
                f"{path}: traversing symlinks not allow"
            )

        if os.path.exists(path):
            if not os.path.isfile(path) and not platform_utils.isdir(path):
                raise ManifestInvalidPathError(
                    f"{path}: only regular files & directories allowed"
                )

    if skipfinal:
        path = os.path.join(path, finalpart)

    return path


class _CopyFile:
    """Container for <copyfile> manifest element."""

    def __init__(self, git_worktree, src, topdir, dest, log=None):
        """Register a <copyfile> request.

        Args:
            git_worktree: Absolute path to the git project checkout.
            src: Relative path under |git_worktree| of file to read.
            topdir: Absolute path to the top of the client checkout.
            dest: Relative path under |topdir| of file to write.
            log: Logger for copy failures.
        """
        self.git_worktree = git_worktree
        self.topdir = topdir
        self.src = src
        self.dest = dest
        self._log = log or logger

    def _Copy(self):
        src = _SafeExpandPath(self.git_worktree, self.src)
        dest = _SafeExpandPath(self.topdir, self.dest)

        if platform_utils.isdir(src):
            raise ManifestInvalidPathError(
                f"{self.src}: copying from directory not supported"
            )
        if platform_utils.isdir(dest):
            raise ManifestInvalidPathError(
                f"{self.dest}: copying to directory not allowed"
            )

        # Copy file if it does not exist or is out of date.
        if not os.path.exists(dest) or not filecmp.cmp(src, dest):
            try:
                # Remove existing file first, since it might be read-only.
                if os.path.exists(dest):
                    platform_utils.remove(dest)
                else:
                    dest_dir = os.path.dirname(dest)
                    if not platform_utils.isdir(dest_dir):
                        os.makedirs(dest_dir)
                shutil.copy(src, dest)
                # Make the file read-only.
                mode = os.stat(dest)[stat.ST_MODE]
                mode = mode & ~(stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH)
                os.chmod(dest, mode)
            except OSError:
                self._log.error("error: Cannot copy file %s to %s", src, dest)


class _LinkFile:
    """Container for <linkfile> manifest element."""

    def __init__(self, git_worktree, src, topdir, dest, log=None):
        """Register a <linkfile> request.

        Args:
            git_worktree: Absolute path to the git project checkout.
            src: Target of symlink relative to path under |git_worktree|.
            topdir: Absolute path to the top of the client checkout.
            dest: Relative path under |topdir| of symlink to create.
            log: Logger for link failures.
        """
        self.git_worktree = git_worktree
        self.topdir = topdir
        self.src = src
        self.dest = dest
        self._log = log or logger

    def __linkIt(self, relSrc, absDest):
        # Link file if it does not exist or is out of date.
        if not platform_utils.islink(absDest) or (
            platform_utils.readlink(absDest) != relSrc
        ):
            try:
                # Remove existing file first, since it might be read-only.
                if os.path.lexists(absDest):
                    platform_utils.remove(absDest)
                else:
                    dest_dir = os.path.dirname(absDest)
                    if not platform_utils.isdir(dest_dir):
                        os.makedirs(dest_dir)
                platform_utils.symlink(relSrc, absDest)
            except OSError:
                self._log.error(
                    "error: Cannot link file %s to %s", relSrc, absDest
                )

    def _Link(self):
        """Link the self.src & self.dest paths.

        Handles wild cards on the src linking all of the files in the source in
        to the destination directory.
        """
        # Some people use src="." to create stable links to projects.  Let's
        # allow that but reject all other uses of "." to keep things simple.
        if self.src == ".":
            src = self.git_worktree
        else:
            src = _SafeExpandPath(self.git_worktree, self.src)

        if not glob.has_magic(src):
            # Entity does not contain a wild card so just a simple one to one
            # link operation.
            dest = _SafeExpandPath(self.topdir, self.dest, skipfinal=True)
            # dest & src are absolute paths at this point.  Make sure the target
            # of the symlink is relative in the context of the client checkout.
            relpath = os.path.relpath(src, os.path.dirname(dest))
            self.__linkIt(relpath, dest)
        else:
            dest = _SafeExpandPath(self.topdir, self.dest)
            # Entity contains a wild card.
            if os.path.exists(dest) and not platform_utils.isdir(dest):
                self._log.error(
                    "Link error: src with wildcard, %s must be a directory",
                    dest,
                )
            else:
                for absSrcFile in glob.glob(src):
                    # Create a releative path from source dir to destination
                    # dir.
                    absSrcDir = os.path.dirname(absSrcFile)
                    relSrcDir = os.path.relpath(absSrcDir, dest)

                    # Get the source file name.
                    srcFile = os.path.basename(absSrcFile)

                    # Now form the final full paths to srcFile. They will be
                    # absolute for the desintaiton and relative for the source.
                    absDest = os.path.join(dest, srcFile)
                    relSrc = os.path.join(relSrcDir, srcFile)
                    self.__linkIt(relSrc, absDest)


class RemoteSpec:
    def __init__(self, name, url=None, orig_name=None):
        self.name = name
        self.url = url
        self.orig_name = orig_name


class Project:
    """A git repository of the client checkout, bound to a git runner.

    Projects are rebuilt from the manifest on every load; the sync engine
    only updates |last_fetch|, |need_gc| and |revisionId| while a pass runs.
    """

    def __init__(
        self,
        name,
        remote,
        relpath,
        worktree,
        revisionExpr,
        revisionId=None,
        gitdir=None,
        objdir=None,
        topdir=None,
        groups=None,
        sync_c=False,
        sync_s=False,
        clone_depth=None,
        runner=None,
        log=None,
    ):
        """Init a Project object.

        Args:
            name: The `name` attribute of manifest.xml's project element.
            remote: RemoteSpec object specifying its remote's properties.
            relpath: Path of the project relative to |topdir|.
            worktree: Absolute path of the git working tree.
            revisionExpr: The `revision` attribute of the project element.
            revisionId: git commit id for checking out.
            gitdir: Absolute path of the git directory; |worktree|/.git when
                not given.
            objdir: Absolute path of the object store; projects sharing one
                are never fetched concurrently.
            topdir: Absolute path of the client checkout.
            groups: The `groups` attribute of the project element.
            sync_c: Only fetch the branch named by the revision.
            sync_s: Update submodules after checkout.
            clone_depth: Depth for shallow clones.
            runner: GitRunner used for every git call.
            log: Logger for this project.
        """
        self.name = name
        self.remote = remote
        self.relpath = relpath
        self.worktree = worktree
        self.gitdir = gitdir or os.path.join(worktree, ".git")
        self.objdir = objdir or os.path.join(self.gitdir, "objects")
        self.topdir = topdir or os.path.dirname(worktree)
        self.groups = list(groups or [])
        self.sync_c = sync_c
        self.sync_s = sync_s
        self.clone_depth = clone_depth
        self.copyfiles: List[_CopyFile] = []
        self.linkfiles: List[_LinkFile] = []
        self.SetRevision(revisionExpr, revisionId=revisionId)

        self.last_fetch = None
        self.need_gc = False

        self._runner = runner or GitRunner()
        self._log = log or logger

    def __repr__(self):
        return f"<Project {self.name} @ {self.relpath}>"

    @property
    def remote_url(self):
        return self.remote.url

    @property
    def Exists(self):
        return platform_utils.isdir(self.gitdir) and platform_utils.isdir(
            self.objdir
        )

    def SetRevision(self, revisionExpr, revisionId=None):
        """Set revisionId based on revision expression and id"""
        self.revisionExpr = revisionExpr
        if revisionId is None and IsId(revisionExpr):
            self.revisionId = revisionExpr
        else:
            self.revisionId = revisionId

    def SetRevisionId(self, revisionId):
        self.revisionId = revisionId

    def MatchesGroups(self, manifest_groups):
        """Returns true if the manifest groups specified at init should cause
        this project to be synced.
        """
        return MatchesGroups(self.groups, manifest_groups)

    def AddCopyFile(self, src, dest):
        self.copyfiles.append(
            _CopyFile(self.worktree, src, self.topdir, dest, log=self._log)
        )

    def AddLinkFile(self, src, dest):
        self.linkfiles.append(
            _LinkFile(self.worktree, src, self.topdir, dest, log=self._log)
        )

    @property
    def branch(self):
        """The branch named by the revision, or None for ids, tags and HEAD."""
        rev = self.revisionExpr
        if not rev or rev == "HEAD" or IsId(rev) or rev.startswith(R_TAGS):
            return None
        if rev.startswith(R_HEADS):
            return rev[len(R_HEADS) :]
        if rev.startswith("refs/"):
            return None
        return rev

    def _Git(self, *args, timeout=None):
        if timeout:
            return self._runner.RunWithTimeout(
                timeout, "-C", self.worktree, *args
            )
        return self._runner.RunInDir(self.worktree, *args)

    def IsDirty(self, consider_untracked=True):
        """Is the working directory modified in some way?"""
        cmd = ["status", "--porcelain"]
        if not consider_untracked:
            cmd.append("--untracked-files=no")
        return bool(self._Git(*cmd).strip())

    def Sync_NetworkHalf(
        self,
        quiet=False,
        current_branch_only=False,
        tags=False,
        prune=True,
        retry_options=None,
        cancel=None,
        network_timeout=None,
        git_lfs=False,
    ) -> SyncNetworkHalfResult:
        """Clone the project if missing, fetch it otherwise.

        With |git_lfs|, Git LFS objects are pulled afterwards when git-lfs is
        installed and the project tracks LFS files.

        Errors are returned in the result rather than raised so one project
        cannot stop the others.
        """
        retry_options = retry_options or RetryOptions()
        cloned = not self.Exists
        try:
            if cloned:
                self._Clone(
                    quiet,
                    current_branch_only,
                    retry_options,
                    cancel,
                    network_timeout,
                )
            else:
                self._RemoteFetch(
                    quiet,
                    current_branch_only,
                    tags,
                    prune,
                    retry_options,
                    cancel,
                    network_timeout,
                )
                self.need_gc = True
        except OperationCancelledError as e:
            return SyncNetworkHalfResult(cloned, e)
        except GitError as e:
            verb = "clone" if cloned else "fetch"
            err = NetworkError(
                f"{self.relpath}: cannot {verb} {self.remote.url}: {e}",
                retryable=IsRetryableGitError(e),
                project=self.name,
            )
            err.__cause__ = e
            return SyncNetworkHalfResult(cloned, err)

        self.last_fetch = datetime.datetime.now(datetime.timezone.utc)
        if git_lfs:
            try:
                self._PullLfs()
            except GitError as e:
                err = GitError(
                    f"{self.relpath}: git lfs pull failed: {e}",
                    project=self.name,
                )
                err.__cause__ = e
                return SyncNetworkHalfResult(cloned, err)
        return SyncNetworkHalfResult(cloned)

    def _PullLfs(self):
        if not shutil.which("git-lfs"):
            self._log.debug("%s: git-lfs is not installed", self.relpath)
            return
        try:
            files = self._Git("lfs", "ls-files")
        except GitError as e:
            self._log.debug("%s: skipping LFS pull: %s", self.relpath, e)
            return
        if not files.strip():
            return
        self._log.info("%s: pulling LFS objects", self.relpath)
        self._Git("lfs", "pull")

    def _Clone(
        self, quiet, current_branch_only, retry_options, cancel, timeout
    ):
        parent = os.path.dirname(self.worktree)
        if not platform_utils.isdir(parent):
            os.makedirs(parent)

        cmd = ["clone", "--origin", self.remote.name]
        if quiet:
            cmd.append("--quiet")
        if self.clone_depth:
            cmd.extend(["--depth", str(self.clone_depth)])
        branch = self.branch
        if branch:
            cmd.extend(["--branch", branch])
            if current_branch_only or self.sync_c:
                cmd.append("--single-branch")
        cmd.extend([self.remote.url, self.worktree])

        def _clone(attempt):
            if attempt and os.path.lexists(self.worktree):
                # Leftovers of a failed attempt make git refuse to clone.
                platform_utils.rmtree(self.worktree, ignore_errors=True)
            if timeout:
                return self._runner.RunWithTimeout(timeout, *cmd)
            return self._runner.Run(*cmd)

        self._log.info("%s: cloning %s", self.relpath, self.remote.url)
        RetryWithBackoff(cancel, retry_options, _clone, log=self._log)

    def _RemoteFetch(
        self,
        quiet,
        current_branch_only,
        tags,
        prune,
        retry_options,
        cancel,
        timeout,
    ):
        cmd = ["fetch", self.remote.name]
        if quiet:
            cmd.append("--quiet")
        if prune:
            cmd.append("--prune")
        if tags:
            cmd.append("--tags")
        if self.clone_depth:
            cmd.extend(["--depth", str(self.clone_depth)])
        branch = self.branch
        if branch and (current_branch_only or self.sync_c):
            cmd.append(
                f"+{R_HEADS}{branch}:refs/remotes/{self.remote.name}/{branch}"
            )

        self._log.debug("%s: fetching %s", self.relpath, self.remote.name)
        RetryWithBackoff(
            cancel,
            retry_options,
            lambda attempt: self._Git(*cmd, timeout=timeout),
            log=self._log,
        )

    def GetCheckoutTarget(self):
        """The commit-ish to check out: pinned id, tag, or remote branch."""
        if self.revisionId:
            return self.revisionId
        branch = self.branch
        if branch:
            return f"{self.remote.name}/{branch}"
        return self.revisionExpr

    def _CheckoutShouldRetry(self, force_sync):
        def _should_retry(err):
            if _CHECKOUT_CONFLICT not in str(err):
                return IsRetryableGitError(err)
            if not force_sync:
                return False
            self._log.warning(
                "%s: discarding local changes blocking the checkout",
                self.relpath,
            )
            try:
                self._Git("reset", "--hard", "-q")
            except GitError as e:
                self._log.error("%s: reset --hard failed: %s", self.relpath, e)
                return False
            return True

        return _should_retry

    def Sync_LocalHalf(
        self,
        force_sync=False,
        quiet=False,
        retry_options=None,
        cancel=None,
        hooks_dir=None,
    ):
        """Check out the revision and materialize copy/link files.

        Raises:
            CheckoutConflictError: Local changes block the checkout.
            GitError: git failed for another reason.
        """
        if not self.Exists:
            raise GitError(
                f"{self.relpath}: cannot checkout, project is not cloned",
                project=self.name,
            )

        if not force_sync and self.IsDirty(consider_untracked=False):
            raise CheckoutConflictError(
                f"{self.relpath}: uncommitted changes are present; commit "
                "them or sync with --force-sync",
                project=self.name,
            )

        retry_options = retry_options or RetryOptions()
        options = RetryOptions(
            max_retries=retry_options.max_retries,
            base_delay=retry_options.base_delay,
            max_delay=retry_options.max_delay,
            should_retry=self._CheckoutShouldRetry(force_sync),
        )
        rev = self.GetCheckoutTarget()
        cmd = ["checkout", "--detach", rev]
        if quiet:
            cmd.insert(1, "-q")

        try:
            RetryWithBackoff(
                cancel, options, lambda attempt: self._Git(*cmd), log=self._log
            )
        except GitError as e:
            if _CHECKOUT_CONFLICT in str(e):
                raise CheckoutConflictError(
                    f"{self.relpath}: checkout of {rev} would overwrite local "
                    f"changes: {e}",
                    project=self.name,
                ) from e
            raise

        if self.sync_s:
            self._SyncSubmodules(quiet=quiet)
        self._CopyAndLinkFiles()
        if hooks_dir:
            self.InstallHooks(hooks_dir)

    def _SyncSubmodules(self, quiet=True):
        cmd = ["submodule", "update", "--init", "--recursive"]
        if quiet:
            cmd.append("-q")
        self._Git(*cmd)

    def _CopyAndLinkFiles(self):
        for copyfile in self.copyfiles:
            copyfile._Copy()
        for linkfile in self.linkfiles:
            linkfile._Link()

    def InstallHooks(self, hooks_dir):
        """Copy the client's hook scripts into this project's .git/hooks."""
        if not platform_utils.isdir(hooks_dir):
            return
        dest_dir = os.path.join(self.gitdir, "hooks")
        if not platform_utils.isdir(dest_dir):
            os.makedirs(dest_dir)
        for name in platform_utils.listdir(hooks_dir):
            src = os.path.join(hooks_dir, name)
            if not os.path.isfile(src):
                continue
            dst = os.path.join(dest_dir, name)
            if os.path.exists(dst) and filecmp.cmp(src, dst, shallow=False):
                continue
            try:
                shutil.copyfile(src, dst)
                mode = os.stat(dst)[stat.ST_MODE]
                os.chmod(dst, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
            except OSError as e:
                self._log.warning(
                    "%s: cannot install hook %s: %s", self.relpath, name, e
                )

    def GC(self):
        """Run `git gc --auto` when a fetch brought in new objects."""
        if not self.need_gc:
            return
        self._Git("gc", "--auto", "--quiet")
        self.need_gc = False

    def DeleteWorktree(self, verbose=False, force=False):
        """Delete the source checkout and any other housekeeping tasks.

        Args:
            verbose: Whether to show verbose messages.
            force: Always delete tree even if dirty.

        Returns:
            True if the worktree was completely cleaned out.
        """
        platform_utils.CheckSafeToDelete(self.worktree, self.topdir)

        if self.IsDirty():
            if force:
                self._log.warning(
                    "warning: %s: Removing dirty project: uncommitted changes "
                    "lost.",
                    self.relpath,
                )
            else:
                msg = (
                    "error: %s: Cannot remove project: uncommitted "
                    "changes are present.\n" % self.relpath
                )
                self._log.error(msg)
                raise DeleteDirtyWorktreeError(msg, project=self.name)

        if verbose:
            self._log.info("%s: Deleting obsolete checkout.", self.relpath)

        # Delete the .git directory first, so we're less likely to have a
        # partially working git repository around. There shouldn't be any git
        # projects here, so rmtree works.
        try:
            platform_utils.rmtree(self.gitdir)
        except OSError as e:
            if e.errno != errno.ENOENT:
                self._log.error("error: %s: %s", self.gitdir, e)
                self._log.error(
                    "error: %s: Failed to delete obsolete checkout; remove "
                    "manually, then run `reposync sync -l`.",
                    self.relpath,
                )
                raise DeleteWorktreeError(aggregate_errors=[e])

        # Delete everything under the worktree, except for directories that
        # contain another git project.
        dirs_to_remove = []
        failed = False
        errors = []
        for root, dirs, files in platform_utils.walk(self.worktree):
            for f in files:
                path = os.path.join(root, f)
                try:
                    platform_utils.remove(path)
                except OSError as e:
                    if e.errno != errno.ENOENT:
                        self._log.warning("%s: Failed to remove: %s", path, e)
                        failed = True
                        errors.append(e)
            dirs[:] = [
                d
                for d in dirs
                if not os.path.lexists(os.path.join(root, d, ".git"))
            ]
            dirs_to_remove += [
                os.path.join(root, d)
                for d in dirs
                if os.path.join(root, d) not in dirs_to_remove
            ]
        for d in reversed(dirs_to_remove):
            if platform_utils.islink(d):
                try:
                    platform_utils.remove(d)
                except OSError as e:
                    if e.errno != errno.ENOENT:
                        self._log.warning("%s: Failed to remove: %s", d, e)
                        failed = True
                        errors.append(e)
            elif not platform_utils.listdir(d):
                try:
                    platform_utils.rmdir(d)
                except OSError as e:
                    if e.errno != errno.ENOENT:
                        self._log.warning("%s: Failed to remove: %s", d, e)
                        failed = True
                        errors.append(e)
        if failed:
            rename_path = (
                f"{self.worktree}_repo_to_be_deleted_{int(time.time())}"
            )
            try:
                platform_utils.rename(self.worktree, rename_path)
                self._log.warning(
                    "warning: renamed %s to %s. You can delete it, but you "
                    "might need elevated permissions (e.g. root)",
                    self.worktree,
                    rename_path,
                )
                # Rename successful! Clear the errors.
                errors = []
            except OSError:
                self._log.error(
                    "%s: Failed to delete obsolete checkout.\n"
                    "       Remove manually, then run `reposync sync -l`.",
                    self.relpath,
                )
                raise DeleteWorktreeError(aggregate_errors=errors)

        # Try deleting parent dirs if they are empty.
        path = self.worktree
        while path != self.topdir and path.startswith(self.topdir):
            try:
                platform_utils.rmdir(path)
            except OSError as e:
                if e.errno != errno.ENOENT:
                    break
            path = os.path.dirname(path)

        return True
