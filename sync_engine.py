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

"""Bring the client checkout in line with its manifest.

A pass runs these phases in order:

  1. load the manifest (plus local manifests)
  2. prune checkouts dropped from the manifest (project.list)
  3. remove stale <copyfile>/<linkfile> outputs (copy-link-files.json)
  4. smart sync, hyper sync and superproject pinning, when enabled
  5. clone or fetch every project, grouped by object directory
  6. check out every project fetched in this pass
  7. git gc --auto where a fetch brought in objects
"""

import datetime
import functools
from multiprocessing.pool import ThreadPool
import os
from pathlib import Path
import threading
import time
from typing import List, NamedTuple, Set

from error import GitError
from error import InvalidArgumentsError
from error import ManifestInvalidPathError
from error import OperationCancelledError
from error import RepoError
from error import SyncError
from error import SyncFailFastError
from git_command import GitRunner
from git_superproject import Superproject
from manifest_xml import LoadManifest
from manifest_xml import ManifestParser
import platform_utils
from progress import Progress
from project import Project
from project import R_HEADS
from project import RemoteSpec
from project_manager import ProjectManager
from repo_logging import RepoLogger
from retry import DiagnoseGitError
from retry import RetryOptions
from smart_sync import HyperSync
from smart_sync import SMART_SYNC_MANIFEST_NAME
from smart_sync import SmartSync
from sync_state import CopyLinkFileList
from sync_state import FetchTimes
from sync_state import ProjectList


_ONE_DAY = datetime.timedelta(days=1)
DEFAULT_LOCAL_JOBS = 8

logger = RepoLogger(__file__)


class ProjectState:
    """Where a project stands in the current pass."""

    MISSING = "missing"
    CLONING = "cloning"
    FETCHED = "fetched"
    CHECKED_OUT = "checked-out"
    SYNCED = "synced"
    FAILED = "failed"


class SyncOptions:
    """Knobs of one sync pass.

    Args:
        jobs_network: Parallel fetches; defaults to twice the CPU count.
        jobs_checkout: Parallel checkouts; defaults to the CPU count, at
            most DEFAULT_LOCAL_JOBS.
        fail_fast: Stop at the first failed project.
        force_sync: Discard local changes that block a checkout.
        force_remove_dirty: Prune checkouts even with uncommitted changes.
        prune: Delete checkouts of projects dropped from the manifest.
        local_only: Skip the network phase.
        network_only: Skip the checkout phase.
        quiet: Only report warnings and errors.
        verbose: Add a diagnosis to every recorded project error.
        groups: Manifest groups to sync; None or [] syncs everything.
        smart_sync: Use the manifest the manifest server approved.
        smart_tag: Use the manifest the manifest server has for this tag.
        hyper_sync: Only fetch projects the manifest server reports changed.
        use_superproject: Pin projects to the superproject's commits.
        manifest_server_username: Manifest server user.
        manifest_server_password: Manifest server password.
        retry_fetches: Retries of a failed git operation.
        tags: Fetch tags.
        current_branch_only: Only fetch the branch named by the revision.
        network_timeout: Seconds before a clone or fetch is abandoned.
        http_timeout: Seconds before a manifest server request is abandoned.
        auto_gc: Run `git gc --auto` after fetching.
        git_lfs: Pull Git LFS objects after cloning or fetching.
        manifest_url: URL of the manifest repository, for relative remotes.
    """

    def __init__(
        self,
        jobs_network=None,
        jobs_checkout=None,
        fail_fast=False,
        force_sync=False,
        force_remove_dirty=False,
        prune=True,
        local_only=False,
        network_only=False,
        quiet=False,
        verbose=False,
        groups=None,
        smart_sync=False,
        smart_tag=None,
        hyper_sync=False,
        use_superproject=False,
        manifest_server_username=None,
        manifest_server_password=None,
        retry_fetches=3,
        tags=False,
        current_branch_only=False,
        network_timeout=None,
        http_timeout=30,
        auto_gc=True,
        git_lfs=False,
        manifest_url=None,
    ):
        cpu_count = os.cpu_count() or 1
        self.jobs_network = jobs_network or 2 * cpu_count
        self.jobs_checkout = jobs_checkout or min(cpu_count, DEFAULT_LOCAL_JOBS)
        self.fail_fast = fail_fast
        self.force_sync = force_sync
        self.force_remove_dirty = force_remove_dirty
        self.prune = prune
        self.local_only = local_only
        self.network_only = network_only
        self.quiet = quiet
        self.verbose = verbose
        self.groups = groups
        self.smart_sync = smart_sync
        self.smart_tag = smart_tag
        self.hyper_sync = hyper_sync
        self.use_superproject = use_superproject
        self.manifest_server_username = manifest_server_username
        self.manifest_server_password = manifest_server_password
        self.retry_fetches = retry_fetches
        self.tags = tags
        self.current_branch_only = current_branch_only
        self.network_timeout = network_timeout
        self.http_timeout = http_timeout
        self.auto_gc = auto_gc
        self.git_lfs = git_lfs
        self.manifest_url = manifest_url

    def Validate(self):
        """Reject option combinations that cannot work together.

        Raises:
            InvalidArgumentsError: The options conflict.
        """
        if self.jobs_network < 1 or self.jobs_checkout < 1:
            raise InvalidArgumentsError("job counts must be at least 1")
        if self.local_only and self.network_only:
            raise InvalidArgumentsError(
                "local_only and network_only are mutually exclusive"
            )
        if self.smart_sync and self.smart_tag:
            raise InvalidArgumentsError(
                "smart_sync and smart_tag are mutually exclusive"
            )
        if (self.smart_sync or self.smart_tag) and self.hyper_sync:
            raise InvalidArgumentsError(
                "hyper_sync cannot be combined with smart sync"
            )
        if self.local_only and (
            self.smart_sync or self.smart_tag or self.hyper_sync
        ):
            raise InvalidArgumentsError(
                "local_only cannot be combined with a manifest server"
            )
        if bool(self.manifest_server_username) != bool(
            self.manifest_server_password
        ):
            raise InvalidArgumentsError(
                "manifest server username and password must be set together"
            )


def _SafeCheckoutOrder(checkouts: List[Project]) -> List[List[Project]]:
    """Generate a sequence of checkouts that is safe to perform. The client
    should checkout everything from n-th index before moving to n+1.

    This is only useful if manifest contains nested projects.

    E.g. if foo, foo/bar and foo/bar/baz are project paths, then foo needs to
    finish before foo/bar can proceed, and foo/bar needs to finish before
    foo/bar/baz."""
    res = [[]]
    current = res[0]

    # depth_stack contains a current stack of parent paths.
    depth_stack = []
    # checkouts are iterated in asc order by relpath. That way, it can easily be
    # determined if the previous checkout is parent of the current checkout.
    for checkout in sorted(checkouts, key=lambda x: x.relpath):
        checkout_path = Path(checkout.relpath)
        while depth_stack:
            try:
                checkout_path.relative_to(depth_stack[-1])
            except ValueError:
                # Path.relative_to returns ValueError if paths are not relative.
                depth_stack.pop()
            else:
                if len(depth_stack) >= len(res):
                    # Another depth created.
                    res.append([])
                break

        current = res[len(depth_stack)]
        current.append(checkout)
        depth_stack.append(checkout_path)

    return res


class _FetchOneResult(NamedTuple):
    """_FetchOne return value.

    Attributes:
      success (bool): True if successful.
      error (Exception): Why the fetch failed, if it did.
      project (Project): The fetched project.
      start (float): The starting time.time().
      finish (float): The ending time.time().
      skipped (bool): True if the fetch was never attempted.
    """

    success: bool
    error: Exception
    project: Project
    start: float
    finish: float
    skipped: bool = False


class _FetchResult(NamedTuple):
    """_Fetch return value.

    Attributes:
      success (bool): True if successful.
      projects (Set[str]): The names of the git directories of fetched projects.
    """

    success: bool
    projects: Set[str]


class _CheckoutOneResult(NamedTuple):
    """_CheckoutOne return value.

    Attributes:
      success (bool): True if successful.
      error (Exception): Why the checkout failed, if it did.
      project (Project): The project.
      start (float): The starting time.time().
      finish (float): The ending time.time().
      skipped (bool): True if the checkout was never attempted.
    """

    success: bool
    error: Exception
    project: Project
    start: float
    finish: float
    skipped: bool = False


def _ExecuteInParallel(jobs, func, inputs, callback):
    """Run |func| over |inputs| on up to |jobs| threads.

    |callback| receives the pool (None when run inline) and an iterator of
    results in completion order; its return value is passed back.
    """
    # A pool is not worth spinning up for one unit of work.
    if len(inputs) == 1 or jobs == 1:
        return callback(None, (func(x) for x in inputs))
    with ThreadPool(min(jobs, len(inputs))) as pool:
        return callback(pool, pool.imap_unordered(func, inputs))


class SyncEngine:
    """Drives sync passes over one client checkout.

    Args:
        client: The RepoClient to sync.
        runner: GitRunner shared by every git invocation.
        log: Logger for progress and errors.
        parser: ManifestParser used for every (re)load.
        smart_sync: SmartSync to use when smart sync is requested.
        hyper_sync: HyperSync to use when hyper sync is requested.
        superproject: Superproject to use when pinning is requested.
    """

    def __init__(
        self,
        client,
        runner=None,
        log=None,
        parser=None,
        smart_sync=None,
        hyper_sync=None,
        superproject=None,
    ):
        self.client = client
        self._log = log or logger
        self._runner = runner or GitRunner(log=self._log)
        self._parser = parser or ManifestParser(
            manifests_dir=client.manifests_dir,
            topdir=client.topdir,
            log=self._log,
        )
        self._smart_sync = smart_sync
        self._hyper_sync = hyper_sync
        self._superproject = superproject

        self._manifest = None
        self._pm = None
        self._manifest_url = None
        self._smart_manifest_data = None
        self._use_superproject = False

        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._errors = []
        self._fetch_times = FetchTimes(client.subdir)
        self._manifest_project = None
        # Object directories that received objects in this pass.
        self._gc_objdirs = set()
        self.states = {}

    @property
    def manifest(self):
        """The current manifest snapshot; loaded on first use."""
        self._EnsureLoaded()
        return self._manifest

    def _EnsureLoaded(self):
        if self._pm is None:
            self._LoadManifest(None)

    def GetProjects(self, groups=None) -> List[Project]:
        self._EnsureLoaded()
        return self._pm.GetProjects(groups)

    def GetProjectsByNames(self, names) -> List[Project]:
        self._EnsureLoaded()
        return self._pm.GetProjectsByNames(names)

    def Errors(self) -> List[str]:
        """One message per failed project of the last pass."""
        with self._lock:
            return [msg for _, msg, _ in self._errors]

    def _SetState(self, project, state):
        with self._lock:
            self.states[project.name] = state

    def _RecordError(self, project, err, opt):
        msg = str(err)
        # Errors raised by the project itself already start with its path.
        if getattr(err, "project", None) != project.name:
            msg = f"{project.relpath}: {msg}"
        if opt.verbose:
            msg += f"\n  diagnosis: {DiagnoseGitError(err)}"
        with self._lock:
            # A project is reported once, with its latest failure.
            self._errors = [e for e in self._errors if e[0] != project.name]
            self._errors.append((project.name, msg, err))
            self.states[project.name] = ProjectState.FAILED

    def _ClearError(self, project):
        with self._lock:
            self._errors = [e for e in self._errors if e[0] != project.name]

    def _LoadManifest(self, groups):
        """Load a fresh manifest snapshot and rebuild the projects from it.

        Superproject pins of this pass are applied again to the new projects.
        """
        if self._smart_manifest_data is not None:
            manifest = self._parser.ParseFromBytes(
                self._smart_manifest_data,
                groups=groups,
                base_dir=self.client.manifests_dir,
            )
        else:
            manifest = LoadManifest(
                self.client, groups=groups, parser=self._parser, log=self._log
            )
        self._manifest = manifest
        self._pm = ProjectManager(
            manifest,
            self.client.topdir,
            runner=self._runner,
            log=self._log,
            manifest_url=self._manifest_url,
        )
        if self._use_superproject:
            self._superproject.SetManifest(manifest)
            self._superproject.ApplyRevisionIds(self._pm.projects)
        for project in self._pm.projects:
            self.states.setdefault(project.name, ProjectState.MISSING)

    def _ManifestRepoIsGit(self):
        return os.path.exists(os.path.join(self.client.manifests_dir, ".git"))

    def _ResolveManifestUrl(self, opt):
        if opt.manifest_url:
            return opt.manifest_url
        if not self._ManifestRepoIsGit():
            return None
        try:
            out = self._runner.RunInDir(
                self.client.manifests_dir,
                "config",
                "--get",
                "remote.origin.url",
            )
        except GitError as e:
            self._log.debug("manifest repository has no origin: %s", e)
            return None
        return out.decode("utf-8", "replace").strip() or None

    def _GetBranch(self):
        """The branch of the manifest checkout, else the default revision."""
        if self._ManifestRepoIsGit():
            try:
                out = self._runner.RunInDir(
                    self.client.manifests_dir,
                    "rev-parse",
                    "--abbrev-ref",
                    "HEAD",
                )
            except GitError as e:
                self._log.debug("cannot read manifest branch: %s", e)
            else:
                branch = out.decode("utf-8", "replace").strip()
                if branch.startswith(R_HEADS):
                    branch = branch[len(R_HEADS) :]
                if branch and branch != "HEAD":
                    return branch
        branch = self._manifest.default.revision
        if branch and branch.startswith(R_HEADS):
            branch = branch[len(R_HEADS) :]
        return branch

    def _RetryOptions(self, opt):
        return RetryOptions(max_retries=opt.retry_fetches)

    def Sync(self, options=None):
        """Run one sync pass.

        Raises:
            InvalidArgumentsError: |options| conflict.
            ManifestParseError: The manifest cannot be loaded.
            SyncFailFastError: fail_fast is set and a project failed.
            SyncError: A phase failed, or projects failed to sync.
        """
        opt = options or SyncOptions()
        opt.Validate()

        with self._lock:
            self._errors = []
        self.states = {}
        self._cancel.clear()
        self._gc_objdirs = set()
        self._smart_manifest_data = None
        self._use_superproject = False
        self._manifest_url = self._ResolveManifestUrl(opt)

        self._LoadManifest(opt.groups)
        self._UpdateLocalState(opt)
        changed = self._ResolveRemoteManifest(opt)

        fetched = set()
        if not opt.local_only:
            fetched = self._FetchMain(opt, changed)

        if not opt.network_only:
            if opt.local_only:
                to_checkout = [p for p in self._pm.projects if p.Exists]
            else:
                to_checkout = [
                    p for p in self._pm.projects if p.gitdir in fetched
                ]
            self._Checkout(to_checkout, opt)

        if opt.auto_gc and not opt.local_only:
            self._GCProjects(self._pm.projects, opt)

        with self._lock:
            errors = [err for _, _, err in self._errors]
        if errors:
            self._log.error("Unable to fully sync the tree")
            raise SyncError(
                f"sync failed: {len(errors)} project(s) failed",
                aggregate_errors=errors,
            )
        self._log.info("sync has finished successfully.")

    def _UpdateLocalState(self, opt):
        if opt.prune:
            try:
                self.UpdateProjectList(opt)
            except RepoError as e:
                self._log.error("Updating local project lists failed.")
                raise SyncError(
                    f"cannot prune obsolete projects: {e}",
                    aggregate_errors=[e],
                ) from e
        self.UpdateCopyLinkfileList()

    def UpdateProjectList(self, opt):
        """Prune checkouts dropped from the manifest, then save project.list.

        Paths are processed in reverse order, so subfolders are deleted before
        their parent folder.  Paths that are not git checkouts, or are not
        safe to delete, are left alone.

        Raises:
            DeleteDirtyWorktreeError: A dropped checkout has local changes
                and force_remove_dirty is not set.
            DeleteWorktreeError: A dropped checkout could not be deleted.
        """
        topdir = self.client.topdir
        new_project_paths = sorted(
            {p.relpath for p in self._pm.projects if p.relpath}
        )
        project_list = ProjectList(self.client.subdir)

        for path in sorted(project_list.Load(), reverse=True):
            if path in new_project_paths:
                continue
            worktree = os.path.join(topdir, path)
            if not platform_utils.IsSafeToDelete(worktree, topdir):
                self._log.warning("%s: not safe to delete, skipping", path)
                continue
            gitdir = os.path.join(worktree, ".git")
            # If the path has already been deleted, we don't need to do it.
            if not os.path.exists(gitdir):
                if os.path.exists(worktree):
                    self._log.warning(
                        "%s: not a git checkout, leaving it in place", path
                    )
                continue
            project = Project(
                name=path,
                remote=RemoteSpec("origin"),
                relpath=path,
                worktree=worktree,
                revisionExpr="HEAD",
                gitdir=gitdir,
                topdir=topdir,
                runner=self._runner,
                log=self._log,
            )
            project.DeleteWorktree(
                verbose=opt.verbose, force=opt.force_remove_dirty
            )

        project_list.Save(new_project_paths)

    def UpdateCopyLinkfileList(self):
        """Save all dests of copyfile and linkfile, and remove stale ones.

        Raises:
            ManifestParseError: The saved list is not valid JSON.
        """
        topdir = self.client.topdir
        new_linkfile_paths = []
        new_copyfile_paths = []
        for project in self._pm.projects:
            new_linkfile_paths.extend(x.dest for x in project.linkfiles)
            new_copyfile_paths.extend(x.dest for x in project.copyfiles)

        state = CopyLinkFileList(self.client.subdir, log=self._log)
        old = state.Load()
        need_remove_files = sorted(
            (set(old["linkfile"]) - set(new_linkfile_paths))
            | (set(old["copyfile"]) - set(new_copyfile_paths))
        )
        for dest in need_remove_files:
            path = os.path.join(topdir, dest)
            if not platform_utils.IsSafeToDelete(path, topdir):
                self._log.warning("%s: not safe to delete, skipping", dest)
                continue
            if platform_utils.isdir(path) and not platform_utils.islink(path):
                continue
            # The file may already be gone.
            platform_utils.remove(path, missing_ok=True)

        state.Save(new_linkfile_paths, new_copyfile_paths)

    def _ResolveRemoteManifest(self, opt):
        """Apply smart sync, hyper sync and superproject pinning.

        Returns:
            The set of changed project names under hyper sync, else None.
        """
        changed = None
        smart_path = os.path.join(
            self.client.repodir, SMART_SYNC_MANIFEST_NAME
        )
        if opt.smart_sync or opt.smart_tag:
            smart = self._smart_sync or SmartSync(
                self.client.repodir,
                smart_tag=opt.smart_tag,
                username=opt.manifest_server_username,
                password=opt.manifest_server_password,
                timeout=opt.http_timeout,
                cancel=self._cancel,
                log=self._log,
            )
            self._smart_manifest_data = smart.Resolve(
                self._manifest, self._GetBranch()
            )
            self._LoadManifest(opt.groups)
            # The approved manifest may list other projects.
            self._UpdateLocalState(opt)
        elif os.path.isfile(smart_path):
            try:
                platform_utils.remove(smart_path)
            except OSError as e:
                self._log.error(
                    "failed to remove existing smart sync override manifest: "
                    "%s",
                    e,
                )

        if opt.hyper_sync:
            hyper = self._hyper_sync or HyperSync(
                username=opt.manifest_server_username,
                password=opt.manifest_server_password,
                timeout=opt.http_timeout,
                cancel=self._cancel,
                log=self._log,
            )
            changed = hyper.ChangedProjects(self._manifest, self._GetBranch())

        if opt.use_superproject:
            if self._superproject is None:
                self._superproject = Superproject(
                    self.client,
                    self._manifest,
                    runner=self._runner,
                    log=self._log,
                )
            self._superproject.SetManifest(self._manifest)
            result = self._superproject.UpdateProjectsRevisionId(
                self._pm.projects
            )
            self._use_superproject = True
            self._log.info(
                "superproject: pinned %d path(s), wrote %s",
                len(result.commit_ids),
                result.manifest_path,
            )
        return changed

    def _ManifestRepoProject(self):
        if not self._ManifestRepoIsGit():
            return None
        worktree = self.client.manifests_dir
        relpath = os.path.relpath(worktree, self.client.topdir)
        return Project(
            name=relpath,
            remote=RemoteSpec("origin", url=self._manifest_url),
            relpath=relpath,
            worktree=worktree,
            revisionExpr="HEAD",
            topdir=self.client.topdir,
            runner=self._runner,
            log=self._log,
        )

    def _FetchProjectList(self, opt, projects):
        """Main function of the fetch worker.

        The projects we're given share the same underlying git object store, so
        we have to fetch them in serial.
        """
        return [self._FetchOne(opt, x) for x in projects]

    def _FetchOne(self, opt, project):
        """Fetch git objects for a single project."""
        start = time.time()
        if self._cancel.is_set():
            return _FetchOneResult(False, None, project, start, start, True)

        if not project.Exists:
            self._SetState(project, ProjectState.CLONING)
        try:
            sync_result = project.Sync_NetworkHalf(
                quiet=opt.quiet,
                current_branch_only=opt.current_branch_only,
                tags=opt.tags,
                prune=opt.prune,
                retry_options=self._RetryOptions(opt),
                cancel=self._cancel,
                network_timeout=opt.network_timeout,
                git_lfs=opt.git_lfs,
            )
        except (RepoError, ManifestInvalidPathError, OSError) as e:
            self._log.error(
                "Cannot fetch %s (%s: %s)", project.name, type(e).__name__, e
            )
            return _FetchOneResult(False, e, project, start, time.time())

        if not sync_result.success:
            if isinstance(sync_result.error, OperationCancelledError):
                return _FetchOneResult(
                    False, sync_result.error, project, start, time.time(), True
                )
            self._log.error(
                "Cannot fetch %s from %s", project.name, project.remote.url
            )
        return _FetchOneResult(
            sync_result.success, sync_result.error, project, start, time.time()
        )

    def _Fetch(self, projects, opt):
        fetched = set()
        if not projects:
            return _FetchResult(True, fetched)
        pm = Progress("Fetching", len(projects), quiet=opt.quiet)

        objdir_project_map = dict()
        for project in projects:
            objdir_project_map.setdefault(project.objdir, []).append(project)
        projects_list = list(objdir_project_map.values())

        def _ProcessResults(pool, results_sets):
            ret = True
            for results in results_sets:
                for result in results:
                    project = result.project
                    if result.skipped:
                        continue
                    if result.success:
                        fetched.add(project.gitdir)
                        if project.need_gc:
                            self._gc_objdirs.add(project.objdir)
                        self._ClearError(project)
                        self._SetState(project, ProjectState.FETCHED)
                        if project is self._manifest_project:
                            self._fetch_times.SetRepo(project.last_fetch)
                        else:
                            self._fetch_times.Set(
                                project.name, project.last_fetch
                            )
                    else:
                        ret = False
                        self._RecordError(project, result.error, opt)
                    pm.update(msg=project.name)
                # Check for any errors before running any more tasks.
                # ...we'll let existing jobs finish, though.
                if not ret and opt.fail_fast:
                    self._cancel.set()
                    if pool:
                        pool.close()
                    break
            return ret

        try:
            ret = _ExecuteInParallel(
                opt.jobs_network,
                functools.partial(self._FetchProjectList, opt),
                projects_list,
                _ProcessResults,
            )
        finally:
            pm.end()
            self._fetch_times.Save()
        return _FetchResult(ret, fetched)

    def _FailFast(self, what):
        with self._lock:
            errors = [err for _, _, err in self._errors]
        self._log.error(
            "Exited sync due to %s errors.\n"
            "Local checkouts *not* updated. Resolve the errors & retry.",
            what,
        )
        raise SyncFailFastError(
            f"sync stopped at the first failure: {len(errors)} project(s) "
            "failed",
            aggregate_errors=errors,
        )

    def _FetchMain(self, opt, changed):
        """The main network fetch loop.

        Args:
            opt: SyncOptions of this pass.
            changed: Names reported by hyper sync, or None to fetch all.

        Returns:
            The git directories fetched successfully in this pass.
        """
        to_fetch = list(self._pm.projects)
        if changed is not None:
            to_fetch = [p for p in to_fetch if p.name in changed]

        rp = self._ManifestRepoProject()
        self._manifest_project = rp
        if rp is not None:
            last = self._fetch_times.GetRepo()
            now = datetime.datetime.now(datetime.timezone.utc)
            if last is None or now - last >= _ONE_DAY:
                to_fetch.insert(0, rp)

        result = self._Fetch(to_fetch, opt)
        fetched = result.projects
        if not result.success and opt.fail_fast:
            self._FailFast("fetch")

        # Iteratively fetch projects still missing a successful fetch.
        previously_missing_set = set()
        while True:
            self._LoadManifest(opt.groups)
            missing = []
            for project in self._pm.projects:
                if project.gitdir in fetched:
                    continue
                if (
                    changed is not None
                    and project.name not in changed
                    and project.Exists
                ):
                    continue
                missing.append(project)
            if not missing:
                break
            # Stop us from non-stopped fetching actually-missing repos: If set
            # of missing repos has not been changed from last fetch, we break.
            missing_set = {p.name for p in missing}
            if previously_missing_set == missing_set:
                break
            previously_missing_set = missing_set
            result = self._Fetch(missing, opt)
            fetched.update(result.projects)
            if not result.success and opt.fail_fast:
                self._FailFast("fetch")

        return fetched

    def _CheckoutOne(self, opt, project):
        """Checkout work tree for one project."""
        start = time.time()
        if self._cancel.is_set():
            return _CheckoutOneResult(False, None, project, start, start, True)

        error = None
        try:
            project.Sync_LocalHalf(
                force_sync=opt.force_sync,
                quiet=opt.quiet,
                retry_options=self._RetryOptions(opt),
                cancel=self._cancel,
                hooks_dir=self.client.hooks_dir,
            )
        except OperationCancelledError as e:
            return _CheckoutOneResult(
                False, e, project, start, time.time(), True
            )
        except (RepoError, ManifestInvalidPathError, OSError) as e:
            self._log.error(
                "Cannot checkout %s: %s: %s", project.name, type(e).__name__, e
            )
            error = e
        return _CheckoutOneResult(
            error is None, error, project, start, time.time()
        )

    def _Checkout(self, all_projects, opt):
        """Checkout projects listed in all_projects, parents first."""
        # Only checkout projects with worktrees.
        all_projects = [x for x in all_projects if x.worktree]
        pm = Progress("Checking out", len(all_projects), quiet=opt.quiet)

        def _ProcessResults(pool, results):
            ret = True
            for result in results:
                project = result.project
                if result.skipped:
                    continue
                if result.success:
                    self._SetState(project, ProjectState.CHECKED_OUT)
                else:
                    ret = False
                    self._RecordError(project, result.error, opt)
                    if opt.fail_fast:
                        self._cancel.set()
                        if pool:
                            pool.close()
                        return ret
                pm.update(msg=project.name)
            return ret

        try:
            for projects in _SafeCheckoutOrder(all_projects):
                if not projects:
                    continue
                ok = _ExecuteInParallel(
                    opt.jobs_checkout,
                    functools.partial(self._CheckoutOne, opt),
                    projects,
                    _ProcessResults,
                )
                if not ok and opt.fail_fast:
                    self._FailFast("checkout")
        finally:
            pm.end()

        for project in all_projects:
            if self.states.get(project.name) == ProjectState.CHECKED_OUT:
                self._SetState(project, ProjectState.SYNCED)

    def _GCProjects(self, projects, opt):
        """Run `git gc --auto` once per object directory that needs it."""
        tidy = {}
        for project in projects:
            if project.objdir not in self._gc_objdirs:
                continue
            if project.objdir not in tidy:
                # Projects are rebuilt on reload; the flag is kept per objdir.
                project.need_gc = True
                tidy[project.objdir] = project
        if not tidy:
            return

        pm = Progress("Garbage collecting", len(tidy), quiet=opt.quiet)
        try:
            for project in tidy.values():
                try:
                    project.GC()
                except GitError as e:
                    self._log.warning("%s: git gc failed: %s", project.name, e)
                pm.update(msg=project.name)
        finally:
            pm.end()
