# Copyright (C) 2021 The Android Open Source Project
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

"""Provide functionality to get projects and their commit ids from Superproject.

For more information on superproject, check out:
https://en.wikibooks.org/wiki/Git/Submodules_and_Superprojects

Examples:
  superproject = Superproject(client, manifest)
  UpdateProjectsResult = superproject.UpdateProjectsRevisionId(projects)
"""

import os
from typing import Dict, NamedTuple

from error import GitError
from error import SuperprojectError
from git_command import GitRunner
from project import IsId
from repo_logging import RepoLogger


_SUPERPROJECT_DIR_NAME = "exp-superproject"
_SUPERPROJECT_GIT_NAME = "superproject"
_SUPERPROJECT_MANIFEST_NAME = "superproject_override.xml"
# git ls-tree mode of a submodule commit.
_GITLINK_MODE = "160000"

logger = RepoLogger(__file__)


class UpdateProjectsResult(NamedTuple):
    """Return the overriding manifest file and the pinned commit ids."""

    # Path name of the overriding manifest file.
    manifest_path: str
    # A dictionary with the project paths/commit ids of the superproject.
    commit_ids: Dict[str, str]


def ParseLsTree(data):
    """Map project path to commit id for every gitlink in `ls-tree -z` output.

    Lines look like the following; only '160000' entries are kept:

    160000 commit 2c2724cb36cd5a9cec6c852c681efc3b7c6b86ea\tart\x00
    100644 blob acc2cbdf438f9d2141f0ae424cec1d8fc4b5d97f\tREADME\x00
    """
    if isinstance(data, bytes):
        data = data.decode("utf-8", "replace")
    commit_ids = {}
    for line in data.split("\x00"):
        if not line:
            continue
        meta, sep, path = line.partition("\t")
        ls_data = meta.split()
        if not sep or len(ls_data) != 3:
            continue
        if ls_data[0] == _GITLINK_MODE:
            commit_ids[path] = ls_data[2]
    return commit_ids


class Superproject:
    """Get commit ids from superproject.

    Keeps a local clone of the superproject named by the manifest's
    superproject-remote/superproject-branch attributes.  Every gitlink in its
    tree pins the project at the same path to a commit.
    """

    def __init__(
        self,
        client,
        manifest,
        runner=None,
        log=None,
        superproject_dir=_SUPERPROJECT_DIR_NAME,
    ):
        """Initializes superproject.

        Args:
            client: The RepoClient whose .repo directory holds the clone.
            manifest: A Manifest object that is to be written to a file.
            runner: GitRunner for all git calls.
            log: Logger for progress messages.
            superproject_dir: Relative path under the .repo directory to
                checkout superproject.
        """
        self._project_commit_ids = None
        self._manifest = manifest
        self._runner = runner or GitRunner()
        self._log = log or logger
        self._superproject_path = os.path.join(
            client.repodir, superproject_dir
        )
        self._work_git = os.path.join(
            self._superproject_path, _SUPERPROJECT_GIT_NAME
        )
        self._manifest_path = os.path.join(
            self._superproject_path, _SUPERPROJECT_MANIFEST_NAME
        )

    @property
    def remote_url(self):
        return self._manifest.superproject_remote

    @property
    def branch(self):
        return self._manifest.superproject_branch

    @property
    def project_commit_ids(self):
        """Returns a dictionary of projects and their commit ids."""
        return self._project_commit_ids

    @property
    def manifest_path(self):
        """Returns the manifest path if the path exists or None."""
        return (
            self._manifest_path if os.path.exists(self._manifest_path) else None
        )

    def SetManifest(self, manifest):
        """Use |manifest| for the next sync, e.g. after a reload."""
        self._manifest = manifest

    def _Git(self, *args):
        try:
            return self._runner.RunInDir(self._work_git, *args)
        except GitError as e:
            raise SuperprojectError(
                f"superproject branch: {self.branch} url: {self.remote_url}: "
                f"git {' '.join(args)} failed: {e}",
                aggregate_errors=[e],
            )

    def _Init(self):
        """Sets up a local Git repository to get a copy of a superproject."""
        if os.path.isdir(os.path.join(self._work_git, ".git")):
            return
        self._log.info(
            "%s: Performing initial setup for superproject; this might "
            "take several minutes.",
            self._work_git,
        )
        try:
            os.makedirs(self._work_git, exist_ok=True)
        except OSError as e:
            raise SuperprojectError(
                f"cannot create {self._work_git}: {e}", aggregate_errors=[e]
            )
        self._Git("init", "-q")

    def _SetRemote(self):
        remotes = self._Git("remote").decode("utf-8", "replace").split()
        if "origin" in remotes:
            self._Git("remote", "set-url", "origin", self.remote_url)
        else:
            self._Git("remote", "add", "origin", self.remote_url)

    def Sync(self):
        """Gets a local copy of a superproject for the manifest.

        Raises:
            SuperprojectError: The manifest names no superproject, or any git
                step failed.
        """
        if not self.remote_url or not self.branch:
            raise SuperprojectError(
                "superproject is not defined in manifest: "
                f"{self._manifest.path}: both superproject-remote and "
                "superproject-branch are required"
            )
        self._Init()
        self._SetRemote()
        self._Git("fetch", "origin", self.branch)
        self._Git("checkout", "-f", "FETCH_HEAD")

    def _GetAllProjectsCommitIds(self):
        """Get commit ids for all projects from superproject and save them.

        Commit ids are saved in _project_commit_ids.
        """
        self.Sync()
        data = self._Git("ls-tree", "-z", "-r", "HEAD")
        self._project_commit_ids = ParseLsTree(data)
        self._log.debug(
            "superproject: %d project commit ids",
            len(self._project_commit_ids),
        )
        return self._project_commit_ids

    def _WriteManifestFile(self, revisions):
        """Writes manifest to a file.

        Returns:
            manifest_path: Path name of the file into which manifest is written.
        """
        manifest_str = self._manifest.ToXml(revisions=revisions).toxml()
        try:
            with open(self._manifest_path, "w", encoding="utf-8") as fp:
                fp.write(manifest_str)
        except OSError as e:
            raise SuperprojectError(
                f"cannot write manifest to : {self._manifest_path} {e}",
                aggregate_errors=[e],
            )
        return self._manifest_path

    @staticmethod
    def _SkipUpdatingProjectRevisionId(project):
        """Checks if a project's revision id needs to be updated or not.

        Projects without a path, and projects whose manifest revision already
        is a commit id, are left alone.
        """
        if not project.relpath:
            return True
        return IsId(project.revisionExpr)

    def ApplyRevisionIds(self, projects):
        """Pin |projects| to the commit ids of the last sync.

        Returns:
            {project name: commit id} of the pinned projects.
        """
        commit_ids = self._project_commit_ids or {}
        revisions = {}
        for project in projects:
            if self._SkipUpdatingProjectRevisionId(project):
                continue
            commit_id = commit_ids.get(project.relpath)
            if commit_id:
                project.SetRevisionId(commit_id)
                revisions[project.name] = commit_id
        return revisions

    def UpdateProjectsRevisionId(self, projects):
        """Update revisionId of every project in projects with the commit id.

        Projects absent from the superproject tree stay unpinned.

        Args:
            projects: a list of projects whose revisionId needs to be updated.

        Returns:
            UpdateProjectsResult

        Raises:
            SuperprojectError: Fetching the superproject or writing the
                override manifest failed.
        """
        commit_ids = self._GetAllProjectsCommitIds()
        revisions = self.ApplyRevisionIds(projects)

        missing = [
            p.relpath
            for p in projects
            if not self._SkipUpdatingProjectRevisionId(p)
            and p.name not in revisions
        ]
        if missing:
            self._log.warning(
                "superproject has no commit ids for: %s", ", ".join(missing)
            )

        manifest_path = self._WriteManifestFile(revisions)
        return UpdateProjectsResult(manifest_path, commit_ids)
