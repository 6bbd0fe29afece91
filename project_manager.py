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

"""Build Project objects out of a resolved manifest."""

import os
from typing import List

from error import ManifestParseError
from error import NoSuchProjectError
from git_command import GitRunner
from manifest_xml import JoinUrl
from manifest_xml import ResolveFetchUrl
from project import Project
from project import RemoteSpec
from repo_logging import RepoLogger


logger = RepoLogger(__file__)


class ProjectManager:
    """Owns the Project objects of one manifest snapshot.

    Args:
        manifest: The resolved Manifest.
        topdir: Top of the client checkout; project paths are relative to it.
        runner: GitRunner handed to every project.
        log: Logger handed to every project.
        manifest_url: URL of the manifest repository, used to resolve
            relative remote fetch URLs.
    """

    def __init__(
        self, manifest, topdir, runner=None, log=None, manifest_url=None
    ):
        self.manifest = manifest
        self.topdir = os.path.abspath(topdir)
        self._runner = runner or GitRunner()
        self._log = log or logger
        self._manifest_url = manifest_url
        self._projects = [self._MakeProject(p) for p in manifest.projects]

    def _RemoteSpec(self, xml_project):
        remote = self.manifest.GetRemote(xml_project.remote)
        if remote is None:
            self._log.warning(
                "%s: remote %r is not declared in the manifest",
                xml_project.name,
                xml_project.remote,
            )
            return RemoteSpec(
                xml_project.remote or "origin",
                url=xml_project.remote_url,
                orig_name=xml_project.remote,
            )
        fetch = remote.fetch
        if self._manifest_url:
            fetch = ResolveFetchUrl(fetch, self._manifest_url)
        return RemoteSpec(
            remote.git_name,
            url=JoinUrl(fetch, xml_project.name),
            orig_name=remote.name,
        )

    def _MakeProject(self, xml_project):
        if not xml_project.revision:
            raise ManifestParseError(
                f"no revision for project {xml_project.name}"
            )
        relpath = xml_project.relpath
        worktree = os.path.join(self.topdir, relpath)
        project = Project(
            name=xml_project.name,
            remote=self._RemoteSpec(xml_project),
            relpath=relpath,
            worktree=worktree,
            revisionExpr=xml_project.revision,
            topdir=self.topdir,
            groups=xml_project.groups,
            sync_c=xml_project.sync_c,
            sync_s=xml_project.sync_s,
            clone_depth=xml_project.clone_depth,
            runner=self._runner,
            log=self._log,
        )
        for c in xml_project.copyfiles:
            project.AddCopyFile(c.src, c.dest)
        for lf in xml_project.linkfiles:
            project.AddLinkFile(lf.src, lf.dest)
        return project

    @property
    def projects(self) -> List[Project]:
        return list(self._projects)

    def GetProject(self, name):
        for p in self._projects:
            if p.name == name:
                return p
        return None

    def GetProjects(self, groups=None) -> List[Project]:
        """Projects matching |groups|; None, [] or ["all"] returns all."""
        return [p for p in self._projects if p.MatchesGroups(groups)]

    def GetProjectsByNames(self, names) -> List[Project]:
        """Projects named by manifest name or by path, in the given order.

        Raises:
            NoSuchProjectError: A name matches no project.
        """
        ret = []
        for name in names:
            path = os.path.normpath(name.rstrip("/\\"))
            matched = [
                p
                for p in self._projects
                if p.name == name or os.path.normpath(p.relpath) == path
            ]
            if not matched:
                raise NoSuchProjectError(name)
            for p in matched:
                if p not in ret:
                    ret.append(p)
        return ret
