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

"""Combine several manifests into one.

Merging is order sensitive: later manifests override projects of earlier
ones, while remotes and <remove-project> entries keep their first
definition.
"""

import copy

from error import MergeError


def Merge(manifests):
    """Merge |manifests| into a single manifest.

    The first manifest is the base.  It is copied, so none of the inputs are
    modified; a single manifest is returned as is.

    Raises:
        MergeError: |manifests| is empty.
    """
    if not manifests:
        raise MergeError("no manifests to merge")
    if len(manifests) == 1:
        return manifests[0]

    dest = manifests[0].Copy()
    for src in manifests[1:]:
        _MergeRemotes(dest, src)
        _MergeProjects(dest, src)
        _MergeRemoveProjects(dest, src)
        for key, value in src.custom_attrs.items():
            dest.custom_attrs.setdefault(key, value)
    return dest


def _MergeRemotes(dest, src):
    names = {r.name for r in dest.remotes}
    for remote in src.remotes:
        if remote.name in names:
            continue
        dest.remotes.append(copy.deepcopy(remote))
        names.add(remote.name)


def _MergeProjects(dest, src):
    removed = {rp.name for rp in dest.remove_projects}
    for project in src.projects:
        if project.name in removed:
            continue
        project = copy.deepcopy(project)
        for i, existing in enumerate(dest.projects):
            if existing.name == project.name:
                dest.projects[i] = project
                break
        else:
            dest.projects.append(project)


def _MergeRemoveProjects(dest, src):
    names = {rp.name for rp in dest.remove_projects}
    for rp in src.remove_projects:
        if rp.name in names:
            continue
        dest.remove_projects.append(copy.deepcopy(rp))
        names.add(rp.name)
        dest.projects = [
            p
            for p in dest.projects
            if not (
                p.name == rp.name and (not rp.path or p.relpath == rp.path)
            )
        ]
