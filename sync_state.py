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

"""State files kept in the manifest subdir between sync runs."""

import datetime
import json
import os
import threading

from error import ManifestParseError
import platform_utils
from repo_logging import RepoLogger


PROJECT_LIST_NAME = "project.list"
COPY_LINK_FILES_NAME = "copy-link-files.json"
FETCH_TIMES_NAME = ".repo_fetchtimes.json"

# Keys of the manifest repository and of the project map in the fetch times
# file.
REPO_KEY = "repo"
PROJECTS_KEY = "projects"

logger = RepoLogger(__file__)


def _FormatTime(t):
    return t.astimezone(datetime.timezone.utc).isoformat()


def _ParseTime(value):
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    t = datetime.datetime.fromisoformat(value)
    if t.tzinfo is None:
        t = t.replace(tzinfo=datetime.timezone.utc)
    return t


class ProjectList:
    """project.list: the sorted project paths checked out by the last sync."""

    def __init__(self, subdir):
        self.path = os.path.join(subdir, PROJECT_LIST_NAME)

    def Load(self):
        if not os.path.exists(self.path):
            return []
        with open(self.path) as fd:
            return [x for x in fd.read().split("\n") if x]

    def Save(self, paths):
        paths = sorted(paths)
        with open(self.path, "w") as fd:
            fd.write("\n".join(paths))
            fd.write("\n")


class CopyLinkFileList:
    """copy-link-files.json: destinations written by <copyfile>/<linkfile>."""

    def __init__(self, subdir, log=None):
        self.path = os.path.join(subdir, COPY_LINK_FILES_NAME)
        self._log = log or logger

    def Load(self):
        """Returns {"linkfile": [...], "copyfile": [...]}.

        Raises:
            ManifestParseError: The file is not valid JSON; it is removed so
                the next run starts over.
        """
        if not os.path.exists(self.path):
            return {"linkfile": [], "copyfile": []}
        with open(self.path, "rb") as fp:
            try:
                data = json.load(fp)
            except ValueError as e:
                self._log.error(
                    "error: %s is not a json formatted file.", self.path
                )
                platform_utils.remove(self.path, missing_ok=True)
                raise ManifestParseError(
                    f"{self.path}: invalid json: {e}"
                ) from e
        return {
            "linkfile": list(data.get("linkfile", [])),
            "copyfile": list(data.get("copyfile", [])),
        }

    def Save(self, linkfiles, copyfiles):
        with open(self.path, "w", encoding="utf-8") as fp:
            json.dump(
                {"linkfile": list(linkfiles), "copyfile": list(copyfiles)}, fp
            )


class FetchTimes:
    """.repo_fetchtimes.json: when each project was last fetched.

    The file holds {"repo": <time>, "projects": {<name>: <time>}} with RFC
    3339 timestamps.  "repo" is the manifest repository; projects have a map
    of their own so one named "repo" cannot shadow it.  Safe to use from
    several fetch workers at once.
    """

    # Key of the manifest repository in the in-memory maps.
    _REPO = None

    def __init__(self, subdir):
        self._path = os.path.join(subdir, FETCH_TIMES_NAME)
        self._lock = threading.Lock()
        self._saved = None
        self._seen = {}

    def _Load(self):
        if self._saved is not None:
            return
        try:
            with open(self._path) as f:
                raw = json.load(f)
            saved = {
                k: _ParseTime(v) for k, v in raw.get(PROJECTS_KEY, {}).items()
            }
            if REPO_KEY in raw:
                saved[self._REPO] = _ParseTime(raw[REPO_KEY])
            self._saved = saved
        except (OSError, ValueError, TypeError, AttributeError):
            platform_utils.remove(self._path, missing_ok=True)
            self._saved = {}

    def _Get(self, key):
        with self._lock:
            self._Load()
            if key in self._seen:
                return self._seen[key]
            return self._saved.get(key)

    def _Set(self, key, t):
        with self._lock:
            self._seen[key] = t or datetime.datetime.now(
                datetime.timezone.utc
            )

    def Get(self, name):
        """Last fetch time of project |name|, or None if never fetched."""
        return self._Get(name)

    def Set(self, name, t=None):
        self._Set(name, t)

    def GetRepo(self):
        """Last fetch time of the manifest repository."""
        return self._Get(self._REPO)

    def SetRepo(self, t=None):
        self._Set(self._REPO, t)

    def Save(self):
        with self._lock:
            self._Load()
            data = dict(self._saved)
            data.update(self._seen)
            out = {
                PROJECTS_KEY: {
                    k: _FormatTime(v)
                    for k, v in data.items()
                    if k is not self._REPO
                }
            }
            if self._REPO in data:
                out[REPO_KEY] = _FormatTime(data[self._REPO])
            try:
                with open(self._path, "w") as f:
                    json.dump(out, f, indent=2, sort_keys=True)
            except (OSError, TypeError):
                platform_utils.remove(self._path, missing_ok=True)
