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

"""Talk to a manifest server for smart sync and hyper sync.

Smart sync replaces the manifest with one the server approved for a branch
(or a tag).  Hyper sync asks the server which projects changed so only
those are fetched.

Examples:
  data = SmartSync(client.repodir).Resolve(manifest, "main")
  names = HyperSync().ChangedProjects(manifest, "main")
"""

import base64
import json
import netrc
import os
import urllib.error
import urllib.parse
import urllib.request
from typing import List, Optional

from error import ManifestServerError
from git_command import user_agent
from repo_logging import RepoLogger
from retry import RetryOptions
from retry import RetryWithBackoff


SMART_SYNC_MANIFEST_NAME = "smart_sync_override.xml"
DEFAULT_HTTP_TIMEOUT_SEC = 30
# Transport failures are retried; HTTP error statuses are not.
HTTP_MAX_RETRIES = 2
HTTP_RETRY_DELAY_SEC = 1.0

logger = RepoLogger(__file__)


def GetSyncTarget(environ=None) -> Optional[str]:
    """The build target smart sync asks the server about, if any."""
    environ = os.environ if environ is None else environ
    if "SYNC_TARGET" in environ:
        return environ["SYNC_TARGET"]
    if "TARGET_PRODUCT" in environ and "TARGET_BUILD_VARIANT" in environ:
        return "%s-%s" % (
            environ["TARGET_PRODUCT"],
            environ["TARGET_BUILD_VARIANT"],
        )
    return None


def _NetrcCredentials(url, log):
    try:
        info = netrc.netrc()
    except OSError:
        # .netrc file does not exist or could not be opened.
        return None, None
    except netrc.NetrcParseError as e:
        log.error("Error parsing .netrc file: %s", e)
        return None, None

    hostname = urllib.parse.urlparse(url).hostname
    if not hostname:
        return None, None
    auth = info.authenticators(hostname)
    if not auth:
        log.debug("No credentials found for %s in .netrc", hostname)
        return None, None
    username, _account, password = auth
    return username, password


def EmbedCredentials(url, username=None, password=None, log=None):
    """Put user:password into |url| unless it already carries credentials.

    Explicit credentials win over ~/.netrc.
    """
    log = log or logger
    if "@" in url:
        return url
    if not (username and password):
        username, password = _NetrcCredentials(url, log)
    if username and password:
        user = urllib.parse.quote(username, safe="")
        pw = urllib.parse.quote(password, safe="")
        return url.replace("://", f"://{user}:{pw}@", 1)
    return url


def _IsTransportError(err):
    if isinstance(err, urllib.error.HTTPError):
        return False
    return isinstance(err, (urllib.error.URLError, OSError))


class ManifestServerClient:
    """Minimal HTTP client for the manifest server API.

    Args:
        url: Base URL of the server, optionally with user:password@.
        timeout: Seconds to wait for each request.
        cancel: threading.Event aborting retries.
        opener: Callable with urllib.request.urlopen's signature.
        log: Logger for retries.
    """

    def __init__(
        self,
        url,
        timeout=DEFAULT_HTTP_TIMEOUT_SEC,
        cancel=None,
        opener=None,
        log=None,
    ):
        self.url = url
        self.timeout = timeout
        self._cancel = cancel
        self._opener = opener or urllib.request.urlopen
        self._log = log or logger

    def _Request(self, path, params):
        parts = urllib.parse.urlsplit(self.url)
        headers = {"User-Agent": user_agent.repo}
        netloc = parts.netloc
        if parts.username is not None:
            creds = "%s:%s" % (
                urllib.parse.unquote(parts.username),
                urllib.parse.unquote(parts.password or ""),
            )
            token = base64.b64encode(creds.encode("utf-8")).decode("ascii")
            headers["Authorization"] = f"Basic {token}"
            netloc = netloc.rsplit("@", 1)[1]
        base = urllib.parse.urlunsplit(
            (parts.scheme, netloc, parts.path.rstrip("/"), "", "")
        )
        query = urllib.parse.urlencode(
            [(k, v) for k, v in params if v is not None]
        )
        return urllib.request.Request(
            f"{base}{path}?{query}", headers=headers
        )

    def _Get(self, path, params) -> bytes:
        request = self._Request(path, params)

        def _fetch(attempt):
            with self._opener(request, timeout=self.timeout) as resp:
                status = resp.getcode()
                body = resp.read()
            if status != 200:
                raise ManifestServerError(
                    f"manifest server {request.full_url}: HTTP {status}"
                )
            return body

        options = RetryOptions(
            max_retries=HTTP_MAX_RETRIES,
            base_delay=HTTP_RETRY_DELAY_SEC,
            should_retry=_IsTransportError,
        )
        try:
            return RetryWithBackoff(
                self._cancel, options, _fetch, log=self._log
            )
        except urllib.error.HTTPError as e:
            raise ManifestServerError(
                f"manifest server {request.full_url}: HTTP {e.code} {e.reason}",
                aggregate_errors=[e],
            )
        except (urllib.error.URLError, OSError) as e:
            raise ManifestServerError(
                f"cannot connect to manifest server {request.full_url}: {e}",
                aggregate_errors=[e],
            )

    def GetApprovedManifest(self, branch, target=None) -> bytes:
        return self._Get(
            "/api/GetApprovedManifest", [("branch", branch), ("target", target)]
        )

    def GetManifest(self, tag) -> bytes:
        return self._Get("/api/GetManifest", [("tag", tag)])

    def GetChangedProjects(self, branch) -> List[str]:
        data = self._Get("/api/GetChangedProjects", [("branch", branch)])
        try:
            names = json.loads(data)
        except ValueError as e:
            raise ManifestServerError(
                f"manifest server returned invalid changed projects: {e}"
            )
        if not isinstance(names, list) or not all(
            isinstance(n, str) for n in names
        ):
            raise ManifestServerError(
                "manifest server returned invalid changed projects: "
                "expected a list of names"
            )
        return names


class _ManifestServerStrategy:
    def __init__(
        self,
        username=None,
        password=None,
        timeout=DEFAULT_HTTP_TIMEOUT_SEC,
        cancel=None,
        client_factory=ManifestServerClient,
        log=None,
    ):
        self.username = username
        self.password = password
        self.timeout = timeout
        self.cancel = cancel
        self._client_factory = client_factory
        self._log = log or logger

    def _MakeClient(self, manifest):
        server = manifest.manifest_server
        if not server:
            raise ManifestServerError(
                "cannot smart sync: no manifest server defined in manifest"
            )
        self._log.info("Using manifest server %s", server)
        url = EmbedCredentials(
            server, self.username, self.password, log=self._log
        )
        return self._client_factory(
            url, timeout=self.timeout, cancel=self.cancel, log=self._log
        )


class SmartSync(_ManifestServerStrategy):
    """Replace the manifest with the one the manifest server approved.

    Args:
        repodir: The .repo directory; the fetched manifest is saved there.
        smart_tag: Ask for the manifest of this tag instead of a branch.
    """

    def __init__(self, repodir, smart_tag=None, **kwargs):
        super().__init__(**kwargs)
        self.repodir = repodir
        self.smart_tag = smart_tag

    @property
    def manifest_path(self):
        return os.path.join(self.repodir, SMART_SYNC_MANIFEST_NAME)

    def Resolve(self, manifest, branch) -> bytes:
        """Fetch the approved manifest and return its raw bytes.

        Raises:
            ManifestServerError: No server is configured, it could not be
                reached, or the result could not be saved.
        """
        client = self._MakeClient(manifest)
        if self.smart_tag:
            data = client.GetManifest(self.smart_tag)
        else:
            data = client.GetApprovedManifest(branch, GetSyncTarget())

        try:
            with open(self.manifest_path, "wb") as f:
                f.write(data)
        except OSError as e:
            raise ManifestServerError(
                f"cannot write manifest to {self.manifest_path}:\n{e}",
                aggregate_errors=[e],
            )
        return data


class HyperSync(_ManifestServerStrategy):
    """Restrict fetching to the projects the manifest server reports."""

    def ChangedProjects(self, manifest, branch):
        client = self._MakeClient(manifest)
        names = set(client.GetChangedProjects(branch))
        self._log.info("hyper sync: %d changed project(s)", len(names))
        return names
