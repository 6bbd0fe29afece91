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

"""Manifest model and parser.

A manifest is parsed into plain model objects (Manifest, XmlRemote,
XmlProject, ...).  Every element keeps the attributes it does not know about
in |custom_attrs| so they survive a round trip through ToXml().

Examples:
  parser = ManifestParser(manifests_dir=client.manifests_dir)
  manifest = parser.ParseFromFile(client.manifest_file, groups=["default"])
"""

import copy
import json
import os
import re
import urllib.parse
import xml.dom.minidom
import xml.parsers.expat
from typing import Dict, List, Optional

from error import IncludeResolutionError
from error import ManifestParseError
from error import NoManifestException
from manifest_merge import Merge
from repo_logging import RepoLogger


MANIFEST_FILE_NAME = "manifest.xml"
MANIFESTS_DIR_NAME = "manifests"
LOCAL_MANIFESTS_DIR_NAME = "local_manifests"
REPO_DIR_NAME = ".repo"

# Root attributes consulted by the superproject resolver.
SUPERPROJECT_REMOTE_ATTR = "superproject-remote"
SUPERPROJECT_BRANCH_ATTR = "superproject-branch"
MANIFEST_SERVER_ATTR = "manifest-server"

# Attributes every element understands; anything else is a custom attribute.
KNOWN_ATTRS = {
    "manifest": frozenset(),
    "remote": frozenset(
        {"name", "fetch", "review", "revision", "alias", "pushurl"}
    ),
    "default": frozenset(
        {
            "remote",
            "revision",
            "sync",
            "dest-branch",
            "upstream",
            "sync-j",
            "sync-c",
            "sync-s",
            "sync-tags",
        }
    ),
    "project": frozenset(
        {
            "name",
            "path",
            "remote",
            "revision",
            "upstream",
            "dest-branch",
            "groups",
            "sync-c",
            "sync-s",
            "clone-depth",
            "references",
        }
    ),
    "copyfile": frozenset({"src", "dest"}),
    "linkfile": frozenset({"src", "dest"}),
    "include": frozenset({"name", "groups", "revision"}),
    "remove-project": frozenset({"name", "path", "optional"}),
    "extend-project": frozenset(
        {"name", "path", "groups", "revision", "remote"}
    ),
    "manifest-server": frozenset({"url"}),
}

# urljoin gets confused if the scheme is not known.
urllib.parse.uses_relative.extend(
    ["ssh", "git", "persistent-https", "sso", "rpc"]
)
urllib.parse.uses_netloc.extend(
    ["ssh", "git", "persistent-https", "sso", "rpc"]
)

logger = RepoLogger(__file__)


def XmlBool(node, attr, default=None, log=None):
    """Determine boolean value of |node|'s |attr|.

    Invalid values will issue a non-fatal warning.

    Args:
        node: XML node whose attributes we access.
        attr: The attribute to access.
        default: If the attribute is not set (value is empty), then use this.
        log: Logger for the warning.

    Returns:
        True if the attribute is a valid string representing true.
        False if the attribute is a valid string representing false.
        |default| otherwise.
    """
    value = node.getAttribute(attr)
    s = value.lower()
    if s == "":
        return default
    elif s in {"yes", "true", "1"}:
        return True
    elif s in {"no", "false", "0"}:
        return False
    else:
        (log or logger).warning(
            'manifest: %s="%s": ignoring invalid XML boolean', attr, value
        )
        return default


def XmlInt(node, attr, default=None):
    """Determine integer value of |node|'s |attr|.

    Raises:
        ManifestParseError: The number is invalid.
    """
    value = node.getAttribute(attr)
    if not value:
        return default

    try:
        return int(value)
    except ValueError:
        raise ManifestParseError(f'manifest: invalid {attr}="{value}" integer')


def ParseList(field):
    """Parse fields that contain flattened lists.

    These are comma separated; each element is trimmed and empty elements
    are discarded.
    """
    if not field:
        return []
    return [x.strip() for x in field.split(",") if x.strip()]


_BRACED_VAR_RE = re.compile(rb"\$\{([^}]+)\}")
_BARE_VAR_RE = re.compile(rb"\$([a-zA-Z_][a-zA-Z0-9_]*)")


def ExpandVariables(data, environ=None):
    """Replace ${VAR} and $VAR in |data| with values from |environ|.

    Names that are not set are left exactly as written.  |data| may be str
    or bytes; the result has the same type.
    """
    if environ is None:
        environ = os.environ
    is_str = isinstance(data, str)
    if is_str:
        data = data.encode("utf-8")

    def _Replace(m):
        value = environ.get(m.group(1).decode("utf-8", "replace"))
        if value is None:
            return m.group(0)
        return value.encode("utf-8")

    data = _BRACED_VAR_RE.sub(_Replace, data)
    data = _BARE_VAR_RE.sub(_Replace, data)
    return data.decode("utf-8") if is_str else data


def JoinUrl(base, name):
    """Join a remote fetch base and a project name with exactly one slash."""
    if not base:
        return name
    return base.rstrip("/") + "/" + name.lstrip("/")


def ResolveFetchUrl(fetch, manifest_url):
    """Resolve a relative |fetch| URL (like "..") against |manifest_url|."""
    if fetch is None:
        return ""
    url = fetch.rstrip("/")
    if not manifest_url:
        return url
    manifest_url = manifest_url.rstrip("/")
    # urljoin will gets confused over quite a few things.  The ones we care
    # about here are:
    # * no scheme in the base url, like <hostname:port>
    # We handle no scheme by replacing it with an obscure protocol, gopher
    # and then replacing it with the original when we are done.
    if manifest_url.find(":") != manifest_url.find("/") - 1:
        url = urllib.parse.urljoin("gopher://" + manifest_url + "/", url)
        url = re.sub(r"^gopher://", "", url)
    else:
        url = urllib.parse.urljoin(manifest_url + "/", url)
    return url


def MatchesGroups(project_groups, requested):
    """Whether a project carrying |project_groups| passes |requested|.

    An empty request or one naming "all" keeps everything, as does a project
    without any groups.  Otherwise one of the project's groups must be
    requested.  Requested names starting with "-" exclude a group instead.
    """
    requested = [g.strip() for g in requested or [] if g and g.strip()]
    if not requested or "all" in requested:
        return True
    if not project_groups:
        return True

    groups = {g.strip() for g in project_groups if g.strip()}
    include = {g for g in requested if not g.startswith("-")}
    exclude = {g[1:] for g in requested if g.startswith("-")}
    if groups & exclude:
        return False
    if not include:
        return True
    return bool(groups & include)


def _CustomAttrs(node, element=None):
    known = KNOWN_ATTRS.get(element or node.nodeName, frozenset())
    attrs = node.attributes
    ret = {}
    for i in range(attrs.length):
        item = attrs.item(i)
        if item.name not in known:
            ret[item.name] = item.value
    return ret


def _SetCustomAttrs(e, custom_attrs):
    for name in sorted(custom_attrs):
        e.setAttribute(name, custom_attrs[name])


class XmlRemote:
    """A <remote> element."""

    def __init__(
        self,
        name,
        fetch=None,
        review=None,
        revision=None,
        alias=None,
        pushurl=None,
        custom_attrs=None,
    ):
        self.name = name
        self.fetch = fetch
        self.review = review
        self.revision = revision
        self.alias = alias
        self.pushurl = pushurl
        self.custom_attrs = dict(custom_attrs or {})

    @property
    def git_name(self):
        """The remote name used inside project checkouts."""
        return self.alias or self.name

    def __eq__(self, other):
        if not isinstance(other, XmlRemote):
            return False
        return self.__dict__ == other.__dict__

    def __repr__(self):
        return f"<XmlRemote {self.name} {self.fetch}>"


class XmlDefault:
    """Project defaults within the manifest."""

    def __init__(self, custom_attrs=None):
        self.remote = None
        self.revision = None
        self.sync = None
        self.dest_branch = None
        self.upstream = None
        self.sync_j = None
        self.sync_c = False
        self.sync_s = False
        self.sync_tags = True
        self.custom_attrs = dict(custom_attrs or {})

    def __eq__(self, other):
        if not isinstance(other, XmlDefault):
            return False
        return self.__dict__ == other.__dict__


class _XmlFileSpec:
    element = None

    def __init__(self, src, dest, custom_attrs=None):
        self.src = src
        self.dest = dest
        self.custom_attrs = dict(custom_attrs or {})

    def __eq__(self, other):
        if not isinstance(other, type(self)):
            return False
        return self.__dict__ == other.__dict__

    def __repr__(self):
        return f"<{self.element} {self.src} -> {self.dest}>"


class XmlCopyFile(_XmlFileSpec):
    """A <copyfile> element."""

    element = "copyfile"


class XmlLinkFile(_XmlFileSpec):
    """A <linkfile> element."""

    element = "linkfile"


class XmlProject:
    """A <project> element.

    |path|, |remote| and |revision| hold the values written in the XML until
    the manifest is resolved, after which they hold the effective values.
    """

    def __init__(
        self,
        name,
        path=None,
        remote=None,
        revision=None,
        groups=None,
        custom_attrs=None,
    ):
        self.name = name
        self.path = path
        self.remote = remote
        self.revision = revision
        self.groups = list(groups or [])
        self.upstream = None
        self.dest_branch = None
        self.sync_c = False
        self.sync_s = False
        self.clone_depth = None
        self.references = None
        self.copyfiles: List[XmlCopyFile] = []
        self.linkfiles: List[XmlLinkFile] = []
        self.custom_attrs = dict(custom_attrs or {})
        self.remote_url = None

    @property
    def relpath(self):
        return self.path or self.name

    def MatchesGroups(self, requested):
        return MatchesGroups(self.groups, requested)

    def __eq__(self, other):
        if not isinstance(other, XmlProject):
            return False
        return self.__dict__ == other.__dict__

    def __repr__(self):
        return f"<XmlProject {self.name} @ {self.relpath}>"


class XmlInclude:
    """An <include> element.

    Once resolved, |manifest| is the parsed inner manifest and |outer| the
    manifest that contains this element.
    """

    def __init__(self, name, groups=None, revision=None, custom_attrs=None):
        self.name = name
        self.groups = list(groups or [])
        self.revision = revision
        self.custom_attrs = dict(custom_attrs or {})
        self.manifest = None
        self.outer = None


class XmlRemoveProject:
    """A <remove-project> element."""

    def __init__(self, name, path=None, optional=False, custom_attrs=None):
        self.name = name
        self.path = path
        self.optional = optional
        self.custom_attrs = dict(custom_attrs or {})

    def __eq__(self, other):
        if not isinstance(other, XmlRemoveProject):
            return False
        return self.__dict__ == other.__dict__


class XmlExtendProject:
    """An <extend-project> element."""

    def __init__(
        self,
        name,
        path=None,
        groups=None,
        revision=None,
        remote=None,
        custom_attrs=None,
    ):
        self.name = name
        self.path = path
        self.groups = list(groups or [])
        self.revision = revision
        self.remote = remote
        self.copyfiles: List[XmlCopyFile] = []
        self.linkfiles: List[XmlLinkFile] = []
        self.custom_attrs = dict(custom_attrs or {})


class Manifest:
    """The parsed contents of a manifest file.

    A Manifest is a snapshot: merging or reloading produces a new object.
    """

    def __init__(self, path=None):
        self.path = path
        self.remotes: List[XmlRemote] = []
        self.default = XmlDefault()
        self.projects: List[XmlProject] = []
        self.includes: List[XmlInclude] = []
        self.remove_projects: List[XmlRemoveProject] = []
        self.extend_projects: List[XmlExtendProject] = []
        self.custom_attrs: Dict[str, str] = {}
        self.manifest_server_url = None
        # The manifest that included this one, if any.
        self.outer = None

    def Copy(self):
        """Return an independent deep copy of this manifest."""
        return copy.deepcopy(self)

    def GetRemote(self, name) -> Optional[XmlRemote]:
        for r in self.remotes:
            if r.name == name:
                return r
        return None

    def GetProject(self, name) -> Optional[XmlProject]:
        for p in self.projects:
            if p.name == name:
                return p
        return None

    def OuterManifest(self):
        """The top-most manifest this one was included from."""
        m = self
        while m.outer is not None:
            m = m.outer
        return m

    def InnerManifests(self):
        """Manifests pulled in by <include> elements, in document order."""
        return [i.manifest for i in self.includes if i.manifest is not None]

    def UnresolvedRemotes(self):
        """Names of projects whose remote is not declared."""
        names = {r.name for r in self.remotes}
        return [p.name for p in self.projects if p.remote not in names]

    @property
    def manifest_server(self):
        return self.manifest_server_url or self.custom_attrs.get(
            MANIFEST_SERVER_ATTR
        )

    @property
    def superproject_remote(self):
        return self.custom_attrs.get(SUPERPROJECT_REMOTE_ATTR)

    @property
    def superproject_branch(self):
        return self.custom_attrs.get(SUPERPROJECT_BRANCH_ATTR)

    def FilterGroups(self, groups):
        """Return a copy keeping only projects that match |groups|."""
        ret = self.Copy()
        ret.projects = [p for p in ret.projects if p.MatchesGroups(groups)]
        return ret

    def ToXml(self, revisions=None):
        """Return the manifest as an xml.dom.minidom.Document.

        Args:
            revisions: Optional {project name: revision} overriding the
                revision written for each project.
        """
        revisions = revisions or {}
        doc = xml.dom.minidom.Document()
        root = doc.createElement("manifest")
        _SetCustomAttrs(root, self.custom_attrs)
        doc.appendChild(root)

        for r in self.remotes:
            e = doc.createElement("remote")
            root.appendChild(e)
            e.setAttribute("name", r.name)
            if r.fetch is not None:
                e.setAttribute("fetch", r.fetch)
            if r.pushurl is not None:
                e.setAttribute("pushurl", r.pushurl)
            if r.alias is not None:
                e.setAttribute("alias", r.alias)
            if r.review is not None:
                e.setAttribute("review", r.review)
            if r.revision is not None:
                e.setAttribute("revision", r.revision)
            _SetCustomAttrs(e, r.custom_attrs)

        d = self.default
        e = doc.createElement("default")
        if d.remote:
            e.setAttribute("remote", d.remote)
        if d.revision:
            e.setAttribute("revision", d.revision)
        if d.sync:
            e.setAttribute("sync", d.sync)
        if d.dest_branch:
            e.setAttribute("dest-branch", d.dest_branch)
        if d.upstream:
            e.setAttribute("upstream", d.upstream)
        if d.sync_j is not None:
            e.setAttribute("sync-j", "%d" % d.sync_j)
        if d.sync_c:
            e.setAttribute("sync-c", "true")
        if d.sync_s:
            e.setAttribute("sync-s", "true")
        if not d.sync_tags:
            e.setAttribute("sync-tags", "false")
        _SetCustomAttrs(e, d.custom_attrs)
        if e.attributes.length:
            root.appendChild(e)

        if self.manifest_server_url:
            e = doc.createElement("manifest-server")
            e.setAttribute("url", self.manifest_server_url)
            root.appendChild(e)

        for p in self.projects:
            e = doc.createElement("project")
            root.appendChild(e)
            e.setAttribute("name", p.name)
            if p.relpath != p.name:
                e.setAttribute("path", p.relpath)
            if p.remote:
                e.setAttribute("remote", p.remote)
            revision = revisions.get(p.name, p.revision)
            if revision:
                e.setAttribute("revision", revision)
            if p.groups:
                e.setAttribute("groups", ",".join(p.groups))
            if p.upstream:
                e.setAttribute("upstream", p.upstream)
            if p.dest_branch:
                e.setAttribute("dest-branch", p.dest_branch)
            if p.sync_c:
                e.setAttribute("sync-c", "true")
            if p.sync_s:
                e.setAttribute("sync-s", "true")
            if p.clone_depth:
                e.setAttribute("clone-depth", str(p.clone_depth))
            if p.references:
                e.setAttribute("references", p.references)
            _SetCustomAttrs(e, p.custom_attrs)

            for f in p.copyfiles + p.linkfiles:
                fe = doc.createElement(f.element)
                fe.setAttribute("src", f.src)
                fe.setAttribute("dest", f.dest)
                _SetCustomAttrs(fe, f.custom_attrs)
                e.appendChild(fe)

        for rp in self.remove_projects:
            e = doc.createElement("remove-project")
            root.appendChild(e)
            e.setAttribute("name", rp.name)
            if rp.path:
                e.setAttribute("path", rp.path)
            if rp.optional:
                e.setAttribute("optional", "true")
            _SetCustomAttrs(e, rp.custom_attrs)

        return doc

    def ToXmlString(self, **kwargs):
        return self.ToXml(**kwargs).toprettyxml(indent="  ")

    def ToDict(self, **kwargs):
        """Return the current manifest as a dictionary."""
        # Elements that may only appear once.
        SINGLE_ELEMENTS = {"default", "manifest-server"}
        # Elements that may be repeated.
        MULTI_ELEMENTS = {
            "remote",
            "remove-project",
            "project",
            # These are children of 'project' nodes.
            "copyfile",
            "linkfile",
        }

        doc = self.ToXml(**kwargs)
        ret = {}

        def append_children(ret, node):
            for child in node.childNodes:
                if child.nodeType == xml.dom.Node.ELEMENT_NODE:
                    attrs = child.attributes
                    element = {
                        attrs.item(i).localName: attrs.item(i).value
                        for i in range(attrs.length)
                    }
                    if child.nodeName in SINGLE_ELEMENTS:
                        ret[child.nodeName] = element
                    elif child.nodeName in MULTI_ELEMENTS:
                        ret.setdefault(child.nodeName, []).append(element)
                    else:
                        raise ManifestParseError(
                            f'Unhandled element "{child.nodeName}"'
                        )

                    append_children(element, child)

        root = doc.documentElement
        attrs = root.attributes
        for i in range(attrs.length):
            ret[attrs.item(i).localName] = attrs.item(i).value
        append_children(ret, root)
        return ret

    def ToJson(self, **kwargs):
        return json.dumps(self.ToDict(**kwargs), indent=2, sort_keys=True)


def FindRepoTopdir(start=None):
    """Walk up from |start| looking for a directory holding .repo/."""
    path = os.path.abspath(start or os.getcwd())
    while True:
        if os.path.isdir(os.path.join(path, REPO_DIR_NAME)):
            return path
        parent = os.path.dirname(path)
        if parent == path:
            return None
        path = parent


class ManifestParser:
    """Turns manifest XML into Manifest objects.

    Args:
        manifests_dir: The manifest repository checkout, searched for
            <include> files.
        topdir: Top of the client checkout.  Detected from the current
            directory when not given.
        log: Logger for warnings.
        environ: Variables substituted for ${VAR} and $VAR before parsing.
            Defaults to os.environ.
    """

    def __init__(self, manifests_dir=None, topdir=None, log=None, environ=None):
        self.manifests_dir = manifests_dir
        self.topdir = topdir
        self._log = log or logger
        self._environ = os.environ if environ is None else environ

    def Parse(self, data, groups=None) -> Manifest:
        """Parse a single manifest document without resolving includes.

        No file is read; <include> elements are recorded but left unresolved.
        """
        manifest = self._ParseDocument(data, "<manifest>")
        return self._Finish(manifest, groups)

    def ParseFromBytes(self, data, groups=None, base_dir=None) -> Manifest:
        """Parse |data| and resolve its includes relative to |base_dir|."""
        manifest = self._ParseDocument(data, "<manifest>")
        self._ResolveIncludes(manifest, base_dir, [])
        return self._Finish(manifest, groups)

    def ParseFromFile(self, path, groups=None, local_manifests=()) -> Manifest:
        """Parse the manifest at |path| with all of its includes.

        Args:
            path: The manifest file.
            groups: Groups to filter projects by; None or [] keeps all.
            local_manifests: Extra manifest files merged on top, in order.

        Raises:
            NoManifestException: |path| does not exist.
            ManifestParseError: The XML is invalid.
            IncludeResolutionError: An include is missing or cyclic.
        """
        manifest = self._ParseRawFile(path, [])
        for local in local_manifests:
            self._log.debug("merging local manifest %s", local)
            inner = self._ParseRawFile(local, [])
            manifest = self._MergeInner(manifest, inner)
        return self._Finish(manifest, groups)

    def _ParseRawFile(self, path, stack):
        if not os.path.isfile(path):
            raise NoManifestException(path, f"manifest {path} not found")
        try:
            with open(path, "rb") as fp:
                data = fp.read()
        except OSError as e:
            raise ManifestParseError(f"error reading manifest {path}: {e}")
        manifest = self._ParseDocument(data, path)
        manifest.path = path
        self._ResolveIncludes(
            manifest, os.path.dirname(os.path.abspath(path)), stack + [path]
        )
        return manifest

    def _IncludeSearchPath(self, base_dir):
        dirs = []
        if base_dir:
            dirs.append(base_dir)
        if self.manifests_dir:
            dirs.append(self.manifests_dir)
        dirs.append(os.getcwd())
        topdir = self.topdir or FindRepoTopdir()
        if topdir:
            dirs.append(os.path.join(topdir, REPO_DIR_NAME, MANIFESTS_DIR_NAME))
        return dirs

    def _FindInclude(self, name, base_dir):
        if os.path.isabs(name):
            return name if os.path.isfile(name) else None
        for d in self._IncludeSearchPath(base_dir):
            candidate = os.path.join(d, name)
            if os.path.isfile(candidate):
                return candidate
        return None

    def _ResolveIncludes(self, manifest, base_dir, stack):
        seen = {os.path.realpath(p) for p in stack}
        for include in manifest.includes:
            path = self._FindInclude(include.name, base_dir)
            if path is None:
                raise IncludeResolutionError(
                    include.name,
                    "not found in "
                    + ", ".join(self._IncludeSearchPath(base_dir)),
                )
            if os.path.realpath(path) in seen:
                raise IncludeResolutionError(
                    include.name,
                    "include cycle: " + " -> ".join(stack + [path]),
                )
            inner = self._ParseRawFile(path, stack)
            for p in inner.projects:
                if include.groups:
                    p.groups.extend(
                        g for g in include.groups if g not in p.groups
                    )
                if include.revision and not p.revision:
                    p.revision = include.revision
            inner.outer = manifest
            include.manifest = inner
            include.outer = manifest
            merged = self._MergeInner(manifest, inner)
            # Merge returns a copy; fold it back so |manifest| stays the
            # object callers (and nested includes) hold on to.
            manifest.remotes = merged.remotes
            manifest.projects = merged.projects
            manifest.remove_projects = merged.remove_projects
            manifest.extend_projects = merged.extend_projects
            manifest.default = merged.default
            manifest.custom_attrs = merged.custom_attrs
            manifest.manifest_server_url = merged.manifest_server_url

    def _MergeInner(self, outer, inner):
        merged = Merge([outer, inner])
        # The first <default> that sets a field wins.
        for key, value in inner.default.__dict__.items():
            if key == "custom_attrs":
                for k, v in value.items():
                    merged.default.custom_attrs.setdefault(k, v)
            elif getattr(merged.default, key) is None:
                setattr(merged.default, key, value)
        merged.extend_projects = outer.extend_projects + inner.extend_projects
        if not merged.manifest_server_url:
            merged.manifest_server_url = inner.manifest_server_url
        return merged

    def _Finish(self, manifest, groups):
        self._ApplyRemoveProjects(manifest)
        self._ApplyExtendProjects(manifest)
        self._Dedupe(manifest)
        self._ResolveDefaults(manifest)
        for name in manifest.UnresolvedRemotes():
            self._log.warning(
                "manifest: project %s references an undeclared remote", name
            )
        if groups:
            manifest.projects = [
                p for p in manifest.projects if p.MatchesGroups(groups)
            ]
        return manifest

    def _ApplyRemoveProjects(self, manifest):
        """Drop the projects named by <remove-project> elements."""
        for rp in manifest.remove_projects:
            manifest.projects = [
                p
                for p in manifest.projects
                if not (
                    p.name == rp.name and (not rp.path or p.relpath == rp.path)
                )
            ]

    def _ApplyExtendProjects(self, manifest):
        for ext in manifest.extend_projects:
            matched = False
            for p in manifest.projects:
                if p.name != ext.name:
                    continue
                if ext.path and p.relpath != ext.path:
                    continue
                matched = True
                p.groups.extend(g for g in ext.groups if g not in p.groups)
                if ext.revision:
                    p.revision = ext.revision
                if ext.remote:
                    p.remote = ext.remote
                p.copyfiles.extend(ext.copyfiles)
                p.linkfiles.extend(ext.linkfiles)
            if not matched:
                raise ManifestParseError(
                    "extend-project element specifies non-existent "
                    f"project: {ext.name}"
                )
        manifest.extend_projects = []

    def _Dedupe(self, manifest):
        seen = set()
        projects = []
        for p in manifest.projects:
            key = f"{p.name}@@{p.relpath}"
            if key in seen:
                self._log.debug("manifest: dropping duplicate project %s", key)
                continue
            seen.add(key)
            projects.append(p)
        manifest.projects = projects

    def _ResolveDefaults(self, manifest):
        d = manifest.default
        if not d.remote and len(manifest.remotes) == 1:
            only = manifest.remotes[0]
            d.remote = only.name
            if not d.revision:
                d.revision = only.revision
        for p in manifest.projects:
            if not p.path:
                p.path = p.name
            if not p.remote:
                p.remote = d.remote
            remote = manifest.GetRemote(p.remote)
            # Project, then its remote, then <default>.
            if not p.revision and remote:
                p.revision = remote.revision
            if not p.revision:
                p.revision = d.revision
            if not p.upstream:
                p.upstream = d.upstream
            if not p.dest_branch:
                p.dest_branch = d.dest_branch
            p.sync_c = p.sync_c or d.sync_c
            p.sync_s = p.sync_s or d.sync_s
            p.remote_url = JoinUrl(remote.fetch, p.name) if remote else None

    def _ParseDocument(self, data, source) -> Manifest:
        try:
            data = ExpandVariables(data, self._environ)
        except (TypeError, UnicodeError) as e:
            raise ManifestParseError(f"error parsing manifest {source}: {e}")
        try:
            root = xml.dom.minidom.parseString(data)
        except (xml.parsers.expat.ExpatError, TypeError, ValueError) as e:
            raise ManifestParseError(f"error parsing manifest {source}: {e}")

        if not root or not root.childNodes:
            raise ManifestParseError(f"no root node in {source}")

        for node in root.childNodes:
            if node.nodeName == "manifest":
                break
        else:
            raise ManifestParseError(f"no <manifest> in {source}")

        manifest = Manifest()
        manifest.custom_attrs = _CustomAttrs(node, "manifest")

        for child in node.childNodes:
            if child.nodeType != xml.dom.Node.ELEMENT_NODE:
                continue
            name = child.nodeName
            if name == "remote":
                manifest.remotes.append(self._ParseRemote(child, source))
            elif name == "default":
                manifest.default = self._ParseDefault(child)
            elif name == "manifest-server":
                manifest.manifest_server_url = self._reqatt(
                    child, "url", source
                )
            elif name == "project":
                manifest.projects.append(self._ParseProject(child, source))
            elif name == "include":
                manifest.includes.append(
                    XmlInclude(
                        self._reqatt(child, "name", source),
                        groups=ParseList(child.getAttribute("groups")),
                        revision=child.getAttribute("revision") or None,
                        custom_attrs=_CustomAttrs(child),
                    )
                )
            elif name == "remove-project":
                manifest.remove_projects.append(
                    XmlRemoveProject(
                        self._reqatt(child, "name", source),
                        path=child.getAttribute("path") or None,
                        optional=XmlBool(child, "optional", False, self._log),
                        custom_attrs=_CustomAttrs(child),
                    )
                )
            elif name == "extend-project":
                manifest.extend_projects.append(
                    self._ParseExtendProject(child, source)
                )
            else:
                self._log.debug(
                    "manifest %s: ignoring <%s> element", source, name
                )
        return manifest

    def _ParseRemote(self, node, source):
        return XmlRemote(
            self._reqatt(node, "name", source),
            fetch=self._reqatt(node, "fetch", source),
            review=node.getAttribute("review") or None,
            revision=node.getAttribute("revision") or None,
            alias=node.getAttribute("alias") or None,
            pushurl=node.getAttribute("pushurl") or None,
            custom_attrs=_CustomAttrs(node),
        )

    def _ParseDefault(self, node):
        d = XmlDefault(custom_attrs=_CustomAttrs(node))
        d.remote = node.getAttribute("remote") or None
        d.revision = node.getAttribute("revision") or None
        d.sync = node.getAttribute("sync") or None
        d.dest_branch = node.getAttribute("dest-branch") or None
        d.upstream = node.getAttribute("upstream") or None
        d.sync_j = XmlInt(node, "sync-j", None)
        if d.sync_j is not None and d.sync_j <= 0:
            raise ManifestParseError(
                f'{node.nodeName}: sync-j must be greater than 0, not "{d.sync_j}"'
            )
        d.sync_c = XmlBool(node, "sync-c", False, self._log)
        d.sync_s = XmlBool(node, "sync-s", False, self._log)
        d.sync_tags = XmlBool(node, "sync-tags", True, self._log)
        return d

    def _ParseProject(self, node, source):
        p = XmlProject(
            self._reqatt(node, "name", source),
            path=node.getAttribute("path") or None,
            remote=node.getAttribute("remote") or None,
            revision=node.getAttribute("revision") or None,
            groups=ParseList(node.getAttribute("groups")),
            custom_attrs=_CustomAttrs(node),
        )
        p.upstream = node.getAttribute("upstream") or None
        p.dest_branch = node.getAttribute("dest-branch") or None
        p.sync_c = XmlBool(node, "sync-c", False, self._log)
        p.sync_s = XmlBool(node, "sync-s", False, self._log)
        p.clone_depth = XmlInt(node, "clone-depth")
        if p.clone_depth is not None and p.clone_depth <= 0:
            raise ManifestParseError(
                f'{p.name}: clone-depth must be greater than 0, not "{p.clone_depth}"'
            )
        p.references = node.getAttribute("references") or None
        self._ParseFileChildren(p, node, source)
        return p

    def _ParseExtendProject(self, node, source):
        ext = XmlExtendProject(
            self._reqatt(node, "name", source),
            path=node.getAttribute("path") or None,
            groups=ParseList(node.getAttribute("groups")),
            revision=node.getAttribute("revision") or None,
            remote=node.getAttribute("remote") or None,
            custom_attrs=_CustomAttrs(node),
        )
        self._ParseFileChildren(ext, node, source)
        return ext

    def _ParseFileChildren(self, project, node, source):
        for n in node.childNodes:
            if n.nodeName == "copyfile":
                project.copyfiles.append(
                    XmlCopyFile(
                        self._reqatt(n, "src", source),
                        self._reqatt(n, "dest", source),
                        custom_attrs=_CustomAttrs(n),
                    )
                )
            elif n.nodeName == "linkfile":
                project.linkfiles.append(
                    XmlLinkFile(
                        self._reqatt(n, "src", source),
                        self._reqatt(n, "dest", source),
                        custom_attrs=_CustomAttrs(n),
                    )
                )

    def _reqatt(self, node, attname, source):
        """
        reads a required attribute from the node.
        """
        v = node.getAttribute(attname)
        if not v:
            raise ManifestParseError(
                f"no {attname} in <{node.nodeName}> within {source}"
            )
        return v


class RepoClient:
    """Filesystem layout of a client checkout.

    Args:
        topdir: Directory holding the .repo/ directory.
        manifest_file: Manifest to load instead of .repo/manifest.xml.
    """

    def __init__(self, topdir, manifest_file=None):
        self.topdir = os.path.abspath(topdir)
        self.repodir = os.path.join(self.topdir, REPO_DIR_NAME)
        # Per-manifest state (project.list and friends) lives here.
        self.subdir = self.repodir
        self.manifests_dir = os.path.join(self.repodir, MANIFESTS_DIR_NAME)
        self.manifest_file = manifest_file or os.path.join(
            self.repodir, MANIFEST_FILE_NAME
        )
        self.local_manifests_dir = os.path.join(
            self.repodir, LOCAL_MANIFESTS_DIR_NAME
        )
        self.hooks_dir = os.path.join(self.repodir, "hooks")

    def LocalManifests(self):
        """Sorted paths of .repo/local_manifests/*.xml."""
        if not os.path.isdir(self.local_manifests_dir):
            return []
        return [
            os.path.join(self.local_manifests_dir, name)
            for name in sorted(os.listdir(self.local_manifests_dir))
            if name.endswith(".xml")
        ]


def LoadManifest(client: RepoClient, groups=None, parser=None, log=None):
    """Load the client's manifest merged with its local manifests.

    Raises:
        NoManifestException: The client is not initialized, or its manifest
            is missing.
    """
    if not os.path.isdir(client.repodir):
        raise NoManifestException(
            client.repodir,
            f"{client.topdir} is not initialized: {REPO_DIR_NAME} is missing",
            initialized=False,
        )
    parser = parser or ManifestParser(
        manifests_dir=client.manifests_dir, topdir=client.topdir, log=log
    )
    return parser.ParseFromFile(
        client.manifest_file,
        groups=groups,
        local_manifests=client.LocalManifests(),
    )
