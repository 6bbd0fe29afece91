# Copyright (C) 2019 The Android Open Source Project
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

"""Unittests for the manifest_xml.py module."""

import json
import os
import shutil
import tempfile
import unittest
import xml.dom.minidom

import error
import manifest_xml


BASIC_MANIFEST = """
<manifest>
  <remote name="origin" fetch="https://example.com/" review="review.example.com" />
  <default remote="origin" revision="main" sync-j="4" />
  <project name="platform/build" path="build" groups="default,tools" />
  <project name="platform/art" revision="refs/tags/v1" />
  <project name="vendor/x" remote="origin" revision="stable" groups="extra" />
</manifest>
"""


def _Tuples(manifest):
    return sorted(
        (p.name, p.relpath, p.remote, p.revision) for p in manifest.projects
    )


class ManifestParseTestCase(unittest.TestCase):
    """TestCase for parsing manifests."""

    def setUp(self):
        self.tempdir = tempfile.mkdtemp(prefix="reposync_tests")
        self.repodir = os.path.join(self.tempdir, ".repo")
        self.manifest_dir = os.path.join(self.repodir, "manifests")
        self.manifest_file = os.path.join(
            self.repodir, manifest_xml.MANIFEST_FILE_NAME
        )
        self.local_manifest_dir = os.path.join(
            self.repodir, manifest_xml.LOCAL_MANIFESTS_DIR_NAME
        )
        os.mkdir(self.repodir)
        os.mkdir(self.manifest_dir)
        self.parser = manifest_xml.ManifestParser(
            manifests_dir=self.manifest_dir, topdir=self.tempdir
        )

    def tearDown(self):
        shutil.rmtree(self.tempdir, ignore_errors=True)

    def writeFile(self, path, data):
        """Write |data| to |path| under the client, creating parents."""
        path = os.path.join(self.tempdir, path)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w") as fp:
            fp.write(data)
        return path

    def getXmlManifest(self, data, groups=None):
        """Helper to initialize a manifest for testing."""
        with open(self.manifest_file, "w") as fp:
            fp.write(data)
        client = manifest_xml.RepoClient(self.tempdir)
        return manifest_xml.LoadManifest(client, groups=groups)


class HelperTests(unittest.TestCase):
    """Check the small parsing helpers."""

    def _node(self, attrs):
        doc = xml.dom.minidom.parseString(f"<x {attrs} />")
        return doc.documentElement

    def test_bool_default(self):
        """Check XmlBool default handling."""
        node = self._node("")
        self.assertIsNone(manifest_xml.XmlBool(node, "a"))
        self.assertTrue(manifest_xml.XmlBool(node, "a", True))

    def test_bool_true(self):
        """Check XmlBool true values."""
        for value in ("yes", "true", "1", "TRUE"):
            node = self._node(f'a="{value}"')
            self.assertTrue(manifest_xml.XmlBool(node, "a"))

    def test_bool_false(self):
        """Check XmlBool false values."""
        for value in ("no", "false", "0", "No"):
            node = self._node(f'a="{value}"')
            self.assertFalse(manifest_xml.XmlBool(node, "a", True))

    def test_bool_invalid(self):
        """Check XmlBool invalid handling."""
        node = self._node('a="maybe"')
        self.assertEqual(123, manifest_xml.XmlBool(node, "a", 123))

    def test_int(self):
        self.assertEqual(12, manifest_xml.XmlInt(self._node('a="12"'), "a"))
        self.assertIsNone(manifest_xml.XmlInt(self._node(""), "a"))
        with self.assertRaises(error.ManifestParseError):
            manifest_xml.XmlInt(self._node('a="x"'), "a")

    def test_parse_list(self):
        self.assertEqual([], manifest_xml.ParseList(None))
        self.assertEqual(
            ["a", "b", "c"], manifest_xml.ParseList(" a, b ,,c, ")
        )

    def test_parse_list_commas_only(self):
        """Whitespace inside an element does not split it."""
        self.assertEqual(["a b", "c"], manifest_xml.ParseList("a b, c"))

    def test_join_url(self):
        """Exactly one slash separates the base and the name."""
        for base in ("https://x/", "https://x"):
            for name in ("/a/b", "a/b"):
                self.assertEqual(
                    "https://x/a/b", manifest_xml.JoinUrl(base, name)
                )

    def test_resolve_fetch_url(self):
        url = "https://example.com/platform/manifest"
        self.assertEqual(
            "https://example.com/platform/",
            manifest_xml.ResolveFetchUrl("..", url),
        )
        self.assertEqual(
            "https://other.com",
            manifest_xml.ResolveFetchUrl("https://other.com/", url),
        )
        self.assertEqual("..", manifest_xml.ResolveFetchUrl("..", None))

    def test_find_topdir(self):
        with tempfile.TemporaryDirectory() as tempdir:
            os.makedirs(os.path.join(tempdir, ".repo"))
            sub = os.path.join(tempdir, "a", "b")
            os.makedirs(sub)
            self.assertEqual(
                os.path.abspath(tempdir), manifest_xml.FindRepoTopdir(sub)
            )


class MatchesGroupsTests(unittest.TestCase):
    """Check the group filter."""

    def test_all(self):
        self.assertTrue(manifest_xml.MatchesGroups(["extra"], ["all"]))
        self.assertTrue(manifest_xml.MatchesGroups(["extra"], []))
        self.assertTrue(manifest_xml.MatchesGroups(["extra"], None))

    def test_no_groups_always_included(self):
        self.assertTrue(manifest_xml.MatchesGroups([], ["default"]))
        self.assertTrue(manifest_xml.MatchesGroups([], ["-default"]))

    def test_match(self):
        self.assertTrue(
            manifest_xml.MatchesGroups(["a", " tools "], ["tools"])
        )
        self.assertFalse(manifest_xml.MatchesGroups(["extra"], ["default"]))

    def test_exclude(self):
        self.assertFalse(
            manifest_xml.MatchesGroups(["notdefault"], ["-notdefault"])
        )
        self.assertTrue(
            manifest_xml.MatchesGroups(["tools"], ["-notdefault"])
        )
        self.assertFalse(
            manifest_xml.MatchesGroups(["tools", "slow"], ["tools", "-slow"])
        )


class XmlManifestTests(ManifestParseTestCase):
    """Check manifest processing."""

    def test_parse_basic(self):
        manifest = self.parser.Parse(BASIC_MANIFEST)
        self.assertEqual(["origin"], [r.name for r in manifest.remotes])
        self.assertEqual("main", manifest.default.revision)
        self.assertEqual(4, manifest.default.sync_j)

        build = manifest.GetProject("platform/build")
        self.assertEqual("build", build.relpath)
        self.assertEqual("origin", build.remote)
        self.assertEqual("main", build.revision)
        self.assertEqual(["default", "tools"], build.groups)
        self.assertEqual(
            "https://example.com/platform/build", build.remote_url
        )

        art = manifest.GetProject("platform/art")
        self.assertEqual("platform/art", art.relpath)
        self.assertEqual("refs/tags/v1", art.revision)

    def test_empty_groups_is_all(self):
        manifest = self.parser.Parse(BASIC_MANIFEST, groups=[])
        self.assertEqual(3, len(manifest.projects))
        manifest = self.parser.Parse(BASIC_MANIFEST, groups=["all"])
        self.assertEqual(3, len(manifest.projects))

    def test_default_group_filter(self):
        """Projects without groups are kept; others must match."""
        data = """
<manifest>
  <remote name="origin" fetch="https://example.com" />
  <default remote="origin" revision="main" />
  <project name="A" />
  <project name="B" groups="extra" />
</manifest>
"""
        manifest = self.parser.Parse(data, groups=["default"])
        self.assertEqual(["A"], [p.name for p in manifest.projects])

    def test_round_trip(self):
        """Parse, ToXml and Parse keep name, path, remote and revision."""
        manifest = self.parser.Parse(BASIC_MANIFEST)
        again = self.parser.Parse(manifest.ToXml().toxml())
        self.assertEqual(_Tuples(manifest), _Tuples(again))

    def test_round_trip_string(self):
        manifest = self.parser.Parse(BASIC_MANIFEST)
        again = self.parser.Parse(manifest.ToXmlString())
        self.assertEqual(_Tuples(manifest), _Tuples(again))

    def test_to_xml_revisions(self):
        manifest = self.parser.Parse(BASIC_MANIFEST)
        doc = manifest.ToXml(revisions={"platform/build": "a" * 40})
        again = self.parser.Parse(doc.toxml())
        self.assertEqual("a" * 40, again.GetProject("platform/build").revision)
        self.assertEqual("stable", again.GetProject("vendor/x").revision)

    def test_custom_attrs(self):
        """Unknown attributes are kept and written back out."""
        data = """
<manifest superproject-remote="https://example.com/super" superproject-branch="main">
  <remote name="origin" fetch="https://example.com" x-mirror="eu" />
  <default remote="origin" revision="main" />
  <project name="A" x-owner="team-a">
    <copyfile src="a" dest="b" x-mode="0644" />
  </project>
</manifest>
"""
        manifest = self.parser.Parse(data)
        self.assertEqual(
            "https://example.com/super", manifest.superproject_remote
        )
        self.assertEqual("main", manifest.superproject_branch)
        self.assertEqual({"x-mirror": "eu"}, manifest.remotes[0].custom_attrs)
        project = manifest.GetProject("A")
        self.assertEqual({"x-owner": "team-a"}, project.custom_attrs)
        self.assertEqual(
            {"x-mode": "0644"}, project.copyfiles[0].custom_attrs
        )

        root = manifest.ToXml().documentElement
        self.assertEqual("main", root.getAttribute("superproject-branch"))
        element = root.getElementsByTagName("project")[0]
        self.assertEqual("team-a", element.getAttribute("x-owner"))

        again = self.parser.Parse(manifest.ToXml().toxml())
        self.assertEqual(
            {"x-owner": "team-a"}, again.GetProject("A").custom_attrs
        )

    def test_manifest_server(self):
        data = """
<manifest>
  <remote name="origin" fetch="https://example.com" />
  <manifest-server url="https://ms.example.com" />
</manifest>
"""
        manifest = self.parser.Parse(data)
        self.assertEqual("https://ms.example.com", manifest.manifest_server)

    def test_manifest_server_attr(self):
        data = '<manifest manifest-server="https://ms.example.com" />'
        manifest = self.parser.Parse(data)
        self.assertEqual("https://ms.example.com", manifest.manifest_server)

    def test_to_json(self):
        manifest = self.parser.Parse(BASIC_MANIFEST)
        data = json.loads(manifest.ToJson())
        self.assertEqual("origin", data["remote"][0]["name"])
        self.assertEqual("main", data["default"]["revision"])
        self.assertEqual(
            ["platform/art", "platform/build", "vendor/x"],
            sorted(p["name"] for p in data["project"]),
        )

    def test_remove_project(self):
        data = """
<manifest>
  <remote name="origin" fetch="https://example.com" />
  <default remote="origin" revision="main" />
  <project name="A" />
  <project name="B" />
  <remove-project name="A" />
</manifest>
"""
        manifest = self.parser.Parse(data)
        self.assertEqual(["B"], [p.name for p in manifest.projects])
        self.assertEqual(["A"], [rp.name for rp in manifest.remove_projects])

    def test_extend_project(self):
        data = """
<manifest>
  <remote name="origin" fetch="https://example.com" />
  <default remote="origin" revision="main" />
  <project name="A" groups="g1" />
  <extend-project name="A" groups="g2" revision="dev" />
</manifest>
"""
        project = self.parser.Parse(data).GetProject("A")
        self.assertEqual(["g1", "g2"], project.groups)
        self.assertEqual("dev", project.revision)

    def test_extend_missing_project(self):
        data = """
<manifest>
  <remote name="origin" fetch="https://example.com" />
  <extend-project name="nope" />
</manifest>
"""
        with self.assertRaises(error.ManifestParseError):
            self.parser.Parse(data)

    def test_duplicate_projects(self):
        data = """
<manifest>
  <remote name="origin" fetch="https://example.com" />
  <project name="A" />
  <project name="A" />
  <project name="A" path="other" />
</manifest>
"""
        manifest = self.parser.Parse(data)
        self.assertEqual(
            ["A", "other"], sorted(p.relpath for p in manifest.projects)
        )

    def test_single_remote_is_default(self):
        data = """
<manifest>
  <remote name="only" fetch="https://example.com" revision="trunk" />
  <project name="A" />
</manifest>
"""
        project = self.parser.Parse(data).GetProject("A")
        self.assertEqual("only", project.remote)
        self.assertEqual("trunk", project.revision)

    def test_remote_revision(self):
        """A project's remote revision is used before <default>'s."""
        data = """
<manifest>
  <remote name="origin" fetch="https://example.com" revision="rb" />
  <remote name="other" fetch="https://other.example.com" />
  <default remote="origin" />
  <project name="A" />
  <project name="B" remote="other" />
</manifest>
"""
        manifest = self.parser.Parse(data)
        self.assertEqual("rb", manifest.GetProject("A").revision)
        self.assertIsNone(manifest.GetProject("B").revision)

    def test_revision_precedence(self):
        """Project revision, then remote revision, then default revision."""
        data = """
<manifest>
  <remote name="origin" fetch="https://example.com" revision="rb" />
  <remote name="other" fetch="https://other.example.com" />
  <default remote="origin" revision="dflt" />
  <project name="A" revision="own" />
  <project name="B" />
  <project name="C" remote="other" />
</manifest>
"""
        manifest = self.parser.Parse(data)
        self.assertEqual("own", manifest.GetProject("A").revision)
        self.assertEqual("rb", manifest.GetProject("B").revision)
        self.assertEqual("dflt", manifest.GetProject("C").revision)

    def test_expand_variables(self):
        """${VAR} and $VAR are replaced from the environment."""
        data = """
<manifest>
  <remote name="origin" fetch="https://${HOST}/$ORG" />
  <default remote="origin" revision="$BRANCH" />
  <project name="A" />
</manifest>
"""
        parser = manifest_xml.ManifestParser(
            environ={"HOST": "git.example.com", "ORG": "acme", "BRANCH": "dev"}
        )
        project = parser.Parse(data).GetProject("A")
        self.assertEqual("https://git.example.com/acme/A", project.remote_url)
        self.assertEqual("dev", project.revision)

    def test_expand_variables_undefined(self):
        """Unset names are kept as written."""
        data = """
<manifest>
  <remote name="origin" fetch="https://${NOPE}/$ALSO_NOPE" />
  <default remote="origin" revision="main" />
  <project name="A" />
</manifest>
"""
        parser = manifest_xml.ManifestParser(environ={})
        project = parser.Parse(data).GetProject("A")
        self.assertEqual("https://${NOPE}/$ALSO_NOPE/A", project.remote_url)

    def test_expand_variables_bytes(self):
        self.assertEqual(
            b"x-1-$B", manifest_xml.ExpandVariables(b"x-${A}-$B", {"A": "1"})
        )
        env = {"A": "1", "B": "2"}
        self.assertEqual("x-1-2", manifest_xml.ExpandVariables("x-$A-$B", env))

    def test_undeclared_remote(self):
        """Projects on unknown remotes are kept without a URL."""
        data = """
<manifest>
  <remote name="origin" fetch="https://example.com" />
  <project name="A" remote="ghost" />
</manifest>
"""
        manifest = self.parser.Parse(data)
        self.assertEqual(["A"], manifest.UnresolvedRemotes())
        self.assertIsNone(manifest.GetProject("A").remote_url)

    def test_bad_xml(self):
        for data in ("<manifest>", "<notmanifest />", ""):
            with self.subTest(data=data):
                with self.assertRaises(error.ManifestParseError):
                    self.parser.Parse(data)

    def test_missing_attributes(self):
        for data in (
            "<manifest><project /></manifest>",
            '<manifest><remote name="x" /></manifest>',
            '<manifest><project name="a"><copyfile src="x" /></project>'
            "</manifest>",
        ):
            with self.subTest(data=data):
                with self.assertRaises(error.ManifestParseError):
                    self.parser.Parse(data)

    def test_invalid_numbers(self):
        for data in (
            '<manifest><default sync-j="0" /></manifest>',
            '<manifest><project name="a" clone-depth="0" /></manifest>',
            '<manifest><project name="a" clone-depth="x" /></manifest>',
        ):
            with self.subTest(data=data):
                with self.assertRaises(error.ManifestParseError):
                    self.parser.Parse(data)

    def test_parse_leaves_includes(self):
        manifest = self.parser.Parse(
            '<manifest><include name="missing.xml" /></manifest>'
        )
        self.assertEqual(["missing.xml"], [i.name for i in manifest.includes])


class IncludeElementTests(ManifestParseTestCase):
    """Tests for <include>."""

    def test_include(self):
        self.writeFile(
            ".repo/manifests/inner.xml",
            """
<manifest>
  <remote name="mirror" fetch="https://mirror.example.com" />
  <project name="inner" remote="mirror" />
</manifest>
""",
        )
        manifest = self.getXmlManifest(
            """
<manifest>
  <remote name="origin" fetch="https://example.com" />
  <default remote="origin" revision="main" />
  <project name="outer" />
  <include name="inner.xml" groups="extra" revision="dev" />
</manifest>
"""
        )
        self.assertEqual(
            ["inner", "outer"], sorted(p.name for p in manifest.projects)
        )
        inner = manifest.GetProject("inner")
        self.assertEqual(["extra"], inner.groups)
        self.assertEqual("dev", inner.revision)
        self.assertEqual("https://mirror.example.com/inner", inner.remote_url)
        self.assertEqual(1, len(manifest.InnerManifests()))
        self.assertIs(manifest, manifest.InnerManifests()[0].OuterManifest())

    def test_include_group_filter(self):
        self.writeFile(
            ".repo/manifests/inner.xml",
            '<manifest><project name="inner" /></manifest>',
        )
        manifest = self.getXmlManifest(
            """
<manifest>
  <remote name="origin" fetch="https://example.com" />
  <project name="outer" />
  <include name="inner.xml" groups="extra" />
</manifest>
""",
            groups=["default"],
        )
        self.assertEqual(["outer"], [p.name for p in manifest.projects])

    def test_include_missing(self):
        with self.assertRaises(error.IncludeResolutionError):
            self.getXmlManifest(
                '<manifest><include name="nope.xml" /></manifest>'
            )

    def test_include_cycle(self):
        self.writeFile(
            ".repo/manifests/a.xml",
            '<manifest><include name="b.xml" /></manifest>',
        )
        self.writeFile(
            ".repo/manifests/b.xml",
            '<manifest><include name="a.xml" /></manifest>',
        )
        with self.assertRaises(error.IncludeResolutionError) as e:
            self.getXmlManifest(
                '<manifest><include name="a.xml" /></manifest>'
            )
        self.assertIn("cycle", str(e.exception))

    def test_local_manifests(self):
        """Local manifests are merged on top, in name order."""
        self.writeFile(
            ".repo/local_manifests/10-drop.xml",
            """
<manifest>
  <remove-project name="A" />
  <project name="C" />
</manifest>
""",
        )
        self.writeFile(
            ".repo/local_manifests/20-more.xml",
            '<manifest><project name="A" /></manifest>',
        )
        manifest = self.getXmlManifest(
            """
<manifest>
  <remote name="origin" fetch="https://example.com" />
  <default remote="origin" revision="main" />
  <project name="A" />
  <project name="B" />
</manifest>
"""
        )
        self.assertEqual(["B", "C"], sorted(p.name for p in manifest.projects))
        self.assertEqual("main", manifest.GetProject("C").revision)

    def test_missing_manifest(self):
        with self.assertRaises(error.NoManifestException):
            self.parser.ParseFromFile(os.path.join(self.tempdir, "nope.xml"))

    def test_uninitialized_client(self):
        client = manifest_xml.RepoClient(os.path.join(self.tempdir, "empty"))
        with self.assertRaises(error.NoManifestException) as e:
            manifest_xml.LoadManifest(client)
        self.assertFalse(e.exception.initialized)

    def test_parse_from_bytes(self):
        self.writeFile(
            ".repo/manifests/inner.xml",
            '<manifest><project name="inner" /></manifest>',
        )
        manifest = self.parser.ParseFromBytes(
            b"""
<manifest>
  <remote name="origin" fetch="https://example.com" />
  <include name="inner.xml" />
</manifest>
""",
            base_dir=self.manifest_dir,
        )
        self.assertEqual(["inner"], [p.name for p in manifest.projects])
