#!/usr/bin/env python3
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

"""The reposync command line.

People shouldn't run this directly; instead, they should use the `reposync`
console script installed by setup.py.
"""

import optparse
import os
import signal
import sys

from error import InvalidArgumentsError
from error import RepoExitError
from git_command import GitRunner
from git_command import VERSION
from manifest_xml import FindRepoTopdir
from manifest_xml import LoadManifest
from manifest_xml import ParseList
from manifest_xml import RepoClient
from repo_logging import RepoLogger
from sync_engine import SyncEngine
from sync_engine import SyncOptions


logger = RepoLogger(__file__)

KEYBOARD_INTERRUPT_EXIT = 128 + signal.SIGINT

global_options = optparse.OptionParser(
    usage="reposync [-C DIR] [-q|-v] COMMAND [ARGS]",
    add_help_option=False,
)
global_options.disable_interspersed_args()
global_options.add_option(
    "-h", "--help", action="store_true", help="show this help message and exit"
)
global_options.add_option(
    "-C",
    "--topdir",
    dest="topdir",
    metavar="DIR",
    help="top of the client checkout (defaults to the closest parent "
    "directory holding .repo/)",
)
global_options.add_option(
    "-m",
    "--manifest-file",
    dest="manifest_file",
    metavar="NAME.xml",
    help="manifest to use instead of .repo/manifest.xml",
)
global_options.add_option(
    "-q",
    "--quiet",
    action="store_true",
    help="only show warnings and errors",
)
global_options.add_option(
    "-v",
    "--verbose",
    action="store_true",
    help="show all output, with a diagnosis of git failures",
)
global_options.add_option(
    "--version",
    dest="show_version",
    action="store_true",
    help="display this version of reposync",
)


def _GroupsOption(p):
    p.add_option(
        "-g",
        "--groups",
        metavar="GROUP",
        help="restrict to projects in these comma separated groups; "
        "prefix a group with - to exclude it",
    )


def _SyncOptions(p):
    p.add_option(
        "-j",
        "--jobs",
        default=None,
        type=int,
        metavar="JOBS",
        help="number of jobs to run in parallel for both phases",
    )
    p.add_option(
        "--jobs-network",
        default=None,
        type=int,
        metavar="JOBS",
        help="number of network jobs to run in parallel (defaults to "
        "--jobs or twice the number of CPUs)",
    )
    p.add_option(
        "--jobs-checkout",
        default=None,
        type=int,
        metavar="JOBS",
        help="number of local checkout jobs to run in parallel (defaults "
        "to --jobs or the number of CPUs)",
    )
    p.add_option(
        "--fail-fast",
        dest="fail_fast",
        action="store_true",
        help="stop syncing after first error is hit",
    )
    p.add_option(
        "--force-sync",
        dest="force_sync",
        action="store_true",
        help="discard local changes that block a checkout. WARNING: this "
        "may cause loss of data",
    )
    p.add_option(
        "--force-remove-dirty",
        dest="force_remove_dirty",
        action="store_true",
        help="force remove projects with uncommitted modifications if "
        "projects no longer exist in the manifest. "
        "WARNING: this may cause loss of data",
    )
    p.add_option(
        "-l",
        "--local-only",
        dest="local_only",
        action="store_true",
        help="only update working tree, don't fetch",
    )
    p.add_option(
        "-n",
        "--network-only",
        dest="network_only",
        action="store_true",
        help="fetch only, don't update working tree",
    )
    p.add_option(
        "-c",
        "--current-branch",
        dest="current_branch_only",
        action="store_true",
        help="fetch only current branch from server",
    )
    p.add_option(
        "-u",
        "--manifest-server-username",
        action="store",
        dest="manifest_server_username",
        default=os.environ.get("REPO_MANIFEST_SERVER_USERNAME"),
        help="username to authenticate with the manifest server",
    )
    p.add_option(
        "-p",
        "--manifest-server-password",
        action="store",
        dest="manifest_server_password",
        default=os.environ.get("REPO_MANIFEST_SERVER_PASSWORD"),
        help="password to authenticate with the manifest server",
    )
    p.add_option(
        "--use-superproject",
        action="store_true",
        help="pin projects to the commits recorded in the manifest "
        "superproject",
    )
    p.add_option("--tags", action="store_true", help="fetch tags")
    p.add_option(
        "--retry-fetches",
        default=3,
        action="store",
        type="int",
        help="number of times to retry fetches on transient errors",
    )
    p.add_option(
        "--network-timeout",
        default=None,
        type="float",
        metavar="SECONDS",
        help="abandon a clone or fetch after this many seconds",
    )
    p.add_option(
        "--no-prune",
        dest="prune",
        default=True,
        action="store_false",
        help="keep checkouts and refs that no longer exist upstream",
    )
    p.add_option(
        "--no-auto-gc",
        dest="auto_gc",
        default=True,
        action="store_false",
        help="do not run garbage collection on any projects",
    )
    p.add_option(
        "--git-lfs",
        dest="git_lfs",
        default=False,
        action="store_true",
        help="pull Git LFS objects after cloning or fetching",
    )
    p.add_option(
        "-s",
        "--smart-sync",
        dest="smart_sync",
        action="store_true",
        help="smart sync using manifest from the latest known good build",
    )
    p.add_option(
        "-t",
        "--smart-tag",
        dest="smart_tag",
        action="store",
        help="smart sync using manifest from a known tag",
    )
    p.add_option(
        "--hyper-sync",
        dest="hyper_sync",
        action="store_true",
        help="only fetch projects the manifest server reports as changed",
    )
    p.add_option(
        "--manifest-url",
        dest="manifest_url",
        help="URL of the manifest repository, for relative remote URLs",
    )
    _GroupsOption(p)


def _ListOptions(p):
    _GroupsOption(p)
    p.add_option(
        "-n",
        "--name-only",
        dest="name_only",
        action="store_true",
        help="display only the name of the repository",
    )
    p.add_option(
        "-p",
        "--path-only",
        dest="path_only",
        action="store_true",
        help="display only the path of the repository",
    )


def _ManifestOptions(p):
    _GroupsOption(p)
    p.add_option(
        "--format",
        choices=("xml", "json"),
        default="xml",
        help="output format: xml (default) or json",
    )
    p.add_option(
        "-o",
        "--output-file",
        dest="output_file",
        default="-",
        metavar="-|NAME.xml",
        help="file to save the manifest to (default: stdout)",
    )


def _RunSync(client, gopts, opt, args):
    if args:
        raise InvalidArgumentsError("sync takes no arguments")
    options = SyncOptions(
        jobs_network=opt.jobs_network or opt.jobs,
        jobs_checkout=opt.jobs_checkout or opt.jobs,
        fail_fast=opt.fail_fast,
        force_sync=opt.force_sync,
        force_remove_dirty=opt.force_remove_dirty,
        prune=opt.prune,
        local_only=opt.local_only,
        network_only=opt.network_only,
        quiet=gopts.quiet,
        verbose=gopts.verbose,
        groups=ParseList(opt.groups),
        smart_sync=opt.smart_sync,
        smart_tag=opt.smart_tag,
        hyper_sync=opt.hyper_sync,
        use_superproject=opt.use_superproject,
        manifest_server_username=opt.manifest_server_username,
        manifest_server_password=opt.manifest_server_password,
        retry_fetches=opt.retry_fetches,
        tags=opt.tags,
        current_branch_only=opt.current_branch_only,
        network_timeout=opt.network_timeout,
        auto_gc=opt.auto_gc,
        git_lfs=opt.git_lfs,
        manifest_url=opt.manifest_url,
    )
    engine = SyncEngine(client, runner=GitRunner(log=logger), log=logger)
    engine.Sync(options)


def _RunList(client, gopts, opt, args):
    engine = SyncEngine(client, log=logger)
    if args:
        projects = engine.GetProjectsByNames(args)
    else:
        projects = engine.GetProjects(ParseList(opt.groups))

    lines = []
    for project in projects:
        if opt.name_only and not opt.path_only:
            lines.append(project.name)
        elif opt.path_only and not opt.name_only:
            lines.append(project.relpath)
        else:
            lines.append(f"{project.relpath} : {project.name}")
    lines.sort()
    if lines:
        print("\n".join(lines))


def _RunManifest(client, gopts, opt, args):
    if args:
        raise InvalidArgumentsError("manifest takes no arguments")
    manifest = LoadManifest(client, groups=ParseList(opt.groups), log=logger)
    if opt.format == "json":
        output = manifest.ToJson()
    else:
        output = manifest.ToXmlString()

    if opt.output_file == "-":
        sys.stdout.write(output)
        if not output.endswith("\n"):
            sys.stdout.write("\n")
    else:
        with open(opt.output_file, "w", encoding="utf-8") as fd:
            fd.write(output)
        logger.info("Saved manifest to %s", opt.output_file)


# name -> (summary, options setup, handler)
COMMANDS = {
    "sync": (
        "Update working tree to the latest revision",
        _SyncOptions,
        _RunSync,
    ),
    "list": (
        "List projects and their associated directories",
        _ListOptions,
        _RunList,
    ),
    "manifest": (
        "Print the resolved manifest",
        _ManifestOptions,
        _RunManifest,
    ),
}


def _PrintHelp():
    global_options.print_help()
    print("\nThe available commands are:")
    for name in sorted(COMMANDS):
        print("  %-10s %s" % (name, COMMANDS[name][0]))
    print("\nSee 'reposync COMMAND --help' for more information.")


def _Run(argv):
    gopts, argv = global_options.parse_args(argv)
    logger.set_verbosity(quiet=gopts.quiet, verbose=gopts.verbose)

    if gopts.show_version:
        print(f"reposync version {VERSION}")
        return 0
    if gopts.help or not argv:
        _PrintHelp()
        return 0

    name, argv = argv[0], argv[1:]
    if name not in COMMANDS:
        logger.error("reposync: '%s' is not a reposync command.", name)
        _PrintHelp()
        return 1
    summary, setup, handler = COMMANDS[name]
    parser = optparse.OptionParser(usage=f"reposync {name} [options]")
    parser.set_description(summary)
    setup(parser)
    opt, args = parser.parse_args(argv)

    topdir = gopts.topdir or FindRepoTopdir()
    if not topdir:
        logger.error(
            "not in a reposync client: no .repo/ directory found in the "
            "current directory or its parents"
        )
        return 1
    manifest_file = gopts.manifest_file
    if manifest_file:
        manifest_file = os.path.abspath(manifest_file)
    client = RepoClient(topdir, manifest_file=manifest_file)

    return handler(client, gopts, opt, args) or 0


def main(argv=None):
    if argv is None:
        argv = sys.argv[1:]
    try:
        result = _Run(argv)
    except RepoExitError as e:
        logger.log_aggregated_errors(e)
        result = e.exit_code
    except KeyboardInterrupt:
        print("aborted by user", file=sys.stderr)
        result = KEYBOARD_INTERRUPT_EXIT
    sys.exit(result)


if __name__ == "__main__":
    main()
