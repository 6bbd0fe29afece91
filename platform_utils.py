# Copyright (C) 2016 The Android Open Source Project
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

import errno
import os
import platform
import shutil
import stat

from error import UnsafeDeleteError


def isWindows():
    """Returns True when running with the native port of Python for Windows,
    False when running on any other platform (including the Cygwin port of
    Python).
    """
    # Note: The cygwin port of Python returns "CYGWIN_NT_xxx"
    return platform.system() == "Windows"


def _makelongpath(path):
    """Return the input path normalized to support the Windows long path syntax
    ("\\\\?\\" prefix) if needed, i.e. if the input path is longer than the
    MAX_PATH limit.
    """
    if not isWindows():
        return path
    # Note: MAX_PATH is 260, but, for directories, the maximum value is
    # actually 246.
    if len(path) < 246:
        return path
    if path.startswith("\\\\?\\"):
        return path
    if not os.path.isabs(path):
        return path
    return "\\\\?\\" + os.path.normpath(path)


def symlink(source, link_name):
    """Creates a symbolic link pointing to source named link_name."""
    if isWindows():
        target = os.path.join(os.path.dirname(link_name), source)
        os.symlink(source, link_name, target_is_directory=isdir(target))
    else:
        os.symlink(source, link_name)


def rmtree(path, ignore_errors=False):
    """shutil.rmtree(path) wrapper with support for long paths on Windows.

    Availability: Unix, Windows.
    """
    onerror = None
    if isWindows():
        path = _makelongpath(path)
        onerror = handle_rmtree_error
    shutil.rmtree(path, ignore_errors=ignore_errors, onerror=onerror)


def handle_rmtree_error(function, path, excinfo):
    # Allow deleting read-only files.
    os.chmod(path, stat.S_IWRITE)
    function(path)


def rename(src, dst):
    """os.rename(src, dst) wrapper with support for long paths on Windows.

    Availability: Unix, Windows.
    """
    if isWindows():
        # On Windows, rename fails if destination exists.
        try:
            os.rename(_makelongpath(src), _makelongpath(dst))
        except OSError as e:
            if e.errno == errno.EEXIST:
                os.remove(_makelongpath(dst))
                os.rename(_makelongpath(src), _makelongpath(dst))
            else:
                raise
    else:
        shutil.move(src, dst)


def remove(path, missing_ok=False):
    """Remove (delete) the file path. This is a replacement for os.remove that
    allows deleting read-only files on Windows, with support for long paths and
    for deleting directory symbolic links.

    Availability: Unix, Windows.
    """
    longpath = _makelongpath(path)
    try:
        os.remove(longpath)
    except OSError as e:
        if e.errno == errno.ENOENT:
            if not missing_ok:
                raise
        elif isWindows() and e.errno == errno.EACCES:
            os.chmod(longpath, stat.S_IWRITE)
            # Directory symbolic links must be deleted with 'rmdir'.
            if islink(longpath) and isdir(longpath):
                os.rmdir(longpath)
            else:
                os.remove(longpath)
        else:
            raise


def walk(top, topdown=True, onerror=None, followlinks=False):
    """os.walk(path) wrapper with support for long paths on Windows."""
    return os.walk(_makelongpath(top), topdown, onerror, followlinks)


def listdir(path):
    """os.listdir(path) wrapper with support for long paths on Windows."""
    return os.listdir(_makelongpath(path))


def rmdir(path):
    """os.rmdir(path) wrapper with support for long paths on Windows."""
    os.rmdir(_makelongpath(path))


def isdir(path):
    """os.path.isdir(path) wrapper with support for long paths on Windows."""
    return os.path.isdir(_makelongpath(path))


def islink(path):
    """os.path.islink(path) wrapper with support for long paths on Windows."""
    return os.path.islink(_makelongpath(path))


def readlink(path):
    """Return a string representing the path to which the symbolic link
    points. The result may be either an absolute or relative pathname;
    if it is relative, it may be converted to an absolute pathname using
    os.path.join(os.path.dirname(path), result).
    """
    return os.readlink(_makelongpath(path))


def _IsVolumeRoot(path):
    drive, tail = os.path.splitdrive(path)
    return tail in ("", "/", "\\") and (bool(drive) or tail != "")


def CheckSafeToDelete(path, repo_root):
    """Raise UnsafeDeleteError unless |path| may be removed recursively.

    Args:
        path: The directory about to be deleted.  Relative paths are taken
            relative to |repo_root|.
        repo_root: Top of the client checkout; |path| must live strictly
            below it.  An empty |repo_root| skips the containment check.
    """
    if not path:
        raise UnsafeDeleteError(path, "empty path")

    if path in (".", "..") or path.startswith(("../", "..\\")):
        raise UnsafeDeleteError(path, "relative path escapes the workspace")

    if repo_root and not os.path.isabs(path):
        abs_path = os.path.abspath(os.path.join(repo_root, path))
    else:
        abs_path = os.path.abspath(path)

    if _IsVolumeRoot(path) or _IsVolumeRoot(abs_path):
        raise UnsafeDeleteError(path, "filesystem root")

    if repo_root:
        abs_root = os.path.abspath(repo_root)
        if abs_path == abs_root:
            raise UnsafeDeleteError(path, "path is the workspace root")
        if not abs_path.startswith(abs_root.rstrip(os.sep) + os.sep):
            raise UnsafeDeleteError(
                path, f"path is outside the workspace {repo_root}"
            )


def IsSafeToDelete(path, repo_root):
    """Return True when CheckSafeToDelete accepts |path|."""
    try:
        CheckSafeToDelete(path, repo_root)
    except UnsafeDeleteError:
        return False
    return True
