# Copyright (C) 2023 The Android Open Source Project
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

"""Logic for printing user-friendly logs in reposync."""

import logging

from error import RepoExitError


SEPARATOR = "=" * 80
MAX_PRINT_ERRORS = 5


class _LevelPrefixFormatter(logging.Formatter):
    """Prefixes warnings and errors with their level name."""

    _PREFIXES = {
        "WARNING": "warning: ",
        "ERROR": "error: ",
        "CRITICAL": "fatal: ",
    }

    def format(self, record):
        msg = super().format(record)
        prefix = self._PREFIXES.get(record.levelname)
        if not prefix or msg.lower().startswith(prefix.split(":")[0]):
            return msg
        return prefix + msg


class RepoLogger(logging.Logger):
    """reposync Logging Module."""

    def __init__(self, name: str, level=logging.INFO, stream=None, **kwargs):
        super().__init__(name, level=level, **kwargs)
        handler = logging.StreamHandler(stream)
        handler.setFormatter(_LevelPrefixFormatter())
        self.addHandler(handler)

    def set_verbosity(self, quiet=False, verbose=False):
        """Quiet keeps warnings and errors only; verbose adds debug output."""
        if quiet:
            self.setLevel(logging.WARNING)
        elif verbose:
            self.setLevel(logging.DEBUG)
        else:
            self.setLevel(logging.INFO)

    def log_aggregated_errors(self, err: RepoExitError):
        """Print all aggregated logs."""
        self.error(SEPARATOR)

        if not err.aggregate_errors:
            self.error("reposync command failed: %s", type(err).__name__)
            self.error("\t%s", str(err))
            return

        self.error(
            "reposync command failed due to the following `%s` errors:",
            type(err).__name__,
        )
        self.error(
            "\n".join(str(e) for e in err.aggregate_errors[:MAX_PRINT_ERRORS])
        )

        diff = len(err.aggregate_errors) - MAX_PRINT_ERRORS
        if diff > 0:
            self.error("+%d additional errors...", diff)
