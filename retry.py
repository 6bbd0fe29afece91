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

"""Retry git operations with exponential backoff.

Examples:
  options = RetryOptions(max_retries=2)
  output = RetryWithBackoff(cancel_event, options, lambda attempt: fetch())
"""

import threading
from typing import Callable, Optional

from error import NetworkError
from error import OperationCancelledError
from repo_logging import RepoLogger


DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_SEC = 2.0
DEFAULT_MAX_DELAY_SEC = 30.0

# Checked first: once one of these shows up, retrying cannot help.
_NON_RETRYABLE_PATTERNS = (
    "repository not found",
    "authentication failed",
    "permission denied",
    "unknown revision",
    "did not match any file(s)",
    "does not appear to be a git repository",
    "reference is not a tree",
    "would be overwritten by checkout",
)

_NETWORK_PATTERNS = (
    "unable to access",
    "could not resolve host",
    "timed out",
    "connection refused",
    "connection reset",
    "temporarily unavailable",
    "failed to connect",
    "temporary failure in name resolution",
    "remote end hung up unexpectedly",
)

_LOCK_PATTERNS = (
    "index.lock",
    "file exists",
    "unable to lock",
)

_EXIT_128 = "exit status 128"

logger = RepoLogger(__file__)


class RetryOptions:
    """How often and how patiently RetryWithBackoff retries."""

    def __init__(
        self,
        max_retries: Optional[int] = None,
        base_delay: float = DEFAULT_BASE_DELAY_SEC,
        max_delay: float = DEFAULT_MAX_DELAY_SEC,
        should_retry: Optional[Callable[[Exception], bool]] = None,
    ):
        # None or a negative count falls back to the default; 0 runs once.
        if max_retries is None or max_retries < 0:
            max_retries = DEFAULT_MAX_RETRIES
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.should_retry = should_retry or IsRetryableGitError

    def __repr__(self):
        return (
            f"RetryOptions(max_retries={self.max_retries}, "
            f"base_delay={self.base_delay}, max_delay={self.max_delay})"
        )


def CalculateBackoff(attempt, base_delay, max_delay):
    """Delay to wait before |attempt| (1-based count of retries so far)."""
    if attempt <= 0:
        return 0.0
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


def RetryWithBackoff(ctx, options: RetryOptions, fn, log=None):
    """Run |fn| until it succeeds, is rejected, or runs out of attempts.

    Args:
        ctx: A threading.Event used as a cancellation token, or None.
        options: RetryOptions controlling attempts and delays.
        fn: Called as fn(attempt) for attempt = 0..max_retries.
        log: Logger used for retry messages.

    Returns:
        Whatever |fn| returned on its first successful attempt.

    Raises:
        OperationCancelledError: |ctx| was set before or between attempts.
        Exception: The last error raised by |fn| when retrying stopped.
    """
    log = log or logger
    ctx = ctx or threading.Event()
    last_err = None

    for attempt in range(options.max_retries + 1):
        if attempt > 0:
            delay = CalculateBackoff(
                attempt, options.base_delay, options.max_delay
            )
            log.debug(
                "retrying in %.1fs (attempt %d/%d): %s",
                delay,
                attempt + 1,
                options.max_retries + 1,
                last_err,
            )
            # Event.wait returns True as soon as the token is set.
            if ctx.wait(delay):
                raise OperationCancelledError(
                    f"operation cancelled: {last_err}"
                ) from last_err
        elif ctx.is_set():
            raise OperationCancelledError("operation cancelled")

        try:
            return fn(attempt)
        except Exception as e:
            last_err = e
            if not options.should_retry(e):
                raise
            if attempt == options.max_retries:
                raise
            log.warning("attempt %d failed: %s", attempt + 1, e)

    # Unreachable: the loop either returns or raises.
    raise last_err


def IsRetryableGitError(err) -> bool:
    """Whether a failed git invocation is worth repeating."""
    if err is None:
        return False
    msg = str(err).lower()

    if any(p in msg for p in _NON_RETRYABLE_PATTERNS):
        return False
    if isinstance(err, NetworkError) and err.retryable:
        return True
    if any(p in msg for p in _NETWORK_PATTERNS):
        return True
    if any(p in msg for p in _LOCK_PATTERNS):
        return True
    return _EXIT_128 in msg


def DiagnoseGitError(message) -> str:
    """Return a short guess at the cause of a git failure."""
    msg = str(message).lower()
    if "does not appear to be a git repository" in msg:
        return "the remote repository does not exist or is not a git repository"
    if "not found" in msg:
        return "the repository was not found; check the manifest name and remote"
    if "authentication" in msg or "permission denied" in msg:
        return "authentication failed; check your credentials or ssh keys"
    if any(p in msg for p in _NETWORK_PATTERNS):
        return "network problem; check connectivity and proxy settings"
    if "would be overwritten by checkout" in msg:
        return "local changes conflict with the checkout; commit or use --force-sync"
    if any(p in msg for p in _LOCK_PATTERNS):
        return "a git lock file is held; another git process may be running"
    return "unknown git failure; rerun with --verbose for details"
