#!/usr/bin/env python3
"""
External tool invocation for filter stages.

Every collaborator (greylist, spamc, rspamc, clamdscan, dkimsign) is an
optional binary. A stage asks the tool whether it is installed (probe) and
runs it against the message with a hard timeout (invoke). Anything that keeps
the tool from producing a usable answer is raised as ToolInvocationError so
the stage can defer the message instead of guessing.

Author: Post-Data Filter Project
License: GPL-3.0
"""

import logging
import shutil
import subprocess
from dataclasses import dataclass
from typing import BinaryIO, List, Optional, Sequence, Union

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60


class ToolInvocationError(Exception):
    """The external tool could not be run or gave no usable answer"""
    pass


class ToolTimeout(ToolInvocationError):
    """The external tool did not finish in time"""
    pass


class MalformedToolOutput(ToolInvocationError):
    """The external tool finished but its output could not be understood"""
    pass


@dataclass
class ToolResult:
    """
    Structured result of one tool run.

    Attributes:
        returncode: Process exit status (negative when killed by a signal)
        stdout: Raw standard output
        stderr: Raw standard error
    """
    returncode: int
    stdout: bytes = b''
    stderr: bytes = b''

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def killed(self) -> bool:
        return self.returncode < 0

    @property
    def text(self) -> str:
        return self.stdout.decode('utf-8', errors='replace')

    @property
    def lines(self) -> List[str]:
        return [line.rstrip('\r') for line in self.text.splitlines()]


class ExternalTool:
    """A command line tool reached through stdin/stdout and an exit code."""

    def __init__(self, command: str, timeout: float = DEFAULT_TIMEOUT, name: Optional[str] = None):
        self.command = command
        self.timeout = timeout
        self.name = name or command
        self._path = None
        self._probed = False

    def __repr__(self):
        return f"<ExternalTool {self.name} command={self.command!r}>"

    @property
    def path(self) -> Optional[str]:
        if not self._probed:
            self._path = shutil.which(self.command)
            self._probed = True
        return self._path

    def probe(self) -> bool:
        """Check if the tool is installed; the lookup is done once."""
        return self.path is not None

    def invoke(self, args: Sequence[str] = (), stdin: Union[bytes, BinaryIO, None] = None,
               timeout: Optional[float] = None) -> ToolResult:
        """
        Run the tool and wait for it.

        Args:
            args: Command line arguments (without the program)
            stdin: Bytes to feed, or a readable file object handed to the child
            timeout: Seconds to wait, defaults to the tool timeout

        Returns:
            ToolResult with exit status and captured output

        Raises:
            ToolTimeout: the tool exceeded the timeout and was killed
            ToolInvocationError: the tool could not be started
        """
        if not self.probe():
            raise ToolInvocationError(f"{self.name} is not installed")

        timeout = self.timeout if timeout is None else timeout
        cmd = [self.path] + list(args)

        run_kwargs = {
            'stdout': subprocess.PIPE,
            'stderr': subprocess.PIPE,
            'timeout': timeout,
        }
        if isinstance(stdin, (bytes, bytearray)):
            run_kwargs['input'] = bytes(stdin)
        elif stdin is not None:
            run_kwargs['stdin'] = stdin
        else:
            run_kwargs['stdin'] = subprocess.DEVNULL

        logger.debug(f"Running {' '.join(cmd)} (timeout {timeout}s)")
        try:
            completed = subprocess.run(cmd, **run_kwargs)
        except subprocess.TimeoutExpired:
            logger.warning(f"{self.name} timed out after {timeout}s (process killed)")
            raise ToolTimeout(f"{self.name} timed out after {timeout}s")
        except OSError as e:
            logger.error(f"Could not run {self.name}: {e}")
            raise ToolInvocationError(f"Could not run {self.name}: {e}") from e

        result = ToolResult(completed.returncode, completed.stdout or b'', completed.stderr or b'')
        if result.stderr:
            logger.debug(f"{self.name} stderr: {result.stderr[:500]!r}")
        if result.killed:
            raise ToolInvocationError(f"{self.name} was killed by signal {-result.returncode}")
        return result
