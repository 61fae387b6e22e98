#!/usr/bin/env python3
"""
Classic spam scorer stage (SpamAssassin through spamc).

`spamc -c` only reports "score/threshold" on stdout and exits 1 when the
message is spam, 0 otherwise. Without -x spamc hides a missing daemon behind
"0/0" and exit 0, so -x is always passed. Exit codes in the sysexits range then
mean spamc itself failed (daemon unreachable, bad arguments) and are not
verdicts.

Author: Post-Data Filter Project
License: GPL-3.0
"""

import logging
import re

from .context import Context, StageResult
from .header_utils import make_header
from .message_buffer import MessageBuffer
from .stage import FilterStage, check_fault_codes
from .tool_invoker import ExternalTool, MalformedToolOutput

logger = logging.getLogger(__name__)

SPAM_EXIT_CODE = 1
SCORE_RE = re.compile(r'^-?\d+(\.\d+)?/-?\d+(\.\d+)?$')


def parse_score(output: str) -> str:
    """Extract "score/threshold" from spamc -c output."""
    first_line = output.strip().splitlines()[0].strip() if output.strip() else ''
    if not SCORE_RE.match(first_line):
        raise MalformedToolOutput(f"Unexpected spamc output: {first_line[:80]!r}")
    return first_line


class SpamcStage(FilterStage):
    """Rejects messages SpamAssassin classifies as spam, annotates the rest."""

    name = 'spamc'

    def __init__(self, tool: ExternalTool, max_size: int = 0):
        self.tool = tool
        self.max_size = max_size

    def is_available(self) -> bool:
        return self.tool.probe()

    def run(self, context: Context, buffer: MessageBuffer) -> StageResult:
        args = ['-c', '-x']
        if self.max_size:
            args += ['-s', str(self.max_size)]

        result = self.tool.invoke(args, stdin=buffer.open_reader())

        if result.returncode == SPAM_EXIT_CODE:
            logger.info(f"spamc classified message as spam ({result.text.strip()[:40]})")
            return StageResult.reject_permanent("spam detected")

        check_fault_codes(self.tool.name, result, ())
        if not result.ok:
            raise MalformedToolOutput(f"spamc returned unexpected exit status {result.returncode}")

        score = parse_score(result.text)
        logger.debug(f"spamc score {score}")
        return StageResult.accept(make_header('X-Spam-Score', score))
