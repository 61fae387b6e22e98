#!/usr/bin/env python3
"""
Reputation daemon stage (rspamd).

Two clients are supported, the first one found wins:

1. chasquid-rspamd: an adapter that already speaks the hook protocol. Its
   output is header lines on success, or the reject reason, and its exit
   status is the verdict (0 accept, 20 permanent, anything else temporary).
2. rspamc: the generic rspamd client. Only its "Action:" line is used.
   "reject" rejects the message; every other action, including "greylist"
   and "soft reject", is accepted and recorded in X-Spam-Action. Greylisting
   is done by the greylist stage, rspamd's own greylisting is not relied on.

Author: Post-Data Filter Project
License: GPL-3.0
"""

import logging
from enum import Enum
from typing import Optional

from .context import EX_REJECT_PERMANENT, Context, StageResult
from .header_utils import is_header_line, make_header, split_header_lines
from .message_buffer import MessageBuffer
from .stage import FilterStage
from .tool_invoker import ExternalTool, MalformedToolOutput, ToolInvocationError, ToolResult

logger = logging.getLogger(__name__)

REJECT_ACTION = 'reject'


class RspamdClient(Enum):
    ADAPTER = 'chasquid-rspamd'
    RSPAMC = 'rspamc'


def parse_action(output: str) -> str:
    """Return the value of the "Action:" line of rspamc output."""
    for line in output.splitlines():
        key, sep, value = line.partition(':')
        if sep and key.strip().lower() == 'action':
            action = value.strip()
            if action:
                return action
    raise MalformedToolOutput("No Action line in rspamc output")


class RspamdStage(FilterStage):
    """Asks rspamd what to do with the message."""

    name = 'rspamd'

    def __init__(self, adapter_tool: ExternalTool, rspamc_tool: ExternalTool):
        self.adapter_tool = adapter_tool
        self.rspamc_tool = rspamc_tool

    def select_client(self) -> Optional[RspamdClient]:
        if self.adapter_tool.probe():
            return RspamdClient.ADAPTER
        if self.rspamc_tool.probe():
            return RspamdClient.RSPAMC
        return None

    def is_available(self) -> bool:
        return self.select_client() is not None

    def run(self, context: Context, buffer: MessageBuffer) -> StageResult:
        client = self.select_client()
        if client is RspamdClient.ADAPTER:
            result = self.adapter_tool.invoke(stdin=buffer.open_reader())
            return self._from_adapter(result)
        if client is RspamdClient.RSPAMC:
            result = self.rspamc_tool.invoke(stdin=buffer.open_reader())
            return self._from_rspamc(result)
        return StageResult.skip("no rspamd client installed")

    def _from_adapter(self, result: ToolResult) -> StageResult:
        output = result.text.strip()

        if result.returncode == EX_REJECT_PERMANENT:
            logger.info(f"chasquid-rspamd rejected message: {output[:200]}")
            return StageResult.reject_permanent(output or "spam detected")

        if not result.ok:
            logger.info(f"chasquid-rspamd deferred message (exit {result.returncode}): {output[:200]}")
            return StageResult.reject_temporary(output or "spam check failed, please try again")

        lines = split_header_lines(result.text)
        bad = [line for line in lines if not is_header_line(line)]
        if bad:
            raise MalformedToolOutput(f"chasquid-rspamd printed a non-header line: {bad[0][:80]!r}")
        return StageResult.accept(*lines)

    def _from_rspamc(self, result: ToolResult) -> StageResult:
        if not result.ok:
            raise ToolInvocationError(f"rspamc failed with exit status {result.returncode}")

        action = parse_action(result.text)
        if action.lower() == REJECT_ACTION:
            logger.info("rspamd action is reject")
            return StageResult.reject_permanent("spam detected")

        logger.debug(f"rspamd action: {action}")
        return StageResult.accept(make_header('X-Spam-Action', action))
