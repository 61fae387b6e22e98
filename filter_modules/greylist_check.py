#!/usr/bin/env python3
"""
Greylist stage.

Unauthenticated senders that failed SPF are passed through the local
`greylist` tool, which records the (ip, sender) pair and only lets it through
once it has been seen for long enough. Legitimate MTAs retry after a
temporary failure, most spam software does not.

Author: Post-Data Filter Project
License: GPL-3.0
"""

import grp
import logging
import os
from typing import Optional

from .context import Context, StageResult
from .message_buffer import MessageBuffer
from .stage import FilterStage
from .tool_invoker import ExternalTool

logger = logging.getLogger(__name__)

GREYLIST_HEADER = 'X-Greylist: pass'
GREYLIST_REASON = 'greylisted, please try again'


def in_group(group_name: str) -> bool:
    """Check if the running process belongs to the given group."""
    try:
        gid = grp.getgrnam(group_name).gr_gid
    except KeyError:
        logger.debug(f"Group {group_name} does not exist")
        return False
    return gid == os.getegid() or gid in os.getgroups()


class GreylistStage(FilterStage):
    """Defers unknown unauthenticated senders that failed SPF."""

    name = 'greylist'

    def __init__(self, tool: ExternalTool, required_group: Optional[str] = 'greylist'):
        self.tool = tool
        self.required_group = required_group

    def is_available(self) -> bool:
        return self.tool.probe()

    def _group_allows(self) -> bool:
        if not self.required_group:
            return True
        return in_group(self.required_group)

    def run(self, context: Context, buffer: MessageBuffer) -> StageResult:
        if context.is_authenticated:
            return StageResult.skip("sender is authenticated")
        if context.spf_passed:
            return StageResult.skip("SPF passed")
        if not self._group_allows():
            logger.info(f"Not in group {self.required_group}, greylisting disabled")
            return StageResult.skip(f"not in group {self.required_group}")

        ip = context.remote_ip
        result = self.tool.invoke(['update', ip, context.envelope_sender])

        if not result.ok:
            logger.info(f"Greylisted {ip} <{context.envelope_sender}> (exit {result.returncode})")
            return StageResult.reject_temporary(GREYLIST_REASON)

        logger.debug(f"Greylist passed for {ip} <{context.envelope_sender}>")
        return StageResult.accept(GREYLIST_HEADER)
