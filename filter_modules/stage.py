#!/usr/bin/env python3
"""
Common shape of a filter stage.

Author: Post-Data Filter Project
License: GPL-3.0
"""

import logging

from .context import Context, StageResult
from .message_buffer import MessageBuffer
from .tool_invoker import ToolInvocationError, ToolResult

logger = logging.getLogger(__name__)


class FilterStage:
    """
    One step of the fixed filter pipeline.

    Subclasses set `name`, implement `is_available` (is the external capability
    there at all) and `run` (decide about the message). `run` may return
    StageResult.skip() when a per-message precondition is not met.
    """

    name = 'stage'

    def is_available(self) -> bool:
        raise NotImplementedError

    def run(self, context: Context, buffer: MessageBuffer) -> StageResult:
        raise NotImplementedError

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.name}>"


def check_fault_codes(tool_name: str, result: ToolResult, fault_codes) -> None:
    """Raise ToolInvocationError when the exit status means the tool itself failed."""
    if result.returncode in fault_codes or result.returncode >= 64:
        stderr = result.stderr.decode('utf-8', errors='replace').strip()
        logger.warning(f"{tool_name} failed with exit status {result.returncode}: {stderr[:200]}")
        raise ToolInvocationError(f"{tool_name} failed with exit status {result.returncode}")
