#!/usr/bin/env python3
"""
ClamAV antivirus stage for the post-data filter.

The message is streamed to `clamdscan --no-summary --infected -`, which exits
1 when a signature matched and 2 on errors. When clamdscan is not installed
but a clamd daemon is listening, the same check is done over clamd's socket
with pyclamd.

Author: Post-Data Filter Project
License: GPL-3.0
"""

import logging
import os
from typing import Optional

import pyclamd

from .context import Context, StageResult
from .message_buffer import MessageBuffer
from .stage import FilterStage, check_fault_codes
from .tool_invoker import ExternalTool, ToolInvocationError

logger = logging.getLogger(__name__)

VIRUS_EXIT_CODE = 1
CLAMDSCAN_ERROR_CODES = (2,)
SCANNED_HEADER = 'X-Virus-Scanned: pass'
VIRUS_REASON = 'virus detected'


class ClamdSocketScanner:
    """ClamAV daemon reached over its Unix socket (or localhost:3310)"""

    def __init__(self, clamd_socket: str = '/var/run/clamav/clamd.ctl',
                 host: str = 'localhost', port: int = 3310, timeout: float = 120,
                 max_file_size: int = 50 * 1024 * 1024):
        self.clamd_socket = clamd_socket
        self.host = host
        self.port = port
        self.timeout = timeout
        self.max_file_size = max_file_size
        self.cd = None

    def _connect_to_clamd(self) -> bool:
        """Connect to ClamAV daemon via Unix socket, falling back to the network socket"""
        try:
            if self.clamd_socket and os.path.exists(self.clamd_socket):
                self.cd = pyclamd.ClamdUnixSocket(self.clamd_socket, timeout=self.timeout)
            else:
                logger.debug(f"Socket {self.clamd_socket} not found, trying {self.host}:{self.port}")
                self.cd = pyclamd.ClamdNetworkSocket(self.host, self.port, timeout=self.timeout)

            if self.cd.ping():
                logger.debug("Connected to ClamAV daemon")
                return True

            logger.warning("ClamAV daemon not responding to ping")
        except Exception as e:
            logger.debug(f"ClamAV daemon not reachable: {e}")

        self.cd = None
        return False

    def probe(self) -> bool:
        if self.cd is not None:
            return True
        return self._connect_to_clamd()

    def scan(self, data: bytes) -> Optional[str]:
        """
        Scan a message

        Returns:
            Virus name when infected, None when clean

        Raises:
            ToolInvocationError: the daemon could not scan the data
        """
        if not self.probe():
            raise ToolInvocationError("ClamAV daemon unavailable")

        try:
            scan_result = self.cd.scan_stream(data)
        except pyclamd.BufferTooLongError as e:
            raise ToolInvocationError(f"Message too long for clamd: {e}") from e
        except pyclamd.ConnectionError as e:
            self.cd = None
            raise ToolInvocationError(f"ClamAV connection lost: {e}") from e

        if not scan_result:
            return None

        # scan_result format: {'stream': ('FOUND', 'Virus.Name')}
        for status, detail in scan_result.values():
            if status == 'FOUND':
                return detail
        raise ToolInvocationError(f"ClamAV scan error: {scan_result}")


class AntivirusStage(FilterStage):
    """Rejects infected messages."""

    name = 'antivirus'

    def __init__(self, tool: ExternalTool, socket_scanner: Optional[ClamdSocketScanner] = None):
        self.tool = tool
        self.socket_scanner = socket_scanner

    def is_available(self) -> bool:
        if self.tool.probe():
            return True
        return self.socket_scanner is not None and self.socket_scanner.probe()

    def run(self, context: Context, buffer: MessageBuffer) -> StageResult:
        if self.tool.probe():
            return self._scan_with_clamdscan(buffer)
        return self._scan_with_socket(buffer)

    def _scan_with_clamdscan(self, buffer: MessageBuffer) -> StageResult:
        result = self.tool.invoke(['--no-summary', '--infected', '-'], stdin=buffer.open_reader())

        if result.returncode == VIRUS_EXIT_CODE:
            logger.warning(f"Virus detected: {result.text.strip()[:200]}")
            return StageResult.reject_permanent(VIRUS_REASON)

        check_fault_codes(self.tool.name, result, CLAMDSCAN_ERROR_CODES)
        if not result.ok:
            raise ToolInvocationError(f"clamdscan returned unexpected exit status {result.returncode}")

        return StageResult.accept(SCANNED_HEADER)

    def _scan_with_socket(self, buffer: MessageBuffer) -> StageResult:
        scanner = self.socket_scanner
        if buffer.size > scanner.max_file_size:
            logger.warning(f"Message exceeds scan size limit ({buffer.size} bytes), not scanned")
            return StageResult.skip("message too large to scan")

        virus_name = scanner.scan(buffer.read())
        if virus_name:
            logger.warning(f"Virus detected: {virus_name}")
            return StageResult.reject_permanent(VIRUS_REASON)

        return StageResult.accept(SCANNED_HEADER)
