"""
Pytest configuration and fixtures for all tests.
"""

import os
import stat
import sys
import pytest

# Add the project root to the Python path before any imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

# Keep the real /etc files out of the tests
os.environ.setdefault('POSTDATA_ENV_FILE', '/nonexistent/.env')
os.environ.setdefault('POSTDATA_CONFIG_FILE', '/nonexistent/filter_config.json')

from filter_modules.message_buffer import MessageBuffer
from filter_modules.tool_invoker import ToolInvocationError, ToolResult


SAMPLE_MESSAGE = (
    b"From: Alice <alice@example.com>\r\n"
    b"To: Bob <bob@example.org>\r\n"
    b"Subject: Lunch\r\n"
    b"Message-ID: <1234@example.com>\r\n"
    b"\r\n"
    b"See you at noon.\r\n"
)


class FakeTool:
    """Stands in for ExternalTool, returns canned results and records calls."""

    def __init__(self, name='fake', available=True, result=None, results=None, error=None):
        self.name = name
        self.command = name
        self.available = available
        self.results = list(results) if results else []
        self.result = result if result is not None else ToolResult(0)
        self.error = error
        self.calls = []

    def probe(self):
        return self.available

    def invoke(self, args=(), stdin=None, timeout=None):
        if not self.available:
            raise ToolInvocationError(f"{self.name} is not installed")
        if hasattr(stdin, 'read'):
            stdin = stdin.read()
        self.calls.append({'args': list(args), 'stdin': stdin, 'timeout': timeout})
        if self.error is not None:
            raise self.error
        if self.results:
            return self.results.pop(0)
        return self.result


@pytest.fixture
def sample_message():
    return SAMPLE_MESSAGE


@pytest.fixture
def message_buffer(sample_message):
    """A filled message buffer, closed after the test."""
    import io
    with MessageBuffer() as buffer:
        buffer.fill_from(io.BytesIO(sample_message))
        yield buffer


@pytest.fixture
def make_script(tmp_path):
    """Write an executable shell script into tmp_path/bin and return its path."""
    bin_dir = tmp_path / 'bin'
    bin_dir.mkdir(exist_ok=True)

    def _make(name, body):
        path = bin_dir / name
        path.write_text("#!/bin/sh\n" + body + "\n")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _make
