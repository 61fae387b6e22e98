"""
Tests for running external tools.
"""

import pytest

from filter_modules.tool_invoker import (
    ExternalTool, ToolInvocationError, ToolResult, ToolTimeout,
)


class TestProbe:
    """Test availability probing."""

    def test_missing_tool(self):
        tool = ExternalTool('definitely-not-an-installed-tool-xyz')

        assert tool.probe() is False
        with pytest.raises(ToolInvocationError):
            tool.invoke()

    def test_installed_tool(self, make_script):
        tool = ExternalTool(make_script('hello', 'echo hello'))

        assert tool.probe() is True


class TestInvoke:
    """Test invoking a tool against message bytes."""

    def test_stdin_bytes_and_args(self, make_script):
        tool = ExternalTool(make_script('echoer', 'echo "args: $*"; cat'))

        result = tool.invoke(['-c', 'x'], stdin=b'message body')

        assert result.ok
        assert result.lines == ['args: -c x', 'message body']

    def test_stdin_from_buffer(self, make_script, message_buffer, sample_message):
        tool = ExternalTool(make_script('cat', 'cat'))

        result = tool.invoke(stdin=message_buffer.open_reader())

        assert result.stdout == sample_message

    def test_exit_status_and_stderr(self, make_script):
        tool = ExternalTool(make_script('fails', 'echo oops >&2; exit 3'))

        result = tool.invoke()

        assert result.returncode == 3
        assert not result.ok
        assert result.stderr == b'oops\n'

    def test_timeout(self, make_script):
        tool = ExternalTool(make_script('hangs', 'exec sleep 5'), timeout=0.2)

        with pytest.raises(ToolTimeout):
            tool.invoke()

    def test_timeout_is_an_invocation_error(self):
        assert issubclass(ToolTimeout, ToolInvocationError)

    def test_killed_by_signal(self, make_script):
        tool = ExternalTool(make_script('suicide', 'kill -9 $$'))

        with pytest.raises(ToolInvocationError, match='killed by signal 9'):
            tool.invoke()


class TestToolResult:
    """Test result helpers."""

    def test_lines_strip_cr(self):
        result = ToolResult(0, b'a\r\nb\r\n')
        assert result.lines == ['a', 'b']

    def test_killed(self):
        assert ToolResult(-15).killed
        assert not ToolResult(1).killed
