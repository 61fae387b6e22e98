#!/usr/bin/env python3
"""
Helpers for the header lines handed back to the MTA.

Author: Post-Data Filter Project
License: GPL-3.0
"""

import re
from typing import Any, Iterable, List

HEADER_NAME_RE = re.compile(r'^[!-9;-~]+$')


def safe_header_value(value: Any, max_length: int = 200) -> str:
    """Convert a tool-provided value to a safe single-line header value"""
    if value is None:
        return ""

    if isinstance(value, bool):
        str_value = "true" if value else "false"
    elif isinstance(value, (list, tuple)):
        str_value = "; ".join(str(item)[:50] for item in value[:5])
    else:
        str_value = str(value)

    ascii_value = str_value.encode('ascii', errors='replace').decode('ascii')
    clean_value = re.sub(r'[\r\n\t\x00-\x1f\x7f]', ' ', ascii_value)

    if len(clean_value) > max_length:
        clean_value = clean_value[:max_length-3] + "..."

    return clean_value.strip()


def make_header(name: str, value: Any) -> str:
    """Build "Name: value" from an untrusted value"""
    clean_name = re.sub(r'[^\w-]', '', name)
    return f"{clean_name}: {safe_header_value(value)}"


def is_header_line(line: str) -> bool:
    """True for "Name: value" lines and folded continuation lines."""
    if not line:
        return False
    if line[0] in ' \t':
        return True
    name, sep, _ = line.partition(':')
    return bool(sep) and bool(HEADER_NAME_RE.match(name))


def split_header_lines(text: str) -> List[str]:
    """Split tool output into header lines, dropping blank lines and CRs."""
    return [line.rstrip('\r') for line in text.splitlines() if line.strip()]


def format_header_block(lines: Iterable[str]) -> str:
    return ''.join(f"{line}\n" for line in lines)
