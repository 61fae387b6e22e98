#!/usr/bin/env python3
"""
DKIM signing stage.

Mail from authenticated users is signed when the sender's domain has both a
selector record and a private key:

    <config dir>/domains/<domain>/dkim_selector
    <config dir>/certs/<domain>/dkim_privkey.pem

Two incompatible `dkimsign` programs exist under the same name, and the one
installed is detected once from its --help text:

- Flag based (driusan/dkim): `dkimsign -n -hd -key K -s S -d D` prints only
  the new DKIM-Signature header.
- Diff based (dkimpy): `dkimsign S D K` prints the whole signed message. The
  added header lines are recovered with a line diff against the original and
  the signed message replaces the buffered one.

The dkimpy library can also sign in-process when no program is installed and
library signing is enabled in the configuration.

Missing key material is not a reason to reject mail, the stage is skipped.

Author: Post-Data Filter Project
License: GPL-3.0
"""

import difflib
import logging
import os
import re
from enum import Enum
from typing import List, Optional, Tuple

import dkim

from .context import Context, StageResult
from .header_utils import split_header_lines
from .message_buffer import MessageBuffer
from .stage import FilterStage
from .tool_invoker import ExternalTool, ToolInvocationError

logger = logging.getLogger(__name__)

FLAG_PROBE_RE = re.compile(r'(^|[\s,\[])-key\b', re.MULTILINE)
DOMAIN_RE = re.compile(r'^[A-Za-z0-9](?:[A-Za-z0-9.-]*[A-Za-z0-9])?$')
PROBE_TIMEOUT = 10


class SignerVariant(Enum):
    FLAG_BASED = 'flag-based'
    DIFF_BASED = 'diff-based'
    LIBRARY = 'library'


def added_lines(original: bytes, signed: bytes) -> List[bytes]:
    """
    Lines present in `signed` but not in `original`.

    Equivalent to `diff --changed-group-format='%>' --unchanged-group-format=''`:
    every line of the new version that belongs to an inserted or changed group.

    dkimpy only prepends headers, so that case never reaches the line matcher.
    Otherwise the common leading and trailing lines are dropped first and only
    the differing middle is diffed.
    """
    if original and signed.endswith(original) and signed[-len(original) - 1:-len(original)] in (b'', b'\n'):
        return signed[:len(signed) - len(original)].splitlines(keepends=True)

    old_lines = original.splitlines(keepends=True)
    new_lines = signed.splitlines(keepends=True)

    head = 0
    limit = min(len(old_lines), len(new_lines))
    while head < limit and old_lines[head] == new_lines[head]:
        head += 1
    tail = 0
    while (tail < limit - head
           and old_lines[len(old_lines) - 1 - tail] == new_lines[len(new_lines) - 1 - tail]):
        tail += 1

    old_middle = old_lines[head:len(old_lines) - tail]
    new_middle = new_lines[head:len(new_lines) - tail]
    if not old_middle:
        return new_middle

    matcher = difflib.SequenceMatcher(None, old_middle, new_middle, autojunk=False)
    added = []
    for tag, _i1, _i2, j1, j2 in matcher.get_opcodes():
        if tag in ('insert', 'replace'):
            added.extend(new_middle[j1:j2])
    return added


def decode_header_lines(raw_lines: List[bytes]) -> List[str]:
    return split_header_lines(b''.join(raw_lines).decode('ascii', errors='replace'))


class DkimSignStage(FilterStage):
    """Signs outbound mail of authenticated senders."""

    name = 'dkim'

    def __init__(self, tool: ExternalTool, config_dir: str = '.',
                 domains_dir: str = 'domains', certs_dir: str = 'certs',
                 use_library: bool = False):
        self.tool = tool
        self.config_dir = config_dir
        self.domains_dir = domains_dir
        self.certs_dir = certs_dir
        self.use_library = use_library
        self._variant = None
        self._resolved = False

    # -- signer detection -------------------------------------------------

    def _probe_variant(self) -> Optional[SignerVariant]:
        if not self.tool.probe():
            if self.use_library:
                return SignerVariant.LIBRARY
            return None

        try:
            result = self.tool.invoke(['--help'], timeout=PROBE_TIMEOUT)
        except ToolInvocationError as e:
            logger.warning(f"Could not probe {self.tool.name}: {e}")
            return None

        help_text = (result.stdout + b'\n' + result.stderr).decode('utf-8', errors='replace')
        if FLAG_PROBE_RE.search(help_text):
            return SignerVariant.FLAG_BASED
        return SignerVariant.DIFF_BASED

    @property
    def variant(self) -> Optional[SignerVariant]:
        """Signer in use, resolved on first access."""
        if not self._resolved:
            self._variant = self._probe_variant()
            self._resolved = True
            logger.debug(f"DKIM signer variant: {self._variant}")
        return self._variant

    def is_available(self) -> bool:
        return self.variant is not None

    # -- key material ---------------------------------------------------------

    def selector_path(self, domain: str) -> str:
        return os.path.join(self.config_dir, self.domains_dir, domain, 'dkim_selector')

    def key_path(self, domain: str) -> str:
        return os.path.join(self.config_dir, self.certs_dir, domain, 'dkim_privkey.pem')

    def load_key_material(self, domain: str) -> Optional[Tuple[str, str]]:
        """Return (selector, key path) for the domain, None if either is missing."""
        if not DOMAIN_RE.match(domain) or '..' in domain:
            logger.warning(f"Refusing to look up DKIM keys for odd domain {domain!r}")
            return None

        selector_file = self.selector_path(domain)
        key_file = self.key_path(domain)
        if not os.path.isfile(selector_file) or not os.path.isfile(key_file):
            logger.debug(f"No DKIM key material for {domain}")
            return None

        with open(selector_file, 'r') as f:
            selector = f.read().strip()
        if not selector:
            logger.warning(f"Empty DKIM selector in {selector_file}")
            return None

        return selector, key_file

    # -- signing ---------------------------------------------------------------

    def run(self, context: Context, buffer: MessageBuffer) -> StageResult:
        if not context.is_authenticated:
            return StageResult.skip("sender not authenticated")

        domain = context.sender_domain
        if not domain:
            return StageResult.skip("envelope sender has no domain")

        material = self.load_key_material(domain)
        if material is None:
            return StageResult.skip(f"no DKIM key material for {domain}")
        selector, key_file = material

        variant = self.variant
        if variant is SignerVariant.FLAG_BASED:
            lines = self._sign_flag_based(buffer, selector, domain, key_file)
        elif variant is SignerVariant.DIFF_BASED:
            lines = self._sign_diff_based(buffer, selector, domain, key_file)
        elif variant is SignerVariant.LIBRARY:
            lines = self._sign_with_library(buffer, selector, domain, key_file)
        else:
            return StageResult.skip("no DKIM signer")

        if not lines:
            logger.warning(f"DKIM signer produced no headers for {domain}")
            return StageResult.skip("signer added no headers")

        logger.info(f"Signed message for {domain} with selector {selector}")
        return StageResult.accept(*lines)

    def _sign_flag_based(self, buffer: MessageBuffer, selector: str, domain: str, key_file: str) -> List[str]:
        result = self.tool.invoke(
            ['-n', '-hd', '-key', key_file, '-s', selector, '-d', domain],
            stdin=buffer.open_reader())
        if not result.ok:
            raise ToolInvocationError(f"dkimsign failed with exit status {result.returncode}")
        return split_header_lines(result.text)

    def _sign_diff_based(self, buffer: MessageBuffer, selector: str, domain: str, key_file: str) -> List[str]:
        original = buffer.read()
        result = self.tool.invoke([selector, domain, key_file], stdin=original)
        if not result.ok:
            raise ToolInvocationError(f"dkimsign failed with exit status {result.returncode}")

        signed = result.stdout
        new_lines = added_lines(original, signed)
        if new_lines:
            buffer.replace(signed)
        return decode_header_lines(new_lines)

    def _sign_with_library(self, buffer: MessageBuffer, selector: str, domain: str, key_file: str) -> List[str]:
        with open(key_file, 'rb') as f:
            private_key = f.read()
        try:
            signature = dkim.sign(buffer.read(), selector.encode('ascii'),
                                  domain.encode('ascii'), private_key)
        except (dkim.DKIMException, UnicodeEncodeError) as e:
            raise ToolInvocationError(f"dkimpy signing failed: {e}") from e
        return split_header_lines(signature.decode('ascii', errors='replace'))
