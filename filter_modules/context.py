#!/usr/bin/env python3
"""
Per-message context and result types for the post-data filter.

The MTA resolves everything about the SMTP session before the hook runs and
hands it over through the environment:

- AUTH_AS     authenticated user, empty when the session is not authenticated
- SPF_PASS    "1" when the SPF check passed
- REMOTE_ADDR peer address in ip:port form
- MAIL_FROM   envelope sender
- RCPT_TO     space separated envelope recipients (logging only)
- ON_TLS      "1" when the session was on TLS (logging only)

Author: Post-Data Filter Project
License: GPL-3.0
"""

import ipaddress
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Mapping, Optional, Tuple


EX_OK = 0
EX_REJECT_PERMANENT = 20
EX_TEMPFAIL = 75  # sysexits.h "please try again"


class Verdict(Enum):
    """Outcome of a stage or of the whole pipeline."""
    ACCEPT = 'accept'
    REJECT_PERMANENT = 'reject_permanent'
    REJECT_TEMPORARY = 'reject_temporary'

    @property
    def is_reject(self) -> bool:
        return self is not Verdict.ACCEPT

    @property
    def exit_code(self) -> int:
        return {
            Verdict.ACCEPT: EX_OK,
            Verdict.REJECT_PERMANENT: EX_REJECT_PERMANENT,
            Verdict.REJECT_TEMPORARY: EX_TEMPFAIL,
        }[self]


@dataclass(frozen=True)
class Context:
    """
    Immutable facts about one message, resolved by the calling MTA.

    Attributes:
        authenticated_identity: Authenticated user, None if unauthenticated
        spf_passed: Whether the SPF check passed
        remote_address: Peer address as reported by the MTA (ip:port)
        envelope_sender: MAIL FROM address
        recipients: Envelope recipients, carried for logging
        on_tls: Whether the session used TLS, carried for logging
    """
    authenticated_identity: Optional[str]
    spf_passed: bool
    remote_address: str
    envelope_sender: str
    recipients: Tuple[str, ...] = ()
    on_tls: bool = False

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] = None) -> 'Context':
        """Build the context from the hook environment (os.environ by default)."""
        if environ is None:
            environ = os.environ

        auth_as = environ.get('AUTH_AS', '').strip()
        return cls(
            authenticated_identity=auth_as or None,
            spf_passed=environ.get('SPF_PASS', '').strip() == '1',
            remote_address=environ.get('REMOTE_ADDR', '').strip(),
            envelope_sender=environ.get('MAIL_FROM', '').strip(),
            recipients=tuple(environ.get('RCPT_TO', '').split()),
            on_tls=environ.get('ON_TLS', '').strip() == '1',
        )

    @property
    def is_authenticated(self) -> bool:
        return bool(self.authenticated_identity)

    @property
    def remote_ip(self) -> str:
        """Peer address with the trailing port removed."""
        return strip_port(self.remote_address)

    @property
    def sender_domain(self) -> Optional[str]:
        """Domain part of the envelope sender, None when there is none."""
        _local, at, domain = self.envelope_sender.rpartition('@')
        if not at:
            return None
        domain = domain.strip()
        return domain or None


def strip_port(address: str) -> str:
    """
    Remove the ":port" suffix from an ip:port address.

    IPv6 peers come as "[2001:db8::1]:25"; the brackets are dropped too.
    A value that already is a bare IP address is returned unchanged.
    """
    address = address.strip()
    if not address:
        return address

    try:
        ipaddress.ip_address(address)
        return address
    except ValueError:
        pass

    host, sep, _port = address.rpartition(':')
    if not sep:
        return address
    if host.startswith('[') and host.endswith(']'):
        host = host[1:-1]
    return host


@dataclass
class StageResult:
    """
    What one stage decided about the message.

    Attributes:
        verdict: Accept or one of the reject verdicts
        header_lines: Header lines to add when the message is accepted
        reason: Human readable reason, used for rejects (bounce text / logs)
        skipped: True when the stage did not run (tool absent, precondition unmet)
    """
    verdict: Verdict = Verdict.ACCEPT
    header_lines: List[str] = field(default_factory=list)
    reason: str = ''
    skipped: bool = False

    @classmethod
    def accept(cls, *header_lines: str) -> 'StageResult':
        return cls(Verdict.ACCEPT, list(header_lines))

    @classmethod
    def skip(cls, reason: str = '') -> 'StageResult':
        return cls(Verdict.ACCEPT, [], reason, skipped=True)

    @classmethod
    def reject_permanent(cls, reason: str) -> 'StageResult':
        return cls(Verdict.REJECT_PERMANENT, [], reason)

    @classmethod
    def reject_temporary(cls, reason: str) -> 'StageResult':
        return cls(Verdict.REJECT_TEMPORARY, [], reason)
