"""
MX and SMTP checks for candidate addresses.

DNS goes through dnspython's async resolver. SMTP probes use ``smtplib`` in a
worker thread and stop at ``RCPT TO``; nothing is ever sent. Port 25 is often
filtered, so an inconclusive probe is not treated as a rejection.
"""

from __future__ import annotations

import asyncio
import smtplib
import socket
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

import dns.asyncresolver
import dns.exception
import dns.resolver
import structlog

from leadquarry.emails.patterns import GENERIC_EMAIL_PATTERNS

logger = structlog.get_logger(__name__)

MX_CACHE_TTL = 5 * 60.0
CATCH_ALL_CACHE_TTL = 7 * 24 * 3600.0
SMTP_TIMEOUT = 5.0
SMTP_MIN_INTERVAL = 0.1
HELO_HOST = "verify.local"
PROBE_SENDER = "verify@verify.local"

COMMON_BUSINESS_PREFIXES = frozenset(GENERIC_EMAIL_PATTERNS) | {"reception"}


class SmtpOutcome(Enum):
    PASSED = "passed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"


@dataclass
class VerificationResult:
    email: str
    is_valid: bool
    has_mx: bool
    smtp_check: SmtpOutcome
    confidence: float

    def to_dict(self) -> Dict[str, object]:
        return {
            "email": self.email,
            "is_valid": self.is_valid,
            "has_mx": self.has_mx,
            "smtp_check": self.smtp_check.value,
            "confidence": self.confidence,
        }


@dataclass
class GenericPatternResult:
    email: str
    source: str
    confidence: float
    pattern: str


def smtp_probe(email: str, mx_host: str, timeout: float = SMTP_TIMEOUT) -> SmtpOutcome:
    """Blocking RCPT TO probe. Connection problems count as a timeout."""
    try:
        with smtplib.SMTP(timeout=timeout) as server:
            server.connect(mx_host, 25)
            server.helo(HELO_HOST)
            code, _ = server.mail(PROBE_SENDER)
            if code != 250:
                return SmtpOutcome.FAILED
            code, _ = server.rcpt(email)
            return SmtpOutcome.PASSED if code in (250, 251) else SmtpOutcome.FAILED
    except (smtplib.SMTPException, socket.timeout, OSError):
        return SmtpOutcome.TIMEOUT


def smtp_responds(mx_host: str, timeout: float = SMTP_TIMEOUT) -> bool:
    """EHLO handshake only. Temporary 4xx greetings still prove a server exists."""
    try:
        with smtplib.SMTP(timeout=timeout) as server:
            code, _ = server.connect(mx_host, 25)
            if code in (421, 450, 451):
                return True
            code, _ = server.ehlo(HELO_HOST)
            return code == 250
    except (smtplib.SMTPException, socket.timeout, OSError):
        return False


class EmailVerifier:
    """Caches MX answers for five minutes and catch-all verdicts for a week."""

    def __init__(
        self,
        resolver: Optional[dns.asyncresolver.Resolver] = None,
        probe: Callable[[str, str], SmtpOutcome] = smtp_probe,
        handshake: Callable[[str], bool] = smtp_responds,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._resolver = resolver
        self._probe = probe
        self._handshake = handshake
        self._clock = clock
        self._mx_cache: Dict[str, Tuple[List[str], float]] = {}
        self._catch_all_cache: Dict[str, Tuple[bool, float]] = {}
        self._smtp_lock = asyncio.Lock()
        self._last_smtp = 0.0

    @property
    def resolver(self) -> dns.asyncresolver.Resolver:
        if self._resolver is None:
            self._resolver = dns.asyncresolver.Resolver()
            self._resolver.lifetime = SMTP_TIMEOUT
        return self._resolver

    async def get_mx_records(self, domain: str) -> List[str]:
        """MX hosts by preference. Any DNS failure means no MX."""
        domain = domain.lower()
        cached = self._mx_cache.get(domain)
        if cached is not None and self._clock() - cached[1] < MX_CACHE_TTL:
            return cached[0]

        try:
            answers = await self.resolver.resolve(domain, "MX")
            records = [str(r.exchange).rstrip(".") for r in sorted(answers, key=lambda r: r.preference)]
        except (dns.resolver.NoAnswer, dns.resolver.NXDOMAIN, dns.resolver.NoNameservers, dns.exception.DNSException):
            records = []

        self._mx_cache[domain] = (records, self._clock())
        return records

    async def _throttle(self) -> None:
        async with self._smtp_lock:
            wait = SMTP_MIN_INTERVAL - (self._clock() - self._last_smtp)
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_smtp = self._clock()

    async def probe(self, email: str, mx_host: str) -> SmtpOutcome:
        await self._throttle()
        return await asyncio.to_thread(self._probe, email, mx_host)

    async def detect_catch_all(self, domain: str) -> bool:
        """Probe a random nonexistent mailbox; acceptance means the domain takes anything."""
        domain = domain.lower()
        cached = self._catch_all_cache.get(domain)
        if cached is not None and self._clock() - cached[1] < CATCH_ALL_CACHE_TTL:
            return cached[0]

        records = await self.get_mx_records(domain)
        if not records:
            is_catch_all = False
        else:
            probe_address = f"test_{uuid.uuid4().hex[:12]}@{domain}"
            is_catch_all = await self.probe(probe_address, records[0]) is SmtpOutcome.PASSED

        self._catch_all_cache[domain] = (is_catch_all, self._clock())
        if is_catch_all:
            logger.info("Catch-all domain detected", domain=domain)
        return is_catch_all

    async def verify_email(self, email: str) -> VerificationResult:
        email = email.strip().lower()
        local, _, domain = email.partition("@")
        if not domain:
            return VerificationResult(email, False, False, SmtpOutcome.SKIPPED, 0.0)

        records = await self.get_mx_records(domain)
        if not records:
            return VerificationResult(email, False, False, SmtpOutcome.SKIPPED, 0.1)

        outcome = SmtpOutcome.SKIPPED
        for host in records[:2]:
            outcome = await self.probe(email, host)
            if outcome in (SmtpOutcome.PASSED, SmtpOutcome.FAILED):
                break

        if outcome is SmtpOutcome.PASSED:
            return VerificationResult(email, True, True, outcome, 0.95)
        if outcome is SmtpOutcome.FAILED:
            return VerificationResult(email, False, True, outcome, 0.2)
        confidence = 0.85 if local in COMMON_BUSINESS_PREFIXES else 0.7
        return VerificationResult(email, True, True, outcome, confidence)

    async def find_email_by_generic_pattern(self, domain: str) -> Optional[GenericPatternResult]:
        """``info@`` for a domain that can receive mail, rated by whether SMTP answers."""
        domain = domain.lower().removeprefix("www.")
        if len(domain) < 4 or "." not in domain:
            return None
        records = await self.get_mx_records(domain)
        if not records:
            return None

        await self._throttle()
        responds = await asyncio.to_thread(self._handshake, records[0])
        return GenericPatternResult(
            email=f"info@{domain}",
            source="pattern-smtp-verified" if responds else "pattern-mx-only",
            confidence=0.75 if responds else 0.50,
            pattern="info",
        )

    async def can_receive_email(self, domain: str) -> bool:
        return bool(await self.get_mx_records(domain))

    def reset(self) -> None:
        self._mx_cache.clear()
        self._catch_all_cache.clear()
