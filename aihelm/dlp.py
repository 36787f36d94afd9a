"""Sensitive-data scanner for outbound prompts.

Detects regulated data (card numbers, SSNs, credentials, bank accounts,
passport numbers, contact details, public IP addresses) in a user's message
and produces a redacted copy. Only the redacted copy is ever sent to a
model provider.

Detection rules run in a fixed order. When two rules match overlapping
spans, the earlier rule keeps the span.
"""

import ipaddress
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Pattern

_logger = logging.getLogger("aihelm")


@dataclass(frozen=True)
class DLPFinding:
    """A single span of sensitive data found in a message."""

    type: str
    label: str
    match: str
    start: int
    end: int
    placeholder: str

    @property
    def masked(self) -> str:
        """Display form showing only the first and last two characters."""
        cleaned = self.match.strip()
        if len(cleaned) <= 4:
            return "****"
        return cleaned[:2] + "*" * max(len(cleaned) - 4, 3) + cleaned[-2:]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for clients. The raw match is never included."""
        return {
            "type": self.type,
            "label": self.label,
            "maskedMatch": self.masked,
            "placeholder": self.placeholder,
            "startIndex": self.start,
            "endIndex": self.end,
        }


@dataclass
class ScanResult:
    """Outcome of scanning one message."""

    findings: List[DLPFinding] = field(default_factory=list)
    redacted_message: str = ""
    summary: str = ""

    @property
    def has_sensitive_data(self) -> bool:
        return bool(self.findings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hasSensitiveData": self.has_sensitive_data,
            "findings": [f.to_dict() for f in self.findings],
            "summary": self.summary,
        }


@dataclass(frozen=True)
class _Rule:
    type: str
    label: str
    pattern: Pattern[str]
    placeholder: str
    validate: Optional[Callable[[str], bool]] = None
    # Capture group holding the sensitive span; 0 is the whole match.
    group: int = 0


def luhn_valid(number: str) -> bool:
    """Return True if the digits of ``number`` pass the Luhn checksum."""
    digits = [int(ch) for ch in number if ch.isdigit()]
    if not digits:
        return False
    total = 0
    for i, digit in enumerate(reversed(digits)):
        if i % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


_CARD_PREFIXES = ("4", "5", "6", "34", "37", "30", "36", "38")


def _valid_card(match: str) -> bool:
    digits = re.sub(r"\D", "", match)
    if not 13 <= len(digits) <= 19:
        return False
    if not digits.startswith(_CARD_PREFIXES):
        return False
    return luhn_valid(digits)


def _valid_ssn(match: str) -> bool:
    digits = re.sub(r"\D", "", match)
    if len(digits) != 9:
        return False
    area, group, serial = int(digits[:3]), int(digits[3:5]), int(digits[5:])
    if area == 0 or area == 666 or area >= 900:
        return False
    return group != 0 and serial != 0


def _valid_iban(match: str) -> bool:
    cleaned = re.sub(r"\s", "", match).upper()
    if not 15 <= len(cleaned) <= 34:
        return False
    rearranged = cleaned[4:] + cleaned[:4]
    numeric = "".join(str(int(ch, 36)) for ch in rearranged)
    return int(numeric) % 97 == 1


PLACEHOLDER_EMAIL_DOMAINS = frozenset(
    {
        "example.com",
        "example.org",
        "example.net",
        "test.com",
        "placeholder.com",
        "demo.local",
        "localhost",
    }
)


def _valid_email(match: str) -> bool:
    domain = match.rsplit("@", 1)[-1].lower()
    return not any(
        domain == d or domain.endswith("." + d) for d in PLACEHOLDER_EMAIL_DOMAINS
    )


def _valid_phone(match: str) -> bool:
    digits = re.sub(r"\D", "", match)
    if len(digits) == 11:
        if not digits.startswith("1"):
            return False
        digits = digits[1:]
    if len(digits) != 10:
        return False
    return len(set(digits)) > 1


_EXCLUDED_NETWORKS = [
    ipaddress.ip_network(net)
    for net in (
        "127.0.0.0/8",
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "0.0.0.0/32",
        "255.255.255.255/32",
    )
]


def _valid_ip(match: str) -> bool:
    try:
        address = ipaddress.ip_address(match)
    except ValueError:
        return False
    return not any(address in net for net in _EXCLUDED_NETWORKS)


_OCTET = r"(?:25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)"

RULES: List[_Rule] = [
    _Rule(
        type="credit_card",
        label="Credit card number",
        pattern=re.compile(r"(?<!\d)(?:\d[ -]?){12,18}\d(?!\d)"),
        placeholder="[REDACTED_CREDIT_CARD]",
        validate=_valid_card,
    ),
    _Rule(
        type="ssn",
        label="Social Security number",
        pattern=re.compile(r"(?<![\d-])\d{3}([- ])\d{2}\1\d{4}(?![\d-])"),
        placeholder="[REDACTED_SSN]",
        validate=_valid_ssn,
    ),
    _Rule(
        type="api_key",
        label="API key or token",
        pattern=re.compile(
            r"(?<![A-Za-z0-9_-])(?:"
            r"sk-ant-[A-Za-z0-9_-]{20,}"
            r"|sk-(?:proj-)?[A-Za-z0-9_-]{20,}"
            r"|AIza[A-Za-z0-9_-]{30,}"
            r"|ghp_[A-Za-z0-9]{36,}"
            r"|glpat-[A-Za-z0-9_-]{20,}"
            r"|xox[baprs]-[A-Za-z0-9-]{10,}"
            r"|AKIA[A-Z0-9]{16}"
            r")(?![A-Za-z0-9_-])"
        ),
        placeholder="[REDACTED_API_KEY]",
    ),
    _Rule(
        type="bank_account",
        label="Bank account number",
        pattern=re.compile(r"\b[A-Z]{2}\d{2}(?: ?[A-Z0-9]{4}){2,7}(?: ?[A-Z0-9]{1,4})?\b"),
        placeholder="[REDACTED_BANK_ACCOUNT]",
        validate=_valid_iban,
    ),
    _Rule(
        type="passport",
        label="Passport number",
        pattern=re.compile(
            r"\b(?:passport|travel\s+document|document)\s*(?:#|number|no\.?)?\s*:?\s*"
            r"([A-Z]{1,2}\d{6,9})\b",
            re.IGNORECASE,
        ),
        placeholder="[REDACTED_PASSPORT]",
        group=1,
    ),
    _Rule(
        type="email",
        label="Email address",
        pattern=re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        placeholder="[REDACTED_EMAIL]",
        validate=_valid_email,
    ),
    _Rule(
        type="phone",
        label="Phone number",
        pattern=re.compile(
            r"(?<![\w+])(?:\+?1[-.\s]?)?(?:\(\d{3}\)|\d{3})[-.\s]?\d{3}[-.\s]?\d{4}(?!\d)"
        ),
        placeholder="[REDACTED_PHONE]",
        validate=_valid_phone,
    ),
    _Rule(
        type="ip_address",
        label="IP address",
        pattern=re.compile(r"(?<![\d.])" + r"\.".join([_OCTET] * 4) + r"(?![\d.]*\d)"),
        placeholder="[REDACTED_IP]",
        validate=_valid_ip,
    ),
]

_PLACEHOLDERS = {rule.type: rule.placeholder for rule in RULES}


def _summarize(findings: List[DLPFinding]) -> str:
    counts: Dict[str, int] = {}
    for finding in findings:
        counts[finding.label] = counts.get(finding.label, 0) + 1
    if not counts:
        return ""
    parts = [
        label if count == 1 else "{} ({})".format(label, count)
        for label, count in counts.items()
    ]
    return "Detected: {}".format(", ".join(parts))


def scan(message: Any) -> ScanResult:
    """Scan a message for sensitive data and build its redacted copy.

    Args:
        message: The user's raw message text.

    Returns:
        A ScanResult. With no findings, ``redacted_message`` is the input
        unchanged and ``summary`` is empty. Non-string input is a contract
        violation: it is logged and yields an empty result.
    """
    if not isinstance(message, str):
        _logger.warning(
            "DLP scan received non-text input of type %s", type(message).__name__
        )
        return ScanResult()

    findings: List[DLPFinding] = []
    for rule in RULES:
        for m in rule.pattern.finditer(message):
            text = m.group(rule.group)
            if rule.validate is not None and not rule.validate(text):
                continue
            start, end = m.start(rule.group), m.end(rule.group)
            if any(start < f.end and end > f.start for f in findings):
                continue
            findings.append(
                DLPFinding(
                    type=rule.type,
                    label=rule.label,
                    match=text,
                    start=start,
                    end=end,
                    placeholder=rule.placeholder,
                )
            )

    if not findings:
        return ScanResult(findings=[], redacted_message=message, summary="")

    findings.sort(key=lambda f: f.start)

    pieces: List[str] = []
    cursor = 0
    for finding in findings:
        pieces.append(message[cursor:finding.start])
        pieces.append(finding.placeholder)
        cursor = finding.end
    pieces.append(message[cursor:])
    redacted = "".join(pieces)

    # A span can recur elsewhere in a form the patterns did not match
    # (e.g. glued to other digits); scrub any literal leftovers.
    for finding in sorted(findings, key=lambda f: len(f.match), reverse=True):
        if finding.match in redacted:
            redacted = redacted.replace(finding.match, _PLACEHOLDERS[finding.type])

    return ScanResult(findings=findings, redacted_message=redacted, summary=_summarize(findings))
