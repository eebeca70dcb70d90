"""
WorkLog Sentinel - API Masking Service

Redacts sensitive values before they are written to the audit trail or
forwarded to an external service, and enforces the outbound domain
allow-list.
"""

import enum
import fnmatch
import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional
from urllib.parse import urlparse

from sentinel.utils.error_handling import DomainNotAllowed

logger = logging.getLogger(__name__)


REDACTED = "[REDACTED]"
MAX_DEPTH = 8

# Normalized (lowercase, no separators) fragments that mark a key as sensitive
SENSITIVE_KEY_FRAGMENTS = (
    "password",
    "passwd",
    "secret",
    "token",
    "apikey",
    "authorization",
    "cookie",
    "privatekey",
    "encryptionkey",
    "masterkey",
    "sensitivedata",
    "personalinfo",
    "financialdata",
    "creditcard",
    "cardnumber",
    "cvv",
    "ssn",
)


class MaskType(str, enum.Enum):
    FULL = "full"
    PARTIAL = "partial"
    HASH = "hash"


@dataclass
class MaskingRule:
    """Mask keys matching field_pattern (fnmatch, case-insensitive)."""
    field_pattern: str
    mask_type: MaskType = MaskType.FULL
    priority: int = 0


def _normalize_key(key: str) -> str:
    return "".join(ch for ch in key.lower() if ch.isalnum())


def _mask_partial(value: str) -> str:
    # Show 20% at each end, never less than one hidden character
    if len(value) <= 4:
        return "*" * len(value)
    visible = max(1, len(value) // 5)
    return value[:visible] + "*" * (len(value) - 2 * visible) + value[-visible:]


def _mask_hash(value: str) -> str:
    return "sha256:" + hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]


class APIMaskingManager:
    """Recursive redaction of sensitive keys and outbound domain checks."""

    def __init__(
        self,
        allowed_domains: Optional[Iterable[str]] = None,
        rules: Optional[Iterable[MaskingRule]] = None,
    ):
        self._allowed_domains = {domain.lower().strip(".") for domain in (allowed_domains or [])}
        self._rules: List[MaskingRule] = []
        for rule in rules or []:
            self.add_rule(rule)

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def add_rule(self, rule: MaskingRule) -> None:
        self._rules.append(rule)
        self._rules.sort(key=lambda r: r.priority, reverse=True)

    def _match_rule(self, key: str) -> Optional[MaskingRule]:
        lowered = key.lower()
        for rule in self._rules:
            if fnmatch.fnmatch(lowered, rule.field_pattern.lower()):
                return rule
        return None

    def is_sensitive_key(self, key: str) -> bool:
        normalized = _normalize_key(key)
        return any(fragment in normalized for fragment in SENSITIVE_KEY_FRAGMENTS)

    # ------------------------------------------------------------------
    # Masking
    # ------------------------------------------------------------------

    def _mask_value(self, value: Any, mask_type: MaskType) -> Any:
        if value is None:
            return None
        if mask_type == MaskType.FULL or not isinstance(value, (str, int, float)):
            return REDACTED
        text = str(value)
        if mask_type == MaskType.PARTIAL:
            return _mask_partial(text)
        return _mask_hash(text)

    def _mask(self, payload: Any, depth: int) -> Any:
        if depth > MAX_DEPTH:
            return "[TRUNCATED]"
        if isinstance(payload, dict):
            masked = {}
            for key, value in payload.items():
                key_str = str(key)
                rule = self._match_rule(key_str)
                if rule is not None:
                    masked[key_str] = self._mask_value(value, rule.mask_type)
                elif self.is_sensitive_key(key_str):
                    masked[key_str] = self._mask_value(value, MaskType.FULL)
                else:
                    masked[key_str] = self._mask(value, depth + 1)
            return masked
        if isinstance(payload, (list, tuple, set)):
            return [self._mask(item, depth + 1) for item in payload]
        return payload

    def mask_for_audit(self, payload: Any) -> Any:
        """Return a redacted copy of payload; the input is never modified."""
        return self._mask(payload, 0)

    # ------------------------------------------------------------------
    # Outbound calls
    # ------------------------------------------------------------------

    def add_allowed_domain(self, domain: str) -> None:
        self._allowed_domains.add(domain.lower().strip("."))

    @property
    def allowed_domains(self) -> List[str]:
        return sorted(self._allowed_domains)

    def is_domain_allowed(self, url: str) -> bool:
        host = (urlparse(url).hostname or "").lower()
        if not host:
            return False
        return any(host == domain or host.endswith("." + domain) for domain in self._allowed_domains)

    def mask_for_external_call(self, payload: Any, url: str) -> Any:
        """Mask payload for url, refusing hosts outside the allow-list."""
        if not self.is_domain_allowed(url):
            host = urlparse(url).hostname or url
            logger.warning(f"Blocked outbound payload to non allow-listed domain: {host}")
            raise DomainNotAllowed(host)
        return self._mask(payload, 0)
