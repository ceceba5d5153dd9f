from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional
from urllib.parse import urlsplit

from linksync.exceptions import ValidationError

# Provider back-halves: letters, digits, dash, underscore. Case-sensitive.
_CODE_RE = re.compile(r"^[A-Za-z0-9_-]{2,64}$")


@dataclass(frozen=True)
class ParsedInput:
    """Exactly one of the two is set."""
    short_code: Optional[str] = None   # canonical "host/code"
    long_url: Optional[str] = None


class LinkInputNormalizer:
    """
    Turns what an admin pastes into either a canonical short code or a long
    URL that still has to be resolved against the provider.

    Accepted, in priority order:
      1. a bare code            "abc123"           -> "<default host>/abc123"
      2. a short link           "https://bit.ly/abc123", "bit.ly/abc123"
      3. any other http(s) URL  treated as a long URL
    """

    def __init__(self, short_domains: Iterable[str], default_domain: str):
        self.default_domain = default_domain.strip().lower()
        self.short_domains = {d.strip().lower() for d in short_domains} | {self.default_domain}

    def parse(self, raw: str) -> ParsedInput:
        text = (raw or "").strip()
        if not text:
            raise ValidationError("Link input is empty")

        if _CODE_RE.match(text):
            return ParsedInput(short_code=f"{self.default_domain}/{text}")

        candidate = text if "://" in text else f"https://{text}"
        parts = urlsplit(candidate)
        if parts.scheme.lower() not in ("http", "https") or not parts.hostname:
            raise ValidationError("Not a short code or http(s) URL", context={"input": text})

        host = parts.hostname.lower()
        if host in self.short_domains:
            segments = [s for s in parts.path.split("/") if s]
            if len(segments) == 1 and _CODE_RE.match(segments[0]):
                return ParsedInput(short_code=f"{host}/{segments[0]}")
            raise ValidationError("Short link has no usable code", context={"input": text})

        if "." not in host:
            raise ValidationError("URL host is not a domain", context={"input": text})
        return ParsedInput(long_url=candidate)

    def canonical(self, provider_id: str) -> str:
        """Canonical form of an id the provider hands back ("bit.ly/abc", "https://brand.co/x")."""
        text = provider_id.strip()
        if "://" in text:
            text = text.split("://", 1)[1]
        host, _, code = text.partition("/")
        code = code.strip("/")
        if not host or not _CODE_RE.match(code):
            raise ValidationError("Provider returned an unusable link id", context={"id": provider_id})
        return f"{host.lower()}/{code}"
