"""Token and identifier normalization shared by validation and matching."""

from __future__ import annotations

import re
from typing import Iterable
from urllib.parse import urlsplit

_DOMAIN_RE = re.compile(r"^(?=.{1,253}$)(?!-)[a-z0-9-]{1,63}(?<!-)(\.(?!-)[a-z0-9-]{1,63}(?<!-))+$")


def coerce_str(value: object | None) -> str:
    if value is None:
        return ""
    return str(value).strip()


def split_tokens(value: object | None, separator: str = ",") -> list[str]:
    """Split a multi-value cell on ``separator``, trimming and dropping empty tokens."""
    token = coerce_str(value)
    if not token:
        return []
    return [part.strip() for part in token.split(separator) if part.strip()]


def normalize_email(value: object | None) -> str | None:
    """Lower-case and trim an address; ``None`` when it has no usable domain part."""
    token = coerce_str(value).lower()
    if not token or "@" not in token:
        return None
    local_part, _, domain = token.rpartition("@")
    if not local_part or not domain or "." not in domain:
        return None
    return f"{local_part}@{domain}"


def domain_from_email(value: object | None) -> str | None:
    """Return the domain after the last ``@`` of a well-formed address."""
    normalized = normalize_email(value)
    if normalized is None:
        return None
    domain = normalized.rpartition("@")[2]
    return domain if is_valid_domain(domain) else None


def normalize_domain(value: object | None) -> str | None:
    """
    Reduce a website, URL or bare host to its lower-case domain.

    ``https://www.Acme.com/about`` and ``acme.com`` both become ``acme.com``.
    """
    token = coerce_str(value).lower()
    if not token:
        return None
    if "@" in token:
        return domain_from_email(token)
    if "://" not in token:
        token = f"//{token}"
    try:
        host = urlsplit(token).hostname or ""
    except ValueError:
        # unbalanced brackets read as a malformed IPv6 literal
        return None
    if host.startswith("www."):
        host = host[4:]
    host = host.rstrip(".")
    return host if is_valid_domain(host) else None


def is_valid_domain(value: str) -> bool:
    return bool(value) and bool(_DOMAIN_RE.match(value))


def email_domains(emails: Iterable[object | None], *, excluded: Iterable[str] = ()) -> list[str]:
    """
    Extract distinct domains from email addresses, preserving first-seen order.

    Malformed addresses are dropped silently; ``excluded`` removes public
    mailbox providers that must not drive company matching.
    """
    excluded_set = {domain.lower() for domain in excluded}
    seen: set[str] = set()
    domains: list[str] = []
    for email in emails:
        domain = domain_from_email(email)
        if domain is None or domain in excluded_set or domain in seen:
            continue
        seen.add(domain)
        domains.append(domain)
    return domains
