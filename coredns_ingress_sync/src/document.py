from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import UTC, datetime

HEADER = "# Auto-generated by coredns-ingress-sync controller"


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def rewrite_line(hostname: str, target: str) -> str:
    return f"rewrite name exact {hostname} {target}"


def generate_document(
    hostnames: Iterable[str],
    target: str,
    now_fn: Callable[[], str] = utc_now_rfc3339,
) -> str:
    """Render the CoreDNS rewrite rules for *hostnames*.

    Hostnames are deduplicated and sorted so identical sets always render the
    same rule block regardless of iteration order.  The ``Last updated``
    comment is informational only; compare documents with
    :func:`documents_equal`, never with ``==``.
    """
    lines = [HEADER, f"# Last updated: {now_fn()}", ""]
    lines.extend(rewrite_line(host, target) for host in sorted(set(hostnames)) if host)
    return "\n".join(lines) + "\n"


def strip_informational(content: str | None) -> str:
    """Drop comment and blank lines, leaving only the directives CoreDNS acts on."""
    if not content:
        return ""
    kept = []
    for line in content.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        kept.append(stripped)
    return "\n".join(kept)


def documents_equal(left: str | None, right: str | None) -> bool:
    return strip_informational(left) == strip_informational(right)
