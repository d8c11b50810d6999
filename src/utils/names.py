from __future__ import annotations

import re
import secrets
import string


# RFC 1123 label: what the cluster accepts for workload names.
_DNS_LABEL_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_PROJECT_NAME_STRIP_RE = re.compile(r"[^a-z0-9-]")

PROJECT_NAME_MAX = 20
DNS_LABEL_MAX = 63


def to_cluster_project_name(project_name: str) -> str:
    """Lowercase, keep [a-z0-9-], cut to 20 chars."""
    s = _PROJECT_NAME_STRIP_RE.sub("", (project_name or "").lower())
    return s[:PROJECT_NAME_MAX].strip("-")


def random_suffix(length: int = 8) -> str:
    """Lowercase letters only, so the result is always a valid label fragment.

    26**8 combinations: collisions stay around 1% after a million names.
    """
    alphabet = string.ascii_lowercase
    return "".join(secrets.choice(alphabet) for _ in range(int(length)))


def make_cluster_name(project_name: str, *, suffix: str | None = None) -> str:
    base = to_cluster_project_name(project_name) or "project"
    return f"{base}-{suffix or random_suffix()}"


def is_valid_cluster_name(name: str) -> bool:
    s = name or ""
    return 0 < len(s) <= DNS_LABEL_MAX and _DNS_LABEL_RE.match(s) is not None
