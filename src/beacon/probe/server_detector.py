from __future__ import annotations

from typing import Iterable, Optional

from beacon.domain.models import ServerFamily
from beacon.host.filesystem import DocumentRoot


def family_from_server_header(value: str) -> ServerFamily:
    v = (value or "").lower()
    if "apache" in v or "litespeed" in v:
        return "apache"
    if "nginx" in v or "openresty" in v:
        return "nginx"
    if "microsoft-iis" in v or v.startswith("iis"):
        return "iis"
    return "unknown"


def family_from_disk(docroot: DocumentRoot) -> ServerFamily:
    htaccess = docroot.root / ".htaccess"
    if htaccess.is_file():
        text = htaccess.read_text(encoding="utf-8", errors="ignore")
        if "RewriteEngine" in text or "RewriteRule" in text:
            return "apache"
    if (docroot.root / "web.config").is_file():
        return "iis"
    return "unknown"


def detect_server_family(
    docroot: DocumentRoot,
    server_headers: Iterable[str] = (),
    override: Optional[ServerFamily] = None,
) -> ServerFamily:
    """Operator override, then Server headers seen while probing, then on-disk hints."""
    if override:
        return override
    for value in server_headers:
        family = family_from_server_header(value)
        if family != "unknown":
            return family
    return family_from_disk(docroot)


def supports_auxiliary_config(family: ServerFamily, can_write: bool) -> bool:
    # nginx config lives outside the web root; we can only suggest it
    return can_write and family in ("apache", "iis")
