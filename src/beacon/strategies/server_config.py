"""Auxiliary web-server config for endpoints: rendering and splicing.

apache-like hosts get a block in the document root's ``.htaccess``,
iis-like hosts a ``<location>`` in ``web.config``. nginx has no per-directory
config, so it only ever gets a snippet for the operator to paste.
"""

from __future__ import annotations

import re
from pathlib import PurePosixPath
from typing import Optional

from beacon.domain.models import EndpointDescriptor, ServerFamily
from beacon.safety.sections import find_section, has_section, render_section, strip_section, upsert_section

AUX_CONFIG_FILES: dict[str, str] = {
    "apache": ".htaccess",
    "iis": "web.config",
}

CORS_METHODS = "GET, OPTIONS"
CORS_HEADERS = "Content-Type, Authorization"

EMPTY_WEB_CONFIG = '<?xml version="1.0" encoding="UTF-8"?>\n<configuration>\n</configuration>\n'

_CONFIG_CLOSE = re.compile(r"^[ \t]*</configuration>", re.MULTILINE)


def _mime(content_type: str) -> str:
    return content_type.split(";", 1)[0].strip()


def render_htaccess(endpoint: EndpointDescriptor) -> str:
    lines = [
        "<IfModule mod_headers.c>",
        f"<If \"%{{REQUEST_URI}} == '{endpoint.path}'\">",
        f'    Header set Content-Type "{endpoint.content_type}"',
        f'    Header set Cache-Control "{endpoint.cache_control}"',
    ]
    if endpoint.cors_required:
        lines += [
            '    Header set Access-Control-Allow-Origin "*"',
            f'    Header set Access-Control-Allow-Methods "{CORS_METHODS}"',
            f'    Header set Access-Control-Allow-Headers "{CORS_HEADERS}"',
        ]
    lines += ["</If>", "</IfModule>"]
    if endpoint.cors_required:
        pattern = re.escape(endpoint.path.lstrip("/"))
        lines += [
            "<IfModule mod_rewrite.c>",
            "RewriteEngine On",
            "RewriteCond %{REQUEST_METHOD} OPTIONS",
            f"RewriteRule ^{pattern}$ - [R=200,L]",
            "</IfModule>",
        ]
    return "\n".join(lines)


def render_web_config(endpoint: EndpointDescriptor) -> str:
    ext = PurePosixPath(endpoint.path).suffix.lower()
    headers = [("Cache-Control", endpoint.cache_control)]
    if not ext:
        # no extension to map; IIS needs the type as a header
        headers.insert(0, ("Content-Type", endpoint.content_type))
    if endpoint.cors_required:
        headers += [
            ("Access-Control-Allow-Origin", "*"),
            ("Access-Control-Allow-Methods", CORS_METHODS),
            ("Access-Control-Allow-Headers", CORS_HEADERS),
        ]
    lines = [
        f'  <location path="{endpoint.path.lstrip("/")}">',
        "    <system.webServer>",
    ]
    if ext:
        lines += [
            "      <staticContent>",
            f'        <remove fileExtension="{ext}" />',
            f'        <mimeMap fileExtension="{ext}" mimeType="{_mime(endpoint.content_type)}" />',
            "      </staticContent>",
        ]
    lines += [
        "      <httpProtocol>",
        "        <customHeaders>",
    ]
    lines += [f'          <add name="{name}" value="{value}" />' for name, value in headers]
    lines += [
        "        </customHeaders>",
        "      </httpProtocol>",
        "    </system.webServer>",
        "  </location>",
    ]
    return "\n".join(lines)


def render_nginx(endpoint: EndpointDescriptor, routed: bool, upstream: str) -> str:
    lines = [
        f"location = {endpoint.path} {{",
        f"    default_type {_mime(endpoint.content_type)};",
        f'    add_header Cache-Control "{endpoint.cache_control}";',
    ]
    if endpoint.cors_required:
        lines += [
            '    add_header Access-Control-Allow-Origin "*" always;',
            f'    add_header Access-Control-Allow-Methods "{CORS_METHODS}" always;',
            f'    add_header Access-Control-Allow-Headers "{CORS_HEADERS}" always;',
            "    if ($request_method = OPTIONS) {",
            "        return 200;",
            "    }",
        ]
    if routed:
        lines.append(f"    proxy_pass {upstream};")
    else:
        lines.append("    try_files $uri =404;")
    lines.append("}")
    return "\n".join(lines)


def render_suggestion(
    family: ServerFamily, endpoint: EndpointDescriptor, routed: bool, upstream: str
) -> str:
    """Ready-to-paste snippet, markers included, for the given server family."""
    key = endpoint.key
    if family == "apache":
        return render_section(key, render_htaccess(endpoint))
    if family == "iis":
        return render_section(key, render_web_config(endpoint), "<!--")
    if family == "nginx":
        return render_section(key, render_nginx(endpoint, routed, upstream))
    # unknown: give both common options
    return (
        "# nginx (server block)\n"
        + render_section(key, render_nginx(endpoint, routed, upstream))
        + "\n# apache (.htaccess)\n"
        + render_section(key, render_htaccess(endpoint))
    )


def apply_aux_config(family: ServerFamily, existing: Optional[str], endpoint: EndpointDescriptor) -> str:
    """Return the config file text with our block inserted or replaced.

    Raises ValueError for families without an auxiliary config file or for
    a web.config with no ``</configuration>``.
    """
    if family == "apache":
        return upsert_section(existing or "", endpoint.key, render_htaccess(endpoint))
    if family == "iis":
        return _splice_web_config(existing or EMPTY_WEB_CONFIG, endpoint)
    raise ValueError(f"no auxiliary config file for server family {family!r}")


def remove_aux_config(family: ServerFamily, text: str, key: str) -> str:
    if family == "iis":
        return strip_section(text, key, "<!--")
    return strip_section(text, key)


def has_aux_config(family: ServerFamily, text: str, key: str) -> bool:
    return has_section(text, key, "<!--" if family == "iis" else "#")


def _splice_web_config(text: str, endpoint: EndpointDescriptor) -> str:
    section = render_section(endpoint.key, render_web_config(endpoint), "<!--")
    span = find_section(text, endpoint.key, "<!--")
    if span is not None:
        return text[: span[0]] + section + text[span[1] :]

    closes = list(_CONFIG_CLOSE.finditer(text))
    if not closes:
        raise ValueError("web.config has no </configuration> element")
    at = closes[-1].start()
    head = text[:at]
    if head and not head.endswith("\n"):
        head += "\n"
    return head + section + text[at:]
