"""The well-known documents beacon serves out of the box.

Generators are pure functions of ``SiteInfo``: no clock, no I/O. A body
that changes between calls would defeat idempotent re-registration.
"""

from __future__ import annotations

import json
import re
from functools import partial
from typing import Callable, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict

from beacon.config import BeaconSettings
from beacon.domain.models import EndpointDescriptor

AI_PLUGIN_PATH = "/.well-known/ai-plugin.json"
MCP_SERVERS_PATH = "/.well-known/mcp/servers.json"
LLMS_PATH = "/llms.txt"
ROBOTS_PATH = "/robots.txt"
ASK_PATH = "/ask"

JSON_TYPE = "application/json"
TEXT_TYPE = "text/plain; charset=utf-8"

GENERATOR_NAME = "beacon"


class SiteInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    name: str = ""
    contact_email: str = ""
    description: str = ""

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        host = urlparse(self.url).hostname or "site"
        host = re.sub(r"^www\.", "", host)
        return host.split(".")[0].replace("-", " ").title()

    @classmethod
    def from_settings(cls, settings: BeaconSettings) -> "SiteInfo":
        return cls(url=settings.base_url, name=settings.site_name, contact_email=settings.contact_email)


def _json(data: dict) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def ai_plugin_content(site: SiteInfo) -> str:
    name = site.display_name
    model_name = re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_") or "site"
    description = site.description or f"Get information about {name}."
    return _json(
        {
            "schema_version": "v1",
            "name_for_human": f"{name} AI Assistant",
            "name_for_model": f"{model_name}_assistant",
            "description_for_human": description,
            "description_for_model": f"Answers questions about {name} using the site's own content.",
            "auth": {"type": "none"},
            "api": {"type": "openapi", "url": f"{site.url}{ASK_PATH}"},
            "contact_email": site.contact_email,
            "legal_info_url": f"{site.url}/legal",
            "_generated_by": GENERATOR_NAME,
        }
    )


def mcp_servers_content(site: SiteInfo) -> str:
    name = site.display_name
    return _json(
        {
            "schema_version": "1.0",
            "publisher": {"name": name, "url": site.url, "contact_email": site.contact_email},
            "servers": [
                {
                    "name": f"{name} Assistant",
                    "description": f"Information and assistance for {name}",
                    "url": f"{site.url}{ASK_PATH}",
                    "version": "1.0",
                    "capabilities": ["general_inquiries"],
                    "authentication": {"type": "none"},
                }
            ],
            "metadata": {"total_servers": 1, "_generated_by": GENERATOR_NAME},
        }
    )


def llms_content(site: SiteInfo) -> str:
    name = site.display_name
    contact = site.contact_email or "(not configured)"
    return f"""# LLMS.txt - Large Language Model Policy
# Site: {name}
# URL: {site.url}
# Contact: {contact}

## AI/LLM Usage Policy
- AI models are welcome to access public content for informational purposes
- Please respect our robots.txt directives
- Commercial scraping requires permission

## Available AI Endpoints
- AI Plugin Discovery: {site.url}{AI_PLUGIN_PATH}
- MCP Server Discovery: {site.url}{MCP_SERVERS_PATH}
- API Endpoint: {site.url}{ASK_PATH}
- This Policy: {site.url}{LLMS_PATH}
"""


def robots_section(site: SiteInfo) -> str:
    """Only our directives; the rest of robots.txt belongs to the operator."""
    return f"""# AI/LLM Discovery
User-agent: ChatGPT-User
Allow: {AI_PLUGIN_PATH}
Allow: {ASK_PATH}

User-agent: *
Allow: {LLMS_PATH}
Allow: {MCP_SERVERS_PATH}

# AI Plugin: {site.url}{AI_PLUGIN_PATH}
# MCP Servers: {site.url}{MCP_SERVERS_PATH}
# LLMS Policy: {site.url}{LLMS_PATH}
"""


def ask_status_content(site: SiteInfo) -> str:
    return _json(
        {
            "status": "ok",
            "service": f"{site.display_name} assistant",
            "message": "POST questions to this endpoint.",
        }
    )


def ai_plugin_descriptor(site: SiteInfo) -> EndpointDescriptor:
    return EndpointDescriptor(
        path=AI_PLUGIN_PATH,
        content_generator=partial(ai_plugin_content, site),
        content_type=JSON_TYPE,
        cors_required=True,
    )


def mcp_servers_descriptor(site: SiteInfo) -> EndpointDescriptor:
    return EndpointDescriptor(
        path=MCP_SERVERS_PATH,
        content_generator=partial(mcp_servers_content, site),
        content_type=JSON_TYPE,
        cors_required=True,
    )


def llms_descriptor(site: SiteInfo) -> EndpointDescriptor:
    return EndpointDescriptor(
        path=LLMS_PATH,
        content_generator=partial(llms_content, site),
        content_type=TEXT_TYPE,
    )


def robots_descriptor(site: SiteInfo) -> EndpointDescriptor:
    return EndpointDescriptor(
        path=ROBOTS_PATH,
        content_generator=partial(robots_section, site),
        content_type=TEXT_TYPE,
        cache_control="public, max-age=86400",
        allow_in_place_modification=True,
    )


def ask_descriptor(site: SiteInfo, generator: Optional[Callable[[], str]] = None) -> EndpointDescriptor:
    # the chat backend call lives outside beacon; it is handed in as the generator
    return EndpointDescriptor(
        path=ASK_PATH,
        content_generator=generator or partial(ask_status_content, site),
        content_type=JSON_TYPE,
        cors_required=True,
        cache_control="no-store",
        static_equivalent=False,
    )


def builtin_descriptors(site: SiteInfo, ask_generator: Optional[Callable[[], str]] = None) -> list[EndpointDescriptor]:
    return [
        ai_plugin_descriptor(site),
        mcp_servers_descriptor(site),
        llms_descriptor(site),
        robots_descriptor(site),
        ask_descriptor(site, ask_generator),
    ]
