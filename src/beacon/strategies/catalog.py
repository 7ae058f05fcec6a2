from __future__ import annotations

from dataclasses import dataclass

from beacon.domain.models import CapabilityReport, EndpointKind, RegistrationPreferences, RouteMode

CREATE_FILE = "create-file"
MODIFY_EXISTING_FILE = "modify-existing-file"
ADD_APPLICATION_ROUTE = "add-application-route"
ADD_AUXILIARY_SERVER_CONFIG = "add-auxiliary-server-config"
SUGGEST_MANUAL_CONFIG = "suggest-manual-config"


@dataclass(frozen=True)
class Strategy:
    id: str
    blocks: tuple[str, ...]
    route_mode: RouteMode = "content"
    description: str = ""

    @property
    def routed(self) -> bool:
        return ADD_APPLICATION_ROUTE in self.blocks


STRATEGIES: dict[str, Strategy] = {
    s.id: s
    for s in (
        Strategy(
            "direct-file-serve",
            (CREATE_FILE,),
            description="write the document where the web server serves it",
        ),
        Strategy(
            "direct-file-serve-with-server-config",
            (CREATE_FILE, ADD_AUXILIARY_SERVER_CONFIG),
            description="write the document and set its headers in .htaccess / web.config",
        ),
        Strategy(
            "direct-file-serve-with-config-suggestion",
            (CREATE_FILE, SUGGEST_MANUAL_CONFIG),
            description="write the document and suggest a server snippet for its headers",
        ),
        Strategy(
            "static-file",
            (CREATE_FILE, SUGGEST_MANUAL_CONFIG),
            description="write the document unverified; the operator finishes server setup",
        ),
        Strategy(
            "application-routing",
            (ADD_APPLICATION_ROUTE,),
            description="serve the document from the application",
        ),
        Strategy(
            "application-routing-with-server-config",
            (ADD_APPLICATION_ROUTE, ADD_AUXILIARY_SERVER_CONFIG),
            description="serve from the application and set headers in the server config",
        ),
        Strategy(
            "application-routing-with-config-suggestion",
            (ADD_APPLICATION_ROUTE, SUGGEST_MANUAL_CONFIG),
            description="serve from the application and suggest a server snippet",
        ),
        Strategy(
            "file-modification-with-backup",
            (MODIFY_EXISTING_FILE,),
            description="back up the existing file and add our managed section",
        ),
        Strategy(
            "application-routing-with-passthrough",
            (ADD_APPLICATION_ROUTE,),
            route_mode="passthrough",
            description="serve the existing file merged with our section from the application",
        ),
    )
}


def ordered_strategies(
    kind: EndpointKind, report: CapabilityReport, preferences: RegistrationPreferences
) -> list[str]:
    """Strategy ids to try, best first.

    Pure. Every list contains an application-routing strategy, last unless
    prefer_analytics pulled it to the front.
    """
    if kind is EndpointKind.APPEND_ONLY_POLICY:
        return _append_only(report)
    if kind is EndpointKind.PROXY:
        return _proxy(report)
    return _static_manifest(report, preferences)


def _static_manifest(report: CapabilityReport, preferences: RegistrationPreferences) -> list[str]:
    out: list[str] = []
    if report.supports_direct_file_serve:
        if report.supports_auxiliary_server_config:
            out.append("direct-file-serve-with-server-config")
        if report.server_family == "nginx":
            out.append("direct-file-serve-with-config-suggestion")
        out.append("direct-file-serve")
    elif report.can_write_filesystem and not report.supports_application_routing:
        out.append("static-file")

    if preferences.prefer_analytics:
        out.insert(0, "application-routing")
    else:
        out.append("application-routing")
    return out


def _append_only(report: CapabilityReport) -> list[str]:
    out: list[str] = []
    if report.can_write_filesystem or report.supports_direct_file_serve:
        out.append("file-modification-with-backup")
    out.append("application-routing-with-passthrough")
    return out


def _proxy(report: CapabilityReport) -> list[str]:
    out: list[str] = []
    if report.supports_auxiliary_server_config:
        out.append("application-routing-with-server-config")
    if report.server_family == "nginx":
        out.append("application-routing-with-config-suggestion")
    out.append("application-routing")
    return out
