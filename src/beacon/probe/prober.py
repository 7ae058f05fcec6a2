from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Optional

from beacon.domain.models import CapabilityReport, RouteMapping, ServerFamily
from beacon.host.filesystem import DocumentRoot
from beacon.host.http_client import ProbeHttpClient, ProbeResponse
from beacon.host.routing import RouteTable
from beacon.probe.classify import classify_response
from beacon.probe.server_detector import detect_server_family, supports_auxiliary_config

logger = logging.getLogger(__name__)

APPROACH_DIRECT_FILE = "direct-file-serve"
APPROACH_APPLICATION_ROUTING = "application-routing"


def make_probe_path(path: str) -> str:
    """Unique sibling of ``path``: the marker goes before the extension.

    /.well-known/mcp/servers.json -> /.well-known/mcp/servers-beacon-probe-1734718234-a1b2c3.json
    """
    p = PurePosixPath(path)
    marker = f"-beacon-probe-{int(time.time())}-{secrets.token_hex(3)}"
    if p.suffix:
        name = f"{p.stem}{marker}{p.suffix}"
    else:
        name = f"{p.name}{marker}"
    return str(p.with_name(name))


def guess_content_type(path: str) -> str:
    ext = PurePosixPath(path).suffix.lower()
    return {
        ".json": "application/json",
        ".txt": "text/plain; charset=utf-8",
        ".html": "text/html; charset=utf-8",
        ".xml": "application/xml",
    }.get(ext, "text/plain; charset=utf-8")


@dataclass
class _TestOutcome:
    success: bool = False
    errors: list[str] = field(default_factory=list)
    response: Optional[ProbeResponse] = None
    wrote_file: bool = False


@dataclass(frozen=True)
class Recommendation:
    can_proceed: bool
    approach: Optional[str]
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class CapabilityProber:
    """Finds out what the host can do without touching the real target path.

    Both tests run against a disposable sibling path; every artifact (temp
    file, directories created for it, temp route) is removed before
    ``probe`` returns, including when a test raises.
    """

    def __init__(
        self,
        docroot: DocumentRoot,
        http: ProbeHttpClient,
        routes: RouteTable,
        server_family: Optional[ServerFamily] = None,
    ):
        self.docroot = docroot
        self.http = http
        self.routes = routes
        self.server_family = server_family

    def probe(self, path: str) -> CapabilityReport:
        probe_path = make_probe_path(path)
        token = f"beacon-probe-{secrets.token_hex(12)}"
        logger.info("probing %s via %s", path, probe_path)

        try:
            direct = self._run_test(self._test_direct_file, probe_path, token)
            routing = self._run_test(self._test_application_route, probe_path, token)
        finally:
            self._cleanup(probe_path)

        server_headers = [
            r.headers.get("server", "")
            for r in (direct.response, routing.response)
            if r is not None
        ]
        family = detect_server_family(self.docroot, server_headers, override=self.server_family)
        can_write = direct.wrote_file and self.docroot.is_writable()

        report = CapabilityReport(
            supports_direct_file_serve=direct.success,
            supports_application_routing=routing.success,
            supports_auxiliary_server_config=supports_auxiliary_config(family, can_write),
            can_write_filesystem=can_write,
            server_family=family,
            direct_file_errors=direct.errors,
            application_routing_errors=routing.errors,
        )
        logger.info(
            "probe %s: direct_file=%s routing=%s write=%s family=%s",
            path,
            report.supports_direct_file_serve,
            report.supports_application_routing,
            report.can_write_filesystem,
            report.server_family,
        )
        return report

    def is_route_active(self, path: str) -> bool:
        """Single GET against the real path; only a 200 counts."""
        return self.http.get(path).ok

    # ----------------------------
    # individual tests
    # ----------------------------

    @staticmethod
    def _run_test(test, probe_path: str, token: str) -> _TestOutcome:
        try:
            return test(probe_path, token)
        except Exception as e:  # failures fold into false capabilities
            logger.exception("%s aborted for %s", test.__name__, probe_path)
            return _TestOutcome(errors=[f"probe aborted: {e}"])

    def _test_direct_file(self, probe_path: str, token: str) -> _TestOutcome:
        out = _TestOutcome()
        fs_path = self.docroot.path_for(probe_path)
        if fs_path.exists():
            out.errors.append(f"probe file already exists: {fs_path}")
            return out

        created_dirs: list[Path] = []
        try:
            try:
                created_dirs = self.docroot.ensure_parent(fs_path)
                fs_path.write_text(token, encoding="utf-8")
                out.wrote_file = True
            except PermissionError as e:
                out.errors.append(f"permission denied: {e}")
                return out
            except OSError as e:
                out.errors.append(f"cannot write probe file: {e}")
                return out

            resp = self.http.get(probe_path)
            out.response = resp
            if resp.error:
                out.errors.append(resp.error)
                return out
            if resp.status_code != 200:
                out.errors.append(f"probe file answered HTTP {resp.status_code}")
                return out

            verdict = classify_response(resp)
            if verdict.by_application:
                out.errors.append(
                    "response looks application-served: " + ", ".join(verdict.signals)
                )
                return out
            if resp.body.strip() != token:
                out.errors.append("probe file body did not match")
                return out

            out.success = True
            return out
        finally:
            self._remove_file(fs_path)
            self.docroot.prune_empty_dirs(created_dirs)

    def _test_application_route(self, probe_path: str, token: str) -> _TestOutcome:
        out = _TestOutcome()
        try:
            self.routes.add(
                RouteMapping(
                    path=probe_path,
                    endpoint_key=probe_path,
                    mode="probe",
                    probe_body=token,
                    content_type=guess_content_type(probe_path),
                )
            )
            self.routes.activate()

            resp = self.http.get(probe_path)
            out.response = resp
            if resp.error:
                out.errors.append(resp.error)
                return out
            if resp.status_code != 200:
                out.errors.append(f"probe route answered HTTP {resp.status_code}")
                return out
            if resp.body.strip() != token:
                out.errors.append("probe route body did not match")
                return out

            verdict = classify_response(resp)
            logger.debug("probe route signals: %s", verdict.signals)
            out.success = True
            return out
        finally:
            self.routes.remove(probe_path)
            self.routes.activate()

    def _cleanup(self, probe_path: str) -> None:
        # the tests clean up after themselves; this is the backstop
        try:
            self._remove_file(self.docroot.path_for(probe_path))
        finally:
            if self.routes.pending(probe_path) is not None:
                self.routes.remove(probe_path)
                self.routes.activate()

    @staticmethod
    def _remove_file(fs_path: Path) -> None:
        try:
            fs_path.unlink()
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("could not remove probe file %s", fs_path)


def determine_recommended_strategy(report: CapabilityReport, prefers_analytics: bool = False) -> Recommendation:
    direct = report.supports_direct_file_serve
    routing = report.supports_application_routing

    if direct and routing:
        if prefers_analytics:
            return Recommendation(
                can_proceed=True,
                approach=APPROACH_APPLICATION_ROUTING,
                warnings=["both approaches work; routing through the application so access is recorded"],
            )
        return Recommendation(can_proceed=True, approach=APPROACH_DIRECT_FILE)
    if routing:
        return Recommendation(
            can_proceed=True,
            approach=APPROACH_APPLICATION_ROUTING,
            warnings=["direct file serving failed; using application routing"],
        )
    if direct:
        return Recommendation(
            can_proceed=True,
            approach=APPROACH_DIRECT_FILE,
            warnings=["application routing failed; using direct file serving"],
        )

    errors = ["both direct file serving and application routing failed"]
    errors += [f"direct file: {e}" for e in report.direct_file_errors]
    errors += [f"application routing: {e}" for e in report.application_routing_errors]
    return Recommendation(can_proceed=False, approach=None, errors=errors)
