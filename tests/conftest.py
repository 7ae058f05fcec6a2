from pathlib import Path
from typing import Optional

import httpx
import pytest

from beacon.config import BeaconSettings
from beacon.orchestrator.engine import EndpointOrchestrator
from beacon.probe.prober import guess_content_type
from beacon.store.memory_store import InMemoryStore


class FakeHost:
    """Web server in front of the app, as an httpx transport handler.

    Files under the document root are answered directly (no app headers);
    anything else is handed to the orchestrator, like a front controller.
    """

    def __init__(
        self,
        root: Path,
        serve_files: bool = True,
        route_to_app: bool = True,
        server: Optional[str] = None,
        files_via_app: bool = False,
        down: bool = False,
    ):
        self.root = root
        self.serve_files = serve_files
        self.route_to_app = route_to_app
        self.server = server
        self.files_via_app = files_via_app
        self.down = down
        self.orchestrator: Optional[EndpointOrchestrator] = None
        self.requests: list[str] = []

    def _headers(self, extra: Optional[dict] = None) -> dict:
        h = {}
        if self.server:
            h["server"] = self.server
        h.update(extra or {})
        return h

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append(path)
        if self.down:
            raise httpx.ConnectError("connection refused", request=request)

        fs = self.root / path.lstrip("/")
        if self.serve_files and fs.is_file():
            extra = {"content-type": guess_content_type(path)}
            if self.files_via_app:
                extra["x-powered-by"] = "beacon"
            return httpx.Response(200, content=fs.read_bytes(), headers=self._headers(extra))

        if self.route_to_app and self.orchestrator is not None:
            resp = self.orchestrator.handle_request(request.method, path)
            if resp is not None:
                headers = self._headers({**resp.headers, "x-powered-by": "beacon"})
                return httpx.Response(resp.status_code, content=resp.body.encode("utf-8"), headers=headers)

        return httpx.Response(404, content=b"not found", headers=self._headers())


@pytest.fixture
def docroot(tmp_path: Path) -> Path:
    root = tmp_path / "public"
    root.mkdir()
    return root


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def host(docroot: Path) -> FakeHost:
    return FakeHost(docroot)


@pytest.fixture
def make_orchestrator(docroot: Path, host: FakeHost, store: InMemoryStore):
    def build(**overrides) -> EndpointOrchestrator:
        settings = BeaconSettings(document_root=docroot, base_url="http://localhost:8000", **overrides)
        orch = EndpointOrchestrator.from_settings(settings, store=store, transport=httpx.MockTransport(host))
        host.orchestrator = orch
        return orch

    return build


@pytest.fixture
def snapshot():
    """Every file under a directory, relative path -> bytes."""

    def take(root: Path) -> dict[str, bytes]:
        return {str(p.relative_to(root)): p.read_bytes() for p in sorted(root.rglob("*")) if p.is_file()}

    return take
