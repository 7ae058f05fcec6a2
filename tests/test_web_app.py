import json

from fastapi.testclient import TestClient

from beacon.domain.models import CapabilityReport, RegistrationPreferences
from beacon.endpoints.documents import SiteInfo, ai_plugin_descriptor, ask_descriptor
from beacon.web.app import create_app

SITE = SiteInfo(url="http://localhost:8000", name="Harbor Inn")


def routed_app(make_orchestrator, store):
    orch = make_orchestrator()
    descriptors = [ai_plugin_descriptor(SITE), ask_descriptor(SITE)]
    for d in descriptors:
        store.save_capability_report(d.path, CapabilityReport(supports_application_routing=True))
        assert orch.register(d, RegistrationPreferences(prefer_analytics=True)).success
    return TestClient(create_app(orch, descriptors))


def test_routed_endpoint_is_served(make_orchestrator, store):
    client = routed_app(make_orchestrator, store)

    r = client.get("/.well-known/ai-plugin.json")

    assert r.status_code == 200
    assert r.headers["content-type"] == "application/json"
    assert r.headers["x-powered-by"] == "beacon"
    assert r.headers["access-control-allow-origin"] == "*"
    assert json.loads(r.text)["schema_version"] == "v1"
    assert [(a.endpoint_key, a.hits) for a in store.list_access_stats()] == [("/.well-known/ai-plugin.json", 1)]


def test_unrouted_path_is_404_with_marker(make_orchestrator, store):
    client = routed_app(make_orchestrator, store)

    r = client.get("/about")

    assert r.status_code == 404
    assert r.headers["x-powered-by"] == "beacon"


def test_preflight_and_head(make_orchestrator, store):
    client = routed_app(make_orchestrator, store)

    pre = client.options("/ask")
    assert pre.status_code == 200
    assert pre.headers["access-control-allow-methods"] == "GET, HEAD, OPTIONS"
    assert pre.headers["access-control-max-age"] == "86400"

    head = client.head("/ask")
    assert head.status_code == 200
    assert head.content == b""
    assert head.headers["cache-control"] == "no-store"


def test_unsupported_method_is_rejected(make_orchestrator, store):
    client = routed_app(make_orchestrator, store)

    r = client.post("/ask")

    assert r.status_code == 405
