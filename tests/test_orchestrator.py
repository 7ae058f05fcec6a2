from pathlib import Path

import pytest

from beacon.domain.models import CapabilityReport, EndpointDescriptor, EndpointState, RegistrationPreferences
from beacon.endpoints.documents import SiteInfo, ai_plugin_descriptor, ask_descriptor, robots_descriptor
from beacon.errors import InvalidTransitionError, UnknownEndpointError

SITE = SiteInfo(url="http://localhost:8000", name="Harbor Inn", contact_email="ops@example.com")
OPERATOR_ROBOTS = "User-agent: *\nDisallow: /private/\n"


def both_modes() -> CapabilityReport:
    return CapabilityReport(
        supports_direct_file_serve=True, supports_application_routing=True, can_write_filesystem=True
    )


def test_direct_file_serve_when_both_modes_work(docroot: Path, make_orchestrator):
    orch = make_orchestrator()
    d = ai_plugin_descriptor(SITE)

    result = orch.register(d)

    assert result.success
    assert result.strategy_id == "direct-file-serve"
    assert orch.state(d.path) is EndpointState.STRATEGY_ACTIVE

    resp = orch.prober.http.get(d.path)
    assert resp.status_code == 200
    assert resp.body == d.generate()
    assert resp.headers["content-type"] == "application/json"
    assert "x-powered-by" not in resp.headers


def test_prefer_analytics_routes_through_the_app(docroot: Path, make_orchestrator, store):
    orch = make_orchestrator()
    d = ai_plugin_descriptor(SITE)

    result = orch.register(d, RegistrationPreferences(prefer_analytics=True))

    assert result.strategy_id == "application-routing"
    assert not (docroot / ".well-known" / "ai-plugin.json").exists()

    resp = orch.prober.http.get(d.path)
    assert resp.status_code == 200
    assert resp.body == d.generate()
    assert resp.headers["content-type"] == "application/json"
    assert resp.headers["access-control-allow-origin"] == "*"
    assert [(a.endpoint_key, a.hits) for a in store.list_access_stats()] == [(d.path, 1)]


def test_second_identical_registration_is_a_noop(docroot: Path, make_orchestrator, store):
    orch = make_orchestrator()
    d = ai_plugin_descriptor(SITE)
    target = docroot / ".well-known" / "ai-plugin.json"

    first = orch.register(d)
    mtime = target.stat().st_mtime_ns
    version = store.get_routes_version()
    fingerprints = store.list_fingerprints()
    probes = len(orch.store.list_history(d.path))

    second = orch.register(d)

    assert second.noop
    assert second.strategy_id == first.strategy_id
    assert target.stat().st_mtime_ns == mtime
    assert store.get_routes_version() == version
    assert store.list_fingerprints() == fingerprints
    assert len(orch.store.list_history(d.path)) == probes


def test_changed_body_is_written_again(docroot: Path, make_orchestrator):
    orch = make_orchestrator()
    orch.register(ai_plugin_descriptor(SITE))

    renamed = SiteInfo(url=SITE.url, name="Harbor Inn & Spa")
    result = orch.register(ai_plugin_descriptor(renamed))

    assert result.success and not result.noop
    text = (docroot / ".well-known" / "ai-plugin.json").read_text(encoding="utf-8")
    assert "Harbor Inn & Spa" in text


def test_only_routing_available_never_touches_disk(docroot: Path, make_orchestrator, store):
    orch = make_orchestrator()
    d = ai_plugin_descriptor(SITE)
    store.save_capability_report(d.path, CapabilityReport(supports_application_routing=True))

    result = orch.register(d)

    assert result.strategy_id == "application-routing"
    assert [a.strategy_id for a in result.attempts] == ["application-routing"]
    assert list(docroot.iterdir()) == []
    assert store.list_fingerprints() == []


def test_falls_back_to_routing_when_file_write_is_refused(docroot: Path, make_orchestrator, store):
    orch = make_orchestrator()
    d = ai_plugin_descriptor(SITE)
    store.save_capability_report(d.path, both_modes())
    target = docroot / ".well-known" / "ai-plugin.json"
    target.parent.mkdir()
    target.write_text('{"name": "hand made"}', encoding="utf-8")

    result = orch.register(d)

    assert result.success
    assert [a.strategy_id for a in result.attempts] == ["direct-file-serve", "application-routing"]
    assert "content conflict" in result.attempts[0].error
    assert target.read_text(encoding="utf-8") == '{"name": "hand made"}'


def test_append_only_keeps_operator_directives(docroot: Path, make_orchestrator, store):
    orch = make_orchestrator()
    robots = docroot / "robots.txt"
    robots.write_text(OPERATOR_ROBOTS, encoding="utf-8")
    d = robots_descriptor(SITE)
    store.save_capability_report(d.path, both_modes())

    first = orch.register(d)
    assert first.strategy_id == "file-modification-with-backup"
    text = robots.read_text(encoding="utf-8")
    assert text.startswith(OPERATOR_ROBOTS)
    assert d.generate().strip() in text
    assert len(store.list_backups(str(robots))) == 1

    assert orch.register(d).noop

    updated = robots_descriptor(SiteInfo(url="https://harbor.example"))
    again = orch.register(updated)
    assert again.success
    text = robots.read_text(encoding="utf-8")
    assert text.startswith(OPERATOR_ROBOTS)
    assert text.count("# BEGIN beacon /robots.txt") == 1
    assert "https://harbor.example" in text
    assert "http://localhost:8000" not in text


def test_hand_edited_append_only_file_defers_to_operator(docroot: Path, make_orchestrator, store):
    orch = make_orchestrator()
    robots = docroot / "robots.txt"
    robots.write_text(OPERATOR_ROBOTS, encoding="utf-8")
    d = robots_descriptor(SITE)
    store.save_capability_report(d.path, both_modes())
    orch.register(d)

    edited = robots.read_text(encoding="utf-8") + "Disallow: /secret/\n"
    robots.write_text(edited, encoding="utf-8")

    result = orch.register(d)

    assert result.success is False
    assert result.conflict_id is not None
    assert [a.strategy_id for a in result.attempts] == ["file-modification-with-backup"]
    assert robots.read_text(encoding="utf-8") == edited
    [conflict] = store.list_conflicts("pending")
    assert conflict.existing_content == edited
    assert orch.state(d.path) is EndpointState.ALL_STRATEGIES_FAILED

    assert orch.files.resolve_conflict(conflict.id, accept=True).success
    assert orch.register(d).success


def test_repeated_registration_keeps_one_pending_conflict(docroot: Path, make_orchestrator, store):
    orch = make_orchestrator()
    robots = docroot / "robots.txt"
    robots.write_text(OPERATOR_ROBOTS, encoding="utf-8")
    d = robots_descriptor(SITE)
    store.save_capability_report(d.path, both_modes())
    orch.register(d)
    robots.write_text(robots.read_text(encoding="utf-8") + "Disallow: /secret/\n", encoding="utf-8")

    ids = {orch.register(d).conflict_id for _ in range(3)}

    [conflict] = store.list_conflicts("pending")
    assert ids == {conflict.id}
    assert len(store.list_conflicts()) == 1


def test_passthrough_merges_file_with_our_section(docroot: Path, make_orchestrator, store, host):
    host.serve_files = False
    orch = make_orchestrator()
    (docroot / "robots.txt").write_text(OPERATOR_ROBOTS, encoding="utf-8")
    d = robots_descriptor(SITE)
    store.save_capability_report(d.path, CapabilityReport(supports_application_routing=True))

    result = orch.register(d)

    assert result.strategy_id == "application-routing-with-passthrough"
    assert (docroot / "robots.txt").read_text(encoding="utf-8") == OPERATOR_ROBOTS
    body = orch.prober.http.get("/robots.txt").body
    assert body.startswith(OPERATOR_ROBOTS)
    assert "# BEGIN beacon /robots.txt" in body


def test_proxy_endpoint_answers_cors_preflight(make_orchestrator, store):
    orch = make_orchestrator()
    d = ask_descriptor(SITE)
    store.save_capability_report(d.path, both_modes())

    assert orch.register(d).strategy_id == "application-routing"

    pre = orch.handle_request("OPTIONS", "/ask")
    assert pre.status_code == 200
    assert pre.body == ""
    assert pre.headers["Access-Control-Allow-Origin"] == "*"
    assert "OPTIONS" in pre.headers["Access-Control-Allow-Methods"]

    head = orch.handle_request("HEAD", "/ask")
    assert head.status_code == 200 and head.body == ""
    assert orch.handle_request("POST", "/ask").status_code == 405
    assert orch.handle_request("GET", "/nothing-here") is None


def test_generator_failure_degrades_to_500(make_orchestrator, store):
    backend = {"up": True}

    def answer() -> str:
        if not backend["up"]:
            raise RuntimeError("backend down")
        return '{"answer": "ok"}'

    orch = make_orchestrator()
    d = EndpointDescriptor(path="/ask", content_generator=answer, static_equivalent=False)
    store.save_capability_report(d.path, both_modes())
    assert orch.register(d).success

    backend["up"] = False
    resp = orch.handle_request("GET", "/ask")
    assert resp.status_code == 500
    assert resp.body == ""


def test_switching_strategy_retires_the_old_file(docroot: Path, make_orchestrator):
    orch = make_orchestrator()
    d = ai_plugin_descriptor(SITE)
    target = docroot / ".well-known" / "ai-plugin.json"

    assert orch.register(d).strategy_id == "direct-file-serve"
    assert target.exists()

    result = orch.register(d, RegistrationPreferences(prefer_analytics=True))

    assert result.strategy_id == "application-routing"
    assert not target.exists()
    assert orch.prober.http.get(d.path).body == d.generate()


def test_deactivate_direct_file(docroot: Path, make_orchestrator, store):
    orch = make_orchestrator()
    d = ai_plugin_descriptor(SITE)
    orch.register(d)

    result = orch.deactivate(d.path)

    assert result.success
    assert not (docroot / ".well-known" / "ai-plugin.json").exists()
    assert store.get_attempt(d.path) is None
    assert orch.state(d.path) is EndpointState.DEACTIVATED

    # deactivated endpoints can come back
    assert orch.register(d).success


def test_deactivate_refuses_to_delete_modified_file(docroot: Path, make_orchestrator):
    orch = make_orchestrator()
    d = ai_plugin_descriptor(SITE)
    orch.register(d)
    target = docroot / ".well-known" / "ai-plugin.json"
    target.write_text('{"edited": "by operator"}', encoding="utf-8")

    result = orch.deactivate(d.path)

    assert result.success is False
    assert any("modified since our last write" in e for e in result.errors)
    assert target.exists()


def test_deactivate_routed_endpoint_and_append_only_section(docroot: Path, make_orchestrator, store):
    orch = make_orchestrator()
    ask = ask_descriptor(SITE)
    store.save_capability_report(ask.path, both_modes())
    orch.register(ask)

    robots = docroot / "robots.txt"
    robots.write_text(OPERATOR_ROBOTS, encoding="utf-8")
    rd = robots_descriptor(SITE)
    store.save_capability_report(rd.path, both_modes())
    orch.register(rd)

    assert orch.deactivate("/ask").success
    assert orch.handle_request("GET", "/ask") is None
    assert store.list_routes() == []

    assert orch.deactivate("/robots.txt").success
    assert robots.read_text(encoding="utf-8") == OPERATOR_ROBOTS


def test_deactivate_strips_htaccess_block(docroot: Path, make_orchestrator, host):
    host.server = "Apache/2.4.58"
    (docroot / ".htaccess").write_text("RewriteEngine On\n", encoding="utf-8")
    orch = make_orchestrator()
    d = ai_plugin_descriptor(SITE)

    assert orch.register(d).strategy_id == "direct-file-serve-with-server-config"
    assert "# BEGIN beacon" in (docroot / ".htaccess").read_text(encoding="utf-8")

    assert orch.deactivate(d.path).success
    assert (docroot / ".htaccess").read_text(encoding="utf-8") == "RewriteEngine On\n"


def test_nginx_gets_a_suggestion(docroot: Path, make_orchestrator, host, store):
    host.server = "nginx/1.25.3"
    orch = make_orchestrator()
    d = ai_plugin_descriptor(SITE)

    assert orch.register(d).strategy_id == "direct-file-serve-with-config-suggestion"
    suggestion = store.get_suggestion(d.path)
    assert suggestion.server_family == "nginx"
    assert "location = /.well-known/ai-plugin.json {" in suggestion.snippet

    orch.deactivate(d.path)
    assert store.get_suggestion(d.path) is None


def test_state_machine_rejects_invalid_moves(make_orchestrator):
    orch = make_orchestrator()
    d = ai_plugin_descriptor(SITE)

    assert orch.state(d.path) is EndpointState.UNREGISTERED
    with pytest.raises(UnknownEndpointError):
        orch.deactivate(d.path)

    orch.register(d)
    orch.deactivate(d.path)
    with pytest.raises(InvalidTransitionError):
        orch.deactivate(d.path)


def test_reevaluate_skips_working_endpoint_unless_forced(make_orchestrator, store, host):
    orch = make_orchestrator()
    d = ai_plugin_descriptor(SITE)
    orch.register(d)
    stamp = store.get_capability_report(d.path).generated_at

    skipped = orch.reevaluate(d.path)
    assert skipped.noop

    forced = orch.reevaluate(d.path, force=True)
    assert forced.success
    assert forced.strategy_id == "direct-file-serve"
    assert store.get_capability_report(d.path).generated_at >= stamp
    assert len(orch.attempt_history(d.path)) == 2

    with pytest.raises(UnknownEndpointError):
        orch.reevaluate("/unknown")


def test_refresh_and_status(make_orchestrator, store):
    orch = make_orchestrator()
    orch.register(ai_plugin_descriptor(SITE))

    [row] = orch.status()
    assert row.endpoint_key == "/.well-known/ai-plugin.json"
    assert row.state is EndpointState.STRATEGY_ACTIVE
    assert row.strategy_id == "direct-file-serve"

    assert orch.refresh_capabilities() == 1
    assert store.get_capability_report(row.endpoint_key) is None


def test_routes_survive_a_restart(docroot: Path, make_orchestrator, store):
    orch = make_orchestrator()
    d = ask_descriptor(SITE)
    store.save_capability_report(d.path, both_modes())
    orch.register(d)

    fresh = make_orchestrator()
    assert fresh.handle_request("GET", "/ask") is None
    assert fresh.load_routes([d]) == ["/ask"]
    assert fresh.handle_request("GET", "/ask").status_code == 200
    assert fresh.state("/ask") is EndpointState.STRATEGY_ACTIVE
