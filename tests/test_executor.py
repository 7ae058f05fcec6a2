from pathlib import Path

from beacon.domain.models import CapabilityReport, EndpointDescriptor
from beacon.host.filesystem import DocumentRoot
from beacon.host.routing import RouteTable
from beacon.safety.manager import FileSafetyManager
from beacon.store.memory_store import InMemoryStore
from beacon.strategies.blocks import BlockContext, BlockOutcome
from beacon.strategies.catalog import Strategy
from beacon.strategies.executor import StrategyExecutor


def endpoint(path: str = "/.well-known/ai-plugin.json") -> EndpointDescriptor:
    return EndpointDescriptor(
        path=path, content_generator=lambda: '{"schema_version": "v1"}\n', content_type="application/json"
    )


def context(root: Path, store: InMemoryStore, report: CapabilityReport) -> BlockContext:
    return BlockContext(
        docroot=DocumentRoot(root),
        files=FileSafetyManager(store),
        routes=RouteTable(store),
        store=store,
        report=report,
        body='{"schema_version": "v1"}\n',
    )


def test_failure_unwinds_completed_blocks_in_reverse(tmp_path: Path):
    log: list[str] = []

    def ok(name):
        def block(ep, ctx, strategy):
            log.append(f"do {name}")
            return BlockOutcome(True, compensation=lambda: log.append(f"undo {name}"))

        return block

    def fail(ep, ctx, strategy):
        log.append("do c")
        return BlockOutcome(False, "c failed")

    ex = StrategyExecutor(
        blocks={"a": ok("a"), "b": ok("b"), "c": fail},
        strategies={"abc": Strategy("abc", ("a", "b", "c"))},
    )
    res = ex.execute("abc", endpoint(), context(tmp_path, InMemoryStore(), CapabilityReport()))

    assert res.success is False
    assert res.failed_block == "c"
    assert res.error == "c failed"
    assert res.completed_blocks == ["a", "b"]
    assert res.rolled_back == ["b", "a"]
    assert log == ["do a", "do b", "do c", "undo b", "undo a"]


def test_block_exception_becomes_failure(tmp_path: Path):
    undone = []

    def first(ep, ctx, strategy):
        return BlockOutcome(True, compensation=lambda: undone.append("first"))

    def broken(ep, ctx, strategy):
        raise RuntimeError("disk on fire")

    ex = StrategyExecutor(
        blocks={"first": first, "broken": broken},
        strategies={"s": Strategy("s", ("first", "broken"))},
    )
    res = ex.execute("s", endpoint(), context(tmp_path, InMemoryStore(), CapabilityReport()))

    assert res.success is False
    assert "RuntimeError" in res.error and "disk on fire" in res.error
    assert undone == ["first"]


def test_failing_compensation_does_not_stop_the_unwind(tmp_path: Path):
    undone = []

    def bad_undo():
        raise OSError("gone")

    blocks = {
        "a": lambda ep, ctx, s: BlockOutcome(True, compensation=lambda: undone.append("a")),
        "b": lambda ep, ctx, s: BlockOutcome(True, compensation=bad_undo),
        "c": lambda ep, ctx, s: BlockOutcome(False, "nope"),
    }
    ex = StrategyExecutor(blocks=blocks, strategies={"s": Strategy("s", ("a", "b", "c"))})
    res = ex.execute("s", endpoint(), context(tmp_path, InMemoryStore(), CapabilityReport()))

    assert res.rolled_back == ["a"]
    assert res.rollback_errors == ["b: gone"]
    assert undone == ["a"]


def test_unknown_strategy_fails_cleanly(tmp_path: Path):
    res = StrategyExecutor().execute("no-such", endpoint(), context(tmp_path, InMemoryStore(), CapabilityReport()))
    assert res.success is False
    assert "unknown strategy" in res.error


def test_file_written_then_aux_config_fails_is_rolled_back(tmp_path: Path):
    store = InMemoryStore()
    # nginx has no auxiliary config file, so the second block fails
    report = CapabilityReport(supports_direct_file_serve=True, can_write_filesystem=True, server_family="nginx")

    res = StrategyExecutor().execute(
        "direct-file-serve-with-server-config", endpoint(), context(tmp_path, store, report)
    )

    assert res.success is False
    assert res.failed_block == "add-auxiliary-server-config"
    assert res.rolled_back == ["create-file"]
    assert not (tmp_path / ".well-known").exists()
    assert store.list_fingerprints() == []


def test_routing_strategy_never_writes_files(tmp_path: Path):
    store = InMemoryStore()
    ctx = context(tmp_path, store, CapabilityReport(supports_application_routing=True))

    res = StrategyExecutor().execute("application-routing", endpoint(), ctx)

    assert res.success
    assert res.created_files == []
    assert list(tmp_path.iterdir()) == []
    assert ctx.routes.match("/.well-known/ai-plugin.json").mode == "content"


def test_htaccess_block_is_added_once(tmp_path: Path):
    store = InMemoryStore()
    (tmp_path / ".htaccess").write_text("RewriteEngine On\n", encoding="utf-8")
    report = CapabilityReport(
        supports_direct_file_serve=True,
        can_write_filesystem=True,
        supports_auxiliary_server_config=True,
        server_family="apache",
    )
    ex = StrategyExecutor()

    first = ex.execute("direct-file-serve-with-server-config", endpoint(), context(tmp_path, store, report))
    second = ex.execute("direct-file-serve-with-server-config", endpoint(), context(tmp_path, store, report))

    assert first.success and second.success
    text = (tmp_path / ".htaccess").read_text(encoding="utf-8")
    assert text.startswith("RewriteEngine On\n")
    assert text.count("# BEGIN beacon /.well-known/ai-plugin.json") == 1
    assert 'Header set Content-Type "application/json"' in text
    assert first.server_config_files == [str(tmp_path / ".htaccess")]
