from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

import httpx

from beacon.config import BeaconSettings
from beacon.domain.models import (
    AttemptRecord,
    CapabilityReport,
    EndpointDescriptor,
    EndpointState,
    RegistrationPreferences,
    StrategyAttempt,
    sha256_text,
)
from beacon.errors import InvalidTransitionError, UnknownEndpointError
from beacon.host.filesystem import DocumentRoot
from beacon.host.http_client import ProbeHttpClient
from beacon.host.routing import RouteTable
from beacon.probe.prober import CapabilityProber, determine_recommended_strategy
from beacon.safety.manager import FilePolicy, FileSafetyManager
from beacon.safety.sections import comment_prefix, has_section, strip_section, upsert_section
from beacon.store.base import StateStore
from beacon.store.sqlite_store import BeaconSQLiteStore
from beacon.strategies.blocks import BlockContext
from beacon.strategies.catalog import STRATEGIES, SUGGEST_MANUAL_CONFIG, ordered_strategies
from beacon.strategies.executor import StrategyExecutor, StrategyResult
from beacon.strategies.server_config import AUX_CONFIG_FILES, has_aux_config, remove_aux_config

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[EndpointState, set[EndpointState]] = {
    EndpointState.UNREGISTERED: {EndpointState.PROBING},
    EndpointState.PROBING: {EndpointState.STRATEGY_ACTIVE, EndpointState.ALL_STRATEGIES_FAILED},
    EndpointState.STRATEGY_ACTIVE: {EndpointState.PROBING, EndpointState.DEACTIVATED},
    EndpointState.ALL_STRATEGIES_FAILED: {EndpointState.PROBING, EndpointState.DEACTIVATED},
    EndpointState.DEACTIVATED: {EndpointState.PROBING},
}

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, HEAD, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}
ALLOWED_METHODS = "GET, HEAD, OPTIONS"


@dataclass(frozen=True)
class RegistrationResult:
    endpoint_key: str
    success: bool
    state: EndpointState
    strategy_id: Optional[str] = None
    # true when nothing had to change
    noop: bool = False
    recommended_approach: Optional[str] = None
    attempts: list[StrategyAttempt] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    conflict_id: Optional[int] = None


@dataclass(frozen=True)
class DeactivationResult:
    endpoint_key: str
    success: bool
    removed: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class EndpointResponse:
    status_code: int
    body: str = ""
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class EndpointStatus:
    endpoint_key: str
    state: EndpointState
    strategy_id: Optional[str]
    success: Optional[bool]
    last_error: Optional[str]
    timestamp: Optional[int]


def registration_digest(descriptor: EndpointDescriptor, body: str, preferences: RegistrationPreferences) -> str:
    payload = {"descriptor": descriptor.digest(body), "preferences": preferences.model_dump()}
    return sha256_text(json.dumps(payload, sort_keys=True))


class EndpointOrchestrator:
    """Registers endpoints and serves the ones that ended up routed.

    Per endpoint: probe (or reuse the cached report), walk the catalog's
    strategies until one succeeds, persist one AttemptRecord. The in-process
    maps below are caches; ``load_routes`` rebuilds them from the store.
    """

    def __init__(
        self,
        store: StateStore,
        docroot: DocumentRoot,
        prober: CapabilityProber,
        files: FileSafetyManager,
        routes: RouteTable,
        executor: Optional[StrategyExecutor] = None,
        app_upstream: str = "http://127.0.0.1:8000",
        default_preferences: Optional[RegistrationPreferences] = None,
    ):
        self.store = store
        self.docroot = docroot
        self.prober = prober
        self.files = files
        self.routes = routes
        self.executor = executor or StrategyExecutor()
        self.app_upstream = app_upstream
        self.default_preferences = default_preferences or RegistrationPreferences()

        self._descriptors: dict[str, EndpointDescriptor] = {}
        self._preferences: dict[str, RegistrationPreferences] = {}
        self._states: dict[str, EndpointState] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: BeaconSettings,
        store: Optional[StateStore] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> "EndpointOrchestrator":
        if store is None:
            store = BeaconSQLiteStore(settings.resolved_db_path())
        docroot = DocumentRoot(settings.document_root)
        routes = RouteTable(store)
        http = ProbeHttpClient(
            settings.base_url,
            timeout=settings.probe_timeout,
            user_agent=settings.user_agent,
            transport=transport,
        )
        return cls(
            store=store,
            docroot=docroot,
            prober=CapabilityProber(docroot, http, routes, server_family=settings.server_family),
            files=FileSafetyManager(store, policies=settings.file_policies),
            routes=routes,
            app_upstream=settings.app_upstream,
            default_preferences=RegistrationPreferences(prefer_analytics=settings.prefer_analytics),
        )

    # ----------------------------
    # registration
    # ----------------------------

    def register(
        self, descriptor: EndpointDescriptor, preferences: Optional[RegistrationPreferences] = None
    ) -> RegistrationResult:
        key = descriptor.key
        prefs = preferences or self._preferences.get(key) or self.default_preferences
        with self._lock_for(key):
            body = descriptor.generate()
            digest = registration_digest(descriptor, body, prefs)
            self._descriptors[key] = descriptor
            self._preferences[key] = prefs

            previous = self.store.get_attempt(key)
            cached = self.store.get_capability_report(key)
            if (
                previous is not None
                and previous.success
                and cached is not None
                and previous.descriptor_digest == digest
                and previous.report_digest == cached.digest()
                and self._artifacts_intact(previous, descriptor)
            ):
                logger.info("%s unchanged; keeping %s", key, previous.strategy_id)
                self._states[key] = EndpointState.STRATEGY_ACTIVE
                return RegistrationResult(
                    endpoint_key=key,
                    success=True,
                    state=EndpointState.STRATEGY_ACTIVE,
                    strategy_id=previous.strategy_id,
                    noop=True,
                    attempts=previous.attempts,
                )

            self._transition(key, EndpointState.PROBING)
            report = cached
            if report is None:
                report = self.prober.probe(key)
                self.store.save_capability_report(key, report)

            recommendation = determine_recommended_strategy(report, prefs.prefer_analytics)
            warnings = list(recommendation.warnings)
            if not recommendation.can_proceed:
                warnings.append("no serving mode verified by probing; trying fallbacks anyway")

            ctx = BlockContext(
                docroot=self.docroot,
                files=self.files,
                routes=self.routes,
                store=self.store,
                report=report,
                preferences=prefs,
                app_upstream=self.app_upstream,
                body=body,
            )
            order = ordered_strategies(descriptor.kind, report, prefs)
            logger.info("registering %s (%s): trying %s", key, descriptor.kind.value, ", ".join(order))

            attempts: list[StrategyAttempt] = []
            winner: Optional[StrategyResult] = None
            conflict_id: Optional[int] = None
            for strategy_id in order:
                result = self.executor.execute(strategy_id, descriptor, ctx)
                attempts.append(
                    StrategyAttempt(
                        strategy_id=strategy_id,
                        success=result.success,
                        error=result.error,
                        failed_block=result.failed_block,
                        rolled_back=result.rolled_back,
                    )
                )
                if result.success:
                    winner = result
                    break
                if result.conflict_id is not None:
                    # the operator owns the decision now
                    conflict_id = result.conflict_id
                    break

            if winner is not None:
                self._retire(previous, winner, key)
                record = AttemptRecord(
                    endpoint_key=key,
                    strategy_id=winner.strategy_id,
                    success=True,
                    descriptor_digest=digest,
                    report_digest=report.digest(),
                    attempts=attempts,
                    created_files=winner.created_files,
                    modified_files=winner.modified_files,
                    server_config_files=winner.server_config_files,
                )
                self.store.save_attempt(record)
                self._transition(key, EndpointState.STRATEGY_ACTIVE)
                logger.info("%s active via %s", key, winner.strategy_id)
                return RegistrationResult(
                    endpoint_key=key,
                    success=True,
                    state=EndpointState.STRATEGY_ACTIVE,
                    strategy_id=winner.strategy_id,
                    recommended_approach=recommendation.approach,
                    attempts=attempts,
                    warnings=warnings,
                )

            errors = [f"{a.strategy_id}: {a.error}" for a in attempts if a.error]
            last = attempts[-1] if attempts else None
            self.store.save_attempt(
                AttemptRecord(
                    endpoint_key=key,
                    strategy_id=last.strategy_id if last else "",
                    success=False,
                    last_error=last.error if last else "no strategy applicable",
                    descriptor_digest=digest,
                    report_digest=report.digest(),
                    attempts=attempts,
                )
            )
            self._transition(key, EndpointState.ALL_STRATEGIES_FAILED)
            logger.warning("%s: all strategies failed (%s)", key, "; ".join(errors))
            return RegistrationResult(
                endpoint_key=key,
                success=False,
                state=EndpointState.ALL_STRATEGIES_FAILED,
                recommended_approach=recommendation.approach,
                attempts=attempts,
                warnings=warnings,
                errors=errors + recommendation.errors,
                conflict_id=conflict_id,
            )

    def reevaluate(self, path: str, force: bool = False) -> RegistrationResult:
        """Operator-triggered re-probe; skipped while the endpoint answers unless forced."""
        descriptor = self._descriptors.get(path)
        if descriptor is None:
            raise UnknownEndpointError(path)
        if not force and self.state(path) is EndpointState.STRATEGY_ACTIVE and self.prober.is_route_active(path):
            record = self.store.get_attempt(path)
            return RegistrationResult(
                endpoint_key=path,
                success=True,
                state=EndpointState.STRATEGY_ACTIVE,
                strategy_id=record.strategy_id if record else None,
                noop=True,
                warnings=["endpoint already answers; pass force to re-probe"],
            )
        self.store.clear_capability_reports(path)
        return self.register(descriptor)

    def refresh_capabilities(self, path: Optional[str] = None) -> int:
        n = self.store.clear_capability_reports(path)
        logger.info("cleared %d cached capability report(s)", n)
        return n

    def deactivate(self, path: str) -> DeactivationResult:
        with self._lock_for(path):
            if self.state(path) is EndpointState.UNREGISTERED:
                raise UnknownEndpointError(path)
            record = self.store.get_attempt(path)
            removed, errors = self._remove_artifacts(path, record)
            self.store.delete_attempt(path)
            self.store.delete_suggestion(path)
            self._transition(path, EndpointState.DEACTIVATED)
            logger.info("deactivated %s (removed: %s)", path, ", ".join(removed) or "nothing")
            return DeactivationResult(path, success=not errors, removed=removed, errors=errors)

    # ----------------------------
    # request time
    # ----------------------------

    def handle_request(self, method: str, path: str) -> Optional[EndpointResponse]:
        """Answer a request for a routed endpoint, or None when nothing is routed there."""
        mapping = self.routes.match(path)
        if mapping is None:
            return None
        method = method.upper()

        if mapping.mode == "probe":
            return EndpointResponse(
                200,
                mapping.probe_body or "",
                {"Content-Type": mapping.content_type, "Cache-Control": "no-store"},
            )

        descriptor = self._descriptors.get(mapping.endpoint_key)
        if descriptor is None:
            logger.warning("route %s has no descriptor loaded in this process", path)
            return None

        headers = {"Content-Type": descriptor.content_type, "Cache-Control": descriptor.cache_control}
        if descriptor.cors_required:
            headers.update(CORS_HEADERS)

        if method == "OPTIONS":
            headers["Allow"] = ALLOWED_METHODS
            if descriptor.cors_required:
                headers["Access-Control-Max-Age"] = "86400"
            return EndpointResponse(200, "", headers)
        if method not in ("GET", "HEAD"):
            return EndpointResponse(405, "", {"Allow": ALLOWED_METHODS})

        try:
            body = descriptor.generate()
            if mapping.mode == "passthrough":
                body = self._merge_with_file(descriptor, body)
        except Exception:
            logger.exception("content generator for %s failed", descriptor.key)
            return EndpointResponse(500, "", {"Cache-Control": "no-store"})

        if mapping.record_access and method == "GET":
            self.store.record_access(descriptor.key)
        return EndpointResponse(200, "" if method == "HEAD" else body, headers)

    def load_routes(self, descriptors: Iterable[EndpointDescriptor] = ()) -> list[str]:
        """Rebuild in-process state at process start; never probes."""
        for d in descriptors:
            self._descriptors[d.key] = d
        self.routes.load()
        served = [p for p in self.routes.paths() if self.routes.match(p).endpoint_key in self._descriptors]
        logger.info("loaded %d route(s); %d with a descriptor", len(self.routes.paths()), len(served))
        return served

    # ----------------------------
    # diagnostics
    # ----------------------------

    def state(self, path: str) -> EndpointState:
        if path in self._states:
            return self._states[path]
        record = self.store.get_attempt(path)
        if record is None:
            return EndpointState.UNREGISTERED
        return EndpointState.STRATEGY_ACTIVE if record.success else EndpointState.ALL_STRATEGIES_FAILED

    def status(self) -> list[EndpointStatus]:
        records = {r.endpoint_key: r for r in self.store.list_attempts()}
        out = []
        for key in sorted(set(records) | set(self._descriptors)):
            r = records.get(key)
            out.append(
                EndpointStatus(
                    endpoint_key=key,
                    state=self.state(key),
                    strategy_id=r.strategy_id if r else None,
                    success=r.success if r else None,
                    last_error=r.last_error if r else None,
                    timestamp=r.timestamp if r else None,
                )
            )
        return out

    def attempt_history(self, path: str) -> list[AttemptRecord]:
        return self.store.list_history(path)

    def descriptor(self, path: str) -> EndpointDescriptor:
        try:
            return self._descriptors[path]
        except KeyError:
            raise UnknownEndpointError(path) from None

    # ----------------------------
    # internals
    # ----------------------------

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(key, threading.Lock())

    def _transition(self, key: str, target: EndpointState) -> None:
        current = self.state(key)
        if target not in _TRANSITIONS[current]:
            raise InvalidTransitionError(key, current.value, target.value)
        logger.debug("%s: %s -> %s", key, current.value, target.value)
        self._states[key] = target

    def _artifacts_intact(self, record: AttemptRecord, descriptor: EndpointDescriptor) -> bool:
        for f in record.created_files + record.modified_files + record.server_config_files:
            if not self.files.verify(Path(f)):
                return False
        strategy = STRATEGIES.get(record.strategy_id)
        if strategy is None:
            return False
        if strategy.routed:
            mapping = self.routes.pending(descriptor.key)
            if mapping is None or mapping.mode != strategy.route_mode:
                return False
        if SUGGEST_MANUAL_CONFIG in strategy.blocks and self.store.get_suggestion(descriptor.key) is None:
            return False
        return True

    def _merge_with_file(self, descriptor: EndpointDescriptor, body: str) -> str:
        try:
            existing = self.docroot.read_text(descriptor.path) or ""
        except (OSError, ValueError):
            existing = ""
        if not existing.strip():
            return body
        return upsert_section(existing, descriptor.key, body, comment_prefix(descriptor.content_type))

    def _retire(self, previous: Optional[AttemptRecord], winner: StrategyResult, key: str) -> None:
        """Drop what an earlier winning strategy left behind and the new one does not use."""
        if previous is None or not previous.success or previous.strategy_id == winner.strategy_id:
            return
        new_strategy = STRATEGIES[winner.strategy_id]
        if not new_strategy.routed and self.routes.pending(key) is not None:
            self.routes.remove(key)
            self.routes.activate()
        errors: list[str] = []
        for f in previous.created_files:
            if f not in winner.created_files:
                errors += self.files.delete_if_unchanged(Path(f)).errors
        for f in previous.modified_files:
            if f not in winner.modified_files:
                errors.append(self._strip_managed_section(Path(f), key)[1])
        for f in previous.server_config_files:
            if f not in winner.server_config_files:
                errors.append(self._strip_aux_config(Path(f), key)[1])
        for err in filter(None, errors):
            logger.warning("%s: leftover from %s kept: %s", key, previous.strategy_id, err)
        if SUGGEST_MANUAL_CONFIG not in new_strategy.blocks:
            self.store.delete_suggestion(key)

    def _remove_artifacts(self, key: str, record: Optional[AttemptRecord]) -> tuple[list[str], list[str]]:
        removed: list[str] = []
        errors: list[str] = []

        if self.routes.pending(key) is not None:
            self.routes.remove(key)
            self.routes.activate()
            removed.append(f"route {key}")

        created = set(record.created_files) if record else set()
        modified = set(record.modified_files) if record else set()
        server_config = set(record.server_config_files) if record else set()

        # files on disk are checked too: a failed re-registration overwrote the record
        target = self.docroot.path_for(key)
        if target.is_file():
            text = target.read_text(encoding="utf-8", errors="replace")
            if has_section(text, key):
                modified.add(str(target))
            elif self.store.get_fingerprint(str(target)) is not None:
                created.add(str(target))
        for name in AUX_CONFIG_FILES.values():
            p = self.docroot.root / name
            if p.is_file():
                server_config.add(str(p))

        for f in sorted(created):
            res = self.files.delete_if_unchanged(Path(f))
            if res.success:
                if res.action_taken != "none":
                    removed.append(f)
            else:
                errors.extend(res.errors)
        for f in sorted(modified):
            changed, err = self._strip_managed_section(Path(f), key)
            if err:
                errors.append(err)
            elif changed:
                removed.append(f"section in {f}")
        for f in sorted(server_config):
            changed, err = self._strip_aux_config(Path(f), key)
            if err:
                errors.append(err)
            elif changed:
                removed.append(f"server config in {f}")
        return removed, errors

    def _strip_managed_section(self, path: Path, key: str) -> tuple[bool, Optional[str]]:
        if not path.is_file():
            return False, None
        if self.store.get_fingerprint(str(path)) is not None and not self.files.verify(path):
            return False, f"refusing to edit {path}: modified since our last write"
        text = path.read_text(encoding="utf-8", errors="replace")
        stripped = strip_section(text, key)
        if stripped == text:
            return False, None
        if not stripped.strip() and self.files.verify(path):
            res = self.files.delete_if_unchanged(path)
        else:
            res = self.files.create(path, stripped, FilePolicy.BACKUP_THEN_OVERWRITE)
        return res.success, None if res.success else "; ".join(res.errors)

    def _strip_aux_config(self, path: Path, key: str) -> tuple[bool, Optional[str]]:
        family = next((f for f, name in AUX_CONFIG_FILES.items() if path.name == name), None)
        if family is None or not path.is_file():
            return False, None
        text = path.read_text(encoding="utf-8", errors="replace")
        if not has_aux_config(family, text, key):
            return False, None
        res = self.files.create(path, remove_aux_config(family, text, key), FilePolicy.BACKUP_THEN_OVERWRITE)
        return res.success, None if res.success else "; ".join(res.errors)


def report_summary(report: CapabilityReport) -> dict[str, object]:
    return report.model_dump(
        include={
            "supports_direct_file_serve",
            "supports_application_routing",
            "supports_auxiliary_server_config",
            "can_write_filesystem",
            "server_family",
        }
    )
