"""The five building blocks strategies are made of.

A block never raises for an expected failure: it returns a failed
``BlockOutcome``. A successful outcome carries the compensation that undoes
it; the executor keeps those on a stack.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from beacon.domain.models import (
    CapabilityReport,
    EndpointDescriptor,
    ManualConfigSuggestion,
    RegistrationPreferences,
    RouteMapping,
)
from beacon.host.filesystem import DocumentRoot
from beacon.host.routing import RouteTable
from beacon.safety.manager import FilePolicy, FileSafetyManager
from beacon.safety.sections import comment_prefix, render_section, upsert_section
from beacon.store.base import StateStore
from beacon.strategies.catalog import (
    ADD_APPLICATION_ROUTE,
    ADD_AUXILIARY_SERVER_CONFIG,
    CREATE_FILE,
    MODIFY_EXISTING_FILE,
    SUGGEST_MANUAL_CONFIG,
    Strategy,
)
from beacon.strategies.server_config import AUX_CONFIG_FILES, apply_aux_config, render_suggestion

logger = logging.getLogger(__name__)


@dataclass
class BlockContext:
    docroot: DocumentRoot
    files: FileSafetyManager
    routes: RouteTable
    store: StateStore
    report: CapabilityReport
    preferences: RegistrationPreferences = field(default_factory=RegistrationPreferences)
    app_upstream: str = "http://127.0.0.1:8000"
    # generated once per registration
    body: str = ""


@dataclass
class BlockOutcome:
    success: bool
    error: Optional[str] = None
    details: list[str] = field(default_factory=list)
    compensation: Optional[Callable[[], None]] = None
    created_files: list[str] = field(default_factory=list)
    modified_files: list[str] = field(default_factory=list)
    server_config_files: list[str] = field(default_factory=list)
    # set when a file conflict was handed to the operator
    conflict_id: Optional[int] = None


BlockFn = Callable[[EndpointDescriptor, BlockContext, Strategy], BlockOutcome]


def create_file(endpoint: EndpointDescriptor, ctx: BlockContext, strategy: Strategy) -> BlockOutcome:
    try:
        target = ctx.docroot.path_for(endpoint.path)
        created_dirs = ctx.docroot.ensure_parent(target)
    except PermissionError as e:
        return BlockOutcome(False, f"permission denied: {e}")
    except (OSError, ValueError) as e:
        return BlockOutcome(False, f"cannot prepare {endpoint.path}: {e}")

    res = ctx.files.create(target, ctx.body)
    if not res.success:
        ctx.docroot.prune_empty_dirs(created_dirs)
        return BlockOutcome(False, "; ".join(res.errors) or f"could not write {target}", conflict_id=res.conflict_id)

    def undo() -> None:
        ctx.files.revert(res)
        ctx.docroot.prune_empty_dirs(created_dirs)

    return BlockOutcome(
        True,
        details=res.messages + res.warnings,
        compensation=undo,
        created_files=[str(target)],
    )


def modify_existing_file(endpoint: EndpointDescriptor, ctx: BlockContext, strategy: Strategy) -> BlockOutcome:
    try:
        target = ctx.docroot.path_for(endpoint.path)
    except ValueError as e:
        return BlockOutcome(False, str(e))
    prefix = comment_prefix(endpoint.content_type)

    if not target.exists():
        try:
            created_dirs = ctx.docroot.ensure_parent(target)
        except OSError as e:
            return BlockOutcome(False, f"cannot prepare {endpoint.path}: {e}")
        res = ctx.files.create(target, render_section(endpoint.key, ctx.body, prefix))
        if not res.success:
            ctx.docroot.prune_empty_dirs(created_dirs)
            return BlockOutcome(False, "; ".join(res.errors))

        def undo_create() -> None:
            ctx.files.revert(res)
            ctx.docroot.prune_empty_dirs(created_dirs)

        return BlockOutcome(True, details=res.messages, compensation=undo_create, modified_files=[str(target)])

    try:
        existing = target.read_text(encoding="utf-8")
    except PermissionError:
        return BlockOutcome(False, f"permission denied: cannot read {target}")
    except (OSError, UnicodeDecodeError) as e:
        return BlockOutcome(False, f"cannot read {target}: {e}")

    # we wrote this file before and someone changed it since
    fp = ctx.store.get_fingerprint(str(target))
    if fp is not None and not ctx.files.verify(target):
        try:
            proposed = upsert_section(existing, endpoint.key, ctx.body, prefix)
        except ValueError:
            proposed = existing
        res = ctx.files.defer(target, proposed)
        return BlockOutcome(False, "; ".join(res.errors), details=res.warnings, conflict_id=res.conflict_id)

    try:
        updated = upsert_section(existing, endpoint.key, ctx.body, prefix)
    except ValueError as e:
        return BlockOutcome(False, f"{target}: {e}")

    res = ctx.files.create(target, updated, FilePolicy.BACKUP_THEN_OVERWRITE)
    if not res.success:
        return BlockOutcome(False, "; ".join(res.errors))
    return BlockOutcome(
        True,
        details=res.messages,
        compensation=lambda: ctx.files.revert(res),
        modified_files=[str(target)],
    )


def add_application_route(endpoint: EndpointDescriptor, ctx: BlockContext, strategy: Strategy) -> BlockOutcome:
    previous = ctx.routes.pending(endpoint.path)
    mapping = RouteMapping(
        path=endpoint.path,
        endpoint_key=endpoint.key,
        mode=strategy.route_mode,
        record_access=ctx.preferences.prefer_analytics,
        content_type=endpoint.content_type,
    )
    ctx.routes.add(mapping)
    ctx.routes.activate()

    def undo() -> None:
        if previous is not None:
            ctx.routes.add(previous)
        else:
            ctx.routes.remove(endpoint.path)
        ctx.routes.activate()

    return BlockOutcome(True, details=[f"route {endpoint.path} -> {strategy.route_mode}"], compensation=undo)


def add_auxiliary_server_config(
    endpoint: EndpointDescriptor, ctx: BlockContext, strategy: Strategy
) -> BlockOutcome:
    family = ctx.report.server_family
    target = aux_config_path(ctx.docroot, family)
    if target is None:
        return BlockOutcome(False, f"no auxiliary config file for server family {family!r}")

    try:
        existing = target.read_text(encoding="utf-8") if target.exists() else None
        updated = apply_aux_config(family, existing, endpoint)
    except PermissionError:
        return BlockOutcome(False, f"permission denied: cannot read {target}")
    except (OSError, UnicodeDecodeError, ValueError) as e:
        return BlockOutcome(False, f"{target}: {e}")

    res = ctx.files.create(target, updated, FilePolicy.BACKUP_THEN_OVERWRITE)
    if not res.success:
        return BlockOutcome(False, "; ".join(res.errors))
    return BlockOutcome(
        True,
        details=res.messages,
        compensation=lambda: ctx.files.revert(res),
        server_config_files=[str(target)],
    )


def suggest_manual_config(endpoint: EndpointDescriptor, ctx: BlockContext, strategy: Strategy) -> BlockOutcome:
    family = ctx.report.server_family
    snippet = render_suggestion(family, endpoint, strategy.routed, ctx.app_upstream)
    previous = ctx.store.get_suggestion(endpoint.key)
    ctx.store.save_suggestion(
        ManualConfigSuggestion(endpoint_key=endpoint.key, server_family=family, snippet=snippet)
    )
    logger.info("manual %s config suggested for %s", family, endpoint.key)

    def undo() -> None:
        if previous is not None:
            ctx.store.save_suggestion(previous)
        else:
            ctx.store.delete_suggestion(endpoint.key)

    return BlockOutcome(True, details=[f"manual {family} config suggested"], compensation=undo)


BLOCKS: dict[str, BlockFn] = {
    CREATE_FILE: create_file,
    MODIFY_EXISTING_FILE: modify_existing_file,
    ADD_APPLICATION_ROUTE: add_application_route,
    ADD_AUXILIARY_SERVER_CONFIG: add_auxiliary_server_config,
    SUGGEST_MANUAL_CONFIG: suggest_manual_config,
}


def aux_config_path(docroot: DocumentRoot, family: str) -> Optional[Path]:
    name = AUX_CONFIG_FILES.get(family)
    return docroot.root / name if name else None
