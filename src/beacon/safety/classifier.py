"""Named rules deciding whether an existing file may be overwritten.

Rules are registered per content kind (a file-name pattern). Adding a new
document kind means registering rules here; call sites only see
``ContentClassifier.classify``.
"""

from __future__ import annotations

import fnmatch
import json
import re
from dataclasses import dataclass
from pathlib import PurePath
from typing import Callable, Optional

from beacon.safety.sections import has_any_section

GENERATED_MARKERS = ("Generated by", "Auto-generated", "# This file is auto-generated")
SMALL_FILE_BYTES = 1024

_ROBOTS_DEFAULT_LINE = re.compile(
    r"^(user-agent:\s*\*"
    r"|disallow:\s*(/wp-admin/)?"
    r"|allow:\s*/wp-admin/admin-ajax\.php"
    r"|sitemap:\s*\S+)$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ClassifierVerdict:
    safe: bool
    reason: str
    rule: Optional[str] = None
    content_kind: str = "unknown"


@dataclass(frozen=True)
class ClassifierRule:
    name: str
    check: Callable[[str], bool]
    reason: str


def _has_generated_marker(text: str) -> bool:
    return any(m in text for m in GENERATED_MARKERS)


def is_blank(text: str) -> bool:
    return not text.strip()


def is_default_robots(text: str) -> bool:
    lines = [ln.strip() for ln in text.splitlines()]
    directives = [ln for ln in lines if ln and not ln.startswith("#")]
    if not directives:
        return False
    return all(_ROBOTS_DEFAULT_LINE.match(ln) for ln in directives)


def is_llms_policy(text: str) -> bool:
    return re.search(r"^#.*llms\.txt", text, re.IGNORECASE | re.MULTILINE) is not None


def is_machine_json(text: str) -> bool:
    try:
        data = json.loads(text)
    except ValueError:
        return False
    if not isinstance(data, dict):
        return False
    return any(k in data for k in ("schema_version", "generated_by", "api"))


def is_small_generated(text: str) -> bool:
    return len(text.encode("utf-8")) < SMALL_FILE_BYTES and _has_generated_marker(text)


class ContentClassifier:
    def __init__(self) -> None:
        self._rules: list[tuple[str, str, ClassifierRule]] = []

    def register(self, pattern: str, content_kind: str, rule: ClassifierRule) -> None:
        self._rules.append((pattern, content_kind, rule))

    def kind_for(self, path: PurePath) -> str:
        for pattern, kind, _ in self._rules:
            if fnmatch.fnmatch(path.name, pattern):
                return kind
        return "unknown"

    def classify(self, path: PurePath, content: str) -> ClassifierVerdict:
        kind = self.kind_for(path)
        for pattern, _, rule in self._rules:
            if not fnmatch.fnmatch(path.name, pattern):
                continue
            if rule.check(content):
                return ClassifierVerdict(safe=True, reason=rule.reason, rule=rule.name, content_kind=kind)
        return ClassifierVerdict(
            safe=False,
            reason=f"{path.name} contains custom content; requires manual review",
            content_kind=kind,
        )


def default_classifier() -> ContentClassifier:
    c = ContentClassifier()

    c.register("robots.txt", "robots_txt", ClassifierRule(
        "managed_section", has_any_section, "already contains our managed section; safe to update"))
    c.register("robots.txt", "robots_txt", ClassifierRule(
        "empty", is_blank, "empty robots.txt; safe to overwrite"))
    c.register("robots.txt", "robots_txt", ClassifierRule(
        "default_boilerplate", is_default_robots, "only default robots.txt directives; safe to enhance"))

    c.register("llms.txt", "llms_txt", ClassifierRule(
        "default_boilerplate", is_llms_policy, "looks like an llms.txt policy; safe to overwrite"))

    c.register("*.json", "json", ClassifierRule(
        "machine_json", is_machine_json, "machine-generated API/config JSON; safe to overwrite"))

    c.register("*", "unknown", ClassifierRule(
        "small_generated", is_small_generated, "small generated file; safe to overwrite"))
    return c
