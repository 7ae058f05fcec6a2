"""Best-effort guess at whether a response came out of the application.

None of these signals is authoritative. Static servers sometimes add
``X-Powered-By``; some application stacks strip every identifying header.
A false "application" verdict makes direct file serving look unsupported
(we then fall back to routing, which still works); a false "static" verdict
is the riskier direction, so the prober also requires the probe token to
come back byte-for-byte.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from beacon.host.http_client import ProbeResponse

APPLICATION_HEADERS = ("x-powered-by", "x-pingback", "x-runtime", "x-beacon-route")

SESSION_COOKIE_MARKERS = (
    "sessionid",
    "phpsessid",
    "csrftoken",
    "laravel_session",
    "wordpress_",
    "wp-settings",
    "connect.sid",
)

HTML_SCAFFOLD_MARKERS = (
    '<meta name="generator"',
    "wp-content",
    "wp-includes",
    "__next_data__",
    "csrf-token",
)


@dataclass(frozen=True)
class ServedByVerdict:
    by_application: bool
    signals: list[str] = field(default_factory=list)


def classify_response(resp: ProbeResponse) -> ServedByVerdict:
    signals: list[str] = []

    for name in APPLICATION_HEADERS:
        if name in resp.headers:
            signals.append(f"header:{name}={resp.headers[name]}")

    for cookie in resp.cookies:
        name = cookie.split("=", 1)[0].strip().lower()
        if any(marker in name for marker in SESSION_COOKIE_MARKERS):
            signals.append(f"cookie:{name}")

    body = resp.body.lower()
    if "<html" in body:
        for marker in HTML_SCAFFOLD_MARKERS:
            if marker in body:
                signals.append(f"html:{marker}")

    return ServedByVerdict(by_application=bool(signals), signals=signals)
