from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlsplit

import httpx

logger = logging.getLogger(__name__)

_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1", "[::1]"}


def is_local_host(url: str) -> bool:
    host = (urlsplit(url).hostname or "").lower()
    return host in _LOCAL_HOSTS or host.endswith(".local") or host.endswith(".localhost")


@dataclass(frozen=True)
class ProbeResponse:
    url: str
    status_code: Optional[int] = None
    headers: dict[str, str] = field(default_factory=dict)
    cookies: list[str] = field(default_factory=list)
    body: str = ""
    elapsed_ms: float = 0.0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.status_code == 200


class ProbeHttpClient:
    """Blocking GETs against the site with a short timeout.

    TLS verification is skipped for loopback and ``*.local`` hosts, which
    usually run self-signed certificates. Transport errors never escape;
    they come back as ``ProbeResponse.error``.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        user_agent: str = "beacon-probe/0.1",
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.user_agent = user_agent
        self._transport = transport

    def url_for(self, path: str) -> str:
        return self.base_url + "/" + path.lstrip("/")

    def get(self, path: str) -> ProbeResponse:
        url = self.url_for(path)
        verify = not is_local_host(url)
        started = time.monotonic()
        try:
            with httpx.Client(
                timeout=httpx.Timeout(self.timeout),
                verify=verify,
                follow_redirects=False,
                headers={"User-Agent": self.user_agent},
                transport=self._transport,
            ) as client:
                resp = client.get(url)
                body = resp.text
        except httpx.HTTPError as e:
            elapsed = round((time.monotonic() - started) * 1000, 2)
            logger.info("GET %s failed after %sms: %s", url, elapsed, e)
            return ProbeResponse(url=url, elapsed_ms=elapsed, error=f"{type(e).__name__}: {e}")

        elapsed = round((time.monotonic() - started) * 1000, 2)
        logger.debug("GET %s -> %s in %sms", url, resp.status_code, elapsed)
        return ProbeResponse(
            url=url,
            status_code=resp.status_code,
            headers={k.lower(): v for k, v in resp.headers.items()},
            cookies=resp.headers.get_list("set-cookie"),
            body=body,
            elapsed_ms=elapsed,
        )
