from __future__ import annotations

import asyncio
import gzip
import ssl
from typing import Optional, Sequence, TypedDict

import httpx
from loguru import logger

from .bulk import NDJSON_CONTENT_TYPE
from .errors import BulkClientError, TransportError, TransportTimeout, map_transport_error
from .models import BulkResponse


class BulkClientConfig(TypedDict, total=False):
    urls: Sequence[str]
    username: str
    password: str
    connect_timeout_ms: int
    read_timeout_ms: int
    compression: str  # "none" | "gzip"
    ssl_ca_location: str
    ssl_cert_location: str
    ssl_key_location: str
    ssl_verify: bool
    max_connections: int
    deadline_slack_ms: int


DEFAULTS: BulkClientConfig = {
    "connect_timeout_ms": 1000,
    "read_timeout_ms": 3000,
    "compression": "none",
    "ssl_verify": True,
    "max_connections": 5,
    "deadline_slack_ms": 1000,
}


def _ssl_verify(cfg: BulkClientConfig) -> ssl.SSLContext | bool:
    ca = cfg.get("ssl_ca_location")
    cert = cfg.get("ssl_cert_location")
    if not ca and not cert:
        return bool(cfg.get("ssl_verify", True))

    ctx = ssl.create_default_context(cafile=ca) if ca else ssl.create_default_context()
    if cert:
        ctx.load_cert_chain(certfile=cert, keyfile=cfg.get("ssl_key_location"))
    if not cfg.get("ssl_verify", True):
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
    return ctx


class BulkClient:
    """
    Async HTTP client for the Elasticsearch bulk API.

    One pooled httpx.AsyncClient is shared by all in-flight requests. Several
    cluster URLs are used round-robin; a transport error moves the cursor to
    the next node so the retry lands elsewhere.

    Usage:
        client = BulkClient({"urls": ["http://localhost:9200"]})
        resp = await client.send_bulk(body)
        await client.aclose()
    """

    def __init__(self, cfg: BulkClientConfig, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.cfg: BulkClientConfig = {**DEFAULTS, **(cfg or {})}
        urls = [u.strip().rstrip("/") for u in self.cfg.get("urls", []) if u and u.strip()]
        if not urls:
            raise ValueError("at least one cluster URL is required")
        self._urls = urls
        self._cursor = 0

        connect_s = self.cfg["connect_timeout_ms"] / 1000.0
        read_s = self.cfg["read_timeout_ms"] / 1000.0
        self.timeout = httpx.Timeout(connect=connect_s, read=read_s, write=read_s, pool=read_s)
        self.deadline_s = connect_s + read_s + self.cfg["deadline_slack_ms"] / 1000.0
        self._gzip = (self.cfg.get("compression") or "none").lower() == "gzip"

        auth = None
        if self.cfg.get("username"):
            auth = httpx.BasicAuth(self.cfg["username"], self.cfg.get("password", ""))

        max_conn = max(1, int(self.cfg["max_connections"]))
        kwargs = {}
        if transport is not None:
            kwargs["transport"] = transport
        else:
            kwargs["verify"] = _ssl_verify(self.cfg)
        self._client = httpx.AsyncClient(
            timeout=self.timeout,
            limits=httpx.Limits(max_connections=max_conn, max_keepalive_connections=max_conn),
            auth=auth,
            **kwargs,
        )

    @property
    def urls(self) -> list[str]:
        return list(self._urls)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "BulkClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    # ---------- internal helpers ----------

    def _node(self) -> str:
        return self._urls[self._cursor % len(self._urls)]

    def _rotate(self) -> None:
        self._cursor = (self._cursor + 1) % len(self._urls)

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self._node()}{path}"
        try:
            # the response body is read fully before returning
            return await asyncio.wait_for(
                self._client.request(method, url, **kwargs), timeout=self.deadline_s
            )
        except asyncio.TimeoutError:
            self._rotate()
            raise TransportTimeout(
                f"SocketTimeoutException: {int(self.deadline_s * 1000):,} milliseconds "
                f"timeout on connection {url} (request deadline)",
                url=url,
            ) from None
        except (httpx.HTTPError, OSError) as e:
            self._rotate()
            err = map_transport_error(e, url, self.timeout)
            logger.debug(f"{method} {url} failed: {err}")
            raise err from e

    # ---------- bulk ----------

    async def send_bulk(self, body: bytes) -> BulkResponse:
        """POST an NDJSON body to /_bulk and parse whatever comes back."""
        headers = {"Content-Type": NDJSON_CONTENT_TYPE}
        if self._gzip:
            body = gzip.compress(body)
            headers["Content-Encoding"] = "gzip"
        resp = await self._request("POST", "/_bulk", content=body, headers=headers)
        return BulkResponse.parse(resp.status_code, resp.text)

    # ---------- admin / health ----------

    async def ping(self) -> bool:
        """Return True if the cluster answers GET / with a 2xx."""
        resp = await self._request("GET", "/")
        if resp.status_code in (401, 403):
            raise BulkClientError(f"Cluster rejected credentials (HTTP {resp.status_code})")
        return resp.is_success

    async def index_exists(self, index: str) -> bool:
        resp = await self._request("HEAD", f"/{index}")
        return resp.status_code == 200

    async def create_index(self, index: str) -> bool:
        """Create an index; returns False if it already existed."""
        resp = await self._request("PUT", f"/{index}")
        if resp.is_success:
            logger.info(f"Created index {index}")
            return True
        body = BulkResponse.parse(resp.status_code, resp.text)
        if body.error_type == "resource_already_exists_exception":
            return False
        raise BulkClientError(
            f"Failed to create index {index} (HTTP {resp.status_code}): {body.error_summary}"
        )


__all__ = ["BulkClient", "BulkClientConfig", "TransportError", "TransportTimeout"]
