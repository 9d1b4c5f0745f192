"""Ledger gateway client.

Issues GraphQL queries for tagged release transactions and downloads
release content by transaction id. Knows nothing about trust or version
policy: it only filters out entries whose tags cannot form a complete,
strictly-versioned release descriptor.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, TypeVar

import httpx

from pal import constants
from pal.logging import get_logger
from pal.updater.models import ReleaseDescriptor
from pal.updater.versioning import is_valid_version

if TYPE_CHECKING:
    from pal.config import Settings

log = get_logger("pal.updater.ledger")

T = TypeVar("T")

LATEST_RELEASE_QUERY = """
query GetLatestPackage($address: String!, $appName: String!, $first: Int!) {
  transactions(
    owners: [$address]
    tags: [
      { name: "App-Name", values: [$appName] }
      { name: "Type", values: ["package"] }
    ]
    sort: HEIGHT_DESC
    first: $first
  ) {
    edges {
      node {
        id
        tags {
          name
          value
        }
        block {
          timestamp
        }
      }
    }
  }
}
"""


class LedgerError(Exception):
    """Base exception for ledger failures."""


class LedgerResponseError(LedgerError):
    """The gateway answered, but not with a usable response."""


class LedgerNetworkError(LedgerError):
    """All attempts against the gateway failed."""

    def __init__(self, message: str, attempts: int, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.cause = cause


class LedgerTimeoutError(LedgerNetworkError):
    """The final attempt against the gateway timed out."""


def parse_release(node: dict[str, Any]) -> ReleaseDescriptor | None:
    """Build a release descriptor from a transaction node.

    Returns None (with a warning) when a required tag is missing or the
    version is not strict ``major.minor.patch``.
    """
    content_id = str(node.get("id") or "")
    tags = {
        str(tag.get("name")): str(tag.get("value"))
        for tag in node.get("tags") or []
        if isinstance(tag, dict) and tag.get("value") is not None
    }

    version = tags.get(constants.TAG_VERSION)
    sha256 = tags.get(constants.TAG_SHA256)
    publisher = tags.get(constants.TAG_SIGNER)

    missing = [
        name
        for name, value in (
            ("id", content_id),
            (constants.TAG_VERSION, version),
            (constants.TAG_SHA256, sha256),
            (constants.TAG_SIGNER, publisher),
        )
        if not value
    ]
    if missing:
        log.warning(
            "ledger_release_skipped",
            content_id=content_id,
            reason="missing_tags",
            missing=missing,
        )
        return None

    version, sha256, publisher = str(version), str(sha256), str(publisher)
    if not is_valid_version(version):
        log.warning(
            "ledger_release_skipped",
            content_id=content_id,
            reason="invalid_version",
            version=version,
        )
        return None

    block = node.get("block") or {}
    try:
        timestamp = int(block.get("timestamp") or 0)
    except (TypeError, ValueError):
        timestamp = 0

    return ReleaseDescriptor(
        content_id=content_id,
        version=version,
        publisher=publisher,
        sha256=sha256,
        timestamp=timestamp,
    )


def _transaction_nodes(data: dict[str, Any]) -> list[dict[str, Any]]:
    """Pull the transaction nodes out of a GraphQL response body.

    Raises ``LedgerResponseError`` when the body does not have the
    ``data.transactions.edges[].node`` shape.
    """
    body = data.get("data")
    transactions = body.get("transactions") if isinstance(body, dict) else None
    if transactions is None:
        return []
    if not isinstance(transactions, dict):
        raise LedgerResponseError("Gateway returned malformed transactions")

    edges = transactions.get("edges") or []
    if not isinstance(edges, list):
        raise LedgerResponseError("Gateway returned malformed transaction edges")

    nodes = []
    for edge in edges:
        node = edge.get("node") if isinstance(edge, dict) else None
        if not isinstance(node, dict):
            raise LedgerResponseError("Gateway returned a malformed transaction node")
        nodes.append(node)
    return nodes


class LedgerClient:
    """Async client for the ledger gateway with bounded timeouts and retries."""

    def __init__(
        self,
        gateway: str = constants.DEFAULT_GATEWAY,
        app_name: str = constants.APP_NAME,
        metadata_timeout: float = constants.METADATA_TIMEOUT,
        download_timeout: float = constants.DOWNLOAD_TIMEOUT,
        max_attempts: int = constants.MAX_ATTEMPTS,
        backoff_base: float = constants.BACKOFF_BASE,
        lookback: int = constants.LOOKBACK_WINDOW,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._gateway = gateway.rstrip("/")
        self._app_name = app_name
        self._metadata_timeout = metadata_timeout
        self._download_timeout = download_timeout
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base
        self._lookback = lookback
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> LedgerClient:
        return cls(
            gateway=settings.ledger_gateway,
            app_name=settings.app_name,
            metadata_timeout=settings.metadata_timeout,
            download_timeout=settings.download_timeout,
            max_attempts=settings.max_attempts,
            backoff_base=settings.backoff_base,
        )

    @property
    def gateway(self) -> str:
        return self._gateway

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> LedgerClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def query_latest_release(self, publisher: str) -> ReleaseDescriptor | None:
        """Return the newest valid release owned by *publisher*, or None."""
        payload = {
            "query": LATEST_RELEASE_QUERY,
            "variables": {
                "address": publisher,
                "appName": self._app_name,
                "first": self._lookback,
            },
        }

        async def _query() -> list[dict[str, Any]]:
            client = await self._get_client()
            resp = await client.post(
                f"{self._gateway}/graphql",
                json=payload,
                timeout=self._metadata_timeout,
            )
            self._raise_for_status(resp)
            try:
                data = resp.json()
            except ValueError as exc:
                raise LedgerResponseError("Gateway returned invalid JSON") from exc
            if not isinstance(data, dict):
                raise LedgerResponseError("Gateway returned an unexpected payload")
            if data.get("errors"):
                first = data["errors"][0] if isinstance(data["errors"], list) else data["errors"]
                message = first.get("message") if isinstance(first, dict) else first
                raise LedgerResponseError(f"GraphQL error: {message}")
            return _transaction_nodes(data)

        nodes = await self._with_retries("query", _query)
        if not nodes:
            log.debug("ledger_no_releases", publisher=publisher)
            return None

        for node in nodes[: self._lookback]:
            release = parse_release(node)
            if release is not None:
                log.debug(
                    "ledger_latest_release",
                    content_id=release.content_id,
                    version=release.version,
                )
                return release

        log.info("ledger_no_valid_release", publisher=publisher, scanned=len(nodes))
        return None

    async def download_content(self, content_id: str) -> bytes:
        """Fetch the raw bytes stored under *content_id*."""

        async def _download() -> bytes:
            client = await self._get_client()
            resp = await client.get(
                f"{self._gateway}/{content_id}",
                timeout=self._download_timeout,
            )
            self._raise_for_status(resp)
            return resp.content

        data = await self._with_retries("download", _download)
        log.debug("ledger_content_downloaded", content_id=content_id, size=len(data))
        return data

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if not resp.is_success:
            raise LedgerResponseError(f"HTTP {resp.status_code}: {resp.reason_phrase}")

    async def _with_retries(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """Run *call* up to ``max_attempts`` times with exponential backoff."""
        last_exc: Exception | None = None
        timed_out = False

        for attempt in range(1, self._max_attempts + 1):
            try:
                return await call()
            except httpx.TimeoutException as exc:
                last_exc, timed_out = exc, True
            except (httpx.HTTPError, LedgerResponseError) as exc:
                last_exc, timed_out = exc, False

            log.warning(
                "ledger_attempt_failed",
                operation=operation,
                attempt=attempt,
                max_attempts=self._max_attempts,
                error=str(last_exc) or type(last_exc).__name__,
            )
            if attempt < self._max_attempts:
                await asyncio.sleep(self._backoff_base * 2 ** (attempt - 1))

        if timed_out:
            raise LedgerTimeoutError(
                f"Ledger {operation} timed out after {self._max_attempts} attempts",
                attempts=self._max_attempts,
                cause=last_exc,
            )
        raise LedgerNetworkError(
            f"Ledger {operation} failed after {self._max_attempts} attempts: {last_exc}",
            attempts=self._max_attempts,
            cause=last_exc,
        )
