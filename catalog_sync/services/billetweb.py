from __future__ import annotations

import hashlib
import json
import time
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying, RetryCallState, retry_if_exception_type,
    stop_after_attempt, wait_exponential,
)

from catalog_sync.config import Settings, settings
from catalog_sync.exceptions import AuthError, TransientNetworkError, UpstreamRejectedError
from catalog_sync.schemas import ExternalRecord

log = structlog.get_logger(__name__)

# Payload fields that matter for change detection. Anything else Billetweb
# sends (ticket urls, counters we do not display) never triggers a write.
HASHED_FIELDS = ("name", "category", "start", "end", "places_total", "places_remaining")


def compute_content_hash(raw: dict) -> str:
    normalized = {}
    for field in HASHED_FIELDS:
        value = raw.get(field)
        normalized[field] = value.strip() if isinstance(value, str) else value
    return hashlib.sha256(
        json.dumps(normalized, sort_keys=True, default=str).encode()
    ).hexdigest()


class BilletwebClient:
    """
    Paginated reader for the Billetweb events endpoint.

    Each page is retried on transient failures (timeouts, transport errors,
    5xx, 429) with exponential backoff. 401/403 raise AuthError and any other
    4xx raises UpstreamRejectedError, both without retrying.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        page_size: int = 50,
        timeout: float = 10.0,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        backoff_factor: float = 2.0,
        backoff_max: float = 8.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.page_size = page_size
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_factor = backoff_factor
        self.backoff_max = backoff_max
        self._transport = transport

    @classmethod
    def from_settings(
        cls, cfg: Settings = settings, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "BilletwebClient":
        return cls(
            cfg.BILLETWEB_API_URL,
            cfg.BILLETWEB_API_KEY,
            page_size=cfg.BILLETWEB_PAGE_SIZE,
            timeout=cfg.BILLETWEB_HTTP_TIMEOUT,
            max_attempts=cfg.BILLETWEB_MAX_ATTEMPTS,
            backoff_base=cfg.BILLETWEB_BACKOFF_BASE_SECONDS,
            backoff_factor=cfg.BILLETWEB_BACKOFF_FACTOR,
            backoff_max=cfg.BILLETWEB_BACKOFF_MAX_SECONDS,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def fetch_all(self) -> AsyncIterator[ExternalRecord]:
        """Yields every upstream record, page by page, starting at page 1."""
        async with httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Accept": "application/json",
            },
            timeout=self.timeout,
            transport=self._transport,
        ) as client:
            page: Optional[int] = 1
            while page is not None:
                events, next_page = await self._fetch_page(client, page)
                fetched_at = datetime.now(timezone.utc)
                for raw in events:
                    record = self._to_record(raw, fetched_at, page)
                    if record is not None:
                        yield record
                page = next_page

    # ── Page retrieval ────────────────────────────────────────────────────────

    async def _fetch_page(self, client: httpx.AsyncClient, page: int) -> tuple[list, Optional[int]]:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientNetworkError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.backoff_base,
                exp_base=self.backoff_factor,
                max=self.backoff_max,
            ),
            before_sleep=self._log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._request_page(client, page)
        raise TransientNetworkError(f"Page {page} could not be fetched", context={"page": page})

    async def _request_page(self, client: httpx.AsyncClient, page: int) -> tuple[list, Optional[int]]:
        t0 = time.monotonic()
        try:
            resp = await client.get(
                "/events", params={"page": page, "per_page": self.page_size}
            )
        except httpx.TransportError as exc:
            # TimeoutException is a TransportError too
            raise TransientNetworkError(
                f"Billetweb unreachable: {exc.__class__.__name__}", context={"page": page}
            ) from exc

        status = resp.status_code
        if status in (401, 403):
            raise AuthError(f"Billetweb rejected credentials ({status})", context={"page": page})
        if status == 429 or status >= 500:
            raise TransientNetworkError(f"Billetweb returned {status}", context={"page": page})
        if status >= 400:
            raise UpstreamRejectedError(f"Billetweb returned {status}", context={"page": page})

        try:
            body = resp.json()
        except ValueError as exc:
            raise UpstreamRejectedError("Billetweb returned a non-JSON body", context={"page": page}) from exc

        events, next_page = self._parse_page(body, page)
        log.info(
            "billetweb.page.fetched",
            page=page,
            records=len(events),
            ms=int((time.monotonic() - t0) * 1000),
        )
        return events, next_page

    def _parse_page(self, body: Any, page: int) -> tuple[list, Optional[int]]:
        if isinstance(body, list):
            events = body
            next_page = page + 1 if len(events) >= self.page_size else None
        elif isinstance(body, dict) and isinstance(body.get("data"), list):
            events = body["data"]
            next_page = body.get("next_page")
        else:
            raise UpstreamRejectedError("Unexpected Billetweb page shape", context={"page": page})

        if not events:
            return [], None
        if next_page is not None:
            if not isinstance(next_page, int) or next_page <= page:
                raise UpstreamRejectedError(
                    "Billetweb pagination did not advance",
                    context={"page": page, "next_page": next_page},
                )
        return events, next_page

    def _to_record(self, raw: Any, fetched_at: datetime, page: int) -> Optional[ExternalRecord]:
        if not isinstance(raw, dict) or raw.get("id") in (None, ""):
            log.warning("billetweb.record.unmappable", page=page)
            return None
        return ExternalRecord(
            external_id=str(raw["id"]),
            payload=raw,
            content_hash=compute_content_hash(raw),
            fetched_at=fetched_at,
        )

    @staticmethod
    def _log_retry(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        log.warning(
            "billetweb.page.retry",
            attempt=state.attempt_number,
            wait_s=round(state.next_action.sleep, 3) if state.next_action else None,
            error=str(exc),
        )
