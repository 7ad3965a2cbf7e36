"""
Card Sync — Marketplace Scraper Client

Talks to the scraper service that renders the marketplace pages. The service
answers either immediately ({"success": true, "data": ...}) or with a job
handle ({"jobId": "..."}) that has to be polled at /api/jobs/{jobId}. Both
shapes come back from this client as the same parsed rows.

Failure mapping:
    404 / 422             -> ConfigurationError (the ref is wrong; permanent)
    429 / 5xx / transport -> retried with exponential backoff, then
                             TransientFetchError
    other 4xx, job failed -> TransientFetchError
    job never finishes    -> ScrapeTimeoutError
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from src.config import ProductType, settings
from src.pipeline.errors import (
    ConfigurationError,
    ScrapeTimeoutError,
    TransientFetchError,
)
from src.pipeline.normalize import RawListing, RawSale

logger = structlog.get_logger(__name__)

_PERMANENT_STATUSES = {404, 422}


class JobStatus(BaseModel):
    """Body of GET /api/jobs/{jobId}."""

    status: str = "pending"
    result: Any = None
    error: str | None = None


class MarketScraperClient:
    """
    Async client for the scraper service.

    Usage:
        async with MarketScraperClient() as client:
            kind = await client.classify("93021")
            sales = await client.fetch_recent_transactions("93021")
            listings = await client.fetch_current_listings("93021", kind)
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        max_retries: int | None = None,
        base_backoff: float | None = None,
        poll_interval: float | None = None,
        max_wait: float | None = None,
        fetch_timeout: float | None = None,
    ):
        self._api_key = api_key if api_key is not None else settings.SCRAPER_API_KEY
        self._base_url = base_url or settings.SCRAPER_BASE_URL
        self._max_retries = max_retries if max_retries is not None else settings.SCRAPER_MAX_RETRIES
        self._base_backoff = (
            base_backoff if base_backoff is not None else settings.SCRAPER_BASE_BACKOFF_SECONDS
        )
        self._poll_interval = (
            poll_interval if poll_interval is not None else settings.SCRAPER_JOB_POLL_INTERVAL_SECONDS
        )
        self._max_wait = max_wait if max_wait is not None else settings.SCRAPER_JOB_MAX_WAIT_SECONDS
        self._fetch_timeout = (
            fetch_timeout if fetch_timeout is not None else settings.SCRAPER_FETCH_TIMEOUT_SECONDS
        )
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> MarketScraperClient:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=settings.SCRAPER_HTTP_TIMEOUT_SECONDS,
        )
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._client:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make a request with retry logic and exponential backoff."""
        assert self._client is not None, "Client not initialized. Use 'async with'."

        last_error: Exception | None = None

        for attempt in range(self._max_retries + 1):
            try:
                response = await self._client.request(method, path, json=json)

                if response.status_code == 429:
                    wait_time = self._base_backoff * (2 ** attempt)
                    logger.warning(
                        "scraper_rate_limited",
                        attempt=attempt + 1,
                        wait_seconds=wait_time,
                    )
                    last_error = httpx.HTTPStatusError(
                        "rate limited", request=response.request, response=response
                    )
                    await asyncio.sleep(wait_time)
                    continue

                response.raise_for_status()
                return response.json()

            except httpx.HTTPStatusError as e:
                last_error = e
                status = e.response.status_code
                logger.error(
                    "scraper_http_error",
                    status_code=status,
                    attempt=attempt + 1,
                    path=path,
                )
                if status >= 500:
                    wait_time = self._base_backoff * (2 ** attempt)
                    await asyncio.sleep(wait_time)
                    continue
                if status in _PERMANENT_STATUSES:
                    raise ConfigurationError(
                        f"Scraper rejected the reference ({status})",
                        details={"path": path, "status_code": status, "body": e.response.text[:200]},
                        cause=e,
                    ) from e
                raise TransientFetchError(
                    f"Scraper returned {status}",
                    details={"path": path, "status_code": status},
                    cause=e,
                ) from e

            except httpx.RequestError as e:
                last_error = e
                logger.error(
                    "scraper_request_error",
                    error=str(e),
                    attempt=attempt + 1,
                    path=path,
                )
                wait_time = self._base_backoff * (2 ** attempt)
                await asyncio.sleep(wait_time)
                continue

        raise TransientFetchError(
            f"Scraper request failed after {self._max_retries + 1} attempts",
            details={"path": path},
            cause=last_error,
        ) from last_error

    async def _wait_for_job(self, job_id: str) -> Any:
        """Poll a job handle until it finishes; returns the job's result."""
        loop = asyncio.get_running_loop()
        started = loop.time()
        polls = 0

        while True:
            polls += 1
            body = await self._request("GET", f"/api/jobs/{job_id}")
            job = JobStatus.model_validate(body)

            if job.status == "done":
                logger.debug("scraper_job_done", job_id=job_id, polls=polls)
                return job.result
            if job.status == "failed":
                raise TransientFetchError(
                    f"Scrape job {job_id} failed: {job.error or 'unknown error'}",
                    details={"job_id": job_id},
                )

            if loop.time() - started >= self._max_wait:
                raise ScrapeTimeoutError(
                    f"Scrape job {job_id} did not finish within {self._max_wait}s",
                    details={"job_id": job_id, "polls": polls},
                )
            await asyncio.sleep(self._poll_interval)

    async def _resolve(self, path: str, payload: dict[str, Any]) -> Any:
        """Normalize an immediate or job-handle response to its data."""
        body = await self._request("POST", path, json=payload)

        job_id = body.get("jobId")
        if job_id:
            logger.info("scraper_job_queued", path=path, job_id=job_id)
            return await self._wait_for_job(str(job_id))

        if not body.get("success", False):
            raise TransientFetchError(
                f"Scraper reported failure: {body.get('error') or 'no data'}",
                details={"path": path},
            )
        return body.get("data")

    async def _fetch(self, path: str, payload: dict[str, Any]) -> Any:
        """_resolve bounded by the overall per-fetch timeout."""
        try:
            return await asyncio.wait_for(self._resolve(path, payload), self._fetch_timeout)
        except asyncio.TimeoutError as e:
            raise ScrapeTimeoutError(
                f"Scraper fetch exceeded {self._fetch_timeout}s",
                details={"path": path, "ref": payload.get("ref")},
                cause=e,
            ) from e

    @staticmethod
    def _rows(data: Any) -> list[Any]:
        if data is None:
            return []
        if isinstance(data, dict):
            data = data.get("items", [])
        return list(data)

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def classify(self, ref: str) -> ProductType:
        """Ask the scraper whether the product is a single card or a box."""
        data = await self._fetch("/api/classify", {"ref": ref}) or {}

        raw_type = data.get("productType")
        if raw_type is None and "isBox" in data:
            raw_type = ProductType.BOX.value if data["isBox"] else ProductType.SINGLE.value

        try:
            product_type = ProductType(raw_type)
        except ValueError as e:
            raise TransientFetchError(
                f"Unrecognized product type: {raw_type!r}",
                details={"ref": ref},
                cause=e,
            ) from e

        logger.info("scraper_classified", ref=ref, product_type=product_type.value)
        return product_type

    async def fetch_recent_transactions(self, ref: str) -> list[RawSale]:
        """
        Fetch the most recent page of the product's sales history.

        Args:
            ref: Marketplace product id.

        Returns:
            Parsed rows; rows that fail validation are logged and skipped.
        """
        logger.info("scraper_fetch_transactions", ref=ref)
        data = await self._fetch(
            "/api/transactions",
            {"ref": ref, "limit": settings.SALES_HISTORY_PAGE_SIZE},
        )

        results = []
        for row in self._rows(data):
            try:
                results.append(RawSale.model_validate(row))
            except ValidationError as e:
                logger.warning("scraper_parse_error", error=str(e), row=str(row)[:100])

        logger.info("scraper_fetch_transactions_complete", ref=ref, results_count=len(results))
        return results

    async def fetch_current_listings(
        self,
        ref: str,
        product_type: ProductType | str | None = None,
    ) -> list[RawListing]:
        """Fetch active listings (single cards) or size buckets (boxes)."""
        kind = ProductType(product_type).value if product_type else ProductType.SINGLE.value
        logger.info("scraper_fetch_listings", ref=ref, product_type=kind)
        data = await self._fetch(
            "/api/listings",
            {"ref": ref, "productType": kind, "pages": settings.LISTINGS_PAGE_LIMIT},
        )

        results = []
        for row in self._rows(data):
            try:
                results.append(RawListing.model_validate(row))
            except ValidationError as e:
                logger.warning("scraper_parse_error", error=str(e), row=str(row)[:100])

        logger.info("scraper_fetch_listings_complete", ref=ref, results_count=len(results))
        return results
