"""HTTP client for the job execution service."""

import logging
from typing import List, Optional, Sequence, Tuple
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from config import settings
from errors import DataValidationError, TransportError
from models.admin import JobSettings, PruneResult, ServiceSettings
from models.job import Job, Run
from services.cancellation import CancelScope

logger = logging.getLogger(__name__)


def _is_retryable_error(exc: Exception) -> bool:
    """Check if a failed request is worth retrying by the user.

    Network errors, rate limiting (429) and server errors (5xx) are;
    other client errors (4xx) are bad requests and will fail again.
    """
    if isinstance(exc, (httpx.TimeoutException, httpx.ConnectError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


def _transport_error(exc: httpx.HTTPError, url: str) -> TransportError:
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        return TransportError(
            f"Response failed: {response.status_code} {response.reason_phrase} for {url}",
            status_code=response.status_code,
            response=response.text[:500],
            retryable=_is_retryable_error(exc),
        )
    return TransportError(f"Request failed for {url}: {exc}", retryable=_is_retryable_error(exc))


class JobServiceClient:
    """Client for the job execution service API.

    Uses a shared httpx.AsyncClient for connection pooling. Every call
    accepts an optional CancelScope; calls made under a scope raise
    RequestCancelled rather than return once the scope is cancelled.

    No call retries on its own. TransportError.retryable tells the caller
    whether offering a retry makes sense.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url or settings.service_url
        self.timeout = httpx.Timeout(timeout or settings.request_timeout_seconds)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._request_count = 0

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create shared HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={"accept": "application/json"},
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _send(self, method: str, url: str, params=None, json=None) -> httpx.Response:
        client = await self._get_client()
        self._request_count += 1
        try:
            response = await client.request(method, url, params=params, json=json)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise _transport_error(e, url) from e
        logger.debug(f"API: {method} {url} {params or ''} -> {response.status_code}")
        return response

    async def _request(self, method: str, url: str, params=None, json=None, scope: Optional[CancelScope] = None) -> httpx.Response:
        if scope is not None:
            return await scope.run(self._send(method, url, params=params, json=json))
        return await self._send(method, url, params=params, json=json)

    async def _get_json(self, url: str, params=None, scope: Optional[CancelScope] = None):
        response = await self._request("GET", url, params=params, scope=scope)
        try:
            return response.json()
        except ValueError as e:
            raise DataValidationError(f"Response from {url} is not JSON: {e}", field="body")

    # ========== Jobs & Runs ==========

    async def get_jobs(self, scope: Optional[CancelScope] = None) -> List[Job]:
        """Fetch every job, each with its latest run."""
        data = await self._get_json("/jobs", scope=scope)
        return _parse_list(Job, data, "/jobs")

    async def get_job(self, user: str, job_id: str, scope: Optional[CancelScope] = None) -> Job:
        url = f"/job/{quote(user, safe='')}/{quote(job_id, safe='')}"
        data = await self._get_json(url, scope=scope)
        try:
            return Job.model_validate(data)
        except ValidationError as e:
            raise DataValidationError(f"Malformed job from {url}: {e}", field="job")

    async def get_runs(
        self,
        runs_url: str,
        num: Optional[int] = None,
        before: Optional[int] = None,
        after: Optional[int] = None,
        ids: Optional[Sequence[str]] = None,
        scope: Optional[CancelScope] = None,
    ) -> List[Run]:
        """Fetch a page of a job's runs, or specific runs by id."""
        params: List[Tuple[str, str]] = []
        if ids:
            params.extend(("id", run_id) for run_id in ids)
        else:
            for name, value in (("num", num), ("before", before), ("after", after)):
                if value is not None:
                    params.append((name, str(value)))
        data = await self._get_json(runs_url, params=params or None, scope=scope)
        return _parse_list(Run, data, runs_url)

    async def get_run(self, run_url: str, seek: Optional[int] = None, scope: Optional[CancelScope] = None) -> Run:
        """Fetch a single run with its command and environment.

        Short logs come back inline in `log`; long ones only via `log_url`.
        """
        params = {"seek": seek} if seek is not None else None
        data = await self._get_json(run_url, params=params, scope=scope)
        try:
            return Run.model_validate(data)
        except ValidationError as e:
            raise DataValidationError(f"Malformed run from {run_url}: {e}", field="run")

    async def get_log(
        self,
        log_url: str,
        seek: Optional[int] = None,
        limit: Optional[int] = None,
        scope: Optional[CancelScope] = None,
    ) -> bytes:
        """Fetch a byte range of a run's log.

        A positive `limit` reads that many bytes from `seek`; a negative
        one reads the last |limit| bytes of the log.
        """
        params = {}
        if seek is not None:
            params["seek"] = seek
        if limit is not None:
            params["limit"] = limit
        response = await self._request("GET", log_url, params=params or None, scope=scope)
        return response.content

    async def open_stream(self, url: str, params=None, scope: Optional[CancelScope] = None) -> httpx.Response:
        """Open a long-lived streaming response (event channel).

        Returns once the response headers are in. The caller owns the
        response and must aclose() it.
        """
        client = await self._get_client()

        async def _open() -> httpx.Response:
            request = client.build_request("GET", url, params=params, timeout=httpx.Timeout(None))
            try:
                response = await client.send(request, stream=True)
            except httpx.HTTPError as e:
                raise _transport_error(e, url) from e
            if response.is_error:
                await response.aread()
                await response.aclose()
                try:
                    response.raise_for_status()
                except httpx.HTTPStatusError as e:
                    raise _transport_error(e, url) from e
            return response

        if scope is not None:
            return await scope.run(_open())
        return await _open()

    # ========== Settings & Pruning ==========

    async def get_job_settings(self, settings_url: str) -> JobSettings:
        return JobSettings.model_validate(await self._get_json(settings_url))

    async def put_job_settings(self, settings_url: str, job_settings: JobSettings) -> None:
        await self._request("PUT", settings_url, json=job_settings.model_dump(mode="json"))

    async def get_settings(self) -> ServiceSettings:
        return ServiceSettings.model_validate(await self._get_json("/settings"))

    async def put_settings(self, service_settings: ServiceSettings) -> None:
        await self._request("PUT", "/settings", json=service_settings.model_dump(mode="json"))

    async def prune(self, prune_url: str, dry_run: bool = False) -> PruneResult:
        """Prune a job's old runs (or just report what would be pruned)."""
        if dry_run:
            data = await self._get_json(prune_url)
        else:
            data = (await self._request("POST", prune_url)).json()
        result = PruneResult.model_validate(data)
        logger.info(
            f"{'Dry run prune' if dry_run else 'Pruned'} {prune_url}: "
            f"{result.stats.pruned.runs} runs, {result.stats.kept.runs} kept"
        )
        return result

    async def get_success_history(
        self, success_url: str, before: Optional[int] = None, after: Optional[int] = None
    ) -> List[Tuple[int, Optional[bool]]]:
        """(date, success) pairs for a job's runs; success is None while running."""
        params = {k: v for k, v in (("before", before), ("after", after)) if v is not None}
        data = await self._get_json(success_url, params=params or None)
        return [(int(date), success) for date, success in data]


def _parse_list(model, data, url: str) -> list:
    if not isinstance(data, list):
        raise DataValidationError(f"Expected a list from {url}", field="body", value=type(data).__name__)
    try:
        return [model.model_validate(item) for item in data]
    except ValidationError as e:
        raise DataValidationError(f"Malformed {model.__name__} from {url}: {e}", field=model.__name__)
