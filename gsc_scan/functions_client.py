from __future__ import annotations

from typing import Any, Dict, Optional, Sequence, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from .config import settings
from .schemas import (
    MAX_INSPECT_BATCH_SIZE,
    IndexationOverview,
    IndexationUrlPage,
    InspectBatchRequest,
    InspectBatchResult,
    SitemapRefreshResult,
    SubmitResult,
    SubmitUrlsRequest,
    UrlListQuery,
)

INSPECT_BATCH_PATH = "/functions/v1/inspect-batch"
SITEMAP_PATH = "/api/gsc/sitemap"
OVERVIEW_PATH = "/api/gsc/indexation/overview"
URLS_PATH = "/api/gsc/indexation/urls"
SUBMIT_PATH = "/api/gsc/indexation/submit"

ModelT = TypeVar("ModelT", bound=BaseModel)


class UpstreamError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _normalize_base_url(raw: str) -> str:
    return raw.rstrip("/")


def _functions_url(path: str) -> str:
    base = settings.functions_base_url.strip()
    if not base:
        raise UpstreamError("FUNCTIONS_BASE_URL is not configured")
    return f"{_normalize_base_url(base)}{path}"


def _app_url(path: str) -> str:
    base = settings.app_base_url.strip()
    if not base:
        raise UpstreamError("APP_BASE_URL is not configured")
    return f"{_normalize_base_url(base)}{path}"


def _auth_headers() -> Dict[str, str]:
    key = settings.functions_api_key.strip()
    if not key:
        return {}
    return {"Authorization": f"Bearer {key}", "apikey": key}


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return f"HTTP {response.status_code}"


def _send(
    method: str,
    url: str,
    *,
    json: Any = None,
    params: Optional[Dict[str, Any]] = None,
) -> Any:
    timeout = httpx.Timeout(settings.http_timeout_s)
    try:
        with httpx.Client(timeout=timeout) as client:
            response = client.request(
                method, url, json=json, params=params, headers=_auth_headers()
            )
    except httpx.HTTPError as exc:
        raise UpstreamError(f"{method} {url} failed: {exc}") from exc

    if response.status_code < 200 or response.status_code >= 300:
        raise UpstreamError(_error_message(response), status_code=response.status_code)

    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError as exc:
        raise UpstreamError(f"{method} {url} returned non-JSON body") from exc


def _parse(model: Type[ModelT], body: Any, label: str) -> ModelT:
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        raise UpstreamError(f"{label} returned an invalid payload: {exc}") from exc


def clamp_batch_size(batch_size: int) -> int:
    return min(max(1, int(batch_size)), MAX_INSPECT_BATCH_SIZE)


def inspect_batch(site_id: str, batch_size: int) -> InspectBatchResult:
    payload = InspectBatchRequest(site_id=site_id, batch_size=clamp_batch_size(batch_size))
    body = _send(
        "POST",
        _functions_url(INSPECT_BATCH_PATH),
        json=payload.model_dump(by_alias=True),
    )
    return _parse(InspectBatchResult, body, "inspect-batch")


def refresh_sitemap(site_id: str) -> SitemapRefreshResult:
    body = _send("POST", _app_url(SITEMAP_PATH), json={"siteId": site_id})
    return _parse(SitemapRefreshResult, body, "sitemap refresh")


def fetch_overview(site_id: str) -> IndexationOverview:
    body = _send("GET", _app_url(OVERVIEW_PATH), params={"siteId": site_id})
    return _parse(IndexationOverview, body, "indexation overview")


def fetch_urls(site_id: str, query: UrlListQuery) -> IndexationUrlPage:
    body = _send("GET", _app_url(URLS_PATH), params=query.to_params(site_id))
    return _parse(IndexationUrlPage, body, "indexation url list")


def submit_urls(site_id: str, urls: Sequence[str]) -> SubmitResult:
    # Raises ValidationError before any request is made.
    request = SubmitUrlsRequest(urls=list(urls))
    body = _send(
        "POST",
        _app_url(SUBMIT_PATH),
        json={"siteId": site_id, "urls": request.urls},
    )
    return _parse(SubmitResult, body, "indexation submit")
