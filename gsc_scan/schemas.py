from typing import Any, Dict, List, Literal, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

IndexationVerdict = Literal[
    "indexed",
    "not_indexed",
    "crawled_not_indexed",
    "discovered_not_indexed",
    "noindex",
    "blocked_robots",
    "error",
    "unknown",
]
UrlFilterRule = Literal["contains", "not_contains", "starts_with", "ends_with"]
UrlSource = Literal["sitemap", "product", "blog", "manual"]
ScanTrigger = Literal["api", "cli", "schedule"]

MAX_INSPECT_BATCH_SIZE = 50
MAX_SUBMIT_URLS = 500


class InspectBatchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    site_id: str = Field(alias="siteId", min_length=1)
    batch_size: int = Field(default=20, alias="batchSize", ge=1, le=MAX_INSPECT_BATCH_SIZE)


class InspectBatchResult(BaseModel):
    inspected: int = Field(default=0, ge=0)
    remaining: Optional[int] = Field(default=None, ge=0)
    has_more: bool = False
    site_url: Optional[str] = None


class SitemapRefreshResult(BaseModel):
    total: int = 0
    from_sitemap: int = 0
    from_products: int = 0
    from_blog: int = 0
    new: int = 0
    removed: int = 0


class IndexationHistoryPoint(BaseModel):
    date: str
    total: int = 0
    indexed: int = 0
    not_indexed: int = 0


class IndexationOverview(BaseModel):
    total: int = 0
    indexed: int = 0
    not_indexed: int = 0
    crawled_not_indexed: int = 0
    discovered_not_indexed: int = 0
    noindex: int = 0
    blocked_robots: int = 0
    errors: int = 0
    unknown: int = 0
    history: List[IndexationHistoryPoint] = Field(default_factory=list)


class IndexationUrl(BaseModel):
    id: str
    url: str
    source: UrlSource = "sitemap"
    source_id: Optional[str] = None
    verdict: IndexationVerdict = "unknown"
    coverage_state: Optional[str] = None
    last_crawl_time: Optional[str] = None
    inspected_at: Optional[str] = None
    lastmod: Optional[str] = None
    is_active: bool = True


class IndexationUrlPage(BaseModel):
    urls: List[IndexationUrl] = Field(default_factory=list)
    total: int = 0


class UrlListQuery(BaseModel):
    page: int = Field(default=1, ge=1)
    per_page: int = Field(default=50, ge=1, le=200)
    verdict: Optional[IndexationVerdict] = None
    search: Optional[str] = None
    filter_rule: Optional[UrlFilterRule] = None
    filter_value: Optional[str] = None
    source: Optional[UrlSource] = None

    def cache_key_parts(self) -> tuple:
        return (
            self.page,
            self.per_page,
            self.verdict,
            self.search,
            self.filter_rule,
            self.filter_value,
            self.source,
        )

    def to_params(self, site_id: str) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "siteId": site_id,
            "page": str(self.page),
            "perPage": str(self.per_page),
        }
        if self.verdict:
            params["verdict"] = self.verdict
        if self.search:
            params["search"] = self.search
        if self.filter_rule:
            params["filterRule"] = self.filter_rule
        if self.filter_value:
            params["filterValue"] = self.filter_value
        if self.source:
            params["source"] = self.source
        return params


class SubmitUrlsRequest(BaseModel):
    urls: List[str] = Field(min_length=1, max_length=MAX_SUBMIT_URLS)

    @field_validator("urls")
    @classmethod
    def validate_urls(cls, urls: List[str]) -> List[str]:
        cleaned: List[str] = []
        for url in urls:
            value = url.strip()
            parsed = urlparse(value)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise ValueError(f"not an absolute http(s) URL: {url!r}")
            cleaned.append(value)
        return cleaned


class SubmitResult(BaseModel):
    submitted: int = 0
    queued: int = 0
    failed: int = 0
    quota_remaining: Optional[int] = None
    errors: Optional[List[Dict[str, str]]] = None


class ScanRunRequest(BaseModel):
    trigger: ScanTrigger = "api"
