# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "requests",
#   "pandas",
#   "rich",
#   "reportlab",
# ]
# ///
"""PageSpeed Insights Dashboard.

Runs Google PageSpeed Insights audits for a URL (desktop, mobile or both),
normalizes the Lighthouse payload into immutable metrics snapshots, keeps a
bounded local history, and exports JSON/CSV/PDF reports.
"""

from __future__ import annotations

import argparse
import copy
import csv
import json
import math
import os
import sys
import time
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Protocol
from urllib.parse import urlparse

import pandas as pd
import requests
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table as PdfTable, TableStyle
from rich.console import Console, Group
from rich.markup import escape
from rich.table import Table
from rich.text import Text

__version__ = "0.4.0"

out_console = Console()
err_console = Console(stderr=True)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PAGESPEED_API_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"

VALID_DEVICES = ("desktop", "mobile")
VALID_DEVICE_CHOICES = ("desktop", "mobile", "both")
AUDIT_CATEGORIES = ("performance", "accessibility", "best-practices", "seo")

DEFAULT_DEVICE = "desktop"
DEFAULT_HISTORY_SIZE = 10
DEFAULT_OUTPUT_DIR = "./reports"
DEFAULT_STATE_FILE = Path.home() / ".config" / "pagespeed" / "dashboard-state.json"

HISTORY_KEY = "pagespeed-history"
IMPLEMENTED_KEY = "implemented-opportunities"

MAX_OPPORTUNITIES = 10
MAX_DIAGNOSTICS = 8
MAX_FINDINGS = 10
MIN_OPPORTUNITY_SAVINGS_MS = 100
PDF_MAX_OPPORTUNITIES = 5
MAX_WATERFALL_REQUESTS = 40

CONFIG_FILENAMES = ["pagespeed.toml"]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "pagespeed",
]

# Lab metrics: (audit_id, CoreMetrics attribute)
CORE_METRIC_AUDITS = [
    ("first-contentful-paint", "first_contentful_paint"),
    ("largest-contentful-paint", "largest_contentful_paint"),
    ("max-potential-fid", "first_input_delay"),
    ("interaction-to-next-paint", "interaction_to_next_paint"),
    ("cumulative-layout-shift", "cumulative_layout_shift"),
    ("speed-index", "speed_index"),
    ("total-blocking-time", "total_blocking_time"),
]

# CrUX field metrics passed through from loadingExperience
FIELD_METRIC_KEYS = (
    "FIRST_CONTENTFUL_PAINT_MS",
    "LARGEST_CONTENTFUL_PAINT_MS",
    "CUMULATIVE_LAYOUT_SHIFT_SCORE",
    "INTERACTION_TO_NEXT_PAINT",
    "INTERACTION_TO_NEXT_PAINT_MS",
    "FIRST_INPUT_DELAY_MS",
    "EXPERIMENTAL_TIME_TO_FIRST_BYTE",
)

# Good / poor boundaries per lab metric
METRIC_THRESHOLDS = {
    "first_contentful_paint": {"good": 1800, "poor": 3000, "unit": "ms", "label": "FCP"},
    "largest_contentful_paint": {"good": 2500, "poor": 4000, "unit": "ms", "label": "LCP"},
    "interaction_to_next_paint": {"good": 200, "poor": 500, "unit": "ms", "label": "INP", "strict_good": True},
    "speed_index": {"good": 3400, "poor": 5800, "unit": "ms", "label": "Speed Index"},
    "cumulative_layout_shift": {"good": 0.1, "poor": 0.25, "unit": "", "label": "CLS"},
    "total_blocking_time": {"good": 200, "poor": 600, "unit": "ms", "label": "TBT"},
}

# The four Core Web Vitals shown on reports, in display order
CORE_WEB_VITALS = [
    "largest_contentful_paint",
    "interaction_to_next_paint",
    "cumulative_layout_shift",
    "first_contentful_paint",
]

# (CategoryScores attribute, display name, dashboard group)
SCORE_LABELS = [
    ("performance", "Performance", "Core Vitals"),
    ("accessibility", "Accessibility", "User Experience"),
    ("best_practices", "Best Practices", "Standards"),
    ("seo", "SEO", "Search"),
]

RATING_COLORS = {
    "good": "rgb(34, 197, 94)",
    "needs-improvement": "rgb(245, 158, 11)",
    "poor": "rgb(239, 68, 68)",
}
RATING_HEX = {
    "good": "#22c55e",
    "needs-improvement": "#f59e0b",
    "poor": "#ef4444",
}
RATING_STYLES = {
    "good": "green",
    "needs-improvement": "yellow",
    "poor": "red",
}

RESOURCE_COLORS = {
    "Images": "#8b5cf6",
    "Scripts": "#06b6d4",
    "Styles": "#10b981",
    "Other": "#f59e0b",
}

# Fixed column order of the history CSV export
HISTORY_CSV_COLUMNS = [
    "Date",
    "Device",
    "Performance",
    "Accessibility",
    "Best Practices",
    "SEO",
    "FCP (ms)",
    "LCP (ms)",
    "INP (ms)",
    "CLS",
    "Speed Index (ms)",
    "TBT (ms)",
]

ERROR_MESSAGES = {
    "service": "PageSpeed Insights API is currently unavailable. Please try again later.",
    "invalid_url": "Please enter a valid URL (e.g., https://example.com)",
    "network": "Network error. Please check your connection and try again.",
    "generic": "Analysis failed. Please check the URL and try again.",
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PageSpeedError(Exception):
    """Base class for every failure raised while producing a snapshot."""


class InvalidUrlError(PageSpeedError):
    """Raised before any network call when the target URL is malformed."""


class TransportError(PageSpeedError):
    """Raised when the audit service cannot be reached."""


class ServiceError(PageSpeedError):
    """Raised on a non-2xx status or an error envelope in a 200 response."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedPayloadError(PageSpeedError):
    """Raised when the audit payload lacks its categories/audits sections."""


class AnalysisInProgressError(PageSpeedError):
    """Raised when an analysis is requested while another is still running."""


def describe_error(exc: Exception) -> str:
    """Map an analysis failure to the single message shown to the user."""
    if isinstance(exc, ServiceError):
        return ERROR_MESSAGES["service"]
    if isinstance(exc, InvalidUrlError):
        return ERROR_MESSAGES["invalid_url"]
    if isinstance(exc, TransportError):
        return ERROR_MESSAGES["network"]
    return ERROR_MESSAGES["generic"]


# ---------------------------------------------------------------------------
# Data Model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CategoryScores:
    performance: int = 0
    accessibility: int = 0
    best_practices: int = 0
    seo: int = 0

    def to_dict(self) -> dict:
        return {
            "performance": self.performance,
            "accessibility": self.accessibility,
            "bestPractices": self.best_practices,
            "seo": self.seo,
        }

    @classmethod
    def from_dict(cls, data: dict) -> CategoryScores:
        return cls(
            performance=data.get("performance", 0),
            accessibility=data.get("accessibility", 0),
            best_practices=data.get("bestPractices", 0),
            seo=data.get("seo", 0),
        )


@dataclass(frozen=True)
class CoreMetrics:
    """Lab timings in milliseconds; CLS is a unitless ratio."""

    first_contentful_paint: float = 0
    largest_contentful_paint: float = 0
    first_input_delay: float = 0
    interaction_to_next_paint: float = 0
    cumulative_layout_shift: float = 0
    speed_index: float = 0
    total_blocking_time: float = 0

    def to_dict(self) -> dict:
        return {
            "firstContentfulPaint": self.first_contentful_paint,
            "largestContentfulPaint": self.largest_contentful_paint,
            "firstInputDelay": self.first_input_delay,
            "interactionToNextPaint": self.interaction_to_next_paint,
            "cumulativeLayoutShift": self.cumulative_layout_shift,
            "speedIndex": self.speed_index,
            "totalBlockingTime": self.total_blocking_time,
        }

    @classmethod
    def from_dict(cls, data: dict) -> CoreMetrics:
        return cls(
            first_contentful_paint=data.get("firstContentfulPaint", 0),
            largest_contentful_paint=data.get("largestContentfulPaint", 0),
            first_input_delay=data.get("firstInputDelay", 0),
            interaction_to_next_paint=data.get("interactionToNextPaint", 0),
            cumulative_layout_shift=data.get("cumulativeLayoutShift", 0),
            speed_index=data.get("speedIndex", 0),
            total_blocking_time=data.get("totalBlockingTime", 0),
        )


@dataclass(frozen=True)
class Opportunity:
    id: str
    title: str
    description: str
    savings: float
    display_value: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "savings": self.savings,
            "displayValue": self.display_value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Opportunity:
        return cls(
            id=data.get("id", ""),
            title=data.get("title", ""),
            description=data.get("description", ""),
            savings=data.get("savings", 0),
            display_value=data.get("displayValue", ""),
        )


@dataclass(frozen=True)
class Diagnostic:
    """An informative audit finding. Also used for category findings."""

    id: str
    title: str
    description: str
    display_value: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "displayValue": self.display_value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Diagnostic:
        return cls(
            id=data.get("id", ""),
            title=data.get("title", ""),
            description=data.get("description", ""),
            display_value=data.get("displayValue", ""),
        )


@dataclass(frozen=True)
class ResourceSummary:
    total_size: float = 0
    image_size: float = 0
    script_size: float = 0
    stylesheet_size: float = 0
    resource_count: int = 0

    @property
    def other_size(self) -> float:
        """Bytes not attributed to images, scripts or stylesheets (never negative)."""
        return max(0, self.total_size - self.image_size - self.script_size - self.stylesheet_size)

    def to_dict(self) -> dict:
        return {
            "totalSize": self.total_size,
            "imageSize": self.image_size,
            "scriptSize": self.script_size,
            "stylesheetSize": self.stylesheet_size,
            "resourceCount": self.resource_count,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ResourceSummary:
        return cls(
            total_size=data.get("totalSize", 0),
            image_size=data.get("imageSize", 0),
            script_size=data.get("scriptSize", 0),
            stylesheet_size=data.get("stylesheetSize", 0),
            resource_count=data.get("resourceCount", 0),
        )


@dataclass(frozen=True)
class NetworkRequest:
    url: str
    transfer_size: float
    start_time: float
    end_time: float
    resource_type: str | None = None

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    def to_dict(self) -> dict:
        record = {
            "url": self.url,
            "transferSize": self.transfer_size,
            "startTime": self.start_time,
            "endTime": self.end_time,
        }
        if self.resource_type is not None:
            record["resourceType"] = self.resource_type
        return record

    @classmethod
    def from_dict(cls, data: dict) -> NetworkRequest:
        return cls(
            url=data.get("url", ""),
            transfer_size=data.get("transferSize", 0),
            start_time=data.get("startTime", 0),
            end_time=data.get("endTime", 0),
            resource_type=data.get("resourceType"),
        )


@dataclass(frozen=True)
class Screenshots:
    thumbnails: tuple[str, ...] = ()
    final: str | None = None

    def to_dict(self) -> dict:
        return {"thumbnails": list(self.thumbnails), "final": self.final}

    @classmethod
    def from_dict(cls, data: dict) -> Screenshots:
        return cls(thumbnails=tuple(data.get("thumbnails") or ()), final=data.get("final"))


@dataclass(frozen=True)
class MetricsSnapshot:
    """One normalized audit result for a (url, device) pair.

    Created once by extract_metrics() and never mutated afterwards.
    to_dict()/from_dict() use the camelCase wire names shared by the JSON
    export and the persisted history.
    """

    url: str
    timestamp: int
    device: str
    scores: CategoryScores = field(default_factory=CategoryScores)
    metrics: CoreMetrics = field(default_factory=CoreMetrics)
    opportunities: tuple[Opportunity, ...] = ()
    diagnostics: tuple[Diagnostic, ...] = ()
    resource_summary: ResourceSummary = field(default_factory=ResourceSummary)
    network_requests: tuple[NetworkRequest, ...] = ()
    screenshots: Screenshots = field(default_factory=Screenshots)
    # Deep-copied from the payload; left out of the hash
    loading_experience: dict | None = field(default=None, hash=False)
    accessibility_findings: tuple[Diagnostic, ...] = ()
    seo_findings: tuple[Diagnostic, ...] = ()

    @property
    def overall_score(self) -> int:
        values = [getattr(self.scores, attr) for attr, _, _ in SCORE_LABELS]
        return _round_half_up(sum(values) / len(values))

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "timestamp": self.timestamp,
            "device": self.device,
            "scores": self.scores.to_dict(),
            "metrics": self.metrics.to_dict(),
            "opportunities": [item.to_dict() for item in self.opportunities],
            "diagnostics": [item.to_dict() for item in self.diagnostics],
            "resourceSummary": self.resource_summary.to_dict(),
            "networkRequests": [item.to_dict() for item in self.network_requests],
            "screenshots": self.screenshots.to_dict(),
            "loadingExperience": copy.deepcopy(self.loading_experience),
            "accessibilityFindings": [item.to_dict() for item in self.accessibility_findings],
            "seoFindings": [item.to_dict() for item in self.seo_findings],
        }

    @classmethod
    def from_dict(cls, data: dict) -> MetricsSnapshot:
        return cls(
            url=data["url"],
            timestamp=int(data.get("timestamp", 0)),
            device=data.get("device", DEFAULT_DEVICE),
            scores=CategoryScores.from_dict(data.get("scores") or {}),
            metrics=CoreMetrics.from_dict(data.get("metrics") or {}),
            opportunities=tuple(Opportunity.from_dict(item) for item in data.get("opportunities") or []),
            diagnostics=tuple(Diagnostic.from_dict(item) for item in data.get("diagnostics") or []),
            resource_summary=ResourceSummary.from_dict(data.get("resourceSummary") or {}),
            network_requests=tuple(NetworkRequest.from_dict(item) for item in data.get("networkRequests") or []),
            screenshots=Screenshots.from_dict(data.get("screenshots") or {}),
            loading_experience=copy.deepcopy(data.get("loadingExperience")),
            accessibility_findings=tuple(Diagnostic.from_dict(item) for item in data.get("accessibilityFindings") or []),
            seo_findings=tuple(Diagnostic.from_dict(item) for item in data.get("seoFindings") or []),
        )


# ---------------------------------------------------------------------------
# URL Handling
# ---------------------------------------------------------------------------


def normalize_url(url: str) -> str:
    """Validate and normalize a target URL, prepending https:// to bare hosts.

    Raises InvalidUrlError when the result is not an absolute http(s) URL.
    """
    cleaned = (url or "").strip()
    if not cleaned:
        raise InvalidUrlError("Invalid URL: empty input")

    scheme, separator, _ = cleaned.partition("://")
    if separator and scheme.isalpha():
        if scheme.lower() not in ("http", "https"):
            raise InvalidUrlError(f"Invalid URL: {url!r}")
    else:
        cleaned = "https://" + cleaned

    parsed = urlparse(cleaned)
    if not parsed.hostname or any(ch.isspace() for ch in cleaned):
        raise InvalidUrlError(f"Invalid URL: {url!r}")
    try:
        parsed.port
    except ValueError as exc:
        raise InvalidUrlError(f"Invalid URL: {url!r}") from exc
    return cleaned


# ---------------------------------------------------------------------------
# API Client
# ---------------------------------------------------------------------------


def _error_detail(response: requests.Response) -> str:
    try:
        error_body = response.json()
        return error_body.get("error", {}).get("message", response.text[:200])
    except (ValueError, AttributeError):
        return response.text[:200]


class AuditClient:
    """Issues exactly one PageSpeed Insights request per fetch_audit() call.

    No retries and no caching happen here: ResultCache owns reuse, and a
    failed request surfaces immediately as TransportError or ServiceError.
    """

    def __init__(
        self,
        api_key: str | None = None,
        categories: list[str] | None = None,
        session: requests.Session | None = None,
        timeout: float | None = None,
        api_url: str = PAGESPEED_API_URL,
    ):
        self.api_key = api_key
        self.categories = list(categories or AUDIT_CATEGORIES)
        self.session = session or requests.Session()
        self.timeout = timeout
        self.api_url = api_url

    def fetch_audit(self, url: str, device: str) -> dict:
        """Fetch the raw audit payload for a single URL + device profile."""
        target = normalize_url(url)
        if device not in VALID_DEVICES:
            raise ValueError(f"device must be one of {VALID_DEVICES}, got {device!r}")

        # requests supports list values for repeated query params
        params: dict[str, str | list[str]] = {
            "url": target,
            "strategy": device,
            "category": self.categories,
        }
        if self.api_key:
            params["key"] = self.api_key

        try:
            response = self.session.get(self.api_url, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            raise TransportError(f"Network error for {target} ({device}): {exc}") from exc

        if not 200 <= response.status_code < 300:
            raise ServiceError(
                f"PageSpeed API Error: HTTP {response.status_code} for {target} ({device}): {_error_detail(response)}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise ServiceError(f"PageSpeed API Error: undecodable response for {target} ({device})") from exc

        if isinstance(data, dict) and data.get("error"):
            error = data["error"]
            message = error.get("message", "unknown error") if isinstance(error, dict) else str(error)
            raise ServiceError(f"PageSpeed Analysis Failed for {target} ({device}): {message}")

        return data


# ---------------------------------------------------------------------------
# Payload Decoding
# ---------------------------------------------------------------------------


def _number(value: Any) -> int | float | None:
    """Return value if it is a finite real number, else None."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def _first_number(item: dict, *keys: str) -> int | float | None:
    for key in keys:
        value = _number(item.get(key))
        if value is not None:
            return value
    return None


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _list(value: Any) -> list:
    return value if isinstance(value, list) else []


@dataclass
class RawAudit:
    id: str
    title: str | None = None
    description: str | None = None
    score: float | None = None
    score_display_mode: str | None = None
    numeric_value: float | None = None
    display_value: str | None = None
    details: dict = field(default_factory=dict)

    @property
    def items(self) -> list[dict]:
        items = self.details.get("items")
        if not isinstance(items, list):
            return []
        return [item for item in items if isinstance(item, dict)]

    @property
    def overall_savings_ms(self) -> float | None:
        return _number(self.details.get("overallSavingsMs"))


@dataclass
class RawCategory:
    id: str
    score: float | None = None
    audit_refs: tuple[str, ...] = ()


@dataclass
class AuditPayload:
    """Typed view of a PageSpeed response; every leaf is optional."""

    categories: dict[str, RawCategory]
    audits: dict[str, RawAudit]
    loading_experience: dict | None = None


def decode_payload(raw: Any) -> AuditPayload:
    """Decode raw API JSON into an AuditPayload.

    Only the top-level sections are required; missing leaves decode to None.
    """
    if not isinstance(raw, dict):
        raise MalformedPayloadError("Audit payload is not a JSON object")
    lighthouse = raw.get("lighthouseResult")
    if not isinstance(lighthouse, dict):
        raise MalformedPayloadError("No lighthouseResult in audit payload")
    raw_categories = lighthouse.get("categories")
    if not isinstance(raw_categories, dict):
        raise MalformedPayloadError("Audit payload has no categories section")
    raw_audits = lighthouse.get("audits")
    if not isinstance(raw_audits, dict):
        raise MalformedPayloadError("Audit payload has no audits section")

    categories: dict[str, RawCategory] = {}
    for category_id, category in raw_categories.items():
        if not isinstance(category, dict):
            category = {}
        refs = tuple(
            ref["id"]
            for ref in _list(category.get("auditRefs"))
            if isinstance(ref, dict) and isinstance(ref.get("id"), str)
        )
        categories[category_id] = RawCategory(
            id=category_id,
            score=_number(category.get("score")),
            audit_refs=refs,
        )

    audits: dict[str, RawAudit] = {}
    for audit_id, audit in raw_audits.items():
        if not isinstance(audit, dict):
            continue
        details = audit.get("details")
        audits[audit_id] = RawAudit(
            id=audit_id,
            title=_text(audit.get("title")),
            description=_text(audit.get("description")),
            score=_number(audit.get("score")),
            score_display_mode=_text(audit.get("scoreDisplayMode")),
            numeric_value=_number(audit.get("numericValue")),
            display_value=_text(audit.get("displayValue")),
            details=details if isinstance(details, dict) else {},
        )

    loading_experience = raw.get("loadingExperience")
    return AuditPayload(
        categories=categories,
        audits=audits,
        loading_experience=loading_experience if isinstance(loading_experience, dict) else None,
    )


# ---------------------------------------------------------------------------
# Metrics Extraction
# ---------------------------------------------------------------------------


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _category_score(payload: AuditPayload, category_id: str) -> int:
    category = payload.categories.get(category_id)
    if category is None or category.score is None:
        return 0
    return min(100, max(0, _round_half_up(category.score * 100)))


def _extract_scores(payload: AuditPayload) -> CategoryScores:
    return CategoryScores(
        performance=_category_score(payload, "performance"),
        accessibility=_category_score(payload, "accessibility"),
        best_practices=_category_score(payload, "best-practices"),
        seo=_category_score(payload, "seo"),
    )


def _extract_core_metrics(audits: dict[str, RawAudit]) -> CoreMetrics:
    values = {}
    for audit_id, attr in CORE_METRIC_AUDITS:
        audit = audits.get(audit_id)
        value = audit.numeric_value if audit is not None else None
        values[attr] = value if value is not None else 0
    values["cumulative_layout_shift"] = max(0, values["cumulative_layout_shift"])
    return CoreMetrics(**values)


def _extract_opportunities(audits: dict[str, RawAudit]) -> tuple[Opportunity, ...]:
    # Audits without overallSavingsMs count as 0 savings and never pass the filter.
    candidates = [
        audit
        for audit in audits.values()
        if audit.score_display_mode == "numeric"
        and (audit.numeric_value or 0) > 0
        and (audit.overall_savings_ms or 0) > MIN_OPPORTUNITY_SAVINGS_MS
    ]
    # sorted() is stable, so equal savings keep encounter order
    ranked = sorted(candidates, key=lambda audit: audit.overall_savings_ms, reverse=True)
    return tuple(
        Opportunity(
            id=audit.id,
            title=audit.title or "",
            description=audit.description or "",
            savings=audit.overall_savings_ms,
            display_value=audit.display_value or "",
        )
        for audit in ranked[:MAX_OPPORTUNITIES]
    )


def _extract_diagnostics(audits: dict[str, RawAudit]) -> tuple[Diagnostic, ...]:
    matches = [
        audit
        for audit in audits.values()
        if audit.score_display_mode == "informative" and audit.display_value
    ]
    return tuple(
        Diagnostic(
            id=audit.id,
            title=audit.title or "",
            description=audit.description or "",
            display_value=audit.display_value,
        )
        for audit in matches[:MAX_DIAGNOSTICS]
    )


def _extract_findings(payload: AuditPayload, category_id: str) -> tuple[Diagnostic, ...]:
    """Failing audits referenced by a category, in auditRefs order."""
    category = payload.categories.get(category_id)
    if category is None:
        return ()
    findings = []
    for audit_id in category.audit_refs:
        audit = payload.audits.get(audit_id)
        if audit is None or audit.score is None or audit.score >= 1:
            continue
        findings.append(
            Diagnostic(
                id=audit.id,
                title=audit.title or "",
                description=audit.description or "",
                display_value=audit.display_value or "",
            )
        )
        if len(findings) >= MAX_FINDINGS:
            break
    return tuple(findings)


def _extract_resource_summary(audit: RawAudit | None) -> ResourceSummary:
    items = audit.items if audit is not None else []

    def first_size(resource_type: str) -> float:
        for item in items:
            if item.get("resourceType") == resource_type:
                return _number(item.get("size")) or 0
        return 0

    return ResourceSummary(
        total_size=sum(_number(item.get("size")) or 0 for item in items),
        image_size=first_size("image"),
        script_size=first_size("script"),
        stylesheet_size=first_size("stylesheet"),
        resource_count=sum(_number(item.get("requestCount")) or 0 for item in items),
    )


def _extract_network_requests(audit: RawAudit | None) -> tuple[NetworkRequest, ...]:
    if audit is None:
        return ()
    requests_out = []
    for item in audit.items:
        # Lighthouse has shipped both startTime/endTime and startTimeMs/endTimeMs
        start_time = _first_number(item, "startTimeMs", "startTime") or 0
        end_time = _first_number(item, "endTimeMs", "endTime")
        if end_time is None:
            end_time = start_time + (_first_number(item, "durationMs", "duration") or 0)
        requests_out.append(
            NetworkRequest(
                url=_text(item.get("url")) or "",
                transfer_size=_number(item.get("transferSize")) or _number(item.get("resourceSize")) or 0,
                start_time=start_time,
                end_time=max(end_time, start_time),
                resource_type=_text(item.get("resourceType")),
            )
        )
    return tuple(requests_out)


def _extract_screenshots(thumbnails_audit: RawAudit | None, final_audit: RawAudit | None) -> Screenshots:
    thumbnails = ()
    if thumbnails_audit is not None:
        thumbnails = tuple(
            item["data"] for item in thumbnails_audit.items if isinstance(item.get("data"), str) and item["data"]
        )
    final = None
    if final_audit is not None:
        final = _text(final_audit.details.get("data")) or None
    return Screenshots(thumbnails=thumbnails, final=final)


def _extract_field_data(loading_experience: dict | None) -> dict | None:
    if not loading_experience:
        return None
    metrics = loading_experience.get("metrics")
    if not isinstance(metrics, dict):
        return None
    present = {key: copy.deepcopy(metrics[key]) for key in FIELD_METRIC_KEYS if isinstance(metrics.get(key), dict)}
    if not present:
        return None
    return {
        "overall_category": loading_experience.get("overall_category"),
        "metrics": present,
    }


def extract_metrics(raw: dict, url: str, device: str, timestamp: int | None = None) -> MetricsSnapshot:
    """Normalize a raw PageSpeed payload into a MetricsSnapshot.

    Only a missing lighthouseResult/categories/audits section fails
    (MalformedPayloadError); any absent leaf field becomes zero or empty.
    """
    payload = decode_payload(raw)
    audits = payload.audits
    return MetricsSnapshot(
        url=url,
        timestamp=timestamp if timestamp is not None else int(time.time() * 1000),
        device=device,
        scores=_extract_scores(payload),
        metrics=_extract_core_metrics(audits),
        opportunities=_extract_opportunities(audits),
        diagnostics=_extract_diagnostics(audits),
        resource_summary=_extract_resource_summary(audits.get("resource-summary")),
        network_requests=_extract_network_requests(audits.get("network-requests")),
        screenshots=_extract_screenshots(audits.get("screenshot-thumbnails"), audits.get("final-screenshot")),
        loading_experience=_extract_field_data(payload.loading_experience),
        accessibility_findings=_extract_findings(payload, "accessibility"),
        seo_findings=_extract_findings(payload, "seo"),
    )


# ---------------------------------------------------------------------------
# Result Cache
# ---------------------------------------------------------------------------


class ResultCache:
    """Session-lifetime map of (normalized url, device) -> latest snapshot."""

    def __init__(self):
        self._entries: dict[str, MetricsSnapshot] = {}

    @staticmethod
    def key(url: str, device: str) -> str:
        return f"{url}_{device}"

    def get(self, url: str, device: str) -> MetricsSnapshot | None:
        return self._entries.get(self.key(url, device))

    def put(self, url: str, device: str, snapshot: MetricsSnapshot) -> None:
        self._entries[self.key(url, device)] = snapshot

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...


class MemoryStore:
    """In-process KeyValueStore, used for --no-save runs and tests."""

    def __init__(self, initial: dict[str, str] | None = None):
        self.data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value


class JsonFileStore:
    """KeyValueStore holding every key in one JSON object on disk."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def _read(self) -> dict[str, str]:
        if not self.path.is_file():
            return {}
        with open(self.path) as fh:
            data = json.load(fh)
        if not isinstance(data, dict):
            raise ValueError(f"state file {self.path} does not hold a JSON object")
        return data

    def get(self, key: str) -> str | None:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as fh:
            json.dump(data, fh, indent=2)


class HistoryStore:
    """Bounded most-recent-first list of snapshots, persisted as JSON.

    Persistence failures are reported on stderr and never raised: a run
    that produced a snapshot must not fail because history could not be
    saved or loaded.
    """

    def __init__(self, store: KeyValueStore, capacity: int = DEFAULT_HISTORY_SIZE, key: str = HISTORY_KEY):
        if capacity < 1:
            raise ValueError("history capacity must be at least 1")
        self.store = store
        self.capacity = capacity
        self.key = key
        self._entries: list[MetricsSnapshot] = self._load()

    def _load(self) -> list[MetricsSnapshot]:
        try:
            serialized = self.store.get(self.key)
            if not serialized:
                return []
            records = json.loads(serialized)
            return [MetricsSnapshot.from_dict(record) for record in records][: self.capacity]
        except (OSError, ValueError, TypeError, KeyError, AttributeError) as exc:
            err_console.print(f"[yellow]Warning:[/yellow] could not load history: {escape(str(exc))}")
            return []

    def _persist(self) -> None:
        try:
            self.store.set(self.key, json.dumps([entry.to_dict() for entry in self._entries]))
        except (OSError, ValueError, TypeError) as exc:
            err_console.print(f"[yellow]Warning:[/yellow] could not save history: {escape(str(exc))}")

    def append(self, snapshot: MetricsSnapshot) -> None:
        self.extend([snapshot])

    def extend(self, snapshots: list[MetricsSnapshot]) -> None:
        """Prepend snapshots given in completion order, keeping the newest N."""
        newest_first = list(reversed(snapshots))
        self._entries = (newest_first + self._entries)[: self.capacity]
        self._persist()

    def load_all(self) -> list[MetricsSnapshot]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries = []
        self._persist()

    def __len__(self) -> int:
        return len(self._entries)


class ImplementedOpportunities:
    """Persisted set of opportunity IDs the user has marked as done."""

    def __init__(self, store: KeyValueStore, key: str = IMPLEMENTED_KEY):
        self.store = store
        self.key = key
        self._ids: set[str] = self._load()

    def _load(self) -> set[str]:
        try:
            serialized = self.store.get(self.key)
            return set(json.loads(serialized)) if serialized else set()
        except (OSError, ValueError, TypeError) as exc:
            err_console.print(f"[yellow]Warning:[/yellow] could not load implemented opportunities: {escape(str(exc))}")
            return set()

    def _persist(self) -> None:
        try:
            self.store.set(self.key, json.dumps(sorted(self._ids)))
        except (OSError, ValueError, TypeError) as exc:
            err_console.print(f"[yellow]Warning:[/yellow] could not save implemented opportunities: {escape(str(exc))}")

    def mark(self, *opportunity_ids: str) -> None:
        self._ids.update(opportunity_ids)
        self._persist()

    def unmark(self, *opportunity_ids: str) -> None:
        self._ids.difference_update(opportunity_ids)
        self._persist()

    def is_implemented(self, opportunity_id: str) -> bool:
        return opportunity_id in self._ids

    def all(self) -> list[str]:
        return sorted(self._ids)


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AnalysisTask:
    url: str
    device: str


@dataclass
class TaskOutcome:
    task: AnalysisTask
    snapshot: MetricsSnapshot | None = None
    error: PageSpeedError | None = None
    from_cache: bool = False

    @property
    def ok(self) -> bool:
        return self.snapshot is not None


@dataclass(frozen=True)
class DeviceComparison:
    desktop: MetricsSnapshot
    mobile: MetricsSnapshot

    @property
    def primary(self) -> MetricsSnapshot:
        return self.desktop

    def score_deltas(self) -> dict[str, int]:
        """Desktop minus mobile, per category score."""
        return {
            attr: getattr(self.desktop.scores, attr) - getattr(self.mobile.scores, attr)
            for attr, _, _ in SCORE_LABELS
        }


@dataclass
class AppState:
    """Mutable UI-facing state owned by a Dashboard."""

    results: MetricsSnapshot | None = None
    comparison: DeviceComparison | None = None
    benchmark_results: list[MetricsSnapshot] = field(default_factory=list)
    error: str | None = None
    in_flight: bool = False
    progress: int = 0
    current_step: str = ""


class Dashboard:
    """Runs analyses against an AuditClient and owns cache, history and state.

    Task lists are consumed strictly one at a time. Two failure policies
    exist: dual-device runs stop and re-raise on the first error, benchmark
    runs record the error and move on to the next URL.
    """

    def __init__(
        self,
        client: AuditClient,
        history: HistoryStore,
        cache: ResultCache | None = None,
        implemented: ImplementedOpportunities | None = None,
        verbose: bool = False,
    ):
        self.client = client
        self.history = history
        self.cache = cache if cache is not None else ResultCache()
        self.implemented = implemented
        self.state = AppState()
        self.verbose = verbose

    def _set_progress(self, progress: int, step: str) -> None:
        self.state.progress = progress
        self.state.current_step = step
        if self.verbose and step:
            err_console.print(f"  [{progress:>3}%] {escape(step)}")

    def _analyze_task(self, task: AnalysisTask, use_cache: bool) -> TaskOutcome:
        url = normalize_url(task.url)
        if use_cache:
            cached = self.cache.get(url, task.device)
            if cached is not None:
                return TaskOutcome(task=task, snapshot=cached, from_cache=True)

        self._set_progress(15, f"Connecting to PageSpeed Insights ({task.device})...")
        raw = self.client.fetch_audit(url, task.device)
        self._set_progress(65, "Processing audit results...")
        snapshot = extract_metrics(raw, url, task.device)
        self._set_progress(85, "Analyzing performance metrics...")
        self.cache.put(url, task.device, snapshot)
        return TaskOutcome(task=task, snapshot=snapshot)

    def run_tasks(
        self,
        tasks: list[AnalysisTask],
        stop_on_error: bool,
        use_cache: bool = True,
        on_result: Callable[[MetricsSnapshot], None] | None = None,
    ) -> list[TaskOutcome]:
        """Run tasks sequentially, capturing each result or error before advancing."""
        outcomes: list[TaskOutcome] = []
        for task in tasks:
            try:
                outcome = self._analyze_task(task, use_cache)
            except PageSpeedError as exc:
                if stop_on_error:
                    raise
                err_console.print(
                    f"[yellow]Warning:[/yellow] {escape(task.url)} ({task.device}) failed: {escape(str(exc))}"
                )
                outcomes.append(TaskOutcome(task=task, error=exc))
                continue
            outcomes.append(outcome)
            if on_result is not None:
                on_result(outcome.snapshot)
        return outcomes

    def analyze_single(self, url: str, device: str, use_cache: bool = True) -> MetricsSnapshot:
        """Analyze one device profile; a fresh result is added to history."""
        [outcome] = self.run_tasks([AnalysisTask(url, device)], stop_on_error=True, use_cache=use_cache)
        if not outcome.from_cache:
            self.history.append(outcome.snapshot)
        return outcome.snapshot

    def analyze_both(self, url: str, use_cache: bool = True) -> DeviceComparison:
        """Desktop then mobile; either failure aborts the combined run."""
        tasks = [AnalysisTask(url, "desktop"), AnalysisTask(url, "mobile")]
        desktop, mobile = self.run_tasks(tasks, stop_on_error=True, use_cache=use_cache)
        fresh = [outcome.snapshot for outcome in (desktop, mobile) if not outcome.from_cache]
        if fresh:
            self.history.extend(fresh)
        return DeviceComparison(desktop=desktop.snapshot, mobile=mobile.snapshot)

    def benchmark(
        self,
        urls: list[str],
        device: str = DEFAULT_DEVICE,
        use_cache: bool = True,
        on_result: Callable[[MetricsSnapshot], None] | None = None,
    ) -> list[MetricsSnapshot]:
        """Analyze each URL in turn, skipping failures. Results are not added to history."""
        self._begin()
        try:
            self.state.benchmark_results = []

            def collect(snapshot: MetricsSnapshot) -> None:
                self.state.benchmark_results.append(snapshot)
                if on_result is not None:
                    on_result(snapshot)

            tasks = [AnalysisTask(url, device) for url in urls]
            self.run_tasks(tasks, stop_on_error=False, use_cache=use_cache, on_result=collect)
            return list(self.state.benchmark_results)
        finally:
            self._finish()

    def analyze(self, url: str, device: str = DEFAULT_DEVICE, use_cache: bool = True) -> MetricsSnapshot | DeviceComparison | None:
        """UI entry point: run an analysis and record the outcome on self.state.

        Failures are caught here once; state.error receives the user-facing
        message and None is returned.
        """
        self._begin()
        self.state.error = None
        self._set_progress(0, "Initializing PageSpeed Insights analysis...")
        try:
            if device == "both":
                comparison = self.analyze_both(url, use_cache=use_cache)
                self.state.comparison = comparison
                self.state.results = comparison.primary
                result: MetricsSnapshot | DeviceComparison = comparison
            else:
                snapshot = self.analyze_single(url, device, use_cache=use_cache)
                self.state.comparison = None
                self.state.results = snapshot
                result = snapshot
            self._set_progress(100, "Analysis complete")
            return result
        except PageSpeedError as exc:
            self.state.error = describe_error(exc)
            err_console.print(f"[red]PageSpeed analysis error:[/red] {escape(str(exc))}")
            return None
        finally:
            self._finish()

    def _begin(self) -> None:
        if self.state.in_flight:
            raise AnalysisInProgressError("An analysis is already running")
        self.state.in_flight = True

    def _finish(self) -> None:
        self.state.in_flight = False
        self.state.progress = 0
        self.state.current_step = ""


# ---------------------------------------------------------------------------
# View Helpers
# ---------------------------------------------------------------------------


def score_rating(score: float) -> str:
    if score >= 90:
        return "good"
    if score >= 50:
        return "needs-improvement"
    return "poor"


def score_color(score: float) -> str:
    return RATING_COLORS[score_rating(score)]


def metric_rating(metric: str, value: float) -> str:
    thresholds = METRIC_THRESHOLDS[metric]
    if thresholds.get("strict_good"):
        is_good = value < thresholds["good"]
    else:
        is_good = value <= thresholds["good"]
    if is_good:
        return "good"
    if value <= thresholds["poor"]:
        return "needs-improvement"
    return "poor"


def good_threshold_label(metric: str) -> str:
    thresholds = METRIC_THRESHOLDS[metric]
    operator = "<" if thresholds.get("strict_good") else "<="
    return f"{operator} {thresholds['good']}{thresholds['unit']}"


def format_bytes(num_bytes: float) -> str:
    if num_bytes <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    value = float(num_bytes)
    unit_index = 0
    while value >= 1024 and unit_index < len(units) - 1:
        value /= 1024
        unit_index += 1
    return f"{float(f'{value:.1f}'):g} {units[unit_index]}"


def format_time(ms: float) -> str:
    if ms < 1000:
        return f"{_round_half_up(ms)}ms"
    return f"{ms / 1000:.1f}s"


def format_metric(metric: str, value: float) -> str:
    if metric == "cumulative_layout_shift":
        return f"{value:.3f}"
    return format_time(value)


def performance_scores(snapshot: MetricsSnapshot) -> list[dict]:
    return [
        {
            "name": name,
            "score": getattr(snapshot.scores, attr),
            "color": score_color(getattr(snapshot.scores, attr)),
            "category": group,
        }
        for attr, name, group in SCORE_LABELS
    ]


def resource_breakdown(snapshot: MetricsSnapshot) -> list[dict]:
    """Pie slices for the resource summary; empty slices are dropped."""
    summary = snapshot.resource_summary
    slices = [
        ("Images", summary.image_size),
        ("Scripts", summary.script_size),
        ("Styles", summary.stylesheet_size),
        ("Other", summary.other_size),
    ]
    return [
        {"name": name, "value": value, "color": RESOURCE_COLORS[name]}
        for name, value in slices
        if value > 0
    ]


def field_percentile(snapshot: MetricsSnapshot, *metric_keys: str) -> float | None:
    if not snapshot.loading_experience:
        return None
    metrics = snapshot.loading_experience.get("metrics", {})
    for key in metric_keys:
        percentile = _number((metrics.get(key) or {}).get("percentile"))
        if percentile is not None:
            return percentile
    return None


def lab_vs_field(snapshot: MetricsSnapshot) -> list[dict]:
    """Lab value against the field p75 for FCP, LCP, INP and CLS."""
    cls_field = field_percentile(snapshot, "CUMULATIVE_LAYOUT_SHIFT_SCORE")
    return [
        {
            "metric": "FCP",
            "lab": snapshot.metrics.first_contentful_paint,
            "field": field_percentile(snapshot, "FIRST_CONTENTFUL_PAINT_MS"),
        },
        {
            "metric": "LCP",
            "lab": snapshot.metrics.largest_contentful_paint,
            "field": field_percentile(snapshot, "LARGEST_CONTENTFUL_PAINT_MS"),
        },
        {
            "metric": "INP",
            "lab": snapshot.metrics.interaction_to_next_paint,
            "field": field_percentile(snapshot, "INTERACTION_TO_NEXT_PAINT", "INTERACTION_TO_NEXT_PAINT_MS"),
        },
        {
            "metric": "CLS",
            "lab": snapshot.metrics.cumulative_layout_shift,
            # CrUX reports CLS percentiles multiplied by 100
            "field": cls_field / 100 if cls_field is not None else None,
        },
    ]


def request_host(url: str) -> str:
    """Hostname of a request URL without a leading www."""
    hostname = urlparse(url).hostname or url
    return hostname[4:] if hostname.startswith("www.") else hostname


def waterfall_rows(snapshot: MetricsSnapshot) -> list[dict]:
    """Start, duration and size of the first requests in the network timeline."""
    return [
        {
            "host": request_host(request.url),
            "start": request.start_time,
            "duration": max(0, request.duration),
            "size": request.transfer_size,
        }
        for request in snapshot.network_requests[:MAX_WATERFALL_REQUESTS]
    ]


def _format_timestamp(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


# ---------------------------------------------------------------------------
# Terminal Rendering
# ---------------------------------------------------------------------------


def _rated(text: str, rating: str) -> Text:
    return Text(text, style=RATING_STYLES[rating])


def render_snapshot(snapshot: MetricsSnapshot, implemented: ImplementedOpportunities | None = None) -> Group:
    """Build the rich renderable for a single snapshot."""
    header = Text.assemble(
        ("URL:      ", "bold"), snapshot.url, "\n",
        ("Device:   ", "bold"), snapshot.device, "\n",
        ("Analyzed: ", "bold"), _format_timestamp(snapshot.timestamp) + " UTC",
    )

    scores = Table(title="Scores", show_header=True, header_style="bold")
    scores.add_column("Category")
    scores.add_column("Score", justify="right")
    for item in performance_scores(snapshot):
        scores.add_row(item["name"], _rated(f"{item['score']}/100", score_rating(item["score"])))
    scores.add_row("Overall", _rated(f"{snapshot.overall_score}/100", score_rating(snapshot.overall_score)))

    vitals = Table(title="Lab Metrics", show_header=True, header_style="bold")
    vitals.add_column("Metric")
    vitals.add_column("Value", justify="right")
    vitals.add_column("Good at")
    for metric, thresholds in METRIC_THRESHOLDS.items():
        value = getattr(snapshot.metrics, metric)
        good = good_threshold_label(metric)
        vitals.add_row(thresholds["label"], _rated(format_metric(metric, value), metric_rating(metric, value)), good)

    parts: list = [header, scores, vitals]

    if snapshot.opportunities:
        opportunities = Table(title="Opportunities", show_header=True, header_style="bold")
        opportunities.add_column("Audit")
        opportunities.add_column("Savings", justify="right")
        opportunities.add_column("Status")
        for item in snapshot.opportunities:
            done = implemented is not None and implemented.is_implemented(item.id)
            opportunities.add_row(escape(f"{item.title} ({item.id})"), format_time(item.savings), "implemented" if done else "")
        parts.append(opportunities)

    if snapshot.diagnostics:
        diagnostics = Table(title="Diagnostics", show_header=True, header_style="bold")
        diagnostics.add_column("Audit")
        diagnostics.add_column("Value")
        for item in snapshot.diagnostics:
            diagnostics.add_row(escape(item.title), escape(item.display_value))
        parts.append(diagnostics)

    for title, findings in (
        ("Accessibility Findings", snapshot.accessibility_findings),
        ("SEO Findings", snapshot.seo_findings),
    ):
        if findings:
            findings_table = Table(title=title, show_header=True, header_style="bold")
            findings_table.add_column("Audit")
            findings_table.add_column("Value")
            for item in findings:
                findings_table.add_row(escape(f"{item.title} ({item.id})"), escape(item.display_value))
            parts.append(findings_table)

    summary = snapshot.resource_summary
    resources = Table(title=f"Resources ({summary.resource_count} requests, {format_bytes(summary.total_size)})")
    resources.add_column("Type")
    resources.add_column("Size", justify="right")
    for item in resource_breakdown(snapshot):
        resources.add_row(item["name"], format_bytes(item["value"]))
    parts.append(resources)

    rows = waterfall_rows(snapshot)
    if rows:
        waterfall = Table(title=f"Network Waterfall (first {len(rows)} requests)", show_header=True, header_style="bold")
        waterfall.add_column("Host")
        waterfall.add_column("Start", justify="right")
        waterfall.add_column("Duration", justify="right")
        waterfall.add_column("Size", justify="right")
        for row in rows:
            waterfall.add_row(row["host"], format_time(row["start"]), format_time(row["duration"]), format_bytes(row["size"]))
        parts.append(waterfall)

    if snapshot.loading_experience:
        field_table = Table(title="Field Data (CrUX p75)", show_header=True, header_style="bold")
        field_table.add_column("Metric")
        field_table.add_column("Lab", justify="right")
        field_table.add_column("Field", justify="right")
        for row in lab_vs_field(snapshot):
            if row["metric"] == "CLS":
                lab_text = f"{row['lab']:.3f}"
                field_text = f"{row['field']:.3f}" if row["field"] is not None else "n/a"
            else:
                lab_text = format_time(row["lab"])
                field_text = format_time(row["field"]) if row["field"] is not None else "n/a"
            field_table.add_row(row["metric"], lab_text, field_text)
        parts.append(field_table)
    else:
        parts.append(Text("Field data not available for this URL.", style="dim"))

    return Group(*parts)


def render_comparison(comparison: DeviceComparison) -> Table:
    table = Table(title=f"Desktop vs Mobile: {comparison.primary.url}", show_header=True, header_style="bold")
    table.add_column("Metric")
    table.add_column("Desktop", justify="right")
    table.add_column("Mobile", justify="right")
    table.add_column("Delta", justify="right")
    deltas = comparison.score_deltas()
    for attr, name, _ in SCORE_LABELS:
        table.add_row(
            name,
            str(getattr(comparison.desktop.scores, attr)),
            str(getattr(comparison.mobile.scores, attr)),
            f"{deltas[attr]:+d}",
        )
    for metric in CORE_WEB_VITALS:
        table.add_row(
            METRIC_THRESHOLDS[metric]["label"],
            format_metric(metric, getattr(comparison.desktop.metrics, metric)),
            format_metric(metric, getattr(comparison.mobile.metrics, metric)),
            "",
        )
    return table


def render_benchmark(results: list[MetricsSnapshot]) -> Table:
    table = Table(title="Benchmark", show_header=True, header_style="bold")
    for column in ("Rank", "URL", "Performance", "LCP", "CLS", "TBT"):
        table.add_column(column)
    ranked = sorted(results, key=lambda snapshot: snapshot.scores.performance, reverse=True)
    for rank, snapshot in enumerate(ranked, start=1):
        table.add_row(
            str(rank),
            snapshot.url,
            _rated(str(snapshot.scores.performance), score_rating(snapshot.scores.performance)),
            format_time(snapshot.metrics.largest_contentful_paint),
            f"{snapshot.metrics.cumulative_layout_shift:.3f}",
            format_time(snapshot.metrics.total_blocking_time),
        )
    return table


def render_history(entries: list[MetricsSnapshot]) -> Table:
    frame = history_frame(entries)
    table = Table(title=f"History ({len(entries)} runs, newest first)", show_header=True, header_style="bold")
    for column in frame.columns:
        table.add_column(column)
    for row in frame.itertuples(index=False):
        table.add_row(*(str(value) for value in row))
    return table


# ---------------------------------------------------------------------------
# Exports
# ---------------------------------------------------------------------------


def default_export_path(output_dir: str, extension: str, device: str | None = None) -> Path:
    """pagespeed-insights-report-YYYY-MM-DD[-device].<ext> inside output_dir."""
    date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    suffix = f"-{device}" if device else ""
    dir_path = Path(output_dir)
    dir_path.mkdir(parents=True, exist_ok=True)
    return dir_path / f"pagespeed-insights-report-{date}{suffix}.{extension}"


def build_json_export(snapshot: MetricsSnapshot) -> dict:
    export = snapshot.to_dict()
    export["exportedAt"] = datetime.now(timezone.utc).isoformat()
    export["performanceScores"] = performance_scores(snapshot)
    export["coreWebVitals"] = {
        "fcp": snapshot.metrics.first_contentful_paint,
        "lcp": snapshot.metrics.largest_contentful_paint,
        "fid": snapshot.metrics.first_input_delay,
        "inp": snapshot.metrics.interaction_to_next_paint,
        "cls": snapshot.metrics.cumulative_layout_shift,
    }
    return export


def write_json_export(snapshot: MetricsSnapshot, output_path: Path) -> str:
    """Write the pretty-printed JSON export. Returns the file path."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w") as fh:
        json.dump(build_json_export(snapshot), fh, indent=2, default=str)
    return str(output_path)


def history_frame(entries: list[MetricsSnapshot]) -> pd.DataFrame:
    """One row per history entry, newest first, in the fixed CSV column order."""
    rows = [
        [
            _format_timestamp(entry.timestamp),
            entry.device,
            entry.scores.performance,
            entry.scores.accessibility,
            entry.scores.best_practices,
            entry.scores.seo,
            _round_half_up(entry.metrics.first_contentful_paint),
            _round_half_up(entry.metrics.largest_contentful_paint),
            _round_half_up(entry.metrics.interaction_to_next_paint),
            round(entry.metrics.cumulative_layout_shift, 3),
            _round_half_up(entry.metrics.speed_index),
            _round_half_up(entry.metrics.total_blocking_time),
        ]
        for entry in entries
    ]
    return pd.DataFrame(rows, columns=HISTORY_CSV_COLUMNS)


def write_history_csv(entries: list[MetricsSnapshot], output_path: Path) -> str:
    """Write history as CSV with every value quoted. Returns the file path."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    history_frame(entries).to_csv(output_path, index=False, quoting=csv.QUOTE_ALL)
    return str(output_path)


def _pdf_styles():
    styles = getSampleStyleSheet()
    styles.add(ParagraphStyle(
        name="ReportTitle",
        parent=styles["Heading1"],
        fontSize=20,
        textColor=colors.HexColor("#1f2937"),
        spaceAfter=12,
        fontName="Helvetica-Bold",
    ))
    styles.add(ParagraphStyle(
        name="SectionHeader",
        parent=styles["Heading2"],
        fontSize=13,
        textColor=colors.HexColor("#374151"),
        spaceBefore=12,
        spaceAfter=6,
        fontName="Helvetica-Bold",
    ))
    return styles


def _pdf_table(rows: list[list], col_widths: list[float]) -> PdfTable:
    table = PdfTable(rows, colWidths=col_widths)
    table.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#e5e7eb")),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), 9),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.HexColor("#d1d5db")),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
    ]))
    return table


def write_pdf_report(snapshot: MetricsSnapshot, output_path: Path) -> str:
    """Write a one-page PDF summary of a snapshot. Returns the file path."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    styles = _pdf_styles()
    story = [
        Paragraph("PageSpeed Insights Report", styles["ReportTitle"]),
        Paragraph(f"<b>URL:</b> {escape_pdf(snapshot.url)}", styles["Normal"]),
        Paragraph(f"<b>Date:</b> {_format_timestamp(snapshot.timestamp)} UTC", styles["Normal"]),
        Paragraph(f"<b>Device:</b> {snapshot.device}", styles["Normal"]),
        Spacer(1, 0.15 * inch),
        Paragraph("Scores", styles["SectionHeader"]),
    ]

    score_rows = [["Category", "Score"]]
    score_commands = []
    for row_index, item in enumerate(performance_scores(snapshot), start=1):
        score_rows.append([item["name"], f"{item['score']}/100"])
        hex_color = RATING_HEX[score_rating(item["score"])]
        score_commands.append(("TEXTCOLOR", (1, row_index), (1, row_index), colors.HexColor(hex_color)))
    score_table = _pdf_table(score_rows, [2.5 * inch, 1.2 * inch])
    score_table.setStyle(TableStyle(score_commands))
    story.append(score_table)

    story.append(Paragraph("Core Web Vitals", styles["SectionHeader"]))
    vital_rows = [["Metric", "Value", "Good", "Poor above"]]
    vital_commands = []
    for row_index, metric in enumerate(CORE_WEB_VITALS, start=1):
        thresholds = METRIC_THRESHOLDS[metric]
        value = getattr(snapshot.metrics, metric)
        vital_rows.append([
            thresholds["label"],
            format_metric(metric, value),
            good_threshold_label(metric),
            f"{thresholds['poor']}{thresholds['unit']}",
        ])
        hex_color = RATING_HEX[metric_rating(metric, value)]
        vital_commands.append(("TEXTCOLOR", (1, row_index), (1, row_index), colors.HexColor(hex_color)))
    vital_table = _pdf_table(vital_rows, [1.5 * inch, 1.2 * inch, 1.2 * inch, 1.2 * inch])
    vital_table.setStyle(TableStyle(vital_commands))
    story.append(vital_table)

    top_opportunities = snapshot.opportunities[:PDF_MAX_OPPORTUNITIES]
    if top_opportunities:
        story.append(Paragraph("Top Opportunities", styles["SectionHeader"]))
        opportunity_rows = [["Opportunity", "Savings"]]
        for item in top_opportunities:
            opportunity_rows.append([Paragraph(escape_pdf(item.title), styles["Normal"]), format_time(item.savings)])
        story.append(_pdf_table(opportunity_rows, [4.5 * inch, 1.2 * inch]))

    document = SimpleDocTemplate(
        str(output_path),
        pagesize=A4,
        title="PageSpeed Insights Report",
        leftMargin=0.75 * inch,
        rightMargin=0.75 * inch,
        topMargin=0.75 * inch,
        bottomMargin=0.75 * inch,
    )
    document.build(story)
    return str(output_path)


def escape_pdf(text: str) -> str:
    """Escape text for reportlab Paragraph markup."""
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


# ---------------------------------------------------------------------------
# Config & Profile
# ---------------------------------------------------------------------------


def discover_config_path() -> Path | None:
    """Find the first existing config file in search paths."""
    for search_dir in CONFIG_SEARCH_PATHS:
        for filename in CONFIG_FILENAMES:
            candidate = search_dir / filename
            if candidate.is_file():
                return candidate
    return None


def load_config(config_path: Path | None) -> dict:
    """Parse a TOML config file and return its contents as a dict."""
    if config_path is None:
        return {}
    try:
        with open(config_path, "rb") as fh:
            return tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        err_console.print(f"[red]Error:[/red] malformed config file {config_path}: {escape(str(exc))}")
        sys.exit(1)
    except OSError as exc:
        err_console.print(f"[red]Error:[/red] cannot read config file {config_path}: {escape(str(exc))}")
        sys.exit(1)


def apply_profile(args: argparse.Namespace, config: dict, profile_name: str | None) -> argparse.Namespace:
    """Merge config [settings] and optional profile into args.

    Resolution order (highest priority wins):
      1. Explicit CLI flags
      2. Profile values
      3. [settings] defaults from config
      4. Built-in defaults (already in args)
    """
    settings = config.get("settings", {})
    profile = {}
    if profile_name:
        profiles = config.get("profiles", {})
        if profile_name not in profiles:
            available = ", ".join(profiles.keys()) if profiles else "(none)"
            err_console.print(f"[red]Error:[/red] profile '{profile_name}' not found in config. Available: {available}")
            sys.exit(1)
        profile = profiles[profile_name]

    # Map config keys to argparse dest names
    config_key_map = {
        "api_key": "api_key",
        "device": "device",
        "categories": "categories",
        "state_file": "state_file",
        "history_size": "history_size",
        "timeout": "timeout",
        "output_dir": "output_dir",
        "verbose": "verbose",
    }

    cli_explicit = set(getattr(args, "_explicit_args", []))

    for config_key, arg_dest in config_key_map.items():
        if arg_dest in cli_explicit:
            continue
        if config_key in profile:
            setattr(args, arg_dest, profile[config_key])
        elif config_key in settings:
            setattr(args, arg_dest, settings[config_key])

    if not getattr(args, "api_key", None):
        env_key = os.environ.get("PAGESPEED_API_KEY")
        if env_key:
            args.api_key = env_key

    return args


# ---------------------------------------------------------------------------
# CLI Argument Parser
# ---------------------------------------------------------------------------


class TrackingAction(argparse.Action):
    """Argparse action that records which flags were explicitly provided."""

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


class TrackingStoreTrueAction(argparse.Action):
    """Like store_true but tracks that the flag was explicitly set."""

    def __init__(self, option_strings, dest, default=False, required=False, help=None):
        super().__init__(option_strings=option_strings, dest=dest, nargs=0, const=True, default=default, required=required, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, True)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="pagespeed-dashboard",
        description="PageSpeed Insights terminal dashboard",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--api-key", dest="api_key", action=TrackingAction, default=None, help="Google API key (or set PAGESPEED_API_KEY env var)")
    parser.add_argument("-c", "--config", dest="config", action=TrackingAction, default=None, help="Path to config TOML file")
    parser.add_argument("-p", "--profile", dest="profile", action=TrackingAction, default=None, help="Named profile from config file")
    parser.add_argument("-v", "--verbose", dest="verbose", action=TrackingStoreTrueAction, default=False, help="Verbose progress output to stderr")
    parser.add_argument("--state-file", dest="state_file", action=TrackingAction, default=str(DEFAULT_STATE_FILE), help="JSON file holding history and implemented opportunities")
    parser.add_argument("--history-size", dest="history_size", action=TrackingAction, type=int, default=DEFAULT_HISTORY_SIZE, help="Number of runs kept in history (default: 10)")
    parser.add_argument("--timeout", dest="timeout", action=TrackingAction, type=float, default=None, help="Request timeout in seconds (default: none)")
    parser.add_argument("--no-save", dest="no_save", action=TrackingStoreTrueAction, default=False, help="Keep history in memory only")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- analyze ---
    analyze_parser = subparsers.add_parser("analyze", help="Analyze one URL and show the dashboard")
    analyze_parser.add_argument("url", help="URL to analyze (https:// is added to bare hosts)")
    analyze_parser.add_argument("-d", "--device", dest="device", action=TrackingAction, default=DEFAULT_DEVICE, choices=VALID_DEVICE_CHOICES, help="Device: desktop, mobile, or both")
    analyze_parser.add_argument("--categories", dest="categories", action=TrackingAction, nargs="+", default=list(AUDIT_CATEGORIES), choices=AUDIT_CATEGORIES, help="Lighthouse categories")
    analyze_parser.add_argument("--export", dest="export", action=TrackingAction, nargs="+", default=[], choices=("json", "pdf"), help="Export the (primary) result as JSON and/or PDF")
    analyze_parser.add_argument("--output-dir", dest="output_dir", action=TrackingAction, default=DEFAULT_OUTPUT_DIR, help="Directory for exported files")
    analyze_parser.add_argument("--no-cache", dest="no_cache", action=TrackingStoreTrueAction, default=False, help="Re-run the audit even if this session already has a result")

    # --- benchmark ---
    benchmark_parser = subparsers.add_parser("benchmark", help="Analyze several URLs one after another and rank them")
    benchmark_parser.add_argument("urls", nargs="+", help="URLs to benchmark")
    benchmark_parser.add_argument("-d", "--device", dest="device", action=TrackingAction, default=DEFAULT_DEVICE, choices=VALID_DEVICES, help="Device: desktop or mobile")
    benchmark_parser.add_argument("--categories", dest="categories", action=TrackingAction, nargs="+", default=list(AUDIT_CATEGORIES), choices=AUDIT_CATEGORIES, help="Lighthouse categories")

    # --- history ---
    history_parser = subparsers.add_parser("history", help="Show or export past runs")
    history_parser.add_argument("--csv", dest="csv", action=TrackingStoreTrueAction, default=False, help="Export history as CSV")
    history_parser.add_argument("-o", "--output", dest="output", action=TrackingAction, default=None, help="Explicit CSV path (overrides auto-naming)")
    history_parser.add_argument("--output-dir", dest="output_dir", action=TrackingAction, default=DEFAULT_OUTPUT_DIR, help="Directory for auto-named CSV files")
    history_parser.add_argument("--clear", dest="clear", action=TrackingStoreTrueAction, default=False, help="Delete all history entries")

    # --- implemented ---
    implemented_parser = subparsers.add_parser("implemented", help="Mark opportunity IDs as implemented, or list them")
    implemented_parser.add_argument("ids", nargs="*", default=[], help="Opportunity IDs (e.g. unused-javascript)")
    implemented_parser.add_argument("--remove", dest="remove", action=TrackingStoreTrueAction, default=False, help="Unmark the given IDs")

    return parser


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def open_state_store(args: argparse.Namespace) -> KeyValueStore:
    if getattr(args, "no_save", False):
        return MemoryStore()
    return JsonFileStore(Path(args.state_file).expanduser())


def build_dashboard(args: argparse.Namespace, store: KeyValueStore | None = None) -> Dashboard:
    store = store if store is not None else open_state_store(args)
    client = AuditClient(
        api_key=getattr(args, "api_key", None),
        categories=getattr(args, "categories", None),
        timeout=getattr(args, "timeout", None),
    )
    return Dashboard(
        client=client,
        history=HistoryStore(store, capacity=getattr(args, "history_size", DEFAULT_HISTORY_SIZE)),
        implemented=ImplementedOpportunities(store),
        verbose=getattr(args, "verbose", False),
    )


def cmd_analyze(args: argparse.Namespace) -> None:
    """Analyze a URL, print the dashboard and write requested exports."""
    dashboard = build_dashboard(args)
    err_console.print(f"Analyzing {escape(args.url)} ({args.device})...")
    result = dashboard.analyze(args.url, args.device, use_cache=not getattr(args, "no_cache", False))
    if result is None:
        err_console.print(f"[red]Error:[/red] {dashboard.state.error}")
        sys.exit(1)

    if isinstance(result, DeviceComparison):
        out_console.print(render_snapshot(result.desktop, dashboard.implemented))
        out_console.print(render_snapshot(result.mobile, dashboard.implemented))
        out_console.print(render_comparison(result))
    else:
        out_console.print(render_snapshot(result, dashboard.implemented))

    primary = dashboard.state.results
    output_dir = getattr(args, "output_dir", DEFAULT_OUTPUT_DIR)
    written_files = []
    for export_format in getattr(args, "export", []) or []:
        if export_format == "json":
            written_files.append(write_json_export(primary, default_export_path(output_dir, "json", primary.device)))
        elif export_format == "pdf":
            written_files.append(write_pdf_report(primary, default_export_path(output_dir, "pdf", primary.device)))
    if written_files:
        err_console.print("\nExported:")
        for filepath in written_files:
            err_console.print(f"  {filepath}")


def cmd_benchmark(args: argparse.Namespace) -> None:
    """Analyze each URL sequentially and print a ranking; failures are skipped."""
    if args.device not in VALID_DEVICES:
        err_console.print(f"[red]Error:[/red] benchmark runs one device at a time, got '{args.device}'.")
        sys.exit(1)
    dashboard = build_dashboard(args)
    total = len(args.urls)

    def report(snapshot: MetricsSnapshot) -> None:
        done = len(dashboard.state.benchmark_results)
        err_console.print(f"  [{done}/{total}] {escape(snapshot.url)}: {snapshot.scores.performance}/100")

    results = dashboard.benchmark(args.urls, device=args.device, on_result=report)
    if not results:
        err_console.print("[red]Error:[/red] no URL could be analyzed.")
        sys.exit(1)
    out_console.print(render_benchmark(results))
    failed = total - len(results)
    if failed:
        err_console.print(f"  Failed: {failed}")


def cmd_history(args: argparse.Namespace) -> None:
    """Print past runs, optionally exporting them to CSV or clearing them."""
    store = open_state_store(args)
    history = HistoryStore(store, capacity=getattr(args, "history_size", DEFAULT_HISTORY_SIZE))

    if getattr(args, "clear", False):
        history.clear()
        err_console.print("History cleared.")
        return

    entries = history.load_all()
    if not entries:
        err_console.print("No history yet. Run `analyze` first.")
        return

    out_console.print(render_history(entries))

    if getattr(args, "csv", False) or getattr(args, "output", None):
        explicit_output = getattr(args, "output", None)
        if explicit_output:
            csv_path = Path(explicit_output).with_suffix(".csv")
        else:
            csv_path = default_export_path(getattr(args, "output_dir", DEFAULT_OUTPUT_DIR), "csv")
        err_console.print(f"History written to: {write_history_csv(entries, csv_path)}")


def cmd_implemented(args: argparse.Namespace) -> None:
    """Mark, unmark, or list implemented opportunity IDs."""
    implemented = ImplementedOpportunities(open_state_store(args))
    ids = getattr(args, "ids", [])
    if ids and getattr(args, "remove", False):
        implemented.unmark(*ids)
    elif ids:
        implemented.mark(*ids)

    marked = implemented.all()
    if not marked:
        out_console.print("No opportunities marked as implemented.")
        return
    for opportunity_id in marked:
        out_console.print(opportunity_id)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main() -> None:
    parser = build_argument_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    config_path = Path(args.config) if args.config else discover_config_path()
    config = load_config(config_path)

    profile_name = getattr(args, "profile", None)
    args = apply_profile(args, config, profile_name)

    commands = {
        "analyze": cmd_analyze,
        "benchmark": cmd_benchmark,
        "history": cmd_history,
        "implemented": cmd_implemented,
    }

    handler = commands.get(args.command)
    if handler:
        handler(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
