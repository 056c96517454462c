"""
HTTP Request Service - Run a templated HTTP request for a row and map its response
"""

import asyncio
import base64
import json
import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import requests
from pydantic import BaseModel, Field

from atlas.core.cancellation import CancellationToken
from atlas.core.exceptions import HttpRequestError
from atlas.models.grid import ColumnDefinition, HttpAuthType, HttpMethod, HttpRequestConfig, Row
from atlas.services.reference_service import (
    get_value_by_path,
    resolve_record_references,
    resolve_references,
)

logger = logging.getLogger(__name__)

BODYLESS_METHODS = (HttpMethod.GET, HttpMethod.DELETE)


class HttpRequestResult(BaseModel):
    """Decoded response plus the column updates derived from response_mapping"""
    raw: Any
    status_code: int
    updates: Dict[str, str] = Field(default_factory=dict)


def apply_auth(config: HttpRequestConfig, url: str, headers: Dict[str, str]) -> Tuple[str, Dict[str, str]]:
    """Add credentials to the url or headers according to the auth type"""
    auth = config.auth
    headers = dict(headers)

    if auth.type == HttpAuthType.API_KEY:
        if auth.api_key_header and auth.api_key_value:
            headers[auth.api_key_header] = auth.api_key_value
        elif auth.api_key_query_param and auth.api_key_value:
            separator = "&" if "?" in url else "?"
            url = f"{url}{separator}{quote(auth.api_key_query_param, safe='')}={quote(auth.api_key_value, safe='')}"
    elif auth.type == HttpAuthType.BEARER:
        if auth.bearer_token:
            headers["Authorization"] = f"Bearer {auth.bearer_token}"
    elif auth.type == HttpAuthType.BASIC:
        if auth.basic_user and auth.basic_password:
            encoded = base64.b64encode(f"{auth.basic_user}:{auth.basic_password}".encode()).decode()
            headers["Authorization"] = f"Basic {encoded}"

    return url, headers


def map_response(
    raw: Any,
    response_mapping: Dict[str, str],
    columns: List[ColumnDefinition]
) -> Dict[str, str]:
    """
    Pick values out of a response by path and key them by column id

    Args:
        raw: Decoded response body
        response_mapping: JSON path -> column header
        columns: Sheet columns

    Returns:
        Column id -> value. Non-string values are JSON encoded; paths that
        are absent and headers with no column are skipped.
    """
    updates = {}
    for path, header in (response_mapping or {}).items():
        column = next((c for c in columns if c.header == header), None)
        if column is None:
            continue
        value = get_value_by_path(raw, path)
        if value is None:
            continue
        updates[column.id] = value if isinstance(value, str) else json.dumps(value)
    return updates


def build_request(config: HttpRequestConfig, row: Row, columns: List[ColumnDefinition]) -> Dict[str, Any]:
    """Resolve the request template for a row into requests.request kwargs"""
    url = resolve_references(config.url, row, columns)
    headers = resolve_record_references(config.headers, row, columns)
    body = resolve_references(config.body, row, columns) if config.body else None

    url, headers = apply_auth(config, url, headers)

    kwargs: Dict[str, Any] = {"method": config.method.value, "url": url, "headers": headers}
    if config.method not in BODYLESS_METHODS and body:
        kwargs["data"] = body.encode("utf-8")
        if not any(k.lower() == "content-type" for k in headers):
            headers["Content-Type"] = "application/json"
    return kwargs


class HttpRequestService:
    """Service for executing per-row HTTP requests"""

    def __init__(self, session: Optional[requests.Session] = None):
        self.session = session or requests.Session()

    async def execute(
        self,
        config: HttpRequestConfig,
        row: Row,
        columns: List[ColumnDefinition],
        token: Optional[CancellationToken] = None
    ) -> HttpRequestResult:
        """
        Send the request for one row

        Raises:
            HttpRequestError: transport failure or a non-2xx response
            BatchCancelled: the batch was stopped before sending
        """
        kwargs = build_request(config, row, columns)
        if token:
            token.raise_if_cancelled()

        try:
            response = await asyncio.to_thread(self.session.request, **kwargs)
        except requests.RequestException as e:
            raise HttpRequestError(f"Request to {kwargs['url']} failed: {e}") from e

        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                raw = response.json()
            except ValueError:
                raw = response.text
        else:
            raw = response.text

        if not response.ok:
            message = raw if isinstance(raw, str) else json.dumps(raw)
            raise HttpRequestError(f"HTTP {response.status_code}: {message}", response.status_code)

        logger.debug(f"{config.method.value} {kwargs['url']} -> {response.status_code}")
        return HttpRequestResult(
            raw=raw,
            status_code=response.status_code,
            updates=map_response(raw, config.response_mapping, columns)
        )


# Global instance
_http_request_service: Optional[HttpRequestService] = None


def get_http_request_service() -> HttpRequestService:
    """Get or create global HTTP request service instance"""
    global _http_request_service
    if _http_request_service is None:
        _http_request_service = HttpRequestService()
    return _http_request_service
