import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from gzip import GzipFile
from io import BytesIO
from typing import Any, Optional, Union

import aiohttp
from dateutil.tz import tzutc

from localflags.utils import remove_trailing_slash
from localflags.version import VERSION

US_INGESTION_ENDPOINT = "https://us.i.posthog.com"
EU_INGESTION_ENDPOINT = "https://eu.i.posthog.com"
DEFAULT_HOST = US_INGESTION_ENDPOINT
USER_AGENT = "localflags/" + VERSION

LOCAL_EVALUATION_PATH = "/api/feature_flag/local_evaluation/"


def determine_server_host(host: Optional[str]) -> str:
    """Determines the server host to use."""
    host_or_default = host or DEFAULT_HOST
    trimmed_host = remove_trailing_slash(host_or_default)
    if trimmed_host in ("https://app.posthog.com", "https://us.posthog.com"):
        return US_INGESTION_ENDPOINT
    elif trimmed_host == "https://eu.posthog.com":
        return EU_INGESTION_ENDPOINT
    else:
        return host_or_default


@dataclass
class GetResponse:
    """Response of a conditional GET."""

    data: Any
    etag: Optional[str] = None
    not_modified: bool = False
    status: int = 200


def _timeout(timeout: Optional[float]) -> Optional[aiohttp.ClientTimeout]:
    if timeout is None:
        return None
    return aiohttp.ClientTimeout(total=timeout)


async def post(
    api_key: str,
    host: Optional[str] = None,
    path=None,
    gzip: bool = False,
    timeout: float = 15,
    session: Optional[aiohttp.ClientSession] = None,
    headers: Optional[dict] = None,
    **kwargs,
) -> Any:
    """Post the `kwargs` to the API, returning the decoded JSON body"""
    log = logging.getLogger("localflags")
    body = kwargs
    body["sentAt"] = datetime.now(tz=tzutc()).isoformat()
    url = remove_trailing_slash(host or DEFAULT_HOST) + path
    body["api_key"] = api_key
    data: Union[str, bytes] = json.dumps(body, cls=DatetimeSerializer)
    log.debug("making request: %s to url: %s", data, url)
    request_headers = {
        **(headers or {}),
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
    }
    if gzip:
        request_headers["Content-Encoding"] = "gzip"
        buf = BytesIO()
        with GzipFile(fileobj=buf, mode="w") as gz:
            # 'data' was produced by json.dumps(),
            # whose default encoding is utf-8.
            gz.write(data.encode("utf-8"))  # type: ignore[union-attr]
        data = buf.getvalue()

    if session is None:
        async with aiohttp.ClientSession() as own_session:
            return await _post(own_session, url, data, request_headers, timeout)
    return await _post(session, url, data, request_headers, timeout)


async def _post(session, url, data, headers, timeout) -> Any:
    async with session.post(
        url, data=data, headers=headers, timeout=_timeout(timeout)
    ) as res:
        return await _process_response(res, success_message=f"POST {url} completed successfully")


async def _process_response(res, success_message: str) -> Any:
    log = logging.getLogger("localflags")
    if res.status == 200:
        log.debug(success_message)
        response = await res.json(content_type=None)
        # Handle quota limited flag responses by raising a specific error.
        # Other products also appear in quotaLimited, only feature flags matter here.
        if (
            isinstance(response, dict)
            and isinstance(response.get("quotaLimited"), list)
            and "feature_flags" in response["quotaLimited"]
        ):
            log.warning(
                "[FEATURE FLAGS] Feature flags quota limited, resetting feature flag data. "
                "Learn more about billing limits at https://posthog.com/docs/billing/limits-alerts"
            )
            raise QuotaLimitError(res.status, "Feature flags quota limited")
        return response
    try:
        payload = await res.json(content_type=None)
        log.debug("received response: %s", payload)
        raise APIError(res.status, payload["detail"])
    except (KeyError, TypeError, ValueError):
        raise APIError(res.status, await res.text())


async def flags(
    api_key: str,
    host: Optional[str] = None,
    gzip: bool = False,
    timeout: float = 15,
    session: Optional[aiohttp.ClientSession] = None,
    headers: Optional[dict] = None,
    **kwargs,
) -> Any:
    """Post the `kwargs` to the remote flag evaluation endpoint"""
    return await post(
        api_key, host, "/flags/?v=2", gzip, timeout, session, headers, **kwargs
    )


async def batch_post(
    api_key: str,
    host: Optional[str] = None,
    gzip: bool = False,
    timeout: float = 15,
    session: Optional[aiohttp.ClientSession] = None,
    **kwargs,
) -> Any:
    """Post the `kwargs` to the batch API endpoint for events"""
    return await post(api_key, host, "/batch/", gzip, timeout, session, **kwargs)


async def get(
    api_key: str,
    url: str,
    host: Optional[str] = None,
    timeout: Optional[float] = None,
    etag: Optional[str] = None,
    session: Optional[aiohttp.ClientSession] = None,
    headers: Optional[dict] = None,
) -> GetResponse:
    """
    Make a GET request with optional ETag support.

    If an etag is provided, sends an If-None-Match header. Returns a GetResponse
    with not_modified=True on 304, keeping the request etag when the server did
    not send a new one.
    """
    full_url = remove_trailing_slash(host or DEFAULT_HOST) + url
    request_headers = {
        **(headers or {}),
        "Authorization": f"Bearer {api_key}",
        "User-Agent": USER_AGENT,
    }
    if etag:
        request_headers["If-None-Match"] = etag

    if session is None:
        async with aiohttp.ClientSession() as own_session:
            return await _get(own_session, full_url, request_headers, timeout, etag)
    return await _get(session, full_url, request_headers, timeout, etag)


async def _get(session, url, headers, timeout, etag) -> GetResponse:
    log = logging.getLogger("localflags")
    async with session.get(url, headers=headers, timeout=_timeout(timeout)) as res:
        response_etag = res.headers.get("ETag")

        if res.status == 304:
            log.debug("GET %s returned 304 Not Modified", url)
            return GetResponse(
                data=None,
                etag=response_etag or etag,
                not_modified=True,
                status=res.status,
            )

        data = await _process_response(
            res, success_message=f"GET {url} completed successfully"
        )
        return GetResponse(
            data=data, etag=response_etag, not_modified=False, status=res.status
        )


class APIError(Exception):
    def __init__(self, status: Union[int, str], message: str):
        self.message = message
        self.status = status

    def __str__(self):
        msg = "[localflags] {0} ({1})"
        return msg.format(self.message, self.status)


class QuotaLimitError(APIError):
    pass


class DatetimeSerializer(json.JSONEncoder):
    def default(self, obj: Any):
        if isinstance(obj, (date, datetime)):
            return obj.isoformat()

        return json.JSONEncoder.default(self, obj)
