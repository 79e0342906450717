import logging
from typing import Dict, List, Optional, cast

import httpx

from quota_pool.errors import UpstreamError

logger = logging.getLogger(__name__)

RETRY_INFO_TYPE = "type.googleapis.com/google.rpc.RetryInfo"
QUOTA_FAILURE_TYPE = "type.googleapis.com/google.rpc.QuotaFailure"


class GeminiClient:
    """The generation call: one request against one API key, no retries."""

    def __init__(self, http_client: httpx.AsyncClient):
        self.http_client = http_client

    async def generate_content(
        self, api_key: str, model: str, payload: Dict[str, object]
    ) -> Dict[str, object]:
        try:
            response = await self.http_client.post(
                f"/v1beta/models/{model}:generateContent",
                json=payload,
                headers={"x-goog-api-key": api_key},
            )
        except httpx.TimeoutException as exc:
            raise UpstreamError(f"Timeout calling Gemini: {exc}") from exc
        except httpx.RequestError as exc:
            raise UpstreamError(f"Request error calling Gemini: {exc}") from exc

        if response.status_code >= 400:
            raise UpstreamError(
                _error_message(response),
                status_code=response.status_code,
                retry_after=_retry_after(response),
            )

        try:
            return cast(Dict[str, object], response.json())
        except ValueError as exc:
            raise UpstreamError(
                "Malformed response from Gemini", status_code=response.status_code
            ) from exc


def _error_details(response: httpx.Response) -> Dict[str, object]:
    try:
        data = response.json()
    except ValueError:
        return {}
    if not isinstance(data, dict):
        return {}
    error_obj = data.get("error", {})
    if isinstance(error_obj, dict):
        return cast(Dict[str, object], error_obj)
    return {}


def _error_message(response: httpx.Response) -> str:
    """Upstream message plus any violated quota ids (they name the window)."""
    error_dict = _error_details(response)
    message = str(error_dict.get("message") or response.text or "")
    if not message:
        message = f"HTTP {response.status_code}"

    quota_ids: List[str] = []
    details = error_dict.get("details", [])
    if isinstance(details, list):
        for detail in details:
            if not isinstance(detail, dict) or detail.get("@type") != QUOTA_FAILURE_TYPE:
                continue
            for violation in detail.get("violations", []) or []:
                if isinstance(violation, dict) and violation.get("quotaId"):
                    quota_ids.append(str(violation["quotaId"]))

    if quota_ids:
        message = f"{message} [{', '.join(quota_ids)}]"
    return message


def _retry_after(response: httpx.Response) -> Optional[float]:
    header = response.headers.get("retry-after")
    if header:
        try:
            return float(header)
        except ValueError:
            logger.debug("Ignoring non-numeric Retry-After header: %s", header)

    details = _error_details(response).get("details", [])
    if not isinstance(details, list):
        return None
    for detail in details:
        if isinstance(detail, dict) and detail.get("@type") == RETRY_INFO_TYPE:
            delay = str(detail.get("retryDelay", "")).rstrip("s")
            try:
                return float(delay)
            except ValueError:
                return None
    return None
