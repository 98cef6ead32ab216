from __future__ import annotations

import os
import time
from typing import Any, Callable, Dict, Optional

import httpx


ENV_API_BASE = "DRAFT_API_BASE"
ENV_API_TOKEN = "DRAFT_API_TOKEN"

_TRANSIENT_STATUSES = (429, 500, 502, 503, 504)


class DraftApiError(RuntimeError):
    """Base error for the remote draft API client."""


class DraftApiAuthError(DraftApiError):
    """The API rejected our credentials (401/403)."""


class DraftApiNotFoundError(DraftApiError):
    """The requested draft does not exist on the server."""


class DraftApiClient:
    """
    Minimal client for the proposal draft endpoints.

    Endpoints
    - POST  /drafts        -> {"draftId": ...}
    - GET   /drafts/{id}   -> draft record fields
    - PATCH /drafts/{id}   {"section": ..., "data": {...}} partial merge

    Notes
    - Retries transport errors, 429 and 5xx with exponential backoff,
      honoring a numeric `Retry-After` header when present.
    - Remote sync is best-effort; callers are expected to catch `DraftApiError`.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout: float = 10.0,
        max_attempts: int = 3,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self._base_url = base_url.rstrip("/")
        self._max_attempts = max(1, max_attempts)
        self._sleep = sleep
        self._owns_client = client is None
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.Client(base_url=self._base_url, timeout=timeout, headers=headers)

    @classmethod
    def from_env(cls, **kwargs: Any) -> Optional["DraftApiClient"]:
        """Build a client from DRAFT_API_BASE / DRAFT_API_TOKEN, or None if unset."""
        base = os.environ.get(ENV_API_BASE) or None
        if base is None:
            return None
        return cls(base, token=os.environ.get(ENV_API_TOKEN) or None, **kwargs)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "DraftApiClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def create_draft(self, fields: Optional[Dict[str, Any]] = None) -> str:
        data = self._request("POST", "/drafts", json_body=fields or {})
        draft_id = data.get("draftId") or data.get("id")
        if not draft_id:
            raise DraftApiError("Malformed response from draft API: missing draftId")
        return str(draft_id)

    def get_draft(self, draft_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/drafts/{draft_id}")

    def patch_section(self, draft_id: str, section: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("PATCH", f"/drafts/{draft_id}", json_body={"section": section, "data": data})

    # --------------- Internal ---------------
    def _request(self, method: str, path: str, *, json_body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        attempt = 0
        backoff = 0.5
        last_exc: Optional[Exception] = None
        while attempt < self._max_attempts:
            try:
                resp = self._client.request(method, path, json=json_body)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_exc = exc
            else:
                if 200 <= resp.status_code < 300:
                    if not resp.content:
                        return {}
                    try:
                        body = resp.json()
                    except ValueError as exc:
                        raise DraftApiError("Failed to parse JSON from draft API") from exc
                    if not isinstance(body, dict):
                        raise DraftApiError("Malformed response from draft API")
                    return body

                if resp.status_code in (401, 403):
                    raise DraftApiAuthError(f"draft API unauthorized (HTTP {resp.status_code})")
                if resp.status_code == 404:
                    raise DraftApiNotFoundError(f"draft not found: {path}")

                if resp.status_code in _TRANSIENT_STATUSES:
                    retry_after = None
                    header = resp.headers.get("Retry-After")
                    if header:
                        try:
                            retry_after = float(header)
                        except ValueError:
                            retry_after = None
                    attempt += 1
                    if attempt < self._max_attempts:
                        self._sleep(min(retry_after if retry_after is not None else backoff, 10.0))
                        backoff = min(backoff * 2, 8.0)
                    last_exc = DraftApiError(f"HTTP {resp.status_code} from draft API")
                    continue

                raise DraftApiError(f"HTTP {resp.status_code} from draft API: {resp.text[:200]}")

            # Transport error path
            attempt += 1
            if attempt < self._max_attempts:
                self._sleep(backoff)
                backoff = min(backoff * 2, 8.0)

        raise DraftApiError("draft API request failed after retries") from last_exc


__all__ = [
    "DraftApiClient",
    "DraftApiError",
    "DraftApiAuthError",
    "DraftApiNotFoundError",
]
