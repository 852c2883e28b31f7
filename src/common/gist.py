from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional

import httpx
from loguru import logger

from .errors import TransportError


DEFAULT_API_BASE = "https://api.github.com"
BACKUP_FILENAME = "rmount-config.json"
BACKUP_DESCRIPTION = "RMount Configuration Backup"


class GistBackupClient:
    """
    Minimal GitHub Gist client used as the remote backup transport.

    Notes
    - The backup is a single file (`rmount-config.json`) inside a private gist.
    - `upload()` edits the gist when an id is given, otherwise creates one, and
      returns the gist id either way.
    - Retries transport errors and 429/5xx with backoff, honoring `Retry-After`.
    - Every failure surfaces as `TransportError`.
    """

    def __init__(
        self,
        token: str,
        *,
        api_base: str = DEFAULT_API_BASE,
        timeout: float = 15.0,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not token:
            raise ValueError("token is required")
        self._owns_client = client is None
        self._client = client or httpx.Client(base_url=api_base.rstrip("/"), timeout=timeout)
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        self._sleep = sleep

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "GistBackupClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def upload(self, blob: str, existing_id: str = "") -> str:
        files = {BACKUP_FILENAME: {"content": blob}}
        if existing_id:
            data = self._request("PATCH", f"/gists/{existing_id}", {"files": files})
        else:
            data = self._request(
                "POST",
                "/gists",
                {"description": BACKUP_DESCRIPTION, "public": False, "files": files},
            )
        gist_id = data.get("id")
        if not isinstance(gist_id, str) or not gist_id:
            raise TransportError("Malformed response from GitHub: missing gist id")
        logger.info(f"Uploaded config backup to gist {gist_id}")
        return gist_id

    def download(self, gist_id: str) -> str:
        if not gist_id:
            raise ValueError("gist_id is required")
        data = self._request("GET", f"/gists/{gist_id}")
        files = data.get("files")
        entry = files.get(BACKUP_FILENAME) if isinstance(files, dict) else None
        if not isinstance(entry, dict):
            raise TransportError(f"Gist {gist_id} has no {BACKUP_FILENAME}")
        content = entry.get("content")
        if entry.get("truncated") and entry.get("raw_url"):
            content = self._fetch_raw(entry["raw_url"])
        if not isinstance(content, str):
            raise TransportError(f"Gist {gist_id} returned no content for {BACKUP_FILENAME}")
        return content

    def test_access(self) -> None:
        self._request("GET", "/user")

    # --------------- Internal ---------------
    def _fetch_raw(self, url: str) -> str:
        try:
            resp = self._client.get(url, headers=self._headers)
        except httpx.HTTPError as exc:
            raise TransportError("Failed to fetch raw gist content") from exc
        if resp.status_code != 200:
            raise TransportError(f"HTTP {resp.status_code} fetching raw gist content")
        return resp.text

    def _request(self, method: str, path: str, json_body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        attempt = 0
        backoff = 0.5
        last_exc: Optional[Exception] = None
        while attempt < 4:
            try:
                resp = self._client.request(method, path, json=json_body, headers=self._headers)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_exc = exc
            else:
                if resp.status_code in (200, 201):
                    try:
                        data = resp.json()
                    except ValueError as exc:
                        raise TransportError("Failed to parse JSON from GitHub API") from exc
                    if not isinstance(data, dict):
                        raise TransportError("Malformed response from GitHub API")
                    return data

                if resp.status_code in (429, 500, 502, 503, 504):
                    retry_after = None
                    ra = resp.headers.get("Retry-After")
                    if ra is not None:
                        try:
                            retry_after = float(ra)
                        except ValueError:
                            retry_after = None
                    delay = retry_after if retry_after is not None else backoff
                    self._sleep(min(delay, 10.0))
                    backoff = min(backoff * 2, 8.0)
                    attempt += 1
                    continue

                raise TransportError(f"HTTP {resp.status_code} from GitHub: {resp.text[:200]}")

            attempt += 1
            self._sleep(backoff)
            backoff = min(backoff * 2, 8.0)

        if last_exc is not None:
            raise TransportError("GitHub request failed after retries") from last_exc
        raise TransportError("GitHub request failed after retries")


__all__ = ["GistBackupClient", "BACKUP_FILENAME"]
