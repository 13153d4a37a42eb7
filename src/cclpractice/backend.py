"""HTTP client for the managed backend (functions, storage, tables)."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from .config import BackendConfig
from .errors import BackendError
from .models import Dialogue, DialogueSegment

logger = logging.getLogger(__name__)


class BackendClient:
    """
    Thin wrapper over the backend's REST surface. Every call either returns
    decoded JSON (or bytes for downloads) or raises BackendError.
    """

    def __init__(self, config: BackendConfig, http: Optional[requests.Session] = None):
        if not config.url:
            raise BackendError("Backend URL is not configured.")
        self.config = config
        self.base_url = config.url.rstrip("/")
        self._http = http or requests.Session()
        if config.anon_key:
            self._http.headers.update(
                {
                    "apikey": config.anon_key,
                    "Authorization": f"Bearer {config.anon_key}",
                }
            )

    # ------------------------ transport ------------------------

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", self.config.timeout_seconds)
        try:
            r = self._http.request(method, url, **kwargs)
        except requests.RequestException as exc:
            raise BackendError(f"{method} {url} failed: {exc}") from exc
        if r.status_code >= 400:
            raise BackendError(
                f"{method} {url} returned {r.status_code}: {r.text[:200]}",
                status_code=r.status_code,
            )
        return r

    def _json(self, r: requests.Response) -> Any:
        try:
            return r.json()
        except ValueError as exc:
            raise BackendError(f"Invalid JSON from {r.url}") from exc

    def invoke(self, function: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/functions/v1/{function}"
        logger.debug("Invoking %s", function)
        data = self._json(self._request("POST", url, json=body))
        if not isinstance(data, dict):
            raise BackendError(f"{function} returned a non-object response.")
        return data

    # ------------------------ storage ------------------------

    def get_signed_audio_url(self, path: str, expiry_seconds: Optional[int] = None) -> str:
        expires = expiry_seconds or self.config.signed_url_expiry_seconds
        bucket = self.config.audio_bucket
        url = f"{self.base_url}/storage/v1/object/sign/{bucket}/{quote(path.lstrip('/'))}"
        data = self._json(self._request("POST", url, json={"expiresIn": expires}))
        signed = None
        if isinstance(data, dict):
            signed = data.get("signedURL") or data.get("signedUrl")
        if not signed:
            raise BackendError(f"No signed URL received for {path}")
        if signed.startswith("http://") or signed.startswith("https://"):
            return signed
        return f"{self.base_url}/storage/v1/{signed.lstrip('/')}"

    def download(self, url: str) -> bytes:
        return self._request("GET", url).content

    # ------------------------ dialogues ------------------------

    def get_dialogue_segments(self, dialogue_id: str) -> List[DialogueSegment]:
        data = self.invoke("get-dialogue-segments", {"dialogueId": dialogue_id})
        if not data.get("success"):
            raise BackendError("Failed to fetch dialogue segments")
        rows = data.get("segments") or []
        if not isinstance(rows, list):
            raise BackendError("Segments payload is not a list.")
        segments = [DialogueSegment.from_row(row) for row in rows]
        return sorted(segments, key=lambda s: s.segment_order)

    def list_dialogues(self, language_id: Optional[str] = None) -> List[Dialogue]:
        params = {"select": "*,domains(title,color)", "order": "title"}
        if language_id:
            params["language_id"] = f"eq.{language_id}"
        data = self._json(
            self._request("GET", f"{self.base_url}/rest/v1/dialogues", params=params)
        )
        if not isinstance(data, list):
            raise BackendError("Dialogue listing is not a list.")
        return [Dialogue.from_row(row) for row in data]

    def get_dialogue(self, dialogue_id: str) -> Dialogue:
        params = {"select": "*,domains(title,color)", "id": f"eq.{dialogue_id}"}
        data = self._json(
            self._request("GET", f"{self.base_url}/rest/v1/dialogues", params=params)
        )
        if not isinstance(data, list) or not data:
            raise BackendError(f"Dialogue {dialogue_id} not found.")
        return Dialogue.from_row(data[0])

    # ------------------------ tables ------------------------

    def insert_row(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        r = self._request(
            "POST",
            f"{self.base_url}/rest/v1/{table}",
            json=row,
            headers={"Prefer": "return=representation"},
        )
        data = self._json(r)
        if isinstance(data, list):
            data = data[0] if data else {}
        return data

    def update_row(self, table: str, row_id: str, values: Dict[str, Any]) -> None:
        self._request(
            "PATCH",
            f"{self.base_url}/rest/v1/{table}",
            params={"id": f"eq.{row_id}"},
            json=values,
        )

    def close(self) -> None:
        self._http.close()
