"""
HTTP remote API client.

Maps queue items onto a REST backend:

- create  -> POST   {base}/{entity}
- update  -> PUT    {base}/{entity}/{id}
- delete  -> DELETE {base}/{entity}/{id}
- upload  -> POST   {base}/{target_entity}/{target_id}/files (multipart)
             or     {base}/{upload_path} when the entry has no target
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from ..exceptions import TransientError
from ..models import UploadEntry
from .base import RemoteAPI, error_for_status

logger = logging.getLogger(__name__)


class HttpRemoteAPI(RemoteAPI):
    """aiohttp-based RemoteAPI implementation.

    Example:
        >>> api = HttpRemoteAPI("https://api.example.com/v1", auth_token=token)
        >>> await api.create("secrets", {"title": "Gmail"})
        >>> await api.close()
    """

    def __init__(
        self,
        base_url: str,
        auth_token: str | None = None,
        timeout: float = 30.0,
        upload_path: str = "attachments",
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: API root, e.g. https://api.example.com/v1
            auth_token: Optional bearer token
            timeout: Total request timeout in seconds
            upload_path: Endpoint for uploads without a target record
            session: Optional shared session (not closed by ``close``)
        """
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.upload_path = upload_path.strip("/")
        self._session = session
        self._owns_session = session is None

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout, headers=self._headers())
            self._owns_session = True
        return self._session

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        session = self._get_session()
        try:
            async with session.request(method, url, **kwargs) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise error_for_status(
                        response.status,
                        f"{method} {path} failed with {response.status}: {body[:200]}",
                    )
                if response.status == 204 or response.content_length == 0:
                    return None
                if response.content_type == "application/json":
                    return await response.json()
                return await response.text()
        except aiohttp.ClientError as e:
            raise TransientError(f"{method} {path} failed: {e}", cause=e) from e
        except asyncio.TimeoutError as e:
            raise TransientError(f"{method} {path} timed out", cause=e) from e

    async def create(self, entity: str, payload: dict[str, Any]) -> Any:
        return await self._request("POST", entity, json=payload)

    async def update(self, entity: str, record_id: str, payload: dict[str, Any]) -> Any:
        body = {k: v for k, v in payload.items() if k != "id"}
        return await self._request("PUT", f"{entity}/{record_id}", json=body)

    async def delete(self, entity: str, record_id: str) -> Any:
        return await self._request("DELETE", f"{entity}/{record_id}")

    def upload_url_path(self, entry: UploadEntry) -> str:
        if entry.target_id and entry.target_entity:
            return f"{entry.target_entity}/{entry.target_id}/files"
        return self.upload_path

    async def upload(self, entry: UploadEntry, checksum: str | None) -> Any:
        form = aiohttp.FormData()
        form.add_field(
            "file",
            entry.blob,
            filename=entry.metadata.name,
            content_type=entry.metadata.type or "application/octet-stream",
        )
        if checksum:
            form.add_field("checksum", checksum)
        if entry.target_id:
            form.add_field("target_id", entry.target_id)

        logger.debug(f"Uploading {entry.metadata.name} ({len(entry.blob)} bytes) to {self.upload_url_path(entry)}")
        return await self._request("POST", self.upload_url_path(entry), data=form)

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None
