"""HTTP client for the managed backend (functions, REST tables, storage)."""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import httpx

from pinmectl.core.errors import BackendError
from pinmectl.core.model import BackendSettings, DeviceStatus

LOGGER = logging.getLogger(__name__)

TOKEN_FUNCTION = "issue-device-jwt"
TOKEN_DEBUG_FUNCTION = "issue-device-jwt-debug"
DEVICE_STATUS_COLUMNS = "device_id,last_seen,status,wifi_signal,wifi_ssid,updated_at"


@dataclass(frozen=True)
class SignedUpload:
    path: str
    token: str


class BackendClient:
    """Thin async wrapper over the backend's HTTP surface.

    The caller owns the lifetime; use ``async with BackendClient(...)`` or
    call :meth:`aclose`.
    """

    def __init__(
        self,
        settings: BackendSettings,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_s: float = 30.0,
    ) -> None:
        if not settings.url:
            raise BackendError("Backend URL is not configured (set backend.url or PINME_SUPABASE_URL)")
        self.settings = settings
        self.base_url = settings.url.rstrip("/")
        headers: dict[str, str] = {}
        if settings.anon_key:
            headers["apikey"] = settings.anon_key
        bearer = settings.access_token or settings.anon_key
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout_s)
        self._headers = headers

    async def __aenter__(self) -> BackendClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = {**self._headers, **kwargs.pop("headers", {})}
        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException:
            raise
        except httpx.HTTPError as exc:
            raise BackendError(f"{method} {path} failed: {exc}") from exc
        if response.status_code >= 400:
            raise BackendError(
                f"{method} {path} returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response, what: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise BackendError(f"{what} returned a non-JSON body: {response.text[:200]}") from exc

    async def invoke_function(self, name: str, body: dict[str, Any]) -> dict[str, Any]:
        response = await self._request("POST", f"/functions/v1/{name}", json=body)
        if not response.content:
            return {}
        data = self._json(response, f"Function {name}")
        if not isinstance(data, dict):
            raise BackendError(f"Function {name} returned a non-object body")
        return data

    async def issue_device_token(self, device_id: str, *, debug: bool = False) -> str | None:
        name = TOKEN_DEBUG_FUNCTION if debug else TOKEN_FUNCTION
        data = await self.invoke_function(name, {"device_id": device_id, "quick": True})
        token = data.get("token") or data.get("jwt")
        LOGGER.debug("%s body keys=%s token_len=%d", name, sorted(data), len(token or ""))
        return token or None

    async def upsert_device(self, device_id: str, *, owner_id: str, name: str = "Toy Reader") -> None:
        record = {
            "device_id": device_id,
            "name": name,
            "status": "offline",
            "user_id": owner_id,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        await self._request(
            "POST",
            "/rest/v1/devices",
            params={"on_conflict": "device_id"},
            json=record,
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
        )

    async def get_device_status(self, device_id: str) -> DeviceStatus | None:
        response = await self._request(
            "GET",
            "/rest/v1/devices",
            params={"device_id": f"eq.{device_id}", "select": DEVICE_STATUS_COLUMNS, "limit": "1"},
        )
        rows = self._json(response, "Device status query")
        if not isinstance(rows, list):
            raise BackendError(f"Device status query returned a non-list body: {str(rows)[:200]}")
        if not rows:
            return None
        row = rows[0]
        if not isinstance(row, dict):
            raise BackendError("Device status query returned a non-object row")
        signal = row.get("wifi_signal")
        return DeviceStatus(
            device_id=row.get("device_id") or device_id,
            status=row.get("status"),
            last_seen=row.get("last_seen"),
            wifi_signal=float(signal) if isinstance(signal, (int, float)) and not isinstance(signal, bool) else None,
            wifi_ssid=row.get("wifi_ssid"),
        )

    # Storage

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{bucket}/{quote(path)}"

    async def create_signed_upload(self, bucket: str, path: str) -> SignedUpload:
        response = await self._request("POST", f"/storage/v1/object/upload/sign/{bucket}/{quote(path)}")
        data = self._json(response, f"Signed upload for {bucket}/{path}")
        if not isinstance(data, dict):
            raise BackendError(f"Signed upload for {bucket}/{path} returned a non-object body")
        token = data.get("token")
        if not token:
            signed_url = str(data.get("url", ""))
            token = httpx.URL(signed_url).params.get("token") if signed_url else None
        if not token:
            raise BackendError(f"Signed upload for {bucket}/{path} returned no token")
        return SignedUpload(path=path, token=token)

    async def upload_to_signed_url(
        self,
        bucket: str,
        signed: SignedUpload,
        data: bytes,
        content_type: str,
    ) -> None:
        await self._request(
            "PUT",
            f"/storage/v1/object/upload/sign/{bucket}/{quote(signed.path)}",
            params={"token": signed.token},
            content=data,
            headers={"Content-Type": content_type, "x-upsert": "true"},
        )

    async def upload_via_function(
        self,
        function: str,
        *,
        filename: str,
        data: bytes,
        content_type: str,
        owner_id: str,
    ) -> str:
        encoded = base64.b64encode(data).decode("ascii")
        body = {
            "filename": filename,
            "base64": encoded,
            "dataUrl": f"data:{content_type};base64,{encoded}",
            "contentType": content_type,
            "userId": owner_id,
        }
        result = await self.invoke_function(function, body)
        url = result.get("publicUrl")
        if not url:
            raise BackendError(f"Function {function} returned no publicUrl")
        return str(url)
