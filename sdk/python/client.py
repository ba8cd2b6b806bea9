from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable

import httpx


logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_S = 60.0
_RETRYABLE_STATUS = {429, 503}


class TenantGuardApiError(Exception):
    """Non-2xx response carrying the flat error body."""

    def __init__(self, status_code: int, body: dict[str, Any]) -> None:
        super().__init__(f"{status_code} {body.get('code')}: {body.get('message')}")
        self.status_code = status_code
        self.body = body

    @property
    def code(self) -> str | None:
        return self.body.get("code")


def _retry_after_seconds(headers: httpx.Headers | dict[str, str] | None) -> float | None:
    if not headers:
        return None
    retry_after = headers.get("Retry-After")
    if retry_after:
        try:
            return float(retry_after)
        except ValueError:
            return None
    retry_ms = headers.get("X-RateLimit-Retry-After-Ms")
    if retry_ms:
        try:
            return float(retry_ms) / 1000.0
        except ValueError:
            return None
    return None


class TenantGuardClient:
    """Async client that forwards upstream identity headers and retries 429/503."""

    def __init__(
        self,
        *,
        user_id: str,
        tenant_id: str,
        role: str = "reader",
        permissions: list[str] | None = None,
        base_url: str = "http://localhost:8000",
        max_retries: int = 2,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"X-User-Id": user_id, "X-Tenant-Id": tenant_id, "X-User-Role": role}
        if permissions:
            headers["X-User-Permissions"] = ",".join(permissions)
        self._http = httpx.AsyncClient(base_url=base_url, headers=headers, transport=transport)
        self._max_retries = max_retries
        self.impersonation_token: str | None = None

    async def __aenter__(self) -> "TenantGuardClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        headers = dict(kwargs.pop("headers", None) or {})
        if self.impersonation_token:
            headers["X-Impersonation-Token"] = self.impersonation_token
        attempt = 0
        while True:
            response = await self._http.request(method, path, headers=headers, **kwargs)
            if response.status_code in _RETRYABLE_STATUS and attempt < self._max_retries:
                retry_after = _retry_after_seconds(response.headers)
                if retry_after is None:
                    retry_after = min(2.0, 0.25 * (2 ** attempt))
                await asyncio.sleep(retry_after)
                attempt += 1
                continue
            body = response.json() if response.content else {}
            if response.status_code >= 400:
                if isinstance(body, dict) and body.get("clearToken"):
                    self.impersonation_token = None
                raise TenantGuardApiError(response.status_code, body if isinstance(body, dict) else {})
            return body

    async def health(self) -> dict[str, Any]:
        return await self._request("GET", "/v1/health")

    async def issue_step_up(self, purpose: str) -> dict[str, Any]:
        return await self._request("POST", "/v1/step-up/challenges", json={"purpose": purpose})

    async def verify_step_up(self, purpose: str, code: str) -> dict[str, Any]:
        return await self._request("POST", "/v1/step-up/verify", json={"purpose": purpose, "code": code})

    async def start_impersonation(self, target_user_id: str, reason_code: str | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {"targetUserId": target_user_id}
        if reason_code:
            payload["reasonCode"] = reason_code
        body = await self._request("POST", "/v1/impersonation/start", json=payload)
        self.impersonation_token = body.get("token")
        return body

    async def impersonation_status(self) -> dict[str, Any]:
        return await self._request("GET", "/v1/impersonation/status")

    async def exit_impersonation(self) -> dict[str, Any]:
        body = await self._request("POST", "/v1/impersonation/exit")
        if body.get("clearToken"):
            self.impersonation_token = None
        return body

    async def entitlements(self) -> dict[str, Any]:
        return await self._request("GET", "/v1/entitlements")

    async def subscription_status(self) -> dict[str, Any]:
        return await self._request("GET", "/v1/subscription/status")

    async def module_access(self, module_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/v1/modules/{module_id}/access")


CollapseCallback = Callable[[dict[str, Any]], Awaitable[None] | None]


class ImpersonationWatcher:
    """Poll impersonation status and fire ``on_collapse`` once the session ends.

    The watcher stops after the callback fires or when ``stop()`` is called.
    Transient transport errors are logged and polling continues.
    """

    def __init__(
        self,
        client: TenantGuardClient,
        on_collapse: CollapseCallback,
        *,
        poll_interval_s: float | None = None,
    ) -> None:
        self._client = client
        self._on_collapse = on_collapse
        self._poll_interval_s = poll_interval_s
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    async def _fire(self, status: dict[str, Any]) -> None:
        result = self._on_collapse(status)
        if inspect.isawaitable(result):
            await result

    async def _run(self) -> None:
        while True:
            interval = self._poll_interval_s or DEFAULT_POLL_INTERVAL_S
            try:
                status = await self._client.impersonation_status()
            except TenantGuardApiError as exc:
                if exc.status_code == 401:
                    self._client.impersonation_token = None
                    await self._fire({"active": False, "code": exc.code})
                    return
                logger.warning("impersonation_watch_failed status=%s", exc.status_code)
            except httpx.HTTPError as exc:
                logger.warning("impersonation_watch_failed error=%s", type(exc).__name__)
            else:
                if not status.get("active"):
                    self._client.impersonation_token = None
                    await self._fire(status)
                    return
                if self._poll_interval_s is None and status.get("pollIntervalS"):
                    interval = float(status["pollIntervalS"])
            await asyncio.sleep(interval)
