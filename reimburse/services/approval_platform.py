"""
Approval platform client (Lark / Feishu open API)

Provides the three calls the pipeline needs:
- Current status of an approval instance (fallback polling)
- Approvers currently assigned to an instance
- Direct messages carrying the aggregated audit result

Uses a tenant access token obtained from the app credentials.
"""
import json
import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from reimburse.models.audit import ApproverInfo
from reimburse.services.errors import PlatformError

logger = logging.getLogger(__name__)

# Refresh the cached token this many seconds before it expires.
TOKEN_REFRESH_MARGIN = 60


class ApprovalPlatformClient:
    """
    Usage:
        client = ApprovalPlatformClient(app_id, app_secret)
        status = await client.get_instance_status("INSTANCE-CODE")
    """

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        base_url: str = "https://open.feishu.cn",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.app_id = app_id
        self.app_secret = app_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    async def _send(
        self,
        operation: str,
        method: str,
        path: str,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None,
        headers: Optional[Dict] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                if method == "GET":
                    response = await client.get(url, headers=headers, params=params)
                else:
                    response = await client.post(url, headers=headers, params=params, json=data)
        except httpx.HTTPError as exc:
            raise PlatformError(operation, f"{type(exc).__name__}: {exc}") from exc

        try:
            result = response.json()
        except ValueError as exc:
            raise PlatformError(operation, f"non-JSON response (HTTP {response.status_code})") from exc

        code = result.get("code", 0)
        if response.status_code >= 400 or code != 0:
            raise PlatformError(
                operation,
                result.get("msg") or f"HTTP {response.status_code}",
                platform_code=code,
            )
        return result

    async def get_tenant_access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        if not self.app_id or not self.app_secret:
            raise PlatformError("auth", "app credentials not configured")

        result = await self._send(
            "auth",
            "POST",
            "/open-apis/auth/v3/tenant_access_token/internal",
            data={"app_id": self.app_id, "app_secret": self.app_secret},
        )
        token = result.get("tenant_access_token")
        if not token:
            raise PlatformError("auth", "response carried no tenant_access_token")
        expire = int(result.get("expire") or 7200)
        self._token = token
        self._token_expires_at = time.monotonic() + max(expire - TOKEN_REFRESH_MARGIN, 0)
        return token

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None,
    ) -> Dict[str, Any]:
        """Make authenticated API request."""
        token = await self.get_tenant_access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json; charset=utf-8",
        }
        return await self._send(operation, method, path, data=data, params=params, headers=headers)

    async def get_instance(self, instance_code: str) -> Dict[str, Any]:
        result = await self._request(
            "get_instance", "GET", f"/open-apis/approval/v4/instances/{instance_code}"
        )
        return result.get("data") or {}

    async def get_instance_status(self, instance_code: str) -> str:
        data = await self.get_instance(instance_code)
        return str(data.get("status") or "")

    async def get_approvers(self, instance_code: str) -> List[ApproverInfo]:
        """Approvers with a pending task on the instance, de-duplicated."""
        data = await self.get_instance(instance_code)
        approvers: List[ApproverInfo] = []
        seen = set()
        for task in data.get("task_list") or []:
            if str(task.get("status") or "").upper() != "PENDING":
                continue
            approver = ApproverInfo(
                user_id=task.get("user_id") or "",
                open_id=task.get("open_id") or "",
            )
            key = approver.recipient_id
            if not key or key in seen:
                continue
            seen.add(key)
            approvers.append(approver)
        return approvers

    async def send_notification(self, approver: ApproverInfo, text: str) -> str:
        """Send a text message to one approver; returns the platform message id."""
        if approver.open_id:
            receive_id_type, receive_id = "open_id", approver.open_id
        else:
            receive_id_type, receive_id = "user_id", approver.user_id
        if not receive_id:
            raise PlatformError("send_notification", "approver has no recipient id")

        result = await self._request(
            "send_notification",
            "POST",
            "/open-apis/im/v1/messages",
            data={
                "receive_id": receive_id,
                "msg_type": "text",
                "content": json.dumps({"text": text}, ensure_ascii=False),
            },
            params={"receive_id_type": receive_id_type},
        )
        message_id = (result.get("data") or {}).get("message_id") or ""
        logger.info("Sent notification to %s=%s (message %s)", receive_id_type, receive_id, message_id)
        return message_id
