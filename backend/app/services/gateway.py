from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from backend.app.models import InstanceStatus, WhatsAppInstanceRecord

logger = logging.getLogger("whatsapp_inbox.gateway")


class GatewayError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class ConnectionCheck:
    success: bool
    message: str


@dataclass(frozen=True)
class InstanceStatusResult:
    status: InstanceStatus
    phone: Optional[str] = None


@dataclass(frozen=True)
class OutboundMedia:
    url: str
    type: Optional[str] = None


class GatewayClient:
    """HTTP client for one WhatsApp gateway instance.

    Every call carries the instance bearer key and the configured timeout. Retries are
    left to callers (the synchronous send route and the job queue).
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        instance_id: str,
        *,
        timeout: float = 15.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.instance_id = instance_id
        self._client = httpx.Client(
            base_url=self.api_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "GatewayClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _instance_path(self, action: str) -> str:
        return f"/instance/{self.instance_id}/{action}"

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise GatewayError(f"gateway request failed: {exc}") from exc

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise GatewayError(
                "gateway returned a non-JSON body", status_code=response.status_code
            ) from exc
        if not isinstance(data, dict):
            raise GatewayError("gateway returned an unexpected body", response.status_code)
        return data

    def test_connection(self) -> ConnectionCheck:
        try:
            response = self._request("GET", "/status")
        except GatewayError as exc:
            return ConnectionCheck(success=False, message=str(exc))
        if not response.is_success:
            return ConnectionCheck(
                success=False, message=f"gateway answered status {response.status_code}"
            )
        return ConnectionCheck(success=True, message="connection established")

    def get_qr_code(self) -> Optional[str]:
        response = self._request("GET", self._instance_path("qr"))
        if not response.is_success:
            raise GatewayError("qr code request rejected", status_code=response.status_code)
        return self._json(response).get("qr_code") or None

    def get_instance_status(self) -> InstanceStatusResult:
        response = self._request("GET", self._instance_path("status"))
        if not response.is_success:
            raise GatewayError("status request rejected", status_code=response.status_code)
        data = self._json(response)
        status = InstanceStatus.connected if data.get("connected") else InstanceStatus.disconnected
        return InstanceStatusResult(status=status, phone=data.get("phone_number"))

    def send_message(
        self, phone: str, message: str, media: Optional[OutboundMedia] = None
    ) -> str:
        payload: dict[str, Any] = {"phone": phone, "message": message}
        if media is not None:
            payload["media"] = {"url": media.url, "type": media.type}
        response = self._request("POST", self._instance_path("send"), json=payload)
        if not response.is_success:
            detail = "send rejected"
            try:
                body = response.json()
                if isinstance(body, dict) and body.get("message"):
                    detail = str(body["message"])
            except ValueError:
                pass
            raise GatewayError(detail, status_code=response.status_code)
        message_id = self._json(response).get("id")
        if not message_id:
            raise GatewayError("gateway response missing message id", response.status_code)
        logger.info("gateway_message_sent instance_id=%s message_id=%s", self.instance_id, message_id)
        return str(message_id)

    def logout(self) -> bool:
        return self._post_action("logout")

    def restart(self) -> bool:
        return self._post_action("restart")

    def _post_action(self, action: str) -> bool:
        try:
            response = self._request("POST", self._instance_path(action))
        except GatewayError as exc:
            logger.warning(
                "gateway_action_failed instance_id=%s action=%s error=%s",
                self.instance_id,
                action,
                exc,
            )
            return False
        return response.is_success


GatewayFactory = Callable[[str, str, str], GatewayClient]


def build_gateway_factory(
    timeout: float, transport: Optional[httpx.BaseTransport] = None
) -> GatewayFactory:
    def factory(api_url: str, api_key: str, instance_id: str) -> GatewayClient:
        return GatewayClient(api_url, api_key, instance_id, timeout=timeout, transport=transport)

    return factory


def client_for(factory: GatewayFactory, instance: WhatsAppInstanceRecord) -> GatewayClient:
    return factory(instance.api_url, instance.api_key, instance.instance_id)
