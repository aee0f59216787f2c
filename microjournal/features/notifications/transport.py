"""Push transports.

A transport takes one message and a batch of device tokens and reports an
outcome per token. A batch-wide failure (unreachable service, rejected
credentials) raises PushTransportError instead of returning results.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

from microjournal.core.errors import PushTransportError
from microjournal.core.logging import redact_token
from microjournal.models.notification import DeliveryOutcome, PushMessage, TokenResult

logger = logging.getLogger("microjournal.push")

FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"
FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"


class PushTransport(Protocol):
    def send_multicast(self, tokens: Sequence[str], message: PushMessage) -> List[TokenResult]:
        ...


def _error_details(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    error = body.get("error") if isinstance(body, dict) else None
    return error if isinstance(error, dict) else {}


def classify_fcm_response(token: str, response: httpx.Response) -> TokenResult:
    """Map one FCM v1 send response to a delivery outcome."""
    if 200 <= response.status_code < 300:
        return TokenResult(token, DeliveryOutcome.DELIVERED)

    error = _error_details(response)
    status = error.get("status", "")
    message = str(error.get("message", ""))
    codes = {
        detail.get("errorCode")
        for detail in error.get("details", []) or []
        if isinstance(detail, dict)
    }
    summary = f"{response.status_code} {status or ''} {message}".strip()

    if response.status_code == 404 or "UNREGISTERED" in codes or status == "NOT_FOUND":
        return TokenResult(token, DeliveryOutcome.UNREGISTERED, summary)
    if response.status_code == 400 and status == "INVALID_ARGUMENT" and "registration token" in message.lower():
        return TokenResult(token, DeliveryOutcome.UNREGISTERED, summary)
    return TokenResult(token, DeliveryOutcome.TRANSIENT, summary)


class FcmTransport:
    """Firebase Cloud Messaging over the HTTP v1 API.

    The v1 API has no multicast endpoint, so a batch is one request per token
    over a shared connection pool.
    """

    def __init__(
        self,
        project_id: str,
        credentials,
        *,
        client: Optional[httpx.Client] = None,
        timeout: float = 12.0,
    ):
        if not project_id:
            raise ValueError("FcmTransport requires a Firebase project id")
        self._project_id = project_id
        self._credentials = credentials
        self._client = client or httpx.Client(timeout=timeout)
        self._url = FCM_SEND_URL.format(project_id=project_id)

    @classmethod
    def from_service_account_file(cls, path: str, project_id: Optional[str] = None, **kwargs) -> "FcmTransport":
        credentials = service_account.Credentials.from_service_account_file(path, scopes=[FCM_SCOPE])
        return cls(project_id or credentials.project_id, credentials, **kwargs)

    def _access_token(self) -> str:
        if not self._credentials.valid:
            try:
                self._credentials.refresh(GoogleAuthRequest())
            except GoogleAuthError as exc:
                raise PushTransportError(f"FCM credential refresh failed: {exc}") from exc
        return self._credentials.token

    def send_multicast(self, tokens: Sequence[str], message: PushMessage) -> List[TokenResult]:
        if not tokens:
            return []
        headers = {"Authorization": f"Bearer {self._access_token()}"}
        results: List[TokenResult] = []
        unreachable = 0

        for token in tokens:
            payload = {
                "message": {
                    "token": token,
                    "notification": {"title": message.title, "body": message.body},
                    "data": dict(message.data),
                }
            }
            try:
                response = self._client.post(self._url, headers=headers, json=payload)
            except httpx.TransportError as exc:
                unreachable += 1
                results.append(TokenResult(token, DeliveryOutcome.TRANSIENT, f"transport: {exc}"))
                continue

            if response.status_code in (401, 403):
                raise PushTransportError(f"FCM rejected credentials ({response.status_code})")

            result = classify_fcm_response(token, response)
            if result.outcome is not DeliveryOutcome.DELIVERED:
                logger.info(
                    "push.token_error",
                    extra={"token": redact_token(token), "outcome": result.outcome.value, "error": result.error},
                )
            results.append(result)

        if unreachable == len(tokens):
            raise PushTransportError("FCM unreachable for the whole batch")
        return results

    def close(self) -> None:
        self._client.close()


class LoggingTransport:
    """Development transport: logs each message and reports it delivered."""

    def __init__(self):
        self.sent: List[tuple] = []

    def send_multicast(self, tokens: Sequence[str], message: PushMessage) -> List[TokenResult]:
        for token in tokens:
            self.sent.append((token, message))
        logger.info("push.stub_send", extra={"tokens": len(tokens), "title": message.title})
        return [TokenResult(token, DeliveryOutcome.DELIVERED) for token in tokens]


def build_transport(cfg) -> PushTransport:
    mode = (getattr(cfg, "PUSH_MODE", "stub") or "stub").lower()
    if mode == "fcm":
        return FcmTransport.from_service_account_file(
            cfg.FCM_CREDENTIALS_PATH,
            project_id=cfg.FCM_PROJECT_ID,
            timeout=cfg.PUSH_TIMEOUT_SECONDS,
        )
    if mode == "stub":
        return LoggingTransport()
    raise ValueError(f"Unknown PUSH_MODE: {mode}")
