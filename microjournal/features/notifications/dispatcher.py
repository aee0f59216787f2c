"""
Bulk push delivery.

One call sends one message to a set of endpoints and reports per-endpoint
outcomes. Tokens the transport reports as permanently invalid are removed from
the registry as a side effect, so the registry heals itself over time.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from microjournal.core.errors import AppError, PushTransportError
from microjournal.core.metrics import push_deliveries_total, push_endpoints_pruned_total
from microjournal.features.notifications.registry import PushEndpointRegistry
from microjournal.features.notifications.transport import PushTransport
from microjournal.models.notification import (
    DeliveryOutcome,
    DeliveryReport,
    PushEndpoint,
    PushMessage,
    TokenResult,
)

logger = logging.getLogger("microjournal.push")


def _stringify(data: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    # FCM data payloads only carry strings
    return {str(k): "" if v is None else str(v) for k, v in (data or {}).items()}


class NotificationDispatcher:
    def __init__(self, transport: PushTransport, registry: PushEndpointRegistry):
        self._transport = transport
        self._registry = registry

    def send_bulk(
        self,
        endpoints: Iterable[PushEndpoint],
        title: str,
        body: str,
        data: Optional[Mapping[str, Any]] = None,
    ) -> DeliveryReport:
        """Send one notification to every endpoint.

        Raises:
            PushTransportError: the transport rejected the whole batch; nothing was counted.
        """
        unique: List[PushEndpoint] = list(dict.fromkeys(endpoints))
        if not unique:
            return DeliveryReport()

        message = PushMessage(title=title, body=body, data=_stringify(data))
        tokens = list(dict.fromkeys(ep.token for ep in unique if ep.token))
        by_token: Dict[str, TokenResult] = {}

        if tokens:
            try:
                results = self._transport.send_multicast(tokens, message)
            except PushTransportError:
                logger.error("push.batch_failed", extra={"tokens": len(tokens), "title": title})
                raise
            by_token = {r.token: r for r in results}

        per_endpoint: List[TokenResult] = []
        for ep in unique:
            if not ep.token:
                per_endpoint.append(TokenResult(ep.token, DeliveryOutcome.UNREGISTERED, "empty token"))
                continue
            result = by_token.get(ep.token)
            if result is None:
                logger.warning("push.result_missing", extra={"user_id": ep.user_id})
                result = TokenResult(ep.token, DeliveryOutcome.TRANSIENT, "no result from transport")
            per_endpoint.append(result)

        success = sum(1 for r in per_endpoint if r.outcome is DeliveryOutcome.DELIVERED)
        for r in per_endpoint:
            push_deliveries_total.inc(labels={"outcome": r.outcome.value})

        dead = list(dict.fromkeys(r.token for r in per_endpoint if r.outcome is DeliveryOutcome.UNREGISTERED))
        pruned = self._prune(dead)

        report = DeliveryReport(
            success_count=success,
            failure_count=len(per_endpoint) - success,
            pruned_tokens=tuple(pruned),
            results=tuple(per_endpoint),
        )
        logger.info(
            "push.batch_sent",
            extra={
                "endpoints": len(unique),
                "success": report.success_count,
                "failure": report.failure_count,
                "pruned": len(report.pruned_tokens),
            },
        )
        return report

    def notify_user(
        self,
        user_id: int,
        title: str,
        body: str,
        data: Optional[Mapping[str, Any]] = None,
    ) -> DeliveryReport:
        return self.send_bulk(self._registry.endpoints_for(user_id), title, body, data)

    def _prune(self, tokens: List[str]) -> List[str]:
        if not tokens:
            return []
        try:
            removed = self._registry.delete_tokens(tokens)
        except AppError as exc:
            logger.error("push.prune_failed", extra={"tokens": len(tokens), "error_code": exc.code})
            return []
        if not removed:
            logger.info("push.prune_nothing_removed", extra={"tokens": len(tokens)})
            return []
        push_endpoints_pruned_total.inc(amount=len(removed))
        logger.info("push.endpoints_pruned", extra={"tokens": len(removed)})
        return removed
