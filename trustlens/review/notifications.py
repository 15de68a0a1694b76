"""
Webhook notifications for completed analyses.

Every active endpoint of the job's organization gets one delivery record and
one job on the webhook queue. Each webhook job makes a single POST attempt;
failed attempts are retried by the queue with backoff until the webhook
retry policy is used up, after which the delivery is marked FAILED and the
failure is written to the audit trail. Delivery problems never affect the
analysis job.
"""

import hashlib
import hmac
import json
import logging
from http.client import HTTPException
from typing import Callable, Dict, List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from trustlens.models import (
    DeliveryStatus,
    FusionResult,
    NotificationEndpoint,
    NotificationPayload,
    Priority,
    WebhookDelivery,
)
from trustlens.utils.audit import AuditLogger
from trustlens.utils.exceptions import NotificationFailed
from trustlens.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-TrustLens-Signature"

Sender = Callable[[str, bytes, Dict[str, str], float], int]


def sign_body(body: bytes, secret: str) -> str:
    """HMAC-SHA256 signature of a webhook body, as sent in the signature header."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(body: bytes, secret: str, signature: str) -> bool:
    return hmac.compare_digest(sign_body(body, secret), signature)


def http_post(url: str, body: bytes, headers: Dict[str, str], timeout: float) -> int:
    """POST ``body`` and return the HTTP status.

    Raises:
        NotificationFailed: On connection errors (including dropped replies),
            timeouts and non-2xx replies
    """
    req = Request(url, data=body, headers=headers, method="POST")
    try:
        with urlopen(req, timeout=timeout) as response:
            status = response.status
    except HTTPError as e:
        raise NotificationFailed(url, f"HTTP error {e.code}: {e.reason}", e.code) from e
    except URLError as e:
        raise NotificationFailed(url, f"connection error: {e.reason}") from e
    except TimeoutError as e:
        raise NotificationFailed(url, f"timed out after {timeout:.1f}s") from e
    except (HTTPException, OSError) as e:
        # Raised while reading the reply; urllib does not wrap these
        raise NotificationFailed(url, f"connection error: {type(e).__name__}: {e}") from e

    if not 200 <= status < 300:
        raise NotificationFailed(url, f"unexpected status {status}", status)
    return status


class NotificationDispatcher:
    """Fans completed results out to organization webhooks.

    Args:
        store: RecordStore holding endpoints and delivery records
        reference_base_url: Base URL of the result page sent in the payload
        retry_policy: Webhook retry policy (attempts and backoff)
        queue: Webhook JobQueue; without one, deliveries run inline
        audit: Audit logger for permanent delivery failures
        sender: Callable doing the POST (default: urllib)
        timeout: Seconds allowed for one POST
    """

    def __init__(
        self,
        store,
        reference_base_url: str,
        retry_policy: Optional[RetryPolicy] = None,
        queue=None,
        audit: Optional[AuditLogger] = None,
        sender: Optional[Sender] = None,
        timeout: float = 10.0,
    ):
        self.store = store
        self.reference_base_url = reference_base_url.rstrip("/")
        self.retry_policy = retry_policy or RetryPolicy()
        self.queue = queue
        self.audit = audit
        self.sender = sender or http_post
        self.timeout = timeout

    def build_payload(self, result: FusionResult) -> NotificationPayload:
        return NotificationPayload(
            job_id=result.job_id,
            aggregated_score=result.aggregated_score,
            verdict=result.verdict,
            reference_url=f"{self.reference_base_url}/{result.job_id}",
            analysis_partial=result.analysis_partial,
        )

    def dispatch(self, result: FusionResult, organization_id: str) -> List[WebhookDelivery]:
        """Create a delivery per active endpoint and schedule (or run) it.

        Returns:
            The delivery records created, possibly empty
        """
        endpoints = self.store.endpoints_for_org(organization_id)
        if not endpoints:
            logger.debug(f"No webhook endpoints for organization {organization_id}")
            return []

        payload = self.build_payload(result).model_dump(mode="json")
        deliveries = []
        for endpoint in endpoints:
            delivery = self.store.create_delivery(
                WebhookDelivery(endpoint_id=endpoint.endpoint_id, job_id=result.job_id)
            )
            deliveries.append(delivery)
            message = {"delivery_id": delivery.delivery_id, "endpoint_id": endpoint.endpoint_id, "payload": payload}

            if self.queue is not None:
                self.queue.enqueue(message, priority=Priority.NORMAL, job_id=delivery.delivery_id)
            else:
                self._deliver_inline(endpoint, delivery, payload)

        logger.info(f"Dispatched {len(deliveries)} notification(s) for job {result.job_id}")
        return deliveries

    def handle(self, claimed) -> None:
        """Webhook queue handler: one delivery attempt per claim.

        Raises NotificationFailed while attempts remain so the queue retries
        with backoff. The final failed attempt is recorded and swallowed.
        """
        message = claimed.payload
        endpoint = self.store.get_endpoint(message["endpoint_id"])
        delivery_id = message["delivery_id"]

        try:
            status = self._send(endpoint, message["payload"])
        except NotificationFailed as e:
            if self.retry_policy.is_exhausted(claimed.attempt):
                self._give_up(endpoint, delivery_id, message["payload"]["job_id"], claimed.attempt, e)
                return
            self.store.update_delivery(
                delivery_id, DeliveryStatus.PENDING, claimed.attempt, last_error=e.reason, response_status=e.status
            )
            raise

        self.store.update_delivery(delivery_id, DeliveryStatus.DELIVERED, claimed.attempt, response_status=status)
        logger.info(f"Delivered notification {delivery_id} to {endpoint.url}")

    def _deliver_inline(self, endpoint: NotificationEndpoint, delivery: WebhookDelivery, payload: dict) -> None:
        attempts = 0

        def attempt() -> int:
            nonlocal attempts
            attempts += 1
            return self._send(endpoint, payload)

        try:
            status = self.retry_policy.call(
                attempt,
                retry_on=(NotificationFailed,),
                description=f"webhook {delivery.delivery_id}",
            )
        except NotificationFailed as e:
            self._give_up(endpoint, delivery.delivery_id, delivery.job_id, attempts, e)
            return
        self.store.update_delivery(delivery.delivery_id, DeliveryStatus.DELIVERED, attempts, response_status=status)

    def _send(self, endpoint: NotificationEndpoint, payload: dict) -> int:
        body = json.dumps(payload, sort_keys=True).encode("utf-8")
        headers = {"Content-Type": "application/json", "User-Agent": "trustlens-webhook"}
        if endpoint.secret:
            headers[SIGNATURE_HEADER] = sign_body(body, endpoint.secret)
        return self.sender(endpoint.url, body, headers, self.timeout)

    def _give_up(
        self,
        endpoint: NotificationEndpoint,
        delivery_id: str,
        job_id: str,
        attempts: int,
        error: NotificationFailed,
    ) -> None:
        logger.warning(f"Giving up on notification {delivery_id} to {endpoint.url} after {attempts} attempt(s): {error}")
        self.store.update_delivery(
            delivery_id, DeliveryStatus.FAILED, attempts, last_error=error.reason, response_status=error.status
        )
        if self.audit is not None:
            self.audit.log_notification_failed(job_id, endpoint.url, attempts, error.reason)
