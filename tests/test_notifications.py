"""Tests for webhook notifications."""

import json
from http.client import RemoteDisconnected
from unittest.mock import MagicMock, Mock, patch
from urllib.error import HTTPError, URLError

import pytest

from trustlens.core.queue import JobQueue
from trustlens.models import DeliveryStatus, NotificationEndpoint, Verdict
from trustlens.review.notifications import (
    SIGNATURE_HEADER,
    NotificationDispatcher,
    http_post,
    sign_body,
    verify_signature,
)
from trustlens.utils.exceptions import NotificationFailed
from trustlens.utils.retry import RetryPolicy


@pytest.fixture
def endpoint(store):
    return store.add_endpoint(NotificationEndpoint(
        organization_id="org-acme", url="https://hooks.acme.test/trustlens", secret="s3cret",
    ))


@pytest.fixture
def make_dispatcher(store, audit):
    def _make(sender, queue=None, max_attempts=3):
        return NotificationDispatcher(
            store,
            "https://app.trustlens.test/analysis/",
            retry_policy=RetryPolicy(max_attempts=max_attempts, base_delay=0.0),
            queue=queue,
            audit=audit,
            sender=sender,
        )

    return _make


class TestSignatures:
    """Tests for HMAC body signing."""

    def test_sign_and_verify(self):
        body = b'{"job_id": "abc"}'
        signature = sign_body(body, "s3cret")

        assert signature.startswith("sha256=")
        assert verify_signature(body, "s3cret", signature)
        assert not verify_signature(body, "other", signature)
        assert not verify_signature(b'{"job_id": "abd"}', "s3cret", signature)


class TestInlineDelivery:
    """Tests for delivery without a webhook queue."""

    def test_no_endpoints(self, make_dispatcher, make_result):
        sender = Mock(return_value=200)

        assert make_dispatcher(sender).dispatch(make_result(), "org-acme") == []
        sender.assert_not_called()

    def test_delivers_signed_payload(self, make_dispatcher, make_result, endpoint, store):
        sender = Mock(return_value=200)
        result = make_result(verdict=Verdict.FAKE, score=12)

        deliveries = make_dispatcher(sender).dispatch(result, "org-acme")

        assert len(deliveries) == 1
        url, body, headers, timeout = sender.call_args[0]
        assert url == endpoint.url
        payload = json.loads(body)
        assert payload["event"] == "analysis.complete"
        assert payload["job_id"] == result.job_id
        assert payload["aggregated_score"] == 12
        assert payload["verdict"] == "FAKE"
        assert payload["reference_url"] == f"https://app.trustlens.test/analysis/{result.job_id}"
        assert verify_signature(body, "s3cret", headers[SIGNATURE_HEADER])

        stored = store.deliveries_for_job(result.job_id)[0]
        assert stored.status == DeliveryStatus.DELIVERED
        assert stored.attempts == 1
        assert stored.response_status == 200

    def test_unsigned_without_secret(self, make_dispatcher, make_result, store):
        store.add_endpoint(NotificationEndpoint(organization_id="org-acme", url="https://hooks.acme.test/plain"))
        sender = Mock(return_value=204)

        make_dispatcher(sender).dispatch(make_result(), "org-acme")

        headers = sender.call_args[0][2]
        assert SIGNATURE_HEADER not in headers

    def test_inactive_endpoint_skipped(self, make_dispatcher, make_result, store):
        store.add_endpoint(NotificationEndpoint(
            organization_id="org-acme", url="https://hooks.acme.test/old", active=False,
        ))
        sender = Mock(return_value=200)

        assert make_dispatcher(sender).dispatch(make_result(), "org-acme") == []

    def test_gives_up_after_retries(self, make_dispatcher, make_result, endpoint, store, audit):
        sender = Mock(side_effect=NotificationFailed(endpoint.url, "unexpected status 500", 500))
        result = make_result()

        make_dispatcher(sender).dispatch(result, "org-acme")

        assert sender.call_count == 3
        delivery = store.deliveries_for_job(result.job_id)[0]
        assert delivery.status == DeliveryStatus.FAILED
        assert delivery.attempts == 3
        assert delivery.last_error == "unexpected status 500"
        entries = audit.get_audit_trail(job_id=result.job_id, action="NOTIFICATION_FAILED")
        assert len(entries) == 1


class TestQueuedDelivery:
    """Tests for delivery through the webhook queue."""

    @pytest.fixture
    def queue(self, audit):
        return JobQueue("webhook", retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0), audit=audit)

    def test_dispatch_enqueues_one_job_per_endpoint(self, make_dispatcher, make_result, endpoint, store, queue):
        store.add_endpoint(NotificationEndpoint(organization_id="org-acme", url="https://second.acme.test/hook"))
        sender = Mock(return_value=200)

        deliveries = make_dispatcher(sender, queue=queue).dispatch(make_result(), "org-acme")

        assert len(deliveries) == 2
        assert queue.pending_count() == 2
        sender.assert_not_called()
        assert all(d.status == DeliveryStatus.PENDING for d in deliveries)

    def test_handle_delivers(self, make_dispatcher, make_result, endpoint, store, queue):
        sender = Mock(return_value=200)
        dispatcher = make_dispatcher(sender, queue=queue)
        result = make_result()
        delivery = dispatcher.dispatch(result, "org-acme")[0]

        dispatcher.handle(queue.claim(timeout=0))

        stored = store.deliveries_for_job(result.job_id)[0]
        assert stored.delivery_id == delivery.delivery_id
        assert stored.status == DeliveryStatus.DELIVERED

    def test_handle_raises_while_attempts_remain(self, make_dispatcher, make_result, endpoint, store, queue):
        sender = Mock(side_effect=NotificationFailed(endpoint.url, "connection error: refused"))
        dispatcher = make_dispatcher(sender, queue=queue)
        result = make_result()
        dispatcher.dispatch(result, "org-acme")

        with pytest.raises(NotificationFailed):
            dispatcher.handle(queue.claim(timeout=0))

        delivery = store.deliveries_for_job(result.job_id)[0]
        assert delivery.status == DeliveryStatus.PENDING
        assert delivery.attempts == 1
        assert delivery.last_error == "connection error: refused"

    def test_final_attempt_marks_failed(self, make_dispatcher, make_result, endpoint, store, queue, audit):
        sender = Mock(side_effect=NotificationFailed(endpoint.url, "connection error: refused"))
        dispatcher = make_dispatcher(sender, queue=queue)
        result = make_result()
        dispatcher.dispatch(result, "org-acme")

        for _ in range(2):
            claimed = queue.claim(timeout=0)
            with pytest.raises(NotificationFailed):
                dispatcher.handle(claimed)
            queue.nack(claimed.job_id, error="connection error: refused")

        claimed = queue.claim(timeout=0)
        assert claimed.attempt == 3
        dispatcher.handle(claimed)

        delivery = store.deliveries_for_job(result.job_id)[0]
        assert delivery.status == DeliveryStatus.FAILED
        assert delivery.attempts == 3
        assert len(audit.get_audit_trail(action="NOTIFICATION_FAILED")) == 1

    @patch("trustlens.review.notifications.urlopen")
    def test_dropped_connection_marks_failed(
        self, mock_urlopen, make_dispatcher, make_result, endpoint, store, queue, audit
    ):
        """A server closing the connection without a reply is retried, then recorded."""
        mock_urlopen.side_effect = RemoteDisconnected("Remote end closed connection without response")
        dispatcher = make_dispatcher(http_post, queue=queue)
        result = make_result()
        dispatcher.dispatch(result, "org-acme")

        for _ in range(2):
            claimed = queue.claim(timeout=0)
            with pytest.raises(NotificationFailed):
                dispatcher.handle(claimed)
            queue.nack(claimed.job_id, error="dropped")

        claimed = queue.claim(timeout=0)
        dispatcher.handle(claimed)
        queue.ack(claimed.job_id)

        delivery = store.deliveries_for_job(result.job_id)[0]
        assert mock_urlopen.call_count == 3
        assert delivery.status == DeliveryStatus.FAILED
        assert delivery.last_error.startswith("connection error: RemoteDisconnected")
        assert len(audit.get_audit_trail(job_id=result.job_id, action="NOTIFICATION_FAILED")) == 1


class TestHttpPost:
    """Tests for the urllib sender."""

    def _response(self, status):
        response = MagicMock()
        response.__enter__.return_value.status = status
        return response

    @patch("trustlens.review.notifications.urlopen")
    def test_success_returns_status(self, mock_urlopen):
        mock_urlopen.return_value = self._response(204)

        assert http_post("https://hooks.test/x", b"{}", {}, 5.0) == 204
        request = mock_urlopen.call_args[0][0]
        assert request.get_method() == "POST"

    @patch("trustlens.review.notifications.urlopen")
    def test_http_error(self, mock_urlopen):
        mock_urlopen.side_effect = HTTPError("https://hooks.test/x", 500, "Internal Server Error", None, None)

        with pytest.raises(NotificationFailed) as exc_info:
            http_post("https://hooks.test/x", b"{}", {}, 5.0)

        assert exc_info.value.status == 500

    @patch("trustlens.review.notifications.urlopen")
    def test_connection_error(self, mock_urlopen):
        mock_urlopen.side_effect = URLError("Name or service not known")

        with pytest.raises(NotificationFailed, match="connection error"):
            http_post("https://hooks.test/x", b"{}", {}, 5.0)

    @patch("trustlens.review.notifications.urlopen")
    def test_non_2xx_status(self, mock_urlopen):
        mock_urlopen.return_value = self._response(302)

        with pytest.raises(NotificationFailed) as exc_info:
            http_post("https://hooks.test/x", b"{}", {}, 5.0)

        assert exc_info.value.status == 302

    @pytest.mark.parametrize("error", [
        RemoteDisconnected("Remote end closed connection without response"),
        ConnectionResetError(104, "Connection reset by peer"),
    ])
    @patch("trustlens.review.notifications.urlopen")
    def test_dropped_reply(self, mock_urlopen, error):
        mock_urlopen.side_effect = error

        with pytest.raises(NotificationFailed, match="connection error"):
            http_post("https://hooks.test/x", b"{}", {}, 5.0)
