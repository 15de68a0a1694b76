"""
Evidence provider clients.

A provider client performs ``check(artifact_ref, deadline)`` and returns the
provider's raw JSON document. Failures are raised as AdapterUnavailable (the
provider could not answer) or InvalidEvidenceShape (it answered garbage).
"""

import json
import logging
import threading
import time
from http.client import HTTPException
from typing import Any, Callable, Dict, Mapping, Optional, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from trustlens.config import PipelineSettings
from trustlens.models import AdapterName
from trustlens.utils.exceptions import AdapterUnavailable, InvalidEvidenceShape

logger = logging.getLogger(__name__)


class ProviderClient(Protocol):
    """Anything that can answer an evidence check."""

    label: str

    def check(self, artifact_ref: str, deadline: float, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        ...


class HTTPProviderClient:
    """
    JSON-over-HTTP provider client.

    POSTs ``{"artifact_ref": ..., **context}`` to the provider URL and expects
    a JSON object back. Uses urllib so no HTTP library is required.
    """

    def __init__(
        self,
        adapter: str,
        url: str,
        api_key: Optional[str] = None,
        label: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the client.

        Args:
            adapter: Adapter name, used in error messages
            url: Provider endpoint URL
            api_key: Optional bearer token
            label: Provider label recorded on evidence (default: URL host)
            clock: Monotonic clock the deadline is expressed in
        """
        self.adapter = adapter
        self.url = url
        self.api_key = api_key
        self.label = label or url.split("//", 1)[-1].split("/", 1)[0]
        self._clock = clock

    def check(self, artifact_ref: str, deadline: float, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        remaining = deadline - self._clock()
        if remaining <= 0:
            raise AdapterUnavailable(self.adapter, "deadline passed before request was sent")

        body = {"artifact_ref": artifact_ref}
        if context:
            body.update(context)

        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        req = Request(
            self.url,
            data=json.dumps(body).encode("utf-8"),
            headers=headers,
            method="POST",
        )

        try:
            with urlopen(req, timeout=remaining) as response:
                data = json.loads(response.read().decode("utf-8"))
        except HTTPError as e:
            raise AdapterUnavailable(self.adapter, f"HTTP error {e.code}: {e.reason}", e) from e
        except URLError as e:
            raise AdapterUnavailable(self.adapter, f"connection error: {e.reason}", e) from e
        except TimeoutError as e:
            raise AdapterUnavailable(self.adapter, f"request timed out after {remaining:.1f}s", e) from e
        except (HTTPException, OSError) as e:
            raise AdapterUnavailable(self.adapter, f"connection error: {type(e).__name__}: {e}", e) from e
        except json.JSONDecodeError as e:
            raise InvalidEvidenceShape(self.adapter, [f"invalid JSON response: {e}"]) from e

        if not isinstance(data, dict):
            raise InvalidEvidenceShape(self.adapter, ["response is not a JSON object"])

        return data


class UnconfiguredProviderClient:
    """Stand-in for an adapter whose provider endpoint is not configured."""

    label = "unconfigured"

    def __init__(self, adapter: str):
        self.adapter = adapter

    def check(self, artifact_ref: str, deadline: float, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        raise AdapterUnavailable(self.adapter, "no provider endpoint configured")


class RecordedProviderClient:
    """
    Replays recorded provider responses.

    Used for offline runs from a captured responses file and in tests.

    Args:
        adapter: Adapter name, used in error messages
        responses: Mapping of artifact_ref to the recorded JSON document
        default: Response for refs not present in ``responses``
        delay: Seconds to wait before answering
        failures: Number of initial calls that fail with AdapterUnavailable
        label: Provider label recorded on evidence
    """

    def __init__(
        self,
        adapter: str,
        responses: Optional[Mapping[str, Dict[str, Any]]] = None,
        default: Optional[Dict[str, Any]] = None,
        delay: float = 0.0,
        failures: int = 0,
        label: str = "recorded",
    ):
        self.adapter = adapter
        self.responses = dict(responses or {})
        self.default = default
        self.delay = delay
        self.failures = failures
        self.label = label
        self.calls = 0
        self._lock = threading.Lock()

    def check(self, artifact_ref: str, deadline: float, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        with self._lock:
            self.calls += 1
            call_number = self.calls

        if self.delay:
            time.sleep(self.delay)

        if call_number <= self.failures:
            raise AdapterUnavailable(self.adapter, f"recorded failure on call {call_number}")

        response = self.responses.get(artifact_ref, self.default)
        if response is None:
            raise AdapterUnavailable(self.adapter, f"no recorded response for {artifact_ref}")
        return dict(response)


def build_provider_client(adapter: AdapterName, settings: PipelineSettings) -> ProviderClient:
    """Create the provider client configured for ``adapter``."""
    url = settings.providers.for_adapter(adapter)
    if not url:
        logger.warning(f"No provider endpoint configured for {adapter.value}; checks will fail")
        return UnconfiguredProviderClient(adapter.value)
    return HTTPProviderClient(adapter.value, url, api_key=settings.providers.api_key)
