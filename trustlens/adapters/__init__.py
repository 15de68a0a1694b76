"""Evidence adapters.

Five adapters implement the EvidenceSource interface. Provenance and
Perceptual-Duplicate form the cheap stage; Manipulation, Web-Presence and
Identity form the expensive stage that only runs when a job is escalated.
"""

from typing import Dict, List, Mapping, Optional, Tuple

from trustlens.adapters.base import EvidenceAdapter, EvidenceSource
from trustlens.adapters.identity import IdentityAdapter
from trustlens.adapters.manipulation import ManipulationAdapter
from trustlens.adapters.perceptual import PerceptualDuplicateAdapter
from trustlens.adapters.providers import (
    HTTPProviderClient,
    ProviderClient,
    RecordedProviderClient,
    UnconfiguredProviderClient,
    build_provider_client,
)
from trustlens.adapters.provenance import ProvenanceAdapter
from trustlens.adapters.web_presence import WebPresenceAdapter, classify_domain
from trustlens.config import PipelineSettings
from trustlens.models import CHEAP_ADAPTERS, EXPENSIVE_ADAPTERS, AdapterName

ADAPTER_CLASSES = {
    AdapterName.PROVENANCE: ProvenanceAdapter,
    AdapterName.PERCEPTUAL_DUPLICATE: PerceptualDuplicateAdapter,
    AdapterName.MANIPULATION: ManipulationAdapter,
    AdapterName.WEB_PRESENCE: WebPresenceAdapter,
    AdapterName.IDENTITY: IdentityAdapter,
}


def build_adapters(
    settings: PipelineSettings,
    clients: Optional[Mapping[AdapterName, ProviderClient]] = None,
) -> Tuple[List[EvidenceSource], List[EvidenceSource]]:
    """Construct the cheap and expensive adapter lists from settings.

    Args:
        settings: Pipeline settings (provider URLs, toggles, retry policy)
        clients: Optional provider clients overriding the configured ones

    Returns:
        (cheap_sources, expensive_sources)
    """
    clients = dict(clients or {})
    policy = settings.retry.adapter_policy()
    built: Dict[AdapterName, EvidenceSource] = {}

    for name, cls in ADAPTER_CLASSES.items():
        client = clients.get(name) or build_provider_client(name, settings)
        built[name] = cls(
            client,
            retry_policy=policy,
            enabled=settings.toggles.is_enabled(name),
        )

    return [built[n] for n in CHEAP_ADAPTERS], [built[n] for n in EXPENSIVE_ADAPTERS]


__all__ = [
    "EvidenceSource",
    "EvidenceAdapter",
    "ProvenanceAdapter",
    "PerceptualDuplicateAdapter",
    "ManipulationAdapter",
    "WebPresenceAdapter",
    "IdentityAdapter",
    "ProviderClient",
    "HTTPProviderClient",
    "RecordedProviderClient",
    "UnconfiguredProviderClient",
    "build_provider_client",
    "build_adapters",
    "classify_domain",
]
