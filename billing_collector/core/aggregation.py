"""
Usage aggregation by composite key.

Folds raw usage observations into one running total per billed line item.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, Mapping, Optional, Protocol, Sequence, Tuple

import structlog

from .keys import Key, encode_key

logger = structlog.get_logger(__name__)


class UnresolvedDimension(LookupError):
    """Raised when an observation cannot be mapped to a namespace or organization."""
    def __init__(self, entity_id: str, reason: str):
        super().__init__(f"{entity_id}: {reason}")
        self.entity_id = entity_id
        self.reason = reason


@dataclass(frozen=True)
class UsageObservation:
    """One raw usage sample for a cloud entity (bucket, database instance)."""
    entity_id: str
    value: float
    timestamp: Optional[datetime] = None
    attributes: Mapping[str, str] = field(default_factory=dict)


@dataclass
class Aggregated:
    """Running total of usage for one key, owned by one organization."""
    key: Key
    organization: str
    value: float = 0.0


class UsageSource(Protocol):
    """Produces raw observations for one billing cycle."""

    def fetch(self) -> Iterable[UsageObservation]:
        ...


class ProviderAdapter(Protocol):
    """Provider specific pieces of aggregation.

    ``split`` turns one observation into the measurements it bills. Most
    resources bill a single measurement and return the observation itself.
    """

    def split(self, observation: UsageObservation) -> Iterable[UsageObservation]:
        ...

    def key_fields(self, observation: UsageObservation, namespace: str) -> Sequence[str]:
        ...

    def quantity(self, observation: UsageObservation) -> float:
        ...


class DimensionResolver:
    """Maps entities to namespaces and namespaces to organizations.

    Both tables are built by the cluster collaborator from object labels.
    """

    def __init__(
        self,
        entity_namespaces: Mapping[str, str],
        namespace_organizations: Mapping[str, str],
        organization_override: Optional[str] = None
    ):
        """Initialize the resolver.

        Args:
            entity_namespaces: Entity identifier to claiming namespace
            namespace_organizations: Namespace to owning organization
            organization_override: Bill every known namespace to this organization
        """
        self.entity_namespaces = dict(entity_namespaces)
        self.namespace_organizations = dict(namespace_organizations)
        self.organization_override = organization_override or None

    def resolve(self, entity_id: str) -> Tuple[str, str]:
        """Resolve an entity to its namespace and organization.

        Raises:
            UnresolvedDimension: If either mapping is missing
        """
        namespace = self.entity_namespaces.get(entity_id)
        if not namespace:
            raise UnresolvedDimension(entity_id, "no namespace claims this entity")
        organization = self.namespace_organizations.get(namespace)
        if not organization:
            raise UnresolvedDimension(entity_id, f"namespace {namespace!r} has no organization")
        if self.organization_override:
            organization = self.organization_override
        return namespace, organization


def aggregate(
    observations: Iterable[UsageObservation],
    resolver: DimensionResolver,
    adapter: ProviderAdapter
) -> Dict[Key, Aggregated]:
    """Aggregate observations into per-key totals.

    Observations that cannot be resolved or keyed are logged and dropped,
    partial data never aborts aggregation. An observation split into several
    measurements is dropped as a whole. The organization of a key is the one
    of the last observation seen for it.

    Args:
        observations: Raw usage samples, in source order
        resolver: Entity and namespace lookup tables
        adapter: Provider adapter computing key fields and quantities

    Returns:
        Mapping from key to aggregated total, empty for empty input
    """
    totals: Dict[Key, Aggregated] = {}
    for observation in observations:
        try:
            namespace, organization = resolver.resolve(observation.entity_id)
            measurements = [
                (encode_key(*adapter.key_fields(measurement, namespace)), adapter.quantity(measurement))
                for measurement in adapter.split(observation)
            ]
        except UnresolvedDimension as e:
            logger.warning(
                "observation_dropped",
                entity=e.entity_id,
                reason=e.reason
            )
            continue
        except ValueError as e:
            # Key fields containing the delimiter, unparsable measurements
            logger.warning(
                "observation_dropped",
                entity=observation.entity_id,
                reason=str(e)
            )
            continue

        for key, quantity in measurements:
            entry = totals.get(key)
            if entry is None:
                entry = Aggregated(key=key, organization=organization)
                totals[key] = entry
            entry.organization = organization
            entry.value += quantity
        logger.debug(
            "observation_aggregated",
            entity=observation.entity_id,
            namespace=namespace,
            measurements=len(measurements)
        )

    logger.info("aggregation_complete", keys=len(totals))
    return totals
