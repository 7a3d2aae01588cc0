"""
Provider adapters for usage aggregation.

Each adapter knows how one kind of cloud resource is keyed, measured and
turned into a billing record. Aggregation itself is shared.
"""

from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence
from zoneinfo import ZoneInfo

from ..storage.models import Record
from .aggregation import Aggregated, UnresolvedDimension, UsageObservation
from .keys import FIELD_DELIMITER, decode_key

DEFAULT_PROVIDER = "exoscale"
DEFAULT_TIMEZONE = "UTC"

# Time zone each provider reports daily usage in
PROVIDER_TIMEZONES = {
    "exoscale": "UTC",
    "cloudscale": "Europe/Zurich",
}

# Hour of the day, in the provider time zone, the provider reports daily storage usage
DAILY_BILLING_HOUR = 6

OBJECT_STORAGE_TYPE = "appcat_object-storage-storage"

# Exoscale service type to query name prefix
DBAAS_TYPES = ("pg", "mysql", "opensearch", "redis", "kafka")

CLOUDSCALE_PROVIDER = "cloudscale"
CLOUDSCALE_STORAGE = "appcat-cloudscale-object-storage-storage"
CLOUDSCALE_TRAFFIC_OUT = "appcat-cloudscale-object-storage-traffic-out"
CLOUDSCALE_REQUESTS = "appcat_object-storage-requests"

# Billed bucket measurement to query unit
CLOUDSCALE_UNITS = {
    CLOUDSCALE_STORAGE: "GBDay",
    CLOUDSCALE_TRAFFIC_OUT: "GB",
    CLOUDSCALE_REQUESTS: "KReq",
}

_UNIT_DIVISORS = {
    "GB": 1000 ** 3,
    "GBDay": 1000 ** 3,
    "KReq": 1000,
    "Instances": 1,
    "InstanceHour": 1,
}


def convert_unit(value: float, unit: str) -> float:
    """Convert a raw provider value (bytes, requests, instances) into a billing unit.

    Raises:
        ValueError: If the unit is unknown
    """
    if unit not in _UNIT_DIVISORS:
        raise ValueError(f"unknown query unit {unit!r}")
    return value / _UNIT_DIVISORS[unit]


def prorate(value: float, billing_hour: Optional[int]) -> float:
    """Spread a daily value over the hours left in the day.

    Intraday billing at hour `h` records the value once per remaining hour,
    so each record carries ``value / (24 - h)``.

    Args:
        value: Daily value
        billing_hour: Current hour of the day, or None for whole-day billing

    Returns:
        The prorated value

    Raises:
        ValueError: If billing_hour is outside 0-23
    """
    if billing_hour is None:
        return value
    if not 0 <= billing_hour <= 23:
        raise ValueError("billing_hour must be between 0 and 23")
    return value / (24 - billing_hour)


def provider_timezone(provider: str) -> str:
    """Time zone a provider reports daily usage in, UTC when unknown."""
    return PROVIDER_TIMEZONES.get(provider, DEFAULT_TIMEZONE)


def daily_billing_date(
    now: datetime,
    billing_hour: int = DAILY_BILLING_HOUR,
    timezone: str = DEFAULT_TIMEZONE
) -> datetime:
    """Billing date of daily storage usage: the previous day at the billing hour."""
    local = now.astimezone(ZoneInfo(timezone))
    previous_day = local - timedelta(days=1)
    return previous_day.replace(hour=billing_hour, minute=0, second=0, microsecond=0)


def hourly_billing_date(now: datetime) -> datetime:
    """Billing date of instance usage: the current hour."""
    return now.replace(minute=0, second=0, microsecond=0)


class ObjectStorageAdapter:
    """Buckets, aggregated per namespace by stored bytes."""

    def __init__(
        self,
        unit: str = "GB",
        billing_hour: Optional[int] = None,
        provider: str = DEFAULT_PROVIDER
    ):
        if unit not in _UNIT_DIVISORS:
            raise ValueError(f"unknown query unit {unit!r}")
        if billing_hour is not None and not 0 <= billing_hour <= 23:
            raise ValueError("billing_hour must be between 0 and 23")
        self.unit = unit
        self.billing_hour = billing_hour
        self.provider = provider

    @property
    def query_name(self) -> str:
        return f"{OBJECT_STORAGE_TYPE}:{self.provider}"

    def split(self, observation: UsageObservation) -> Iterable[UsageObservation]:
        return (observation,)

    def key_fields(self, observation: UsageObservation, namespace: str) -> Sequence[str]:
        return (namespace,)

    def quantity(self, observation: UsageObservation) -> float:
        return prorate(convert_unit(observation.value, self.unit), self.billing_hour)

    def to_record(self, aggregated: Aggregated, billing_date: datetime) -> Record:
        namespace = decode_key(aggregated.key)[0]
        return Record(
            tenant_source=aggregated.organization,
            category_source=f"{self.provider}:{namespace}",
            billing_date=billing_date,
            product_source=self.query_name,
            discount_source=self.query_name,
            query_name=self.query_name,
            value=aggregated.value
        )


class DBaaSAdapter:
    """Managed database instances, counted per namespace, plan and service type.

    Observations must carry ``plan`` and ``type`` attributes.
    """

    def __init__(self, provider: str = DEFAULT_PROVIDER):
        self.provider = provider

    def query_name(self, service_type: str) -> str:
        return f"{service_type}:{self.provider}"

    def split(self, observation: UsageObservation) -> Iterable[UsageObservation]:
        return (observation,)

    def key_fields(self, observation: UsageObservation, namespace: str) -> Sequence[str]:
        service_type = observation.attributes.get("type")
        if service_type not in DBAAS_TYPES:
            raise UnresolvedDimension(observation.entity_id, f"unknown database type {service_type!r}")
        plan = observation.attributes.get("plan")
        if not plan:
            raise UnresolvedDimension(observation.entity_id, "database has no plan")
        if FIELD_DELIMITER in plan:
            raise UnresolvedDimension(observation.entity_id, f"plan {plan!r} contains {FIELD_DELIMITER!r}")
        return (namespace, plan, service_type)

    def quantity(self, observation: UsageObservation) -> float:
        return 1.0

    def to_record(self, aggregated: Aggregated, billing_date: datetime) -> Record:
        namespace, plan, service_type = decode_key(aggregated.key)
        query = self.query_name(service_type)
        source = ":".join([query, aggregated.organization, namespace, plan])
        return Record(
            tenant_source=aggregated.organization,
            category_source=f"{self.provider}:{namespace}",
            billing_date=billing_date,
            product_source=source,
            discount_source=source,
            query_name=query,
            value=aggregated.value
        )


class CloudscaleObjectStorageAdapter:
    """Cloudscale buckets, billed per namespace for storage, outgoing traffic and requests.

    One bucket observation carries stored bytes as its value and the
    ``sent_bytes`` and ``requests`` of the day as attributes. It is split
    into one measurement per billed query, zero measurements are not billed.
    """

    def __init__(self, zone: str = CLOUDSCALE_PROVIDER):
        self.zone = zone

    def query_name(self, query: str) -> str:
        return f"{query}:{self.zone}"

    def split(self, observation: UsageObservation) -> Iterable[UsageObservation]:
        values = {
            CLOUDSCALE_STORAGE: observation.value,
            CLOUDSCALE_TRAFFIC_OUT: float(observation.attributes.get("sent_bytes", 0)),
            CLOUDSCALE_REQUESTS: float(observation.attributes.get("requests", 0)),
        }
        return [
            UsageObservation(
                entity_id=observation.entity_id,
                value=value,
                timestamp=observation.timestamp,
                attributes={"query": query}
            )
            for query, value in values.items()
            if value
        ]

    def key_fields(self, observation: UsageObservation, namespace: str) -> Sequence[str]:
        query = observation.attributes.get("query")
        if query not in CLOUDSCALE_UNITS:
            raise UnresolvedDimension(observation.entity_id, f"unknown bucket measurement {query!r}")
        return (query, namespace)

    def quantity(self, observation: UsageObservation) -> float:
        return convert_unit(observation.value, CLOUDSCALE_UNITS[observation.attributes["query"]])

    def to_record(self, aggregated: Aggregated, billing_date: datetime) -> Record:
        query, namespace = decode_key(aggregated.key)
        source = ":".join([query, self.zone, aggregated.organization, namespace])
        return Record(
            tenant_source=aggregated.organization,
            category_source=f"{self.zone}:{namespace}",
            billing_date=billing_date,
            product_source=source,
            discount_source=source,
            query_name=self.query_name(query),
            value=aggregated.value
        )
