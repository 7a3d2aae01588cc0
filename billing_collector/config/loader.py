"""
Configuration management and loading.

Handles collector settings, the billing rule catalog and usage snapshots.
"""

from dataclasses import dataclass
from datetime import date, datetime, time
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from billing_collector.core.aggregation import DimensionResolver, UsageObservation
from billing_collector.core.catalog import Catalog, Discount, Product, Query, TimeRange
from billing_collector.core.logging import LOG_FORMATS, LOG_LEVELS
from billing_collector.core.providers import DEFAULT_PROVIDER, DBAAS_TYPES, provider_timezone

DEFAULT_CATALOG_PATH = Path(__file__).parent / "default_catalog.yaml"
CLOUDSCALE_CATALOG_PATH = Path(__file__).parent / "cloudscale_catalog.yaml"

# Packaged catalog per provider, DEFAULT_CATALOG_PATH for the others
PROVIDER_CATALOGS = {"cloudscale": CLOUDSCALE_CATALOG_PATH}


@dataclass(frozen=True)
class Settings:
    """Collector settings."""
    database: str = "billing.db"
    provider: str = DEFAULT_PROVIDER
    billing_hour: Optional[int] = None
    timezone: Optional[str] = None
    organization_override: Optional[str] = None
    catalog: Optional[str] = None
    log_level: str = "info"
    log_format: str = "console"

    def __post_init__(self):
        """Validate setting values."""
        if self.billing_hour is not None and not 0 <= self.billing_hour <= 23:
            raise ValueError("billing_hour must be between 0 and 23")
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of: {list(LOG_LEVELS)}")
        if self.log_format not in LOG_FORMATS:
            raise ValueError(f"log_format must be one of: {list(LOG_FORMATS)}")

    def load_catalog(self) -> Catalog:
        """Load the configured catalog, or the one packaged for the provider."""
        packaged = PROVIDER_CATALOGS.get(self.provider, DEFAULT_CATALOG_PATH)
        return load_catalog(self.catalog or str(packaged))

    def daily_timezone(self) -> str:
        """Time zone of daily billing dates, the provider's unless configured."""
        return self.timezone or provider_timezone(self.provider)


def _read_yaml(path: str, what: str) -> Dict[str, Any]:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"{what} file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in {what} file {path}: {e}")

    if not raw:
        raise ValueError(f"{what} file is empty")
    if not isinstance(raw, dict):
        raise ValueError(f"{what} file must contain a dictionary")
    return raw


def _check_keys(data: Dict, allowed: set, required: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
    for key in sorted(required):
        if key not in data:
            raise ValueError(f"Missing required '{key}' in {path}")


def _require_str(data: Dict, key: str, path: str) -> str:
    value = data[key]
    if not isinstance(value, str) or not value:
        raise ValueError(f"'{key}' in {path} must be a non-empty string")
    return value


def load_settings(path: str) -> Settings:
    """Load and validate collector settings from a YAML file.

    Args:
        path: Path to YAML settings file

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If the file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If the settings are invalid
    """
    raw = _read_yaml(path, "Settings")
    _check_keys(raw, set(Settings.__dataclass_fields__), set(), "settings")

    billing_hour = raw.get('billing_hour')
    if billing_hour is not None and (not isinstance(billing_hour, int) or isinstance(billing_hour, bool)):
        raise ValueError("'billing_hour' must be an integer")

    for key in ('database', 'provider', 'log_level', 'log_format'):
        if key in raw:
            _require_str(raw, key, "settings")
    for key in ('timezone', 'organization_override', 'catalog'):
        if raw.get(key) is not None:
            _require_str(raw, key, "settings")

    return Settings(**raw)


def _parse_instant(value: Any, path: str) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            raise ValueError(f"'{path}' must be an ISO 8601 timestamp")
    raise ValueError(f"'{path}' must be a timestamp")


def _parse_during(data: Dict, path: str) -> TimeRange:
    during = data.get('during')
    if during is None:
        return TimeRange()
    if not isinstance(during, dict):
        raise ValueError(f"'during' in {path} must be a dictionary")
    _check_keys(during, {'start', 'end'}, set(), f"{path}.during")
    return TimeRange(
        start=_parse_instant(during.get('start'), f"{path}.during.start"),
        end=_parse_instant(during.get('end'), f"{path}.during.end")
    )


def _parse_number(data: Dict, key: str, path: str) -> float:
    value = data[key]
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _parse_product(data: Dict, path: str) -> Product:
    _check_keys(data, {'source', 'target', 'amount', 'unit', 'during'}, {'source', 'amount', 'unit'}, path)
    target = data.get('target')
    if target is not None:
        target = str(target)
    return Product(
        source=_require_str(data, 'source', path),
        target=target,
        amount=_parse_number(data, 'amount', path),
        unit=_require_str(data, 'unit', path),
        during=_parse_during(data, path)
    )


def _parse_discount(data: Dict, path: str) -> Discount:
    _check_keys(data, {'source', 'discount', 'during'}, {'source', 'discount'}, path)
    return Discount(
        source=_require_str(data, 'source', path),
        discount=_parse_number(data, 'discount', path),
        during=_parse_during(data, path)
    )


def _parse_query(data: Dict, path: str) -> Query:
    _check_keys(
        data,
        {'name', 'description', 'unit', 'during', 'query', 'parent'},
        {'name', 'description', 'unit'},
        path
    )
    parent = data.get('parent')
    if parent is not None:
        parent = _require_str(data, 'parent', path)
    return Query(
        name=_require_str(data, 'name', path),
        description=str(data['description']),
        unit=_require_str(data, 'unit', path),
        during=_parse_during(data, path),
        query=str(data.get('query') or ""),
        parent=parent
    )


def _expand_dbaas(service_type: str, data: Dict, provider: str, path: str) -> Catalog:
    """Expand a DBaaS shorthand entry into per-plan products, a discount and a query."""
    if service_type not in DBAAS_TYPES:
        raise ValueError(f"Unknown database type in {path}, must be one of: {list(DBAAS_TYPES)}")
    _check_keys(data, {'description', 'target', 'plans'}, {'description', 'target', 'plans'}, path)

    plans = data['plans']
    if not isinstance(plans, dict) or not plans:
        raise ValueError(f"'plans' in {path} must be a non-empty dictionary")

    query_name = f"{service_type}:{provider}"
    products = []
    for plan, amount in plans.items():
        if not isinstance(amount, (int, float)) or isinstance(amount, bool):
            raise ValueError(f"Amount of plan '{plan}' in {path} must be a number")
        products.append(Product(
            source=":".join([query_name, "*", "*", str(plan)]),
            target=str(data['target']),
            amount=float(amount),
            unit="Instances"
        ))

    return Catalog(
        products=products,
        discounts=[Discount(source=service_type, discount=0.0)],
        queries=[Query(name=query_name, description=str(data['description']), unit="Instances")]
    )


def _parse_list(raw: Dict, key: str) -> List[Dict]:
    items = raw.get(key, [])
    if not isinstance(items, list):
        raise ValueError(f"'{key}' must be a list")
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValueError(f"{key}[{i}] must be a dictionary")
    return items


def load_catalog(path: str) -> Catalog:
    """Load and validate a billing catalog from a YAML file.

    Strict validation ensures a typo cannot silently drop a price.

    Args:
        path: Path to YAML catalog file

    Returns:
        Validated Catalog

    Raises:
        FileNotFoundError: If the file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If the catalog is invalid
    """
    raw = _read_yaml(path, "Catalog")
    _check_keys(raw, {'provider', 'products', 'discounts', 'queries', 'dbaas'}, set(), "catalog")

    provider = raw.get('provider', DEFAULT_PROVIDER)
    if not isinstance(provider, str) or not provider:
        raise ValueError("'provider' must be a non-empty string")

    products = [_parse_product(p, f"products[{i}]") for i, p in enumerate(_parse_list(raw, 'products'))]
    discounts = [_parse_discount(d, f"discounts[{i}]") for i, d in enumerate(_parse_list(raw, 'discounts'))]
    queries = [_parse_query(q, f"queries[{i}]") for i, q in enumerate(_parse_list(raw, 'queries'))]

    dbaas = raw.get('dbaas', {})
    if not isinstance(dbaas, dict):
        raise ValueError("'dbaas' must be a dictionary")
    for service_type, data in dbaas.items():
        if not isinstance(data, dict):
            raise ValueError(f"dbaas.{service_type} must be a dictionary")
        expanded = _expand_dbaas(service_type, data, provider, f"dbaas.{service_type}")
        products.extend(expanded.products)
        discounts.extend(expanded.discounts)
        queries.extend(expanded.queries)

    for what, sources in (
        ("product source", [p.source for p in products]),
        ("discount source", [d.source for d in discounts]),
        ("query name", [q.name for q in queries]),
    ):
        duplicates = {s for s in sources if sources.count(s) > 1}
        if duplicates:
            raise ValueError(f"Duplicate {what}s in catalog: {duplicates}")

    return Catalog(products=products, discounts=discounts, queries=queries)


@dataclass(frozen=True)
class UsageSnapshot:
    """Usage observations together with the lookup tables to resolve them."""
    observations: List[UsageObservation]
    entity_namespaces: Dict[str, str]
    namespace_organizations: Dict[str, str]

    def resolver(self, organization_override: Optional[str] = None) -> DimensionResolver:
        return DimensionResolver(
            self.entity_namespaces,
            self.namespace_organizations,
            organization_override=organization_override
        )


def _parse_mapping(raw: Dict, key: str) -> Dict[str, str]:
    mapping = raw.get(key, {})
    if not isinstance(mapping, dict):
        raise ValueError(f"'{key}' must be a dictionary")
    return {str(k): str(v) for k, v in mapping.items()}


def load_usage_snapshot(path: str) -> UsageSnapshot:
    """Load usage observations exported from a cluster and cloud provider.

    JSON snapshots are accepted as well since JSON is valid YAML.

    Raises:
        FileNotFoundError: If the file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If the snapshot is invalid
    """
    raw = _read_yaml(path, "Usage snapshot")
    _check_keys(raw, {'namespaces', 'entities', 'observations'}, {'observations'}, "usage snapshot")

    observations = []
    for i, item in enumerate(_parse_list(raw, 'observations')):
        where = f"observations[{i}]"
        _check_keys(
            item,
            {'entity', 'value', 'plan', 'type', 'sent_bytes', 'requests', 'timestamp'},
            {'entity'},
            where
        )
        attributes = {k: str(item[k]) for k in ('plan', 'type') if item.get(k) is not None}
        # Daily bucket traffic and requests, billed next to stored bytes
        for k in ('sent_bytes', 'requests'):
            if k in item:
                attributes[k] = str(_parse_number(item, k, where))
        observations.append(UsageObservation(
            entity_id=str(item['entity']),
            value=_parse_number(item, 'value', where) if 'value' in item else 1.0,
            timestamp=_parse_instant(item.get('timestamp'), f"{where}.timestamp"),
            attributes=attributes
        ))

    return UsageSnapshot(
        observations=observations,
        entity_namespaces=_parse_mapping(raw, 'entities'),
        namespace_organizations=_parse_mapping(raw, 'namespaces')
    )
