"""
Unit tests for billing run orchestration.

Tests failure isolation, early exit, cancellation and seeding errors.
"""

import os
import tempfile
import threading
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from billing_collector.config.loader import CLOUDSCALE_CATALOG_PATH, DEFAULT_CATALOG_PATH, load_catalog
from billing_collector.core.aggregation import DimensionResolver, UsageObservation
from billing_collector.core.catalog import Catalog, Query
from billing_collector.core.pipeline import ReconciliationPipeline
from billing_collector.core.providers import CloudscaleObjectStorageAdapter, DBaaSAdapter, ObjectStorageAdapter
from billing_collector.storage.repository import CatalogSeedFailure, ReconciliationStore

BILLING_DATE = datetime(2023, 1, 11, 6, 0, 0, tzinfo=timezone.utc)


def _db(observation_plans):
    observations = [
        UsageObservation(f"db-{i}", 1.0, attributes={"plan": plan, "type": "pg"})
        for i, plan in enumerate(observation_plans)
    ]
    resolver = DimensionResolver(
        {f"db-{i}": f"ns-{i}" for i in range(len(observation_plans))},
        {f"ns-{i}": "acme" for i in range(len(observation_plans))}
    )
    return observations, resolver


@pytest.fixture
def store():
    with tempfile.TemporaryDirectory() as temp_dir:
        store = ReconciliationStore(load_catalog(str(DEFAULT_CATALOG_PATH)), db_path=os.path.join(temp_dir, "test.db"))
        store.initialize()
        yield store


class TestObjectStorageRun:
    """Test a complete object storage billing run."""

    def test_buckets_billed_per_namespace(self, store):
        """Verify buckets of a namespace end up in one fact."""
        observations = [
            UsageObservation("bucket-a", 5_000_000_000),
            UsageObservation("bucket-b", 7_000_000_000),
            UsageObservation("bucket-c", 1_000_000_000),
        ]
        resolver = DimensionResolver(
            {"bucket-a": "shop", "bucket-b": "shop", "bucket-c": "blog"},
            {"shop": "acme", "blog": "initech"}
        )
        report = ReconciliationPipeline(store, ObjectStorageAdapter(unit="GBDay")).run(
            observations, resolver, BILLING_DATE
        )

        assert report.ok
        assert report.aggregated == 2
        assert report.created == 2
        quantities = {f.category_source: f.quantity for f in store.exported_facts()}
        assert quantities == {"exoscale:shop": 12.0, "exoscale:blog": 1.0}

    def test_rerun_does_not_lower_quantity(self, store):
        """Verify a smaller recomputation leaves the billed value in place."""
        resolver = DimensionResolver({"bucket-a": "shop"}, {"shop": "acme"})
        pipeline = ReconciliationPipeline(store, ObjectStorageAdapter())

        pipeline.run([UsageObservation("bucket-a", 4_000_000_000)], resolver, BILLING_DATE)
        report = pipeline.run([UsageObservation("bucket-a", 2_000_000_000)], resolver, BILLING_DATE)

        assert report.not_advanced == 1
        assert report.written == 0
        assert store.exported_facts()[0].quantity == 4.0

    def test_organization_override(self, store):
        resolver = DimensionResolver({"bucket-a": "shop"}, {"shop": "acme"}, organization_override="vshn")
        ReconciliationPipeline(store, ObjectStorageAdapter()).run(
            [UsageObservation("bucket-a", 1_000_000_000)], resolver, BILLING_DATE
        )
        assert store.exported_facts()[0].tenant_source == "vshn"


class TestDBaaSRun:
    """Test a complete DBaaS billing run."""

    def test_instances_billed_per_plan(self, store):
        observations, resolver = _db(["startup-4", "business-8"])
        report = ReconciliationPipeline(store, DBaaSAdapter()).run(observations, resolver, BILLING_DATE)

        assert report.ok
        assert report.created == 2
        products = sorted(f.product_source for f in store.exported_facts())
        assert products == ["pg:exoscale:*:*:business-8", "pg:exoscale:*:*:startup-4"]

    def test_failed_record_is_isolated(self, store):
        """One record without a product fails, the others are still written."""
        observations, resolver = _db(["startup-4", "no-such-plan", "business-8", "premium-4"])
        report = ReconciliationPipeline(store, DBaaSAdapter()).run(observations, resolver, BILLING_DATE)

        assert not report.ok
        assert report.aggregated == 4
        assert report.created == 3
        assert len(report.failures) == 1
        assert report.failures[0].organization == "acme"
        assert "no product matches" in report.failures[0].reason
        assert len(store.exported_facts()) == 3

    def test_unresolved_observations_are_not_billed(self, store):
        observations, resolver = _db(["startup-4"])
        observations.append(UsageObservation("orphan", 1.0, attributes={"plan": "startup-4", "type": "pg"}))
        report = ReconciliationPipeline(store, DBaaSAdapter()).run(observations, resolver, BILLING_DATE)

        assert report.ok
        assert report.aggregated == 1

    def test_plan_with_delimiter_is_not_billed(self, store):
        """Verify an unencodable plan is dropped and the other databases are billed."""
        observations, resolver = _db(["startup-4", "startup;4"])
        report = ReconciliationPipeline(store, DBaaSAdapter()).run(observations, resolver, BILLING_DATE)

        assert report.ok
        assert report.aggregated == 1
        assert report.created == 1

    def test_namespace_with_delimiter_is_not_billed(self, store):
        observations = [
            UsageObservation("db-1", 1.0, attributes={"plan": "startup-4", "type": "pg"}),
            UsageObservation("db-2", 1.0, attributes={"plan": "startup-4", "type": "pg"}),
        ]
        resolver = DimensionResolver({"db-1": "shop", "db-2": "sh;op"}, {"shop": "acme", "sh;op": "acme"})
        report = ReconciliationPipeline(store, DBaaSAdapter()).run(observations, resolver, BILLING_DATE)

        assert report.ok
        assert report.created == 1
        assert [f.category_source for f in store.exported_facts()] == ["exoscale:shop"]


class TestCloudscaleRun:
    """Test a complete cloudscale bucket billing run."""

    @pytest.fixture
    def cloudscale_store(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            store = ReconciliationStore(
                load_catalog(str(CLOUDSCALE_CATALOG_PATH)),
                db_path=os.path.join(temp_dir, "test.db")
            )
            store.initialize()
            yield store

    def test_storage_traffic_and_requests_billed(self, cloudscale_store):
        """Verify one bucket becomes one fact per non-zero measurement."""
        observations = [
            UsageObservation("bucket-a", 5_000_000_000, attributes={"sent_bytes": "2000000000", "requests": "1500"}),
            UsageObservation("bucket-b", 0, attributes={"requests": "500"}),
        ]
        resolver = DimensionResolver(
            {"bucket-a": "example-project", "bucket-b": "next-big-thing"},
            {"example-project": "example-company", "next-big-thing": "big-corporation"}
        )
        report = ReconciliationPipeline(cloudscale_store, CloudscaleObjectStorageAdapter()).run(
            observations, resolver, BILLING_DATE
        )

        assert report.ok
        assert report.created == 4
        quantities = {
            (f.tenant_source, f.query_name): f.quantity for f in cloudscale_store.exported_facts()
        }
        assert quantities == {
            ("example-company", "appcat-cloudscale-object-storage-storage:cloudscale"): 5.0,
            ("example-company", "appcat-cloudscale-object-storage-traffic-out:cloudscale"): 2.0,
            ("example-company", "appcat_object-storage-requests:cloudscale"): 1.5,
            ("big-corporation", "appcat_object-storage-requests:cloudscale"): 0.5,
        }


class TestRunControl:
    """Test early exit, cancellation and seeding failures."""

    def test_nothing_to_bill(self, store):
        """Verify an empty run still seeds the catalog and writes no facts."""
        report = ReconciliationPipeline(store, DBaaSAdapter()).run([], DimensionResolver({}, {}), BILLING_DATE)

        assert report.ok
        assert report.aggregated == 0
        assert store.exported_facts() == []
        assert store.seed()["created"] == 0

    def test_cancelled_before_first_record(self, store):
        """Verify a set cancel event skips every record."""
        observations, resolver = _db(["startup-4", "business-8"])
        cancel = threading.Event()
        cancel.set()

        report = ReconciliationPipeline(store, DBaaSAdapter()).run(
            observations, resolver, BILLING_DATE, cancel=cancel
        )

        assert report.cancelled
        assert not report.ok
        assert report.skipped == 2
        assert store.exported_facts() == []

    def test_cancelled_between_records(self, store):
        """Verify a record in progress is finished before cancelling."""
        observations, resolver = _db(["startup-4", "business-8", "premium-4"])
        cancel = threading.Event()
        write_record = store.write_record

        def write_and_cancel(record):
            outcome = write_record(record)
            cancel.set()
            return outcome

        with patch.object(store, "write_record", side_effect=write_and_cancel):
            report = ReconciliationPipeline(store, DBaaSAdapter()).run(
                observations, resolver, BILLING_DATE, cancel=cancel
            )

        assert report.created == 1
        assert report.skipped == 2
        assert len(store.exported_facts()) == 1

    def test_seed_failure_aborts_run(self, store):
        """Verify nothing is billed when the catalog cannot be seeded."""
        store.catalog = Catalog(queries=[Query(name="q", description="Q", unit="GB", parent="missing")])
        observations, resolver = _db(["startup-4"])

        with pytest.raises(CatalogSeedFailure):
            ReconciliationPipeline(store, DBaaSAdapter()).run(observations, resolver, BILLING_DATE)
        assert store.exported_facts() == []
