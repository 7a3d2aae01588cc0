"""
Billing run orchestration.

Seeds the catalog, aggregates usage and reconciles every aggregated record
into the ledger.

Run Order:
1. Seed catalog - aborts the run on failure, nothing is billed
2. Aggregate - unresolvable observations are dropped
3. Reconcile - one transaction per record, failures are isolated
"""

import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional, Protocol

import structlog

from ..storage.models import Record
from ..storage.repository import FactOutcome, ReconciliationStore, RecordReconciliationFailure
from .aggregation import Aggregated, DimensionResolver, ProviderAdapter, UsageObservation, aggregate
from .keys import Key

logger = structlog.get_logger(__name__)


class RecordAdapter(ProviderAdapter, Protocol):
    """Provider adapter that can also build ledger records."""

    def to_record(self, aggregated: Aggregated, billing_date: datetime) -> Record:
        ...


@dataclass(frozen=True)
class RecordFailure:
    """One aggregated record that could not be reconciled."""
    key: Key
    organization: str
    reason: str


@dataclass
class RunReport:
    """Outcome of one billing run."""
    aggregated: int = 0
    created: int = 0
    advanced: int = 0
    not_advanced: int = 0
    skipped: int = 0
    cancelled: bool = False
    failures: List[RecordFailure] = field(default_factory=list)

    @property
    def written(self) -> int:
        """Records that changed the ledger."""
        return self.created + self.advanced

    @property
    def ok(self) -> bool:
        return not self.failures and not self.cancelled


class ReconciliationPipeline:
    """Runs one billing cycle for one kind of resource."""

    def __init__(self, store: ReconciliationStore, adapter: RecordAdapter):
        """Initialize the pipeline.

        Args:
            store: Ledger with the catalog to seed
            adapter: Provider adapter for the billed resource
        """
        self.store = store
        self.adapter = adapter

    def run(
        self,
        observations: Iterable[UsageObservation],
        resolver: DimensionResolver,
        billing_date: datetime,
        cancel: Optional[threading.Event] = None
    ) -> RunReport:
        """Reconcile observations into facts for `billing_date`.

        Cancellation is checked between record transactions, a record that is
        being written is always finished.

        Args:
            observations: Raw usage samples
            resolver: Entity and namespace lookup tables
            billing_date: Instant the facts apply to
            cancel: Optional event that stops the run at the next record

        Returns:
            Counts per outcome and the failed records

        Raises:
            CatalogSeedFailure: If the catalog cannot be seeded
        """
        self.store.seed()

        totals = aggregate(observations, resolver, self.adapter)
        report = RunReport(aggregated=len(totals))
        if not totals:
            logger.info("nothing_to_bill", billing_date=billing_date.isoformat())
            return report

        pending = sorted(totals.values(), key=lambda a: a.key)
        for index, aggregated in enumerate(pending):
            if cancel is not None and cancel.is_set():
                report.cancelled = True
                report.skipped = len(pending) - index
                logger.warning("run_cancelled", skipped=report.skipped)
                break
            self._reconcile(aggregated, billing_date, report)

        logger.info(
            "run_complete",
            aggregated=report.aggregated,
            created=report.created,
            advanced=report.advanced,
            not_advanced=report.not_advanced,
            failed=len(report.failures),
            skipped=report.skipped
        )
        return report

    def _reconcile(self, aggregated: Aggregated, billing_date: datetime, report: RunReport) -> None:
        try:
            record = self.adapter.to_record(aggregated, billing_date)
            outcome = self.store.write_record(record)
        except (RecordReconciliationFailure, sqlite3.Error, ValueError) as e:
            logger.error(
                "record_reconciliation_failed",
                key=aggregated.key,
                organization=aggregated.organization,
                value=aggregated.value,
                error=str(e)
            )
            report.failures.append(RecordFailure(
                key=aggregated.key,
                organization=aggregated.organization,
                reason=str(e)
            ))
            return

        if outcome is FactOutcome.CREATED:
            report.created += 1
        elif outcome is FactOutcome.ADVANCED:
            report.advanced += 1
        else:
            report.not_advanced += 1
