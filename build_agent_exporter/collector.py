import asyncio
import logging
from collections.abc import Callable, Iterable
from contextlib import AbstractAsyncContextManager

from prometheus_client.metrics_core import GaugeMetricFamily, HistogramMetricFamily, Metric
from prometheus_client.registry import Collector
from prometheus_client.utils import floatToGoString

from .client import SourceClient
from .models import (
    AgentStateCount,
    HistogramObservation,
    JobCount,
    JobDuration,
    MetricRecord,
    ScrapeDuration,
)
from .pipeline import Pipeline

logger = logging.getLogger(__name__)

SourceFactory = Callable[[], AbstractAsyncContextManager[SourceClient]]

_JOB_COUNT_METRICS = {
    "queued": ("pool_queued_jobs", "Total of queued jobs for pool"),
    "running": ("pool_running_jobs", "Total of running jobs for pool"),
    "total": ("pool_total_jobs", "Total of jobs for pool"),
}

_JOB_DURATION_METRICS = {
    "total": ("pool_job_total_length_seconds", "Total length of job duration for pool"),
    "queue": ("pool_job_queue_length_seconds", "Length of time jobs waited in the queue for pool"),
    "run": ("pool_job_running_length_seconds", "Length of time jobs ran on an agent for pool"),
}


def _histogram_buckets(observation: HistogramObservation) -> list[tuple[str, float]]:
    buckets = [
        (floatToGoString(bound), float(count))
        for bound, count in zip(observation.bounds, observation.cumulative_counts)
    ]
    buckets.append(("+Inf", float(observation.count)))
    return buckets


def build_families(records: Iterable[MetricRecord]) -> list[Metric]:
    """Group metric records into Prometheus metric families, dropping empty ones."""
    agents = GaugeMetricFamily(
        "build_agents_total",
        "Total of installed build agents",
        labels=["enabled", "status", "pool"],
    )
    job_counts = {
        kind: GaugeMetricFamily(name, doc, labels=["pool"])
        for kind, (name, doc) in _JOB_COUNT_METRICS.items()
    }
    job_durations = {
        kind: HistogramMetricFamily(name, doc, labels=["pool"])
        for kind, (name, doc) in _JOB_DURATION_METRICS.items()
    }
    scrape = GaugeMetricFamily(
        "build_agents_total_scrape_duration_seconds",
        "Duration of time it took to scrape total of installed build agents",
    )

    for record in records:
        if isinstance(record, AgentStateCount):
            agents.add_metric(
                [str(record.enabled).lower(), record.status, record.pool], record.count
            )
        elif isinstance(record, JobCount):
            job_counts[record.kind].add_metric([record.pool], record.count)
        elif isinstance(record, JobDuration):
            observation = record.observation
            job_durations[record.kind].add_metric(
                [record.pool], _histogram_buckets(observation), observation.sum
            )
        elif isinstance(record, ScrapeDuration):
            scrape.add_metric([], record.seconds)
        else:
            logger.debug(f"Received unknown metric record type: {type(record)}")

    families = [agents, *job_counts.values(), *job_durations.values(), scrape]
    return [family for family in families if family.samples]


class BuildAgentCollector:
    """
    Runs one collection cycle against one server for every scrape.

    `prometheus_client` calls `collect` from the exposition thread; the cycle
    gets its own event loop there.
    """

    def __init__(
        self,
        name: str,
        source_factory: SourceFactory,
        *,
        ignore_hosted_pools: bool = True,
        max_concurrent_pools: int | None = None,
        cycle_timeout: float | None = None,
    ) -> None:
        self.name = name
        self._source_factory = source_factory
        self._ignore_hosted_pools = ignore_hosted_pools
        self._max_concurrent_pools = max_concurrent_pools
        self._cycle_timeout = cycle_timeout

    async def scrape(self) -> list[MetricRecord]:
        async with self._source_factory() as source:
            pipeline = Pipeline(
                source,
                server_name=self.name,
                exclude_hosted=self._ignore_hosted_pools,
                max_concurrency=self._max_concurrent_pools,
                timeout=self._cycle_timeout,
            )
            return await pipeline.run()

    def collect(self) -> Iterable[Metric]:
        # Other servers share the registry, so a broken scrape must not escape.
        try:
            records = asyncio.run(self.scrape())
        except Exception:
            logger.exception(
                f"Scrape of server {self.name} failed unexpectedly",
                extra={"server_name": self.name},
            )
            return []
        return build_families(records)


class LabelledCollector:
    """Adds constant labels to every sample another collector produces."""

    def __init__(self, collector: Collector, labels: dict[str, str]) -> None:
        self._collector = collector
        self._labels = dict(labels)

    def collect(self) -> Iterable[Metric]:
        for family in self._collector.collect():
            labelled = Metric(family.name, family.documentation, family.type, family.unit)
            labelled.samples = [
                sample._replace(labels={**sample.labels, **self._labels})
                for sample in family.samples
            ]
            yield labelled
