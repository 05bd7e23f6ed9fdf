"""
Reduction of a pool's agents and jobs into metric records.

Everything here is a pure function of the `PipelineContext` it is given.
"""
from collections.abc import Iterable

from .models import (
    AgentStateCount,
    HistogramObservation,
    JobCount,
    JobDuration,
    MetricRecord,
    PipelineContext,
)


def linear_buckets(start: float, width: float, count: int) -> list[float]:
    return [start + width * (i + 1) for i in range(count)]


def exponential_buckets(start: float, factor: float, count: int) -> list[float]:
    return [start * factor**i for i in range(count)]


def job_length_buckets() -> tuple[float, ...]:
    """Fine steps for short jobs, widening towards a 90 minute tail."""
    bounds = linear_buckets(0, 15, 8)
    bounds += linear_buckets(bounds[-1], 30, 10)
    bounds += linear_buckets(bounds[-1], 60, 28)
    bounds += linear_buckets(bounds[-1], 300, 11)
    return tuple(bounds)


JOB_LENGTH_BUCKETS = job_length_buckets()
QUEUE_LENGTH_BUCKETS = tuple(exponential_buckets(1, 2, 10))


def observe(values: Iterable[float], bounds: tuple[float, ...]) -> HistogramObservation:
    samples = list(values)
    cumulative = tuple(sum(1 for v in samples if v <= bound) for bound in bounds)
    return HistogramObservation(
        bounds=bounds,
        cumulative_counts=cumulative,
        count=len(samples),
        sum=float(sum(samples)),
    )


def agent_state_counts(context: PipelineContext) -> list[AgentStateCount]:
    counts: dict[tuple[bool, str], int] = {}
    for agent in context.agents:
        state = (agent.enabled, agent.status)
        if state in counts:
            counts[state] += 1
        else:
            counts[state] = 1

    return [
        AgentStateCount(enabled=enabled, status=status, pool=context.pool.name, count=n)
        for (enabled, status), n in counts.items()
    ]


def job_counts(context: PipelineContext) -> list[JobCount]:
    """Total counts every returned job, so finished ones make it exceed queued + running."""
    queued = sum(1 for job in context.jobs if job.is_queued)
    running = sum(1 for job in context.jobs if job.is_running)
    pool = context.pool.name
    return [
        JobCount(kind="queued", pool=pool, count=queued),
        JobCount(kind="running", pool=pool, count=running),
        JobCount(kind="total", pool=pool, count=len(context.jobs)),
    ]


def job_durations(context: PipelineContext) -> list[JobDuration]:
    total, queue, run = [], [], []
    for job in context.jobs:
        if not job.is_finished:
            continue
        if job.queue_time is not None:
            total.append((job.finish_time - job.queue_time).total_seconds())
        if job.receive_time is not None and job.queue_time is not None:
            queue.append((job.receive_time - job.queue_time).total_seconds())
        if job.receive_time is not None:
            run.append((job.finish_time - job.receive_time).total_seconds())

    pool = context.pool.name
    return [
        JobDuration(kind="total", pool=pool, observation=observe(total, JOB_LENGTH_BUCKETS)),
        JobDuration(kind="queue", pool=pool, observation=observe(queue, QUEUE_LENGTH_BUCKETS)),
        JobDuration(kind="run", pool=pool, observation=observe(run, JOB_LENGTH_BUCKETS)),
    ]


def reduce_context(context: PipelineContext) -> list[MetricRecord]:
    records: list[MetricRecord] = list(agent_state_counts(context))
    # No job data is reported as absent, not as zero jobs.
    if context.jobs_available:
        records.extend(job_counts(context))
        records.extend(job_durations(context))
    return records
