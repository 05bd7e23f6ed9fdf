"""
One collection cycle: pools -> agents -> jobs -> metric records -> gate.

Each stage runs as its own asyncio task and hands its output to the next
stage through an `asyncio.Queue`. A queue is closed by putting `_CLOSED` on
it once its producer is done. The `PublishGate` holds every record until the
record queue is closed and only then decides whether the cycle is published.
"""
import asyncio
import logging
import threading
import time

from .client import SourceClient
from .errors import SourceError
from .metrics import reduce_context
from .models import MetricRecord, PipelineContext, Pool, ScrapeDuration

logger = logging.getLogger(__name__)

_CLOSED = object()


class FailureIndicator:
    """Set by any agent worker that failed; read once the cycle has drained."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._failed = False

    def set(self) -> None:
        with self._lock:
            self._failed = True

    def is_set(self) -> bool:
        with self._lock:
            return self._failed


class PublishGate:
    """
    Withholds metric records until the upstream stream is exhausted.

    `hold` drains the record queue and resolves the completion future when it
    sees the end of the stream; `release` waits for that future and then hands
    back either every held record or, when the cycle is tainted, nothing.
    """

    def __init__(self, failure: FailureIndicator, server_name: str = "") -> None:
        self._failure = failure
        self._server_name = server_name
        self._held: list[MetricRecord] = []
        self._drained: asyncio.Future[int] = asyncio.get_running_loop().create_future()

    async def hold(self, inbox: asyncio.Queue) -> None:
        while True:
            record = await inbox.get()
            if record is _CLOSED:
                break
            self._held.append(record)
        self._drained.set_result(len(self._held))

    async def release(self) -> list[MetricRecord]:
        held_count = await self._drained
        if self._failure.is_set():
            logger.error(
                f"Metrics not being exposed for {self._server_name} due to previous error",
                extra={"server_name": self._server_name, "suppressed": held_count},
            )
            self._held.clear()
            return []

        logger.info(
            f"No errors detected collecting metrics for {self._server_name}. Exposing {held_count} metrics",
            extra={"server_name": self._server_name, "metric_count": held_count},
        )
        return list(self._held)


class Pipeline:
    def __init__(
        self,
        source: SourceClient,
        *,
        server_name: str = "",
        exclude_hosted: bool = True,
        max_concurrency: int | None = None,
        timeout: float | None = None,
    ) -> None:
        self.source = source
        self.server_name = server_name
        self.exclude_hosted = exclude_hosted
        self.max_concurrency = max_concurrency or None
        self.timeout = timeout or None

    async def list_pools(self) -> list[Pool]:
        pools = await self.source.list_pools()
        if self.exclude_hosted:
            pools = [pool for pool in pools if not pool.is_hosted]
        logger.debug(
            f"Retrieved {len(pools)} pools from {self.server_name}",
            extra={"server_name": self.server_name, "pool_count": len(pools)},
        )
        return pools

    async def collect_agents(
        self, pools: list[Pool], out: asyncio.Queue, failure: FailureIndicator
    ) -> None:
        """Fetch every pool's agents concurrently, then close `out`."""
        # Without max_concurrency every pool gets its own in-flight request.
        limit = asyncio.Semaphore(self.max_concurrency) if self.max_concurrency else None

        async def worker(pool: Pool) -> None:
            try:
                if limit is None:
                    agents = await self.source.list_agents(pool.id)
                else:
                    async with limit:
                        agents = await self.source.list_agents(pool.id)
            except SourceError as exc:
                failure.set()
                agents = []
                logger.error(
                    f"Failed to retrieve agents for pool {pool.id} on {self.server_name}: {exc}",
                    extra={"server_name": self.server_name, "pool_id": pool.id},
                )
            else:
                logger.debug(
                    f"Retrieved {len(agents)} agents for pool {pool.id}",
                    extra={"server_name": self.server_name, "pool_id": pool.id},
                )
            await out.put(PipelineContext(pool=pool, agents=agents))

        await asyncio.gather(*(worker(pool) for pool in pools))
        await out.put(_CLOSED)

    async def collect_current_jobs(self, inbox: asyncio.Queue, out: asyncio.Queue) -> None:
        while True:
            context = await inbox.get()
            if context is _CLOSED:
                break
            pool_id = context.pool.id
            try:
                context.jobs = await self.source.list_jobs(pool_id)
            except SourceError as exc:
                context.jobs = []
                context.jobs_available = False
                logger.error(
                    f"Failed to retrieve current jobs for pool {pool_id} on {self.server_name}: {exc}",
                    extra={"server_name": self.server_name, "pool_id": pool_id},
                )
            else:
                logger.debug(
                    f"Retrieved {len(context.jobs)} current jobs for pool {pool_id}",
                    extra={"server_name": self.server_name, "pool_id": pool_id},
                )
            await out.put(context)
        await out.put(_CLOSED)

    async def calculate_metrics(self, inbox: asyncio.Queue, out: asyncio.Queue) -> None:
        while True:
            context = await inbox.get()
            if context is _CLOSED:
                break
            for record in reduce_context(context):
                await out.put(record)
        await out.put(_CLOSED)

    async def run_stages(self, pools: list[Pool]) -> list[MetricRecord]:
        failure = FailureIndicator()
        gate = PublishGate(failure, self.server_name)
        with_agents: asyncio.Queue = asyncio.Queue()
        with_jobs: asyncio.Queue = asyncio.Queue()
        records: asyncio.Queue = asyncio.Queue()

        async with asyncio.TaskGroup() as stages:
            stages.create_task(self.collect_agents(pools, with_agents, failure))
            stages.create_task(self.collect_current_jobs(with_agents, with_jobs))
            stages.create_task(self.calculate_metrics(with_jobs, records))
            stages.create_task(gate.hold(records))
            published = await gate.release()
        return published

    async def _collect(self) -> list[MetricRecord] | None:
        try:
            pools = await self.list_pools()
        except SourceError as exc:
            logger.error(
                f"Scrape failed. Could not retrieve pools from {self.server_name}: {exc}",
                extra={"server_name": self.server_name},
            )
            return None
        return await self.run_stages(pools)

    async def run(self) -> list[MetricRecord]:
        """
        Run one cycle and return the records to publish.

        An empty list means the pool list could not be read. Otherwise the
        last record is always the cycle's `ScrapeDuration`.
        """
        started = time.perf_counter()
        try:
            published = await asyncio.wait_for(self._collect(), timeout=self.timeout)
        except TimeoutError:
            logger.error(
                f"Scrape of {self.server_name} exceeded {self.timeout}s; metrics not exposed",
                extra={"server_name": self.server_name},
            )
            published = []
        else:
            if published is None:
                return []

        logger.info(f"Scraped agents from {self.server_name}", extra={"server_name": self.server_name})
        published.append(ScrapeDuration(seconds=time.perf_counter() - started))
        return published
