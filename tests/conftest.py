"""Shared fixtures and fakes for the build_agent_exporter test suite."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from build_agent_exporter.errors import SourceError
from build_agent_exporter.models import Agent, Job, Pool

T0 = datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


def make_agent(agent_id: int, enabled: bool = True, status: str = "online") -> Agent:
    return Agent(id=agent_id, name=f"agent-{agent_id}", enabled=enabled, status=status)


def queued_job(request_id: int) -> Job:
    return Job(request_id=request_id, queue_time=T0)


def running_job(request_id: int) -> Job:
    return Job(
        request_id=request_id,
        queue_time=T0,
        assign_time=T0 + timedelta(seconds=5),
        receive_time=T0 + timedelta(seconds=10),
    )


def finished_job(request_id: int, queue_wait: float = 10, run_time: float = 50) -> Job:
    received = T0 + timedelta(seconds=queue_wait)
    return Job(
        request_id=request_id,
        queue_time=T0,
        assign_time=T0 + timedelta(seconds=1),
        receive_time=received,
        finish_time=received + timedelta(seconds=run_time),
        result="succeeded",
    )


class FakeSource:
    """In-memory stand-in for the fleet-management service."""

    def __init__(
        self,
        pools: list[Pool] | None = None,
        agents: dict[int, list[Agent]] | None = None,
        jobs: dict[int, list[Job]] | None = None,
        *,
        fail_pools: bool = False,
        fail_agents: set[int] | None = None,
        fail_jobs: set[int] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.pools = pools or []
        self.agents = agents or {}
        self.jobs = jobs or {}
        self.fail_pools = fail_pools
        self.fail_agents = fail_agents or set()
        self.fail_jobs = fail_jobs or set()
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0
        self.entered = 0
        self.exited = 0

    async def __aenter__(self) -> FakeSource:
        self.entered += 1
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.exited += 1

    async def list_pools(self) -> list[Pool]:
        if self.fail_pools:
            raise SourceError("pools unavailable")
        return list(self.pools)

    async def list_agents(self, pool_id: int) -> list[Agent]:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        if pool_id in self.fail_agents:
            raise SourceError(f"agents of pool {pool_id} unavailable")
        return list(self.agents.get(pool_id, []))

    async def list_jobs(self, pool_id: int) -> list[Job]:
        if pool_id in self.fail_jobs:
            raise SourceError(f"jobs of pool {pool_id} unavailable")
        return list(self.jobs.get(pool_id, []))


@pytest.fixture
def two_pool_source():
    """Pools A and B with agents and current jobs on both."""
    pools = [Pool(id=1, name="A"), Pool(id=2, name="B")]
    agents = {
        1: [make_agent(1), make_agent(2), make_agent(3, enabled=False, status="offline")],
        2: [make_agent(4)],
    }
    jobs = {
        1: [queued_job(10), running_job(11)],
        2: [running_job(20)],
    }
    return FakeSource(pools, agents, jobs)
