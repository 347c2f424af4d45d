from __future__ import annotations

import pytest

from flotilla.config import TimingConfig
from flotilla.core.exceptions import CommandError, PhaseError, ProvisioningError, ReadinessTimeoutError
from flotilla.lifecycle import FirstCreationGuard, LifecycleDriver
from flotilla.membership import Membership
from flotilla.model import Availability, PowerState
from flotilla.utils import conc

from tests.conftest import FAST, FakeCluster

pytestmark = [pytest.mark.unit]

ALL = {"manager0", "worker0", "worker1"}


def make_driver(
    cluster: FakeCluster,
    guard: FirstCreationGuard | None = None,
    timing: TimingConfig = FAST,
) -> LifecycleDriver:
    membership = Membership(cluster.provider, cluster.swarm, cluster.naming, timing)
    return LifecycleDriver(
        cluster.provider, membership, cluster.naming, timing, guard or FirstCreationGuard(),
    )


def opened_guard() -> FirstCreationGuard:
    guard = FirstCreationGuard()
    guard.mark()
    return guard


class TestCreate:
    @pytest.mark.asyncio
    async def test_first_creation_runs_alone(self, cluster: FakeCluster):
        guard = FirstCreationGuard()
        driver = make_driver(cluster, guard)

        created = await driver.create_missing(ALL)

        assert sorted(created) == sorted(ALL)
        assert created[0] == "manager0"
        done = cluster.index("create", "manager0")
        assert done < cluster.index("create-begin", "worker0")
        assert done < cluster.index("create-begin", "worker1")
        assert cluster.provider.max_in_flight == 2
        assert guard.done

    @pytest.mark.asyncio
    async def test_concurrent_once_guard_is_open(self, cluster: FakeCluster):
        driver = make_driver(cluster, opened_guard())

        await driver.create_missing(ALL)

        assert cluster.provider.max_in_flight == 3

    @pytest.mark.asyncio
    async def test_guard_stays_closed_until_a_creation_succeeds(self, cluster: FakeCluster):
        guard = FirstCreationGuard()
        cluster.provider.fail_create = {"manager0"}
        driver = make_driver(cluster, guard)

        with pytest.raises(PhaseError) as exc_info:
            await driver.create_missing(ALL)

        assert set(exc_info.value.failures) == {"manager0"}
        assert cluster.index("create", "worker0") < cluster.index("create-begin", "worker1")
        assert set(cluster.provider.machines) == {"worker0", "worker1"}
        assert guard.done

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_siblings(self, cluster: FakeCluster):
        cluster.provider.fail_create = {"worker1"}
        driver = make_driver(cluster, opened_guard())

        with pytest.raises(PhaseError) as exc_info:
            await driver.create_missing(ALL)

        assert exc_info.value.phase == "create"
        assert isinstance(exc_info.value.failures["worker1"], ProvisioningError)
        assert set(cluster.provider.machines) == {"manager0", "worker0"}

    @pytest.mark.asyncio
    async def test_creations_are_staggered(self, cluster: FakeCluster, monkeypatch: pytest.MonkeyPatch):
        slept: list[float] = []
        real_sleep = conc.asyncio.sleep

        async def recording_sleep(seconds: float) -> None:
            if seconds:
                slept.append(seconds)
            await real_sleep(0)

        monkeypatch.setattr(conc.asyncio, "sleep", recording_sleep)
        timing = TimingConfig(stagger_delay=2.0, settle_delay=0, poll_attempts=3, poll_interval=0)
        driver = make_driver(cluster, opened_guard(), timing)

        await driver.create_missing(ALL)

        assert sorted(slept) == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_nothing_to_create(self, cluster: FakeCluster):
        assert await make_driver(cluster).create_missing(set()) == []
        assert cluster.calls == []


class TestDelete:
    @pytest.mark.asyncio
    async def test_graceful_leader_last_one_batch(self, cluster: FakeCluster):
        cluster.seed(managers=1, workers=2)
        driver = make_driver(cluster)

        order = await driver.delete_extra(ALL)

        assert order == ["worker1", "worker0", "manager0"]
        drained = max(cluster.index("drain", "worker0"), cluster.index("drain", "worker1"))
        removed = min(cluster.index("rm", "worker0"), cluster.index("rm", "worker1"))
        assert drained < removed
        assert cluster.index("leave", "manager0") > cluster.index("rm", "worker0")
        assert cluster.index("leave", "manager0") > cluster.index("rm", "worker1")
        assert cluster.provider.destroy_batches == [("worker1", "worker0", "manager0")]
        assert cluster.provider.machines == {}

    @pytest.mark.asyncio
    async def test_forced_skips_membership(self, cluster: FakeCluster):
        cluster.seed(managers=1, workers=2)
        driver = make_driver(cluster)

        await driver.delete_extra(ALL, graceful=False)

        assert [op for op, _ in cluster.calls] == ["destroy", "destroy", "destroy"]
        assert cluster.provider.destroy_batches == [("worker1", "worker0", "manager0")]

    @pytest.mark.asyncio
    async def test_failed_leave_destroys_nothing(self, cluster: FakeCluster, monkeypatch: pytest.MonkeyPatch):
        cluster.seed(managers=1, workers=2)

        async def broken_drain(leader: str, node_id: str, availability: Availability) -> None:
            raise CommandError("docker node update", 1, "rpc error: code = Unavailable")

        monkeypatch.setattr(cluster.swarm, "update_availability", broken_drain)

        with pytest.raises(PhaseError) as exc_info:
            await make_driver(cluster).delete_extra(ALL)

        assert exc_info.value.phase == "leave"
        assert set(exc_info.value.failures) == {"worker0", "worker1"}
        assert cluster.provider.destroy_batches == []
        assert "manager0" not in cluster.ops("leave")

    @pytest.mark.asyncio
    async def test_nothing_to_delete(self, cluster: FakeCluster):
        assert await make_driver(cluster).delete_extra([]) == []
        assert cluster.provider.destroy_batches == []


class TestStart:
    @pytest.mark.asyncio
    async def test_leader_first_and_credentials_regenerated(self, cluster: FakeCluster):
        cluster.seed(managers=1, workers=2, stopped=ALL, in_swarm=False)
        driver = make_driver(cluster)
        old_address = cluster.provider.addresses["worker0"]

        started = await driver.start_stopped()

        assert started == ["manager0", "worker0", "worker1"]
        assert cluster.index("regen", "manager0") < cluster.index("start", "worker0")
        assert cluster.index("regen", "manager0") < cluster.index("start", "worker1")
        assert sorted(cluster.ops("regen")) == sorted(ALL)
        assert cluster.provider.addresses["worker0"] != old_address
        assert all(p is PowerState.RUNNING for p in cluster.provider.machines.values())

    @pytest.mark.asyncio
    async def test_instance_that_never_runs_times_out(self, cluster: FakeCluster):
        cluster.seed(managers=1, workers=2, stopped=ALL, in_swarm=False)
        cluster.provider.never_running = {"worker1"}
        driver = make_driver(cluster)

        with pytest.raises(PhaseError) as exc_info:
            await driver.start_stopped()

        assert set(exc_info.value.failures) == {"worker1"}
        assert isinstance(exc_info.value.failures["worker1"], ReadinessTimeoutError)
        assert "worker0" in cluster.ops("regen")
        assert "worker1" not in cluster.ops("regen")

    @pytest.mark.asyncio
    async def test_running_instances_are_left_alone(self, cluster: FakeCluster):
        cluster.seed(managers=1, workers=1)
        assert await make_driver(cluster).start_stopped() == []
        assert cluster.calls == []


class TestStop:
    @pytest.mark.asyncio
    async def test_leader_leaves_and_stops_last(self, cluster: FakeCluster):
        cluster.seed(managers=1, workers=2)
        driver = make_driver(cluster)

        stopped = await driver.stop_all()

        assert stopped == ["worker1", "worker0", "manager0"]
        assert cluster.calls[-1] == ("stop", "manager0")
        assert cluster.index("leave", "manager0") > cluster.index("stop", "worker0")
        assert cluster.index("leave", "manager0") > cluster.index("stop", "worker1")
        assert all(p is PowerState.STOPPED for p in cluster.provider.machines.values())
        assert cluster.provider.destroy_batches == []

    @pytest.mark.asyncio
    async def test_secondary_manager_is_demoted_before_it_leaves(self, cluster: FakeCluster):
        cluster.seed(managers=2, workers=1)
        driver = make_driver(cluster)

        stopped = await driver.stop_all()

        assert stopped[-1] == "manager0"
        assert (
            cluster.index("demote", "manager1")
            < cluster.index("leave", "manager1")
            < cluster.index("stop", "manager1")
            < cluster.index("leave", "manager0")
            < cluster.index("stop", "manager0")
        )
        assert "manager0" not in cluster.ops("demote")
        assert all(p is PowerState.STOPPED for p in cluster.provider.machines.values())

    @pytest.mark.asyncio
    async def test_nothing_running(self, cluster: FakeCluster):
        cluster.seed(managers=1, stopped=["manager0"])
        assert await make_driver(cluster).stop_all() == []
