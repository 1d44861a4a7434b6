"""Tests for core/execution.py — target selection and process bookkeeping per turn."""

import pytest
from e2b import SandboxState

from core.execution import ExecutionContext
from core.models import ProcessCheckRequest
from core.sandbox_errors import TargetUnavailableError
from targets.cloud import CloudSandboxTarget
from targets.remote import RemoteConnectionTarget
from tests.conftest import TEST_TOKEN, FakeSandboxApi, FakeTarget


class CloudFactory:
    def __init__(self, target=None):
        self.target = target or FakeTarget("cloud-1")
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return self.target


class ClosingTarget(FakeTarget):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.closed = 0

    async def close(self):
        self.closed += 1


class TestTargetSelection:

    @pytest.mark.asyncio
    async def test_cloud_by_default_and_cached(self, tracker):
        factory = CloudFactory()
        ctx = ExecutionContext("user-1", tracker, cloud_factory=factory)
        first = await ctx.target()
        second = await ctx.target()
        assert first is second is factory.target
        assert factory.calls == 1

    @pytest.mark.asyncio
    async def test_connected_local_sandbox_is_preferred(self, tracker, store, connection_id):
        factory = CloudFactory()
        ctx = ExecutionContext("user-1", tracker, store=store, cloud_factory=factory, preference=connection_id)
        target = await ctx.target()
        assert isinstance(target, RemoteConnectionTarget)
        assert target.target_id == f"local:{connection_id}"
        assert factory.calls == 0

    @pytest.mark.asyncio
    async def test_dead_local_sandbox_falls_back_to_cloud(self, tracker, store, clock, connection_id):
        clock.advance(31)
        factory = CloudFactory()
        ctx = ExecutionContext("user-1", tracker, store=store, cloud_factory=factory, preference=connection_id)
        assert await ctx.target() is factory.target

    @pytest.mark.asyncio
    async def test_fallback_disabled(self, tracker, store, connection_id):
        store.disconnect(connection_id)
        ctx = ExecutionContext("user-1", tracker, store=store, cloud_factory=CloudFactory(),
                               preference=connection_id, fallback_to_cloud=False)
        with pytest.raises(TargetUnavailableError):
            await ctx.target()

    @pytest.mark.asyncio
    async def test_other_users_connection_is_not_used(self, tracker, store, connection_id):
        factory = CloudFactory()
        ctx = ExecutionContext("user-2", tracker, store=store, cloud_factory=factory, preference=connection_id)
        assert await ctx.target() is factory.target

    @pytest.mark.asyncio
    async def test_no_cloud_configured(self, tracker):
        ctx = ExecutionContext("user-1", tracker)
        with pytest.raises(TargetUnavailableError):
            await ctx.target()
        assert await ctx.sandbox_context() is None

    def test_from_config(self, tracker, store):
        config = {
            "e2b": {"template": "custom-template", "timeout_seconds": 600},
            "sandbox": {"default_preference": "conn-9", "fallback_to_cloud": False},
            "local_sandbox": {"result_poll_interval_seconds": 0.1, "result_grace_ms": 500},
        }
        ctx = ExecutionContext.from_config(config, "user-1", tracker, store=store)
        assert ctx.preference == "conn-9"
        assert ctx.fallback_to_cloud is False
        assert ctx.poll_interval_seconds == 0.1
        assert ctx.result_grace_ms == 500
        cloud = ctx.cloud_factory()
        assert isinstance(cloud, CloudSandboxTarget)
        assert cloud.template == "custom-template"
        assert cloud.timeout_seconds == 600


class TestProcesses:

    @pytest.mark.asyncio
    async def test_run_background_registers_process(self, tracker):
        ctx = ExecutionContext("user-1", tracker, cloud_factory=CloudFactory())
        launched = await ctx.run_background("nmap -sV host -oN scan.nmap", "call-1")
        proc = tracker.get(launched["pid"], "cloud-1")
        assert proc.tool_call_id == "call-1"
        assert launched["output_files"] == ["scan.nmap"]

    @pytest.mark.asyncio
    async def test_kill_tracked_process(self, tracker):
        factory = CloudFactory()
        ctx = ExecutionContext("user-1", tracker, cloud_factory=factory)
        launched = await ctx.run_background("sleep 100", "call-1")

        result = await ctx.kill(launched["pid"])

        assert result.killed is True
        assert launched["pid"] not in factory.target.processes
        assert tracker.list_processes() == []

    @pytest.mark.asyncio
    async def test_kill_without_target(self, tracker):
        ctx = ExecutionContext("user-1", tracker)
        result = await ctx.kill(42)
        assert result.killed is False
        assert result.reason == "target_unavailable"

    @pytest.mark.asyncio
    async def test_check_status_batches(self, tracker):
        target = FakeTarget("cloud-1", processes={5: "nmap host"})
        ctx = ExecutionContext("user-1", tracker, cloud_factory=CloudFactory(target))
        results = await ctx.check_status([
            ProcessCheckRequest(pid=5, expected_command="nmap host"),
            ProcessCheckRequest(pid=6, expected_command="sleep 1"),
        ])
        assert [r.running for r in results] == [True, False]
        assert target.table_queries == 1

    @pytest.mark.asyncio
    async def test_check_status_without_target(self, tracker):
        ctx = ExecutionContext("user-1", tracker)
        [result] = await ctx.check_status([ProcessCheckRequest(pid=5, expected_command="x")])
        assert result.running is False

    @pytest.mark.asyncio
    async def test_resolve_target_only_for_owned_sandbox(self, tracker):
        ctx = ExecutionContext("user-1", tracker, cloud_factory=CloudFactory())
        assert await ctx.resolve_target("cloud-1") is not None
        assert await ctx.resolve_target("cloud-2") is None


@pytest.mark.asyncio
async def test_close_releases_target(tracker):
    target = ClosingTarget("cloud-1")
    factory = CloudFactory(target)
    ctx = ExecutionContext("user-1", tracker, cloud_factory=factory)
    assert await ctx.sandbox_context() == "fake target"

    await ctx.close()
    await ctx.close()

    assert target.closed == 1
    await ctx.target()
    assert factory.calls == 2


@pytest.mark.asyncio
async def test_sandbox_context_for_local_connection(tracker, store):
    conn = store.connect(TEST_TOKEN, "box", "1.0.0", "docker", image_name="hackeraidev/sandbox")
    ctx = ExecutionContext("user-1", tracker, store=store, preference=conn["connectionId"])
    assert "Docker container" in await ctx.sandbox_context()


class TestProbesDoNotProvision:

    @staticmethod
    def _context(tracker, api):
        return ExecutionContext(
            "user-1",
            tracker,
            cloud_factory=lambda: CloudSandboxTarget("user-1", sandbox_cls=api, pause_retry_delay=0),
        )

    @pytest.mark.asyncio
    async def test_status_kill_and_context_on_fresh_turn(self, tracker):
        api = FakeSandboxApi()
        ctx = self._context(tracker, api)

        [status] = await ctx.check_status([ProcessCheckRequest(pid=5, expected_command="nmap host")])
        killed = await ctx.kill(999)

        assert status.running is False
        assert status.reason == "no_target"
        assert killed.killed is False
        assert killed.reason == "target_unavailable"
        assert await ctx.sandbox_context() is None
        assert api.created == []
        assert api.connects == []

    @pytest.mark.asyncio
    async def test_status_uses_existing_sandbox(self, tracker):
        api = FakeSandboxApi()
        sandbox = api.add_existing("old-1", SandboxState.PAUSED)
        ctx = self._context(tracker, api)

        [status] = await ctx.check_status([ProcessCheckRequest(pid=5, expected_command="nmap host")])

        assert status.running is False
        assert api.created == []
        assert [c["cmd"] for c in sandbox.commands.calls] == ["ps -eo pid=,args="]

    @pytest.mark.asyncio
    async def test_run_still_provisions(self, tracker):
        api = FakeSandboxApi()
        ctx = self._context(tracker, api)
        await ctx.run("id")
        assert len(api.created) == 1
        assert (await ctx.existing_target()).target_id == "new-1"
