"""Tests for the prefork worker pool.

Workers are `FakeProcessHandle` objects: each test decides what a worker
prints and when it exits.
"""

import io
import pickle
from unittest.mock import Mock

import pytest

from jobpool.infrastructure.errors import (
    ConfigurationError,
    InvariantViolation,
    PoolClosedError,
    SpawnError,
    WorkerExecutionError,
)
from jobpool.infrastructure.payload_store import InMemoryPayloadStore
from jobpool.infrastructure.workers.outcome import Failure, Success
from jobpool.infrastructure.workers.pool import (
    PROMPT_PAYLOAD_KEY,
    PROMPT_QUEUE,
    PoolConfig,
    WorkerPool,
    WorkerState,
)
from jobpool.infrastructure.workers.process_handle import OutputStream


class TestPoolConfig:
    """Tests for PoolConfig."""

    def test_negative_prefork_size_is_clamped(self):
        assert PoolConfig(prefork_size=-3).prefork_size == 0

    @pytest.mark.parametrize(
        "output_results,async_mode,expected",
        [
            (False, False, True),
            (True, False, True),
            (True, True, True),
            (False, True, False),
        ],
    )
    def test_capture_output(self, output_results, async_mode, expected):
        config = PoolConfig(output_results=output_results, async_mode=async_mode)
        assert config.capture_output is expected


class TestPoolCreation:
    """Tests for starting a pool."""

    @pytest.mark.parametrize("prefork_size", [0, 1, 3])
    def test_prefork_size_idle_workers_are_started(self, make_pool, spawner, prefork_size):
        pool = make_pool(prefork_size=prefork_size)

        assert pool.idle_count() == prefork_size
        assert pool.count() == 0
        assert len(spawner.handles) == prefork_size

    def test_negative_prefork_size_starts_no_workers(self, make_pool, spawner):
        pool = make_pool(prefork_size=-1)

        assert pool.idle_count() == 0
        assert spawner.handles == []

    def test_workers_use_configured_command(self, make_pool, spawner):
        make_pool(prefork_size=2, command="php flow job:execute")

        assert [h.command for h in spawner.handles] == ["php flow job:execute"] * 2

    def test_fire_and_forget_workers_do_not_capture_output(self, make_pool, spawner):
        make_pool(prefork_size=1, async_mode=True)

        assert spawner.handles[0].capture_output is False

    def test_spawn_failure_propagates(self, make_pool, spawner):
        spawner.fail = True

        with pytest.raises(SpawnError):
            make_pool(prefork_size=1)

    def test_spawn_failure_kills_workers_already_started(self, make_pool, spawner):
        spawner.fail_after = 2

        with pytest.raises(SpawnError):
            make_pool(prefork_size=3)

        assert len(spawner.handles) == 2
        assert [h.terminate_calls for h in spawner.handles] == [1, 1]
        assert [h.close_input_calls for h in spawner.handles] == [1, 1]
        assert not any(h.is_running() for h in spawner.handles)

    def test_missing_command_raises_when_workers_are_needed(self, make_pool):
        with pytest.raises(ConfigurationError):
            make_pool(prefork_size=1, command=None)

    def test_missing_command_is_fine_without_preforking(self, make_pool):
        pool = make_pool(prefork_size=0, command=None)

        assert pool.idle_count() == 0

    def test_invocation_builds_command_once(self, loop, spawner, payload_store):
        invocation = Mock()
        invocation.build_command.return_value = "python -m worker"

        pool = WorkerPool(
            PoolConfig(prefork_size=2), loop, payload_store, spawner=spawner, invocation=invocation
        )
        pool.dispatch(b"job", queue_name="q")

        invocation.build_command.assert_called_once_with()
        assert {h.command for h in spawner.handles} == {"python -m worker"}
        pool.shutdown()

    def test_create_uses_given_loop_and_in_memory_store(self, loop, spawner):
        pool = WorkerPool.create(queue_name="q", command="worker", loop=loop, spawner=spawner)

        assert pool.loop is loop
        assert isinstance(pool.payload_store, InMemoryPayloadStore)
        pool.close()
        assert not loop.is_closed()

    def test_create_owns_loop_when_none_given(self, spawner):
        pool = WorkerPool.create(queue_name="q", command="worker", spawner=spawner)
        loop = pool.loop

        pool.close()

        assert loop.is_closed()


class TestDispatch:
    """Tests for handing jobs to workers."""

    def test_dispatch_claims_idle_worker_and_refills(self, make_pool):
        pool = make_pool(queue_name="q", prefork_size=2)

        pool.dispatch(b"job")

        assert pool.count() == 1
        assert pool.idle_count() == 2
        assert len(pool) == 1

    def test_dispatch_without_preforking_spawns_on_demand(self, make_pool, spawner):
        pool = make_pool(queue_name="q", prefork_size=0)

        handle = pool.dispatch(b"job")

        assert handle is spawner.handles[0]
        assert pool.count() == 1
        assert pool.idle_count() == 0

    def test_oldest_idle_worker_is_used_first(self, make_pool, spawner):
        pool = make_pool(queue_name="q", prefork_size=2)
        first, second = spawner.handles

        assert pool.dispatch(b"a") is first
        assert pool.dispatch(b"b") is second

    def test_handshake_names_queue_and_payload_key(self, make_pool, payload_store):
        pool = make_pool(queue_name="mail", prefork_size=1)

        handle = pool.dispatch(b"payload")

        queue, key = handle.input_lines()
        assert queue == "mail"
        assert payload_store.get(key).payload == b"payload"

    def test_dispatch_queue_used_when_pool_has_none(self, make_pool):
        pool = make_pool(prefork_size=1)

        handle = pool.dispatch(b"job", queue_name="reports")

        assert handle.input_lines()[0] == "reports"

    def test_matching_queue_names_are_accepted(self, make_pool):
        pool = make_pool(queue_name="q", prefork_size=1)

        handle = pool.dispatch(b"job", queue_name="q")

        assert handle.input_lines()[0] == "q"

    def test_missing_queue_name_raises_without_side_effects(self, make_pool, spawner, payload_store):
        pool = make_pool(prefork_size=1)

        with pytest.raises(ConfigurationError, match="No queue name provided"):
            pool.dispatch(b"job")

        assert pool.count() == 0
        assert pool.idle_count() == 1
        assert len(spawner.handles) == 1
        assert len(payload_store) == 0

    def test_conflicting_queue_name_raises(self, make_pool):
        pool = make_pool(queue_name="q", prefork_size=1)

        with pytest.raises(ConfigurationError, match="Cannot run job for queue x in pool for queue q"):
            pool.dispatch(b"job", queue_name="x")

        assert pool.count() == 0

    def test_dispatch_after_shutdown_raises(self, make_pool):
        pool = make_pool(queue_name="q", prefork_size=1)
        pool.shutdown()

        with pytest.raises(PoolClosedError):
            pool.dispatch(b"job")

    def test_dead_idle_worker_is_replaced(self, make_pool, spawner):
        pool = make_pool(queue_name="q", prefork_size=1)
        dead = spawner.handles[0]
        dead.alive = False

        handle = pool.dispatch(b"job")

        assert handle is not dead
        assert pool.count() == 1
        assert pool.idle_count() == 1

    def test_late_exit_of_pruned_worker_is_ignored(self, make_pool, spawner):
        pool = make_pool(queue_name="q", prefork_size=1)
        dead = spawner.handles[0]
        dead.alive = False
        pool.dispatch(b"job")

        dead.simulate_exit(1)

        assert pool.count() == 1
        assert pool.idle_count() == 1

    def test_dispatch_job_pickles_job(self, make_pool, payload_store):
        pool = make_pool(queue_name="q", prefork_size=1)

        handle = pool.dispatch_job({"to": "someone@example.com"})

        key = handle.input_lines()[1]
        assert pickle.loads(payload_store.get(key).payload) == {"to": "someone@example.com"}

    def test_payload_key_event_fires_on_next_tick(self, make_pool, tick):
        pool = make_pool(queue_name="q", prefork_size=1)
        keys = []

        handle = pool.dispatch(b"job")
        handle.on_payload_key(keys.append)
        assert keys == []

        tick()

        assert keys == [handle.input_lines()[1]]

    def test_identical_payloads_get_distinct_keys(self, make_pool):
        pool = make_pool(queue_name="q", prefork_size=2)

        first = pool.dispatch(b"same")
        second = pool.dispatch(b"same")

        assert first.input_lines()[1] != second.input_lines()[1]


class TestOutcomes:
    """Tests for events emitted when a worker exits."""

    def test_exit_code_zero_emits_success(self, make_pool):
        pool = make_pool(queue_name="q", prefork_size=1)
        successes, errors, outcomes = [], [], []
        handle = pool.dispatch(b"job")
        handle.on_success(lambda: successes.append(True))
        handle.on_error(lambda code, diagnostic: errors.append(code))
        handle.on_outcome(outcomes.append)

        handle.simulate_exit(0)

        assert successes == [True]
        assert errors == []
        assert isinstance(outcomes[0], Success)
        assert outcomes[0].ok

    def test_nonzero_exit_code_emits_error(self, make_pool):
        pool = make_pool(queue_name="q", prefork_size=1)
        successes, errors, outcomes = [], [], []
        handle = pool.dispatch(b"job")
        handle.on_success(lambda: successes.append(True))
        handle.on_error(lambda code, diagnostic: errors.append(code))
        handle.on_outcome(outcomes.append)

        handle.simulate_exit(7)

        assert successes == []
        assert errors == [7]
        assert isinstance(outcomes[0], Failure)
        assert outcomes[0].exit_code == 7

    def test_successful_job_scenario(self, make_pool, payload_store):
        pool = make_pool(queue_name="q", prefork_size=1)
        successes = []
        handle = pool.dispatch(b"job")
        handle.on_success(lambda: successes.append(True))
        key = handle.input_lines()[1]

        handle.simulate_output(b"ok")
        handle.simulate_exit(0)

        assert successes == [True]
        assert pool.count() == 0
        assert pool.idle_count() == 1
        assert key not in payload_store

    def test_failed_job_diagnostic_holds_primary_output(self, make_pool):
        pool = make_pool(queue_name="q", prefork_size=1)
        diagnostics = []
        handle = pool.dispatch(b"job")
        handle.on_error(lambda code, diagnostic: diagnostics.append(diagnostic.read()))

        handle.simulate_output(b"boo")
        handle.simulate_output(b"m")
        handle.simulate_output(b"trace", stream=OutputStream.STDERR)
        handle.simulate_exit(2)

        assert diagnostics == [b"boom"]

    def test_every_error_listener_reads_whole_diagnostic(self, make_pool):
        pool = make_pool(queue_name="q", prefork_size=1)
        first, second = [], []
        handle = pool.dispatch(b"job")
        handle.on_error(lambda code, diagnostic: first.append(diagnostic.read()))
        handle.on_error(lambda code, diagnostic: second.append(diagnostic.read()))

        handle.simulate_output(b"boom")
        handle.simulate_exit(2)

        assert first == [b"boom"]
        assert second == [b"boom"]

    def test_fire_and_forget_diagnostic_is_empty(self, make_pool):
        pool = make_pool(queue_name="q", prefork_size=1, async_mode=True, output_results=True)
        outcomes = []
        handle = pool.dispatch(b"job")
        handle.on_outcome(outcomes.append)

        handle.simulate_output(b"boom")
        handle.simulate_exit(2)

        assert outcomes[0].read_diagnostic() == b""

    def test_failure_converts_to_error(self, make_pool):
        pool = make_pool(queue_name="q", prefork_size=1)
        outcomes = []
        handle = pool.dispatch(b"job")
        handle.on_outcome(outcomes.append)

        handle.simulate_output(b"boom\n")
        handle.simulate_exit(3)

        error = outcomes[0].to_error()
        assert isinstance(error, WorkerExecutionError)
        assert error.exit_code == 3
        assert "boom" in str(error)

    def test_exited_worker_leaves_the_pool(self, make_pool):
        pool = make_pool(queue_name="q", prefork_size=1)
        handle = pool.dispatch(b"job")

        handle.simulate_exit(0)

        owned = [w.handle for w in pool.idle_workers() + pool.running_workers()]
        assert handle not in owned
        assert pool.count() == 0

    def test_second_exit_is_rejected(self, make_pool):
        pool = make_pool(queue_name="q", prefork_size=1)
        outcomes = []
        handle = pool.dispatch(b"job")
        handle.on_outcome(outcomes.append)
        handle.simulate_exit(0)

        with pytest.raises(InvariantViolation):
            handle.simulate_exit(1)

        assert len(outcomes) == 1

    def test_payload_removed_once_after_exit(self, loop, spawner):
        store = Mock(wraps=InMemoryPayloadStore())
        pool = WorkerPool(PoolConfig(queue_name="q", command="worker"), loop, store, spawner=spawner)
        handle = pool.dispatch(b"job")
        key = handle.input_lines()[1]
        exited_at_removal = []
        store.remove.side_effect = lambda k: exited_at_removal.append(handle.exited)

        handle.simulate_exit(0)
        pool.shutdown()

        store.remove.assert_called_once_with(key)
        assert exited_at_removal == [True]

    def test_idle_worker_exit_removes_it_without_outcome(self, make_pool, spawner):
        pool = make_pool(queue_name="q", prefork_size=2)

        spawner.handles[0].simulate_exit(1)

        assert pool.idle_count() == 1
        assert pool.count() == 0


class TestOutputForwarding:
    """Tests for output_results."""

    def test_worker_output_is_forwarded_without_prompts(self, make_pool, forwarded):
        pool = make_pool(queue_name="q", prefork_size=1, output_results=True)
        handle = pool.dispatch(b"job")

        handle.simulate_output(PROMPT_QUEUE)
        handle.simulate_output(PROMPT_PAYLOAD_KEY)
        handle.simulate_output(b"hello\n")
        handle.simulate_output(b"warning\n", stream=OutputStream.STDERR)

        assert forwarded["stdout"].getvalue() == b"hello\n"
        assert forwarded["stderr"].getvalue() == b"warning\n"

    def test_prompt_inside_larger_chunk_is_forwarded(self, make_pool, forwarded):
        pool = make_pool(queue_name="q", prefork_size=1, output_results=True)
        handle = pool.dispatch(b"job")

        handle.simulate_output(PROMPT_QUEUE + b"done\n")

        assert forwarded["stdout"].getvalue() == PROMPT_QUEUE + b"done\n"

    def test_output_is_not_forwarded_by_default(self, make_pool, forwarded):
        pool = make_pool(queue_name="q", prefork_size=1)
        handle = pool.dispatch(b"job")

        handle.simulate_output(b"hello\n")

        assert forwarded["stdout"].getvalue() == b""

    def test_idle_worker_output_is_not_forwarded(self, make_pool, spawner, forwarded):
        make_pool(queue_name="q", prefork_size=1, output_results=True)

        spawner.handles[0].simulate_output(b"startup noise\n")

        assert forwarded["stdout"].getvalue() == b""


class TestLoopIntegration:
    """Tests for future_tick and run_loop."""

    def test_future_tick_runs_callback_with_pool(self, make_pool, tick):
        pool = make_pool(queue_name="q")
        seen = []

        assert pool.future_tick(seen.append) is pool
        assert seen == []

        tick()

        assert seen == [pool]

    def test_run_loop_returns_callback_result(self, make_pool, loop):
        pool = make_pool(queue_name="q")

        def callback(p):
            assert loop.is_running()
            loop.stop()
            return 42

        assert pool.run_loop(callback) == 42

    def test_run_loop_without_callback_returns_none(self, make_pool, loop):
        pool = make_pool(queue_name="q")
        loop.call_soon(loop.stop)

        assert pool.run_loop() is None

    def test_callback_error_stops_loop_and_propagates(self, make_pool, loop):
        pool = make_pool(prefork_size=1)
        safety_stop = loop.call_later(5.0, loop.stop)

        with pytest.raises(ConfigurationError, match="No queue name provided"):
            pool.run_loop(lambda p: p.dispatch(b"job"))

        safety_stop.cancel()
        assert not loop.is_running()
        assert pool.count() == 0
        assert pool.idle_count() == 1

    def test_loop_can_run_again_after_callback_error(self, make_pool, loop):
        pool = make_pool(queue_name="q")

        def fail(p):
            raise RuntimeError("callback failed")

        with pytest.raises(RuntimeError, match="callback failed"):
            pool.run_loop(fail)

        def finish(p):
            loop.stop()
            return "done"

        assert pool.run_loop(finish) == "done"

    def test_application_stops_loop_when_all_jobs_finished(self, make_pool, loop, spawner):
        pool = make_pool(queue_name="q", prefork_size=1)
        outcomes = []

        def on_outcome(outcome):
            outcomes.append(outcome)
            if pool.count() == 0:
                loop.stop()

        def start(p):
            for payload in (b"a", b"b"):
                handle = p.dispatch(payload)
                handle.on_outcome(on_outcome)
            for code, handle in enumerate(spawner.handles[:2]):
                loop.call_soon(handle.simulate_exit, code)
            return "started"

        assert pool.run_loop(start) == "started"
        assert [o.ok for o in outcomes] == [True, False]


class TestShutdown:
    """Tests for shutting down a pool."""

    def test_shutdown_kills_every_worker_once(self, make_pool, spawner):
        pool = make_pool(queue_name="q", prefork_size=2)
        pool.dispatch(b"job")

        pool.shutdown()
        pool.shutdown()

        assert len(spawner.handles) == 3
        assert [h.terminate_calls for h in spawner.handles] == [1, 1, 1]
        assert [h.close_input_calls for h in spawner.handles] == [1, 1, 1]
        assert pool.closed

    def test_shutdown_of_empty_pool(self, make_pool):
        pool = make_pool(queue_name="q")

        pool.shutdown()

        assert pool.closed

    def test_running_job_fails_after_shutdown(self, make_pool, payload_store):
        pool = make_pool(queue_name="q")
        outcomes = []
        handle = pool.dispatch(b"job")
        handle.on_outcome(outcomes.append)
        key = handle.input_lines()[1]

        pool.shutdown()
        assert key in payload_store
        handle.simulate_exit(-9)

        assert outcomes[0].exit_code == -9
        assert key not in payload_store
        assert pool.count() == 0

    def test_sweep_payloads_removes_them_immediately(self, loop, spawner):
        store = Mock(wraps=InMemoryPayloadStore())
        pool = WorkerPool(PoolConfig(queue_name="q", command="worker"), loop, store, spawner=spawner)
        handle = pool.dispatch(b"job")
        key = handle.input_lines()[1]

        pool.shutdown(sweep_payloads=True)
        handle.simulate_exit(-9)

        store.remove.assert_called_once_with(key)

    def test_context_manager_shuts_down(self, loop, spawner, payload_store):
        with WorkerPool(
            PoolConfig(queue_name="q", prefork_size=1, command="worker"),
            loop,
            payload_store,
            spawner=spawner,
        ) as pool:
            pool.dispatch(b"job")

        assert pool.closed
        assert all(h.terminate_calls == 1 for h in spawner.handles)

    def test_counts_follow_worker_lifecycle(self, make_pool, spawner):
        pool = make_pool(queue_name="q", prefork_size=2)
        first = pool.dispatch(b"a")
        second = pool.dispatch(b"b")

        assert (pool.count(), pool.idle_count()) == (2, 2)
        assert [w.handle for w in pool.idle_workers()] == spawner.handles[2:4]

        first.simulate_exit(0)
        assert (pool.count(), pool.idle_count()) == (1, 2)

        spawner.handles[2].simulate_exit(1)
        assert (pool.count(), pool.idle_count()) == (1, 1)
        assert [w.handle for w in pool.running_workers()] == [second]

        third = pool.dispatch(b"c")
        assert third is spawner.handles[3]
        assert (pool.count(), pool.idle_count()) == (2, 2)

    def test_worker_states(self, make_pool):
        pool = make_pool(queue_name="q", prefork_size=1)
        pool.dispatch(b"job")

        assert [w.state for w in pool.running_workers()] == [WorkerState.RUNNING]
        assert [w.state for w in pool.idle_workers()] == [WorkerState.IDLE]


class TestFromSettings:
    """Tests for creating pools from configuration."""

    def test_from_settings(self, loop, isolated_config, payload_store):
        from jobpool.infrastructure.config import JobPoolConfig

        settings = JobPoolConfig(pool={"queue_name": "q", "command": "worker", "prefork_size": 0})

        pool = WorkerPool.from_settings(settings, loop, payload_store=payload_store)

        assert pool.config.queue_name == "q"
        assert pool.payload_store is payload_store
        pool.shutdown()


def test_diagnostic_buffer_is_rewound():
    from jobpool.infrastructure.workers.outcome import classify

    buffer = io.BytesIO()
    buffer.write(b"trace")

    outcome = classify(1, 1, buffer)

    assert outcome.diagnostic.read() == b"trace"
