import pytest

from host import DEFAULT_TICK, HostLoop
from interpreter import ExecutionState, WaitUntil, start
from parser import parse_source


def make_loop(source, services=None, budget=100, **kwargs):
    output = []
    execution = start(parse_source(source), services, output_sink=output.append, budget=budget)
    return HostLoop(execution, **kwargs), output


class TestHostLoop:
    def test_runs_to_completion(self):
        loop, output = make_loop('print("hello")')
        status = loop.run()
        assert status.state is ExecutionState.COMPLETED
        assert output == ["hello"]
        assert loop.stats.ticks == 1

    def test_wait_seconds_consumes_ticks(self):
        loop, output = make_loop('sleep(0.5)\nprint("awake")', tick=0.1)
        status = loop.run()
        assert status.state is ExecutionState.COMPLETED
        assert output == ["awake"]
        assert loop.stats.waits == 1
        assert loop.stats.ticks == 6
        assert loop.stats.elapsed == pytest.approx(0.6)

    def test_output_waits_for_sleep(self):
        loop, output = make_loop('print("a")\nsleep(1)\nprint("b")', tick=0.25)
        loop.step()
        assert output == ["a"]
        assert loop.waiting
        for _ in range(3):
            loop.step()
        assert output == ["a"]
        loop.step()
        assert output == ["a", "b"]

    def test_budget_pauses_are_counted(self):
        loop, _ = make_loop("total = 0\nfor i in range(1000):\n    total += i\n", budget=100)
        status = loop.run()
        assert status.state is ExecutionState.COMPLETED
        assert loop.stats.budget_pauses >= 1
        assert loop.stats.ticks == loop.stats.budget_pauses + 1

    def test_wait_until_polls_once_per_tick(self, services, ext):
        polls = []

        def ready():
            polls.append(True)
            return len(polls) >= 3

        ext.register_builtin("wait_ready", 0, 0, lambda *_: WaitUntil(ready), suspends=True)
        loop, output = make_loop('wait_ready()\nprint("ready")', services)
        status = loop.run()
        assert status.state is ExecutionState.COMPLETED
        assert output == ["ready"]
        assert len(polls) == 3
        assert loop.stats.ticks == 4

    def test_stalled_wait_does_not_block_host(self, services, ext):
        ext.register_builtin("never", 0, 0, lambda *_: WaitUntil(lambda: False), suspends=True)
        loop, output = make_loop('never()\nprint("unreachable")', services)
        status = loop.run(max_ticks=5)
        assert status.state is ExecutionState.CANCELLED
        assert loop.stats.ticks == 5
        assert output == []

    def test_max_ticks_cancels_runaway_program(self):
        loop, _ = make_loop("while True:\n    pass\n")
        status = loop.run(max_ticks=10)
        assert status.state is ExecutionState.CANCELLED
        assert loop.stats.budget_pauses == 10
        assert loop.execution.resume() is status

    def test_failure_is_reported(self):
        loop, _ = make_loop("sleep(0.1)\nx = [1][3]", tick=0.1)
        status = loop.run()
        assert status.state is ExecutionState.FAILED
        assert status.error.line == 2

    def test_realtime_uses_sleeper(self):
        naps = []
        loop, _ = make_loop("sleep(0.2)", tick=0.1, realtime=True, sleeper=naps.append)
        loop.run()
        assert naps == [0.1] * loop.stats.ticks
        assert len(naps) == 3

    def test_virtual_clock_never_sleeps(self):
        naps = []
        loop, _ = make_loop("sleep(0.2)", tick=0.1, sleeper=naps.append)
        loop.run()
        assert naps == []

    def test_tick_must_be_positive(self):
        with pytest.raises(ValueError):
            make_loop("pass", tick=0)

    def test_default_tick(self):
        loop, _ = make_loop("pass")
        assert loop.tick == DEFAULT_TICK
