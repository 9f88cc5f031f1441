"""Shared helpers for running LOOP programs to completion in tests."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pytest

from extensions import ExtensionAPI, RuntimeServices, build_default_services
from interpreter import Execution, ExecutionState, Interpreter, Status, start
from parser import parse_source


@dataclass
class RunResult:
    status: Status
    output: List[str]
    interpreter: Interpreter
    budget_pauses: int = 0
    waits: List[Any] = field(default_factory=list)

    @property
    def state(self) -> ExecutionState:
        return self.status.state

    @property
    def error(self):
        return self.status.error

    @property
    def globals(self) -> Dict[str, Any]:
        return self.interpreter.global_env.values


def drive(execution: Execution, output: List[str], max_resumes: int = 200_000) -> RunResult:
    budget_pauses = 0
    waits: List[Any] = []
    for _ in range(max_resumes):
        status = execution.resume()
        if status.state is ExecutionState.RUNNING:
            budget_pauses += 1
        elif status.state is ExecutionState.PAUSED:
            waits.append(status.wait)
        else:
            return RunResult(status, output, execution.interpreter, budget_pauses, waits)
    raise AssertionError(f"program did not finish within {max_resumes} resumes")


def run_source(source: str, services: Optional[RuntimeServices] = None, budget: int = 100, verbose: bool = False) -> RunResult:
    output: List[str] = []
    execution = start(parse_source(source), services, output_sink=output.append, budget=budget, verbose=verbose)
    return drive(execution, output)


@pytest.fixture
def run():
    return run_source


@pytest.fixture
def services() -> RuntimeServices:
    return build_default_services()


@pytest.fixture
def ext(services) -> ExtensionAPI:
    return ExtensionAPI(services=services, ext_name="test")
