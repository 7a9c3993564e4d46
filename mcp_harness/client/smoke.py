"""Smoke-Test Runner: reachability checks for every tool a server lists."""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Sequence
from typing import Any

from mcp_harness.client.tools import ToolInvoker
from mcp_harness.errors import NotFoundError
from mcp_harness.models import (
    Expectation,
    MatchType,
    TestCase,
    TestResult,
    TestRun,
    TestSummary,
)
from mcp_harness.process_manager.supervisor import ProcessSupervisor

log = logging.getLogger(__name__)

SETUP_CASE_NAME = "Test suite setup"


def _to_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def matches(expected: Expectation, result: Any) -> bool:
    """Check a tool result against an expectation.

    Raises re.error for an invalid regex pattern.
    """
    actual = _to_json(result)
    if expected.type is MatchType.EQUALS:
        return actual == _to_json(expected.value)
    if expected.type is MatchType.CONTAINS:
        return _to_json(expected.value) in actual
    if expected.type is MatchType.REGEX:
        return re.search(str(expected.value), actual) is not None
    return False


def plan_for(tools: Sequence[str]) -> list[TestCase]:
    """One empty-argument call per distinct tool, in listing order."""
    return [
        TestCase(
            name=f"List {tool} schema",
            tool=tool,
            description=f"Check that {tool} is available and has a valid schema",
        )
        for tool in dict.fromkeys(tools)
    ]


def _elapsed_ms(start: float) -> int:
    return int(round((time.monotonic() - start) * 1000))


class SmokeTestRunner:
    def __init__(self, supervisor: ProcessSupervisor, invoker: ToolInvoker) -> None:
        self._supervisor = supervisor
        self._invoker = invoker

    async def run(
        self,
        server_name: str,
        test_cases: Sequence[TestCase] | None = None,
    ) -> TestRun:
        """Run ``test_cases`` (or a synthesized plan) one after another.

        NotFoundError propagates; any other setup failure is reported as a
        single failing case.
        """
        start = time.monotonic()
        try:
            self._supervisor.get(server_name)
            tools = await self._invoker.list_tool_names(server_name)
            cases = list(test_cases) if test_cases is not None else plan_for(tools)
            log.info("Running %d test(s) against server '%s'", len(cases), server_name)

            results = []
            for case in cases:
                results.append(await self._run_case(server_name, case))
        except NotFoundError:
            raise
        except Exception as exc:
            log.error("Error running tests for server '%s': %s", server_name, exc)
            duration = _elapsed_ms(start)
            failure = TestResult(
                name=SETUP_CASE_NAME,
                passed=False,
                message=f"Failed to setup test suite: {exc}",
                duration_ms=duration,
                error=str(exc),
            )
            return TestRun(
                results=[failure],
                summary=TestSummary.from_results([failure], duration),
            )

        return TestRun(
            results=results,
            summary=TestSummary.from_results(results, _elapsed_ms(start)),
        )

    async def _run_case(self, server_name: str, case: TestCase) -> TestResult:
        start = time.monotonic()
        try:
            outcome = await self._invoker.invoke(server_name, case.tool, case.input)
            if not outcome.ok:
                return TestResult(
                    name=case.name,
                    passed=False,
                    message=f"Tool call failed: {outcome.error}",
                    duration_ms=_elapsed_ms(start),
                    error=outcome.error,
                )

            passed = True
            if case.expected is not None:
                passed = matches(case.expected, outcome.result)
            return TestResult(
                name=case.name,
                passed=passed,
                message=(
                    "Test passed" if passed
                    else "Test failed: result did not match expected value"
                ),
                duration_ms=_elapsed_ms(start),
            )
        except Exception as exc:
            return TestResult(
                name=case.name,
                passed=False,
                message=f"Test failed with error: {exc}",
                duration_ms=_elapsed_ms(start),
                error=str(exc),
            )
