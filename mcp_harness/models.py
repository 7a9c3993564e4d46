from __future__ import annotations

import enum
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass, field
from typing import Any


# ---------------------------------------------------------------------------
# Tool invocation
# ---------------------------------------------------------------------------

@dataclass
class ToolCallResult:
    result: Any = None
    duration_ms: int = 0
    error: str | None = None
    error_type: str | None = None
    is_error: bool = False  # the server's own isError flag, informational

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"result": self.result, "duration_ms": self.duration_ms}
        if self.error is not None:
            data["error"] = self.error
            data["error_type"] = self.error_type
        if self.is_error:
            data["is_error"] = True
        return data


# ---------------------------------------------------------------------------
# Smoke tests
# ---------------------------------------------------------------------------

class MatchType(enum.Enum):
    EQUALS = "equals"      # compact JSON equality
    CONTAINS = "contains"  # expected JSON is a substring of the result JSON
    REGEX = "regex"        # pattern searched in the result JSON


@dataclass
class Expectation:
    type: MatchType
    value: Any

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Expectation:
        try:
            match_type = MatchType(data["type"])
        except (KeyError, ValueError):
            allowed = ", ".join(m.value for m in MatchType)
            raise ValueError(
                f"Expectation type must be one of: {allowed}"
            ) from None
        if "value" not in data:
            raise ValueError("Expectation requires a 'value'")
        return cls(type=match_type, value=data["value"])


@dataclass
class TestCase:
    __test__ = False  # keep pytest from collecting this as a test class

    name: str
    tool: str
    input: dict[str, Any] = field(default_factory=dict)
    description: str = ""
    expected: Expectation | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TestCase:
        tool = data.get("tool")
        if not isinstance(tool, str) or not tool:
            raise ValueError("Test case requires a 'tool' name")
        args = data.get("input") or {}
        if not isinstance(args, Mapping):
            raise ValueError(f"Test case input for '{tool}' must be an object")
        expected = data.get("expected")
        return cls(
            name=str(data.get("name") or f"Call {tool}"),
            tool=tool,
            input=dict(args),
            description=str(data.get("description") or ""),
            expected=Expectation.from_dict(expected) if expected else None,
        )


@dataclass
class TestResult:
    __test__ = False

    name: str
    passed: bool
    message: str
    duration_ms: int
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if self.error is None:
            del data["error"]
        return data


@dataclass
class TestSummary:
    __test__ = False

    total: int
    passed: int
    failed: int
    duration_ms: int

    @classmethod
    def from_results(
        cls, results: Sequence[TestResult], duration_ms: int
    ) -> TestSummary:
        passed = sum(1 for r in results if r.passed)
        return cls(
            total=len(results),
            passed=passed,
            failed=len(results) - passed,
            duration_ms=duration_ms,
        )


@dataclass
class TestRun:
    __test__ = False

    results: list[TestResult]
    summary: TestSummary

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "summary": asdict(self.summary),
        }
