import enum
import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from codejudge.executor import ExecutionEngine
from codejudge.models import ExecutionResult, JudgeStatus

logger = logging.getLogger(__name__)


class ComparisonMode(str, enum.Enum):
    EXACT = "exact"    # trimmed, byte-for-byte
    LINES = "lines"    # per-line trailing whitespace and trailing blank lines ignored
    TOKENS = "tokens"  # whitespace-separated tokens, optional float tolerance


@dataclass(frozen=True)
class TestCase:
    __test__ = False

    input: str
    expected_output: str
    points: int = 1
    time_limit_ms: Optional[int] = None
    memory_limit_kb: Optional[int] = None


@dataclass(frozen=True)
class TestCaseResult:
    __test__ = False

    index: int  # 1-based
    passed: bool
    status: JudgeStatus
    actual_output: str
    expected_output: str
    execution: ExecutionResult
    points_awarded: int

    def to_dict(self) -> dict:
        return {
            "testCase": self.index,
            "passed": self.passed,
            "status": self.status.value,
            "actualOutput": self.actual_output,
            "expectedOutput": self.expected_output,
            "error": self.execution.error_output,
            "exitCode": self.execution.exit_code,
            "runtimeMs": self.execution.runtime_ms,
            "memoryKb": self.execution.memory_kb,
            "outputTruncated": self.execution.output_truncated,
            "points": self.points_awarded,
        }


@dataclass(frozen=True)
class JudgeVerdict:
    status: JudgeStatus
    test_cases_passed: int
    total_test_cases: int
    score: int
    max_score: int
    runtime_ms: int = 0
    memory_kb: int = 0
    error_message: Optional[str] = None
    failed_case: int = 0
    test_case_results: Tuple[TestCaseResult, ...] = field(default_factory=tuple)

    @property
    def accepted(self) -> bool:
        return self.status == JudgeStatus.ACCEPTED

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "testCasesPassed": self.test_cases_passed,
            "totalTestCases": self.total_test_cases,
            "score": self.score,
            "maxScore": self.max_score,
            "runtimeMs": self.runtime_ms,
            "memoryKb": self.memory_kb,
            "errorMessage": self.error_message,
            "failedCase": self.failed_case,
            "testCaseResults": [r.to_dict() for r in self.test_case_results],
        }


def _tokens_match(actual: str, expected: str, tolerance: Optional[float]) -> bool:
    actual_tokens = actual.split()
    expected_tokens = expected.split()
    if len(actual_tokens) != len(expected_tokens):
        return False
    for got, want in zip(actual_tokens, expected_tokens):
        if got == want:
            continue
        if tolerance is None:
            return False
        try:
            got_value, want_value = float(got), float(want)
        except ValueError:
            return False
        if not math.isclose(got_value, want_value, rel_tol=tolerance, abs_tol=tolerance):
            return False
    return True


def _normalized_lines(text: str) -> List[str]:
    lines = [line.rstrip() for line in text.splitlines()]
    while lines and not lines[-1]:
        lines.pop()
    return lines


def compare_output(actual: str, expected: str, mode: ComparisonMode = ComparisonMode.EXACT,
                   tolerance: Optional[float] = None) -> bool:
    """Default policy: leading/trailing whitespace stripped, internal whitespace significant."""
    if mode == ComparisonMode.LINES:
        return _normalized_lines(actual) == _normalized_lines(expected)
    if mode == ComparisonMode.TOKENS:
        return _tokens_match(actual, expected, tolerance)
    return actual.strip() == expected.strip()


class JudgeEngine(object):
    def __init__(self, executor: ExecutionEngine, max_message_length: int = 2000):
        self.executor = executor
        self.max_message_length = max_message_length

    async def judge(self, language_id: str, code: str, test_cases: Sequence[TestCase],
                    time_limit_ms: Optional[int] = None, memory_limit_kb: Optional[int] = None,
                    comparison: ComparisonMode = ComparisonMode.EXACT,
                    tolerance: Optional[float] = None,
                    label: Optional[str] = None) -> JudgeVerdict:
        """Judge one submission against ``test_cases`` in order.

        The program is compiled once and the artifact reused for every test
        case. Evaluation stops at the first test case whose execution is not
        a success; later test cases are absent from the results. A wrong
        answer does not stop evaluation.

        Raises ``UnsupportedLanguageError`` for an unknown language.
        """
        language = self.executor.registry.lookup(language_id)
        if not test_cases:
            return JudgeVerdict(JudgeStatus.INTERNAL_ERROR, 0, 0, 0, 0,
                                error_message="No test cases provided")

        max_score = sum(tc.points for tc in test_cases)
        results: List[TestCaseResult] = []
        halted: Optional[TestCaseResult] = None

        async with self.executor.prepare(language.id, code, label=label) as program:
            label = program.label
            logger.info(f"[Judge {label}] Language: {language.id}, {len(test_cases)} test cases")
            for idx, test_case in enumerate(test_cases, 1):
                execution = await program.run(
                    test_case.input,
                    test_case.time_limit_ms or time_limit_ms,
                    test_case.memory_limit_kb or memory_limit_kb,
                )
                if not execution.success:
                    halted = TestCaseResult(idx, False, JudgeStatus.from_execution(execution.status),
                                            execution.output, test_case.expected_output, execution, 0)
                    results.append(halted)
                    logger.info(f"[Judge {label}] Test {idx}: {execution.status.value}, stopping")
                    break

                passed = compare_output(execution.output, test_case.expected_output,
                                        comparison, tolerance)
                status = JudgeStatus.ACCEPTED if passed else JudgeStatus.WRONG_ANSWER
                results.append(TestCaseResult(idx, passed, status, execution.output,
                                              test_case.expected_output, execution,
                                              test_case.points if passed else 0))
                logger.debug(f"[Judge {label}] Test {idx}: {status.value}, {execution.runtime_ms}ms")

        verdict = self._aggregate(results, halted, len(test_cases), max_score)
        logger.info(f"[Judge {label}] Result: {verdict.status.value}, Time: {verdict.runtime_ms}ms, "
                    f"Score: {verdict.score}/{verdict.max_score}")
        return verdict

    async def run_single_test(self, language_id: str, code: str, test_case: TestCase,
                              comparison: ComparisonMode = ComparisonMode.EXACT,
                              tolerance: Optional[float] = None) -> TestCaseResult:
        verdict = await self.judge(language_id, code, [test_case],
                                   comparison=comparison, tolerance=tolerance)
        return verdict.test_case_results[0]

    def _aggregate(self, results: List[TestCaseResult], halted: Optional[TestCaseResult],
                   total: int, max_score: int) -> JudgeVerdict:
        passed = sum(1 for r in results if r.passed)
        score = sum(r.points_awarded for r in results)
        runtime_ms = max((r.execution.runtime_ms for r in results), default=0)
        memory_kb = max((r.execution.memory_kb for r in results), default=0)

        if halted is not None:
            status = halted.status
            failed_case = halted.index
        elif passed == total:
            status = JudgeStatus.ACCEPTED
            failed_case = 0
        else:
            status = JudgeStatus.WRONG_ANSWER
            failed_case = next(r.index for r in results if not r.passed)

        return JudgeVerdict(
            status=status,
            test_cases_passed=passed,
            total_test_cases=total,
            score=score,
            max_score=max_score,
            runtime_ms=runtime_ms,
            memory_kb=memory_kb,
            error_message=self._error_message(status, halted, passed, total),
            failed_case=failed_case,
            test_case_results=tuple(results),
        )

    def _error_message(self, status: JudgeStatus, halted: Optional[TestCaseResult],
                       passed: int, total: int) -> Optional[str]:
        if status == JudgeStatus.ACCEPTED:
            return None
        if status == JudgeStatus.WRONG_ANSWER:
            return f"Wrong answer. Passed {passed} out of {total} test cases."
        if status == JudgeStatus.COMPILE_ERROR:
            return (halted.execution.error_output or "Compilation failed")[:self.max_message_length]
        if status == JudgeStatus.RUNTIME_ERROR:
            message = f"Runtime error on test case {halted.index}."
            detail = (halted.execution.error_output or "").strip()
            if detail:
                message = f"{message}\n{detail}"
            return message[:self.max_message_length]
        if status == JudgeStatus.TIME_LIMIT:
            return f"Time limit exceeded on test case {halted.index}."
        if status == JudgeStatus.MEMORY_LIMIT:
            return f"Memory limit exceeded on test case {halted.index}."
        return "An internal error occurred while judging your submission."
