from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from codejudge.judge import ComparisonMode, TestCase


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExecuteRequest(CamelModel):
    language: str = Field(min_length=1)
    code: str = Field(min_length=1)
    input: str = ""
    time_limit_ms: Optional[int] = Field(default=None, gt=0)
    memory_limit_kb: Optional[int] = Field(default=None, gt=0)


class TestCaseIn(CamelModel):
    __test__ = False

    input: str = ""
    expected_output: str
    points: int = Field(default=1, ge=0)
    time_limit_ms: Optional[int] = Field(default=None, gt=0)
    memory_limit_kb: Optional[int] = Field(default=None, gt=0)

    def to_test_case(self) -> TestCase:
        return TestCase(
            input=self.input,
            expected_output=self.expected_output,
            points=self.points,
            time_limit_ms=self.time_limit_ms,
            memory_limit_kb=self.memory_limit_kb,
        )


class JudgeRequest(CamelModel):
    language: str = Field(min_length=1)
    code: str = Field(min_length=1)
    test_cases: List[TestCaseIn] = Field(default_factory=list)
    time_limit_ms: Optional[int] = Field(default=None, gt=0)
    memory_limit_kb: Optional[int] = Field(default=None, gt=0)
    comparison: ComparisonMode = ComparisonMode.EXACT
    tolerance: Optional[float] = Field(default=None, ge=0)


class SingleTestRequest(ExecuteRequest):
    expected_output: str
    comparison: ComparisonMode = ComparisonMode.EXACT
    tolerance: Optional[float] = Field(default=None, ge=0)
