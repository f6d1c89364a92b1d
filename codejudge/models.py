from dataclasses import dataclass
from datetime import datetime
from typing import Optional
import enum

from sqlalchemy import Column, Integer, String, Text, DateTime
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base

Base = declarative_base()


class ExecutionStatus(str, enum.Enum):
    SUCCESS = "Success"
    COMPILE_ERROR = "Compile Error"
    RUNTIME_ERROR = "Runtime Error"
    TIME_LIMIT = "Time Limit Exceeded"
    MEMORY_LIMIT = "Memory Limit Exceeded"
    INTERNAL_ERROR = "Internal Error"


class JudgeStatus(str, enum.Enum):
    PENDING = "Pending"
    JUDGING = "Judging"
    ACCEPTED = "Accepted"
    WRONG_ANSWER = "Wrong Answer"
    TIME_LIMIT = "Time Limit Exceeded"
    MEMORY_LIMIT = "Memory Limit Exceeded"
    RUNTIME_ERROR = "Runtime Error"
    COMPILE_ERROR = "Compile Error"
    INTERNAL_ERROR = "Internal Error"

    @classmethod
    def from_execution(cls, status: ExecutionStatus) -> "JudgeStatus":
        if status == ExecutionStatus.SUCCESS:
            return cls.ACCEPTED
        return cls(status.value)


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of running one program once against one input.

    ``exit_code`` is ``None`` when the process was killed by the runner
    (timeout or memory ceiling). ``memory_kb`` is sampled and therefore
    advisory: short-lived processes may finish between two samples.
    """
    status: ExecutionStatus
    output: str = ""
    error_output: Optional[str] = None
    exit_code: Optional[int] = None
    runtime_ms: int = 0
    memory_kb: int = 0
    output_truncated: bool = False

    @property
    def success(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error_output,
            "exitCode": self.exit_code,
            "runtimeMs": self.runtime_ms,
            "memoryKb": self.memory_kb,
            "status": self.status.value,
            "outputTruncated": self.output_truncated,
        }


class Submission(Base):
    __tablename__ = "submissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    language = Column(String(16), nullable=False)
    code = Column(Text, nullable=False)
    status = Column(String(32), default=JudgeStatus.PENDING.value)
    runtime_ms = Column(Integer, default=0)
    memory_kb = Column(Integer, default=0)
    test_cases_passed = Column(Integer, default=0)
    total_test_cases = Column(Integer, default=0)
    score = Column(Integer, default=0)
    max_score = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)
    failed_case = Column(Integer, default=0)  # 1-based, 0 if AC
    created_at = Column(DateTime, default=datetime.utcnow)
    judged_at = Column(DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "language": self.language,
            "status": self.status,
            "runtimeMs": self.runtime_ms,
            "memoryKb": self.memory_kb,
            "testCasesPassed": self.test_cases_passed,
            "totalTestCases": self.total_test_cases,
            "score": self.score,
            "maxScore": self.max_score,
            "errorMessage": self.error_message,
            "failedCase": self.failed_case,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "judgedAt": self.judged_at.isoformat() if self.judged_at else None,
        }


def create_session_factory(database_url: str):
    engine = create_async_engine(database_url, echo=False)
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine, async_session


async def init_db(engine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
