import asyncio
import contextlib
import logging
import os
import time
from asyncio import Semaphore
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession

from codejudge.config import Settings, configure_logging, get_settings
from codejudge.exceptions import JudgeRequestError
from codejudge.executor import ExecutionEngine
from codejudge.judge import JudgeEngine, TestCase
from codejudge.languages import LanguageRegistry
from codejudge.models import ExecutionStatus, JudgeStatus, Submission, create_session_factory, init_db
from codejudge.schemas import ExecuteRequest, JudgeRequest, SingleTestRequest

logger = logging.getLogger(__name__)


class JudgeService(object):
    """Everything one running service instance owns."""

    def __init__(self, settings: Settings, registry: Optional[LanguageRegistry] = None):
        self.settings = settings
        self.executor = ExecutionEngine.from_settings(settings, registry)
        self.judge = JudgeEngine(self.executor, max_message_length=settings.max_diagnostic_length)
        self.engine, self.async_session = create_session_factory(settings.database_url)
        # Semaphore for concurrent judge limit
        self.semaphore = Semaphore(settings.max_concurrent_judges)
        self.active_judges = 0
        self.started_at = time.time()

    @contextlib.asynccontextmanager
    async def slot(self):
        async with self.semaphore:
            self.active_judges += 1
            try:
                yield
            finally:
                self.active_judges -= 1

    def validate(self, language: str, code: str, inputs: Iterable[str] = ()):
        registry = self.executor.registry
        if language not in registry:
            raise HTTPException(400, f"Unsupported language: {language}. "
                                     f"Supported languages: {', '.join(registry.ids())}")
        if len(code) > self.settings.max_code_length:
            raise HTTPException(400, f"Code length exceeds maximum limit of "
                                     f"{self.settings.max_code_length} characters")
        for idx, data in enumerate(inputs, 1):
            if len(data.encode("utf-8")) > self.settings.max_input_size:
                raise HTTPException(400, f"Input {idx} exceeds maximum size of "
                                         f"{self.settings.max_input_size} bytes")


async def sweep_periodically(service: JudgeService):
    interval = service.settings.cleanup_interval_minutes * 60
    workspaces = service.executor.workspaces
    while True:
        try:
            await asyncio.to_thread(workspaces.sweep_stale, service.settings.max_workspace_age_ms)
        except Exception:
            logger.exception("[Cleanup] Workspace sweep failed")
        await asyncio.sleep(interval)


def _ensure_sqlite_dir(database_url: str):
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    settings = app.state.settings
    configure_logging(settings.log_level)
    _ensure_sqlite_dir(settings.database_url)

    service = JudgeService(settings, app.state.registry)
    await init_db(service.engine)
    app.state.service = service
    sweeper = asyncio.create_task(sweep_periodically(service))
    logger.info(f"Code judge ready, languages: {', '.join(service.executor.registry.ids())}")
    try:
        yield
    finally:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
        await service.engine.dispose()


def get_service(request: Request) -> JudgeService:
    return request.app.state.service


async def get_session(service: JudgeService = Depends(get_service)):
    async with service.async_session() as session:
        yield session


router = APIRouter()


def _respond(payload: dict, internal: bool):
    # Judged outcomes are 200 whatever the verdict; only engine failures are 500
    if internal:
        return JSONResponse(payload, status_code=500)
    return payload


# ===== Execution APIs =====

@router.post("/execute")
async def execute(body: ExecuteRequest, service: JudgeService = Depends(get_service)):
    """Run code once against an optional stdin"""
    service.validate(body.language, body.code, [body.input])
    logger.info(f"Executing {body.language} code, length: {len(body.code)}")

    async with service.slot():
        result = await service.executor.execute(
            body.language, body.code, body.input, body.time_limit_ms, body.memory_limit_kb
        )
    return _respond(result.to_dict(), result.status == ExecutionStatus.INTERNAL_ERROR)


@router.post("/judge")
async def judge(body: JudgeRequest, service: JudgeService = Depends(get_service)):
    """Judge code against a list of test cases"""
    service.validate(body.language, body.code, [tc.input for tc in body.test_cases])
    if not body.test_cases:
        raise HTTPException(400, "Test cases are required and must be a non-empty array")
    logger.info(f"Judging {body.language} submission with {len(body.test_cases)} test cases")

    async with service.slot():
        verdict = await service.judge.judge(
            body.language,
            body.code,
            [tc.to_test_case() for tc in body.test_cases],
            time_limit_ms=body.time_limit_ms,
            memory_limit_kb=body.memory_limit_kb,
            comparison=body.comparison,
            tolerance=body.tolerance,
        )
    return _respond(verdict.to_dict(), verdict.status == JudgeStatus.INTERNAL_ERROR)


@router.post("/test")
async def run_test(body: SingleTestRequest, service: JudgeService = Depends(get_service)):
    """Run a single test case and compare against the expected output"""
    service.validate(body.language, body.code, [body.input])

    test_case = TestCase(
        input=body.input,
        expected_output=body.expected_output,
        time_limit_ms=body.time_limit_ms,
        memory_limit_kb=body.memory_limit_kb,
    )
    async with service.slot():
        result = await service.judge.run_single_test(
            body.language, body.code, test_case, comparison=body.comparison, tolerance=body.tolerance
        )
    return _respond(result.to_dict(), result.status == JudgeStatus.INTERNAL_ERROR)


# ===== Submission APIs =====

@router.post("/submissions")
async def submit(
    body: JudgeRequest,
    background_tasks: BackgroundTasks,
    service: JudgeService = Depends(get_service),
    session: AsyncSession = Depends(get_session),
):
    """Store a submission and judge it in the background"""
    service.validate(body.language, body.code, [tc.input for tc in body.test_cases])
    if not body.test_cases:
        raise HTTPException(400, "Test cases are required and must be a non-empty array")

    submission = Submission(
        language=body.language.lower(),
        code=body.code,
        status=JudgeStatus.PENDING.value,
        total_test_cases=len(body.test_cases),
        max_score=sum(tc.points for tc in body.test_cases),
    )
    session.add(submission)
    await session.commit()
    await session.refresh(submission)

    # Start judging in background
    background_tasks.add_task(judge_submission, service, submission.id, body)

    return {"submissionId": submission.id, "status": JudgeStatus.PENDING.value}


async def judge_submission(service: JudgeService, submission_id: int, body: JudgeRequest):
    """Background task to judge a submission"""
    async with service.slot():
        async with service.async_session() as session:
            # Update status to judging
            submission = await session.get(Submission, submission_id)
            submission.status = JudgeStatus.JUDGING.value
            await session.commit()

            try:
                verdict = await service.judge.judge(
                    body.language,
                    body.code,
                    [tc.to_test_case() for tc in body.test_cases],
                    time_limit_ms=body.time_limit_ms,
                    memory_limit_kb=body.memory_limit_kb,
                    comparison=body.comparison,
                    tolerance=body.tolerance,
                    label=f"#{submission_id}",
                )
            except Exception:
                logger.exception(f"[Judge #{submission_id}] Judging failed")
                submission.status = JudgeStatus.INTERNAL_ERROR.value
                submission.error_message = "An internal error occurred while judging your submission."
            else:
                # Update result
                submission.status = verdict.status.value
                submission.runtime_ms = verdict.runtime_ms
                submission.memory_kb = verdict.memory_kb
                submission.test_cases_passed = verdict.test_cases_passed
                submission.total_test_cases = verdict.total_test_cases
                submission.score = verdict.score
                submission.max_score = verdict.max_score
                submission.error_message = verdict.error_message
                submission.failed_case = verdict.failed_case
            submission.judged_at = datetime.utcnow()
            await session.commit()


@router.get("/submissions/{submission_id}")
async def get_submission(submission_id: int, session: AsyncSession = Depends(get_session)):
    """Get submission status and result"""
    submission = await session.get(Submission, submission_id)
    if not submission:
        raise HTTPException(404, "Submission not found")
    return submission.to_dict()


@router.get("/submissions")
async def list_submissions(
    language: Optional[str] = None,
    limit: int = 50,
    session: AsyncSession = Depends(get_session),
):
    """List recent submissions"""
    query = select(Submission).order_by(Submission.id.desc()).limit(max(1, min(limit, 500)))
    if language:
        query = query.where(Submission.language == language.lower())

    result = await session.execute(query)
    return {"submissions": [s.to_dict() for s in result.scalars().all()]}


# ===== Config APIs =====

@router.get("/languages")
async def get_languages(service: JudgeService = Depends(get_service)):
    """Get supported languages and whether their toolchain is installed"""
    languages = []
    for language in service.executor.registry.list_supported():
        entry = language.to_dict()
        entry["available"] = language.is_available()
        languages.append(entry)
    return {"languages": languages}


@router.get("/health")
async def health(service: JudgeService = Depends(get_service)):
    registry = service.executor.registry
    root = service.executor.workspaces.root
    scratch_writable = root.is_dir() and os.access(root, os.W_OK)
    payload = {
        "healthy": scratch_writable,
        "scratchWritable": scratch_writable,
        "uptimeSeconds": int(time.time() - service.started_at),
        "supportedLanguages": registry.ids(),
        "availableLanguages": [lang.id for lang in registry.list_supported() if lang.is_available()],
        "activeJudges": service.active_judges,
        "maxConcurrentJudges": service.settings.max_concurrent_judges,
        "timestamp": datetime.utcnow().isoformat(),
    }
    return JSONResponse(payload, status_code=200 if scratch_writable else 503)


async def request_error_handler(request: Request, exc: JudgeRequestError):
    return JSONResponse({"detail": exc.message}, status_code=400)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
    )
    return JSONResponse({"detail": f"Malformed request: {problems}"}, status_code=400)


def create_app(settings: Optional[Settings] = None, registry: Optional[LanguageRegistry] = None) -> FastAPI:
    app = FastAPI(title="Code Judge", lifespan=lifespan)
    app.state.settings = settings or get_settings()
    app.state.registry = registry
    app.include_router(router)
    app.add_exception_handler(JudgeRequestError, request_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    return app


app = create_app()


def run():
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
