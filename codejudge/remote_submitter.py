"""
Remote judge client - talks to a running codejudge service over HTTP.
Supports single runs, polled submissions and multi-threaded batch judging.
"""
import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List, Optional

import aiohttp
from tqdm import tqdm

logger = logging.getLogger(__name__)

PENDING_STATUSES = ("Pending", "Judging")


def transport_failure(message: str) -> Dict:
    return {
        "success": False,
        "status": "Internal Error",
        "errorMessage": message,
        "runtimeMs": 0,
        "memoryKb": 0,
        "passed": False,
        "failedCase": None,
    }


class RemoteJudgeClient:
    def __init__(self, base_url: str = "http://localhost:8000", max_workers: Optional[int] = None,
                 poll_interval: float = 0.5, timeout: float = 60.0):
        """
        Args:
            base_url: judge service address
            max_workers: thread pool size for batch_judge, None uses the executor default
            poll_interval: seconds between submission status polls
            timeout: total seconds allowed per HTTP request
        """
        self.base_url = base_url.rstrip("/")
        self.max_workers = max_workers
        self.poll_interval = poll_interval
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    def _session(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(timeout=self.timeout)

    async def _post(self, path: str, payload: Dict) -> Dict:
        async with self._session() as session:
            try:
                async with session.post(f"{self.base_url}{path}", json=payload) as response:
                    body = await response.json()
                    if response.status == 400:
                        return transport_failure(f"Request rejected: {body.get('detail')}")
                    return body
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                logger.warning(f"[Remote] POST {path} failed: {e}")
                return transport_failure(f"Request failed: {e}")

    async def execute_async(self, language: str, code: str, stdin: str = "",
                            time_limit_ms: Optional[int] = None,
                            memory_limit_kb: Optional[int] = None) -> Dict:
        payload = {"language": language, "code": code, "input": stdin}
        if time_limit_ms:
            payload["timeLimitMs"] = time_limit_ms
        if memory_limit_kb:
            payload["memoryLimitKb"] = memory_limit_kb
        return await self._post("/execute", payload)

    async def judge_async(self, language: str, code: str, test_cases: List[Dict], **options) -> Dict:
        """
        Judge synchronously on the server.

        Args:
            test_cases: [{"input": ..., "expectedOutput": ..., "points": 1}, ...]
            options: timeLimitMs, memoryLimitKb, comparison, tolerance
        """
        result = await self._post("/judge", {"language": language, "code": code,
                                             "testCases": test_cases, **options})
        result.setdefault("success", result.get("status") != "Internal Error")
        result["passed"] = result.get("status") == "Accepted"
        return result

    async def submit_async(self, language: str, code: str, test_cases: List[Dict], **options) -> Dict:
        """Store a submission, then poll until its verdict is final."""
        async with self._session() as session:
            payload = {"language": language, "code": code, "testCases": test_cases, **options}
            try:
                async with session.post(f"{self.base_url}/submissions", json=payload) as response:
                    result = await response.json()
                    submission_id = result.get("submissionId")
                    if not submission_id:
                        return transport_failure(f"Failed to get submissionId: {result.get('detail')}")
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                return transport_failure(f"Submit failed: {e}")

            # Poll for the result
            start_time = time.time()
            while True:
                try:
                    async with session.get(f"{self.base_url}/submissions/{submission_id}") as response:
                        result = await response.json()
                except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                    return transport_failure(f"Query failed: {e}")

                status = result.get("status")
                if status in PENDING_STATUSES:
                    await asyncio.sleep(self.poll_interval)
                    continue

                result.update({
                    "success": True,
                    "passed": status == "Accepted",
                    "submissionId": submission_id,
                    "totalTime": time.time() - start_time,
                })
                return result

    async def health_async(self) -> Dict:
        async with self._session() as session:
            try:
                async with session.get(f"{self.base_url}/health") as response:
                    return await response.json()
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                return {"healthy": False, "error": str(e)}

    def _run(self, coro):
        loop = asyncio.new_event_loop()
        try:
            return loop.run_until_complete(coro)
        finally:
            loop.close()

    def execute(self, language: str, code: str, stdin: str = "", **limits) -> Dict:
        return self._run(self.execute_async(language, code, stdin, **limits))

    def judge(self, language: str, code: str, test_cases: List[Dict], **options) -> Dict:
        return self._run(self.judge_async(language, code, test_cases, **options))

    def submit(self, language: str, code: str, test_cases: List[Dict], **options) -> Dict:
        return self._run(self.submit_async(language, code, test_cases, **options))

    def health(self) -> Dict:
        return self._run(self.health_async())

    def batch_judge(self, language: str, batch_code: List[str], test_cases: List[Dict],
                    use_multithreading: bool = True, desc: str = "Judging", **options) -> Dict:
        """
        Judge many solutions to the same problem.

        Returns:
            counts of accepted/rejected/errored solutions and the accepted ones
        """
        code_cnt = len(batch_code)
        results: List[Optional[Dict]] = [None] * code_cnt

        if use_multithreading and code_cnt > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                future_to_idx = {
                    executor.submit(self.judge, language, code, test_cases, **options): idx
                    for idx, code in enumerate(batch_code)
                }
                with tqdm(total=code_cnt, desc=desc) as pbar:
                    for future in as_completed(future_to_idx):
                        idx = future_to_idx[future]
                        try:
                            results[idx] = future.result()
                        except Exception as e:
                            logger.error(f"[Remote] Error judging code {idx}: {e}")
                            results[idx] = transport_failure(str(e))
                        pbar.update(1)
        else:
            for idx, code in enumerate(tqdm(batch_code, desc=desc)):
                results[idx] = self.judge(language, code, test_cases, **options)

        accepted = [
            {"index": idx, "code": code, "result": result}
            for idx, (code, result) in enumerate(zip(batch_code, results))
            if result.get("success") and result.get("passed")
        ]
        errors = sum(1 for r in results if not r.get("success"))
        return {
            "total": code_cnt,
            "accepted": len(accepted),
            "rejected": code_cnt - len(accepted) - errors,
            "errors": errors,
            "accepted_submissions": accepted,
            "results": results,
        }
