"""
Probe executor: performs one HTTP check for one job and produces one result.
"""
import asyncio
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx

from checkmesh.config import Settings
from checkmesh.errors import ProbeError
from checkmesh.schemas import STATUS_DOWN, STATUS_UP, CheckResultIn, Job

logger = logging.getLogger("checkmesh.checker")

BEARER_PATTERN = re.compile(r"Bearer\s+\S+", re.IGNORECASE)
BODY_METHODS = {"POST", "PUT", "PATCH"}


def sanitize_error_message(message: str, max_length: int = 500) -> str:
    """Truncate and redact bearer tokens from transport error text."""
    return BEARER_PATTERN.sub("Bearer [REDACTED]", message[:max_length])


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff for transport-level probe failures.

    Only the final outcome of a retried job is reported. A policy with
    max_retries=0 is a single attempt.
    """

    max_retries: int = 0
    base_delay: float = 1.0
    factor: float = 2.0

    def attempts_for(self, job: Job) -> int:
        return 1 + min(job.retries, self.max_retries)

    def delay(self, attempt: int) -> float:
        return self.base_delay * (self.factor ** attempt)

    @classmethod
    def single_attempt(cls) -> "RetryPolicy":
        return cls(max_retries=0)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        if not settings.probe_retry_enabled:
            return cls.single_attempt()
        return cls(
            max_retries=settings.probe_retry_max,
            base_delay=settings.probe_retry_base_delay,
        )


class ProbeExecutor:
    def __init__(
        self,
        retry_policy: RetryPolicy | None = None,
        user_agent: str = "CheckMesh Monitor/1.0",
        max_error_length: int = 500,
        sleep=asyncio.sleep,
    ):
        self.retry_policy = retry_policy or RetryPolicy.single_attempt()
        self.user_agent = user_agent
        self.max_error_length = max_error_length
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProbeExecutor":
        return cls(
            retry_policy=RetryPolicy.from_settings(settings),
            user_agent=settings.probe_user_agent,
            max_error_length=settings.probe_max_error_length,
        )

    async def execute(self, job: Job) -> CheckResultIn:
        """Run the check for one job. Never raises for target failures."""
        start = time.monotonic()
        attempts = self.retry_policy.attempts_for(job)
        last_error: ProbeError | None = None

        for attempt in range(attempts):
            try:
                status_code = await self._attempt(job)
            except ProbeError as e:
                last_error = e
                if attempt < attempts - 1:
                    delay = self.retry_policy.delay(attempt)
                    logger.info(
                        f"Retry attempt {attempt + 1} for monitor {job.monitor_id} "
                        f"({job.region}) after {delay:.1f}s: {e}"
                    )
                    await self._sleep(delay)
                continue

            elapsed_ms = int((time.monotonic() - start) * 1000)
            if status_code in job.expected_status_codes:
                status = STATUS_UP
                error_message = None
            else:
                status = STATUS_DOWN
                error_message = f"Unexpected status code: {status_code}"

            logger.debug(
                f"Checked {job.url} for monitor {job.monitor_id} ({job.region}): "
                f"{status_code} in {elapsed_ms}ms -> {status}"
            )
            return self._result(job, status, elapsed_ms, status_code, error_message)

        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.warning(
            f"Check failed for monitor {job.monitor_id} ({job.region}) {job.url}: {last_error}"
        )
        return self._result(
            job,
            STATUS_DOWN,
            elapsed_ms if elapsed_ms > 0 else None,
            None,
            sanitize_error_message(str(last_error), self.max_error_length),
        )

    async def _attempt(self, job: Job) -> int:
        headers = {"User-Agent": self.user_agent, **(job.headers or {})}
        content = None
        if job.body and job.method in BODY_METHODS:
            content = job.body.encode()
            if not any(k.lower() == "content-type" for k in headers):
                headers["Content-Type"] = "application/json"

        try:
            async with httpx.AsyncClient(
                follow_redirects=True,
                timeout=httpx.Timeout(job.timeout),
                verify=True,
            ) as client:
                # Hard ceiling on top of httpx's per-phase timeouts
                response = await asyncio.wait_for(
                    client.request(job.method, job.url, headers=headers, content=content),
                    timeout=job.timeout,
                )
                return response.status_code
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            raise ProbeError(f"Request timeout after {job.timeout}s") from e
        except httpx.ConnectError as e:
            raise ProbeError(f"Connection failed: {e}") from e
        except httpx.RequestError as e:
            raise ProbeError(f"Request error: {e}") from e
        except Exception as e:
            # Bad header values or URLs that httpx rejects while building the request
            raise ProbeError(f"Request error: {e}") from e

    @staticmethod
    def _result(
        job: Job,
        status: str,
        response_time_ms: int | None,
        status_code: int | None,
        error_message: str | None,
    ) -> CheckResultIn:
        return CheckResultIn(
            monitor_id=job.monitor_id,
            region=job.region,
            status=status,
            response_time_ms=response_time_ms,
            status_code=status_code,
            error_message=error_message,
            checked_at=datetime.now(timezone.utc),
        )

    async def execute_many(self, jobs: list[Job]) -> list[CheckResultIn]:
        """Run a batch of jobs concurrently; one result per job, same order."""
        return list(await asyncio.gather(*(self.execute(job) for job in jobs)))
