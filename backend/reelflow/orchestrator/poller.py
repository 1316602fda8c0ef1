"""Polls a provider job handle until it reaches a terminal state."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from reelflow.config import settings
from reelflow.errors import Cancelled, PollingTimeout, ProviderError
from reelflow.orchestrator.state import STOPPED_ITEM_ERROR

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = {"succeeded", "completed"}
FAILURE_STATUSES = {"failed", "error"}


@dataclass(frozen=True)
class PollPolicy:
    interval: float
    max_attempts: int


def default_policies() -> dict[str, PollPolicy]:
    polling = settings.polling
    return {
        "image": PollPolicy(polling.image_interval, polling.image_max_attempts),
        "video": PollPolicy(polling.video_interval, polling.video_max_attempts),
        "task": PollPolicy(polling.task_interval, polling.task_max_attempts),
    }


class ResultPoller:
    """Bounded polling of provider jobs with cooperative cancellation."""

    def __init__(self, provider, policies: Optional[dict[str, PollPolicy]] = None):
        self.provider = provider
        self.policies = policies or default_policies()

    async def poll(
        self,
        handle: str,
        poll_kind: str,
        should_continue: Callable[[], bool],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        """Poll handle until success, failure, exhaustion or cancellation.

        should_continue is evaluated before every query. The sleep between
        queries returns early when cancel_event is set. A failed fetch is
        logged and consumes an attempt.

        Returns:
            The job's output URL

        Raises:
            Cancelled: should_continue() returned False
            ProviderError: job failed, or succeeded without an output URL
            PollingTimeout: max attempts reached without a terminal status
        """
        policy = self.policies[poll_kind]
        for attempt in range(1, policy.max_attempts + 1):
            if not should_continue():
                raise Cancelled(STOPPED_ITEM_ERROR)

            try:
                result = await self.provider.get_job_result(handle)
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"Poll {handle} attempt {attempt}/{policy.max_attempts} failed: {e}")
            else:
                status = result.status.lower()
                logger.debug(f"Poll {handle} attempt {attempt}/{policy.max_attempts}: {status}")
                if status in SUCCESS_STATUSES:
                    if not result.output_url:
                        raise ProviderError("Job succeeded but returned no output URL")
                    return result.output_url
                if status in FAILURE_STATUSES:
                    raise ProviderError(result.error or "Generation failed")

            if attempt < policy.max_attempts:
                await self._sleep(policy.interval, cancel_event)

        raise PollingTimeout(f"Polling timed out after {policy.max_attempts} attempts")

    @staticmethod
    async def _sleep(seconds: float, cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), seconds)
        except asyncio.TimeoutError:
            pass
