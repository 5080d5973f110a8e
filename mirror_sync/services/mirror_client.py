import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional
import httpx
from pydantic import ValidationError
from mirror_sync.core.exceptions import MirrorSourceError
from mirror_sync.schemas.mirror import MirrorMessagesPage, RawMirrorMessage

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 1.0

    def delay(self, attempt: int) -> float:
        """Linear backoff: attempt 1 waits 1x, attempt 2 waits 2x, ..."""
        return self.backoff_seconds * attempt


class MirrorNodeClient:
    """
    Read-only client for the Hedera mirror node REST API.

    ``fetch_messages`` never raises for transient problems: after the retry
    policy is exhausted it logs and returns an empty page, so one unreachable
    topic never aborts a poll.
    """

    def __init__(self,
                 base_url: str,
                 retry_policy: RetryPolicy = RetryPolicy(),
                 timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.retry_policy = retry_policy
        self.client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={"Accept": "application/json"},
        )

    async def close(self):
        await self.client.aclose()

    async def _get_json(self, path: str, params: dict) -> dict:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.retry_policy.max_attempts + 1):
            try:
                response = await self.client.get(path, params=params)
                response.raise_for_status()
                return response.json()
            except (httpx.HTTPError, ValueError) as e:
                last_error = e
                logger.warning(
                    f"mirror node request {path} failed (attempt {attempt}/{self.retry_policy.max_attempts}): {e}")
                if attempt < self.retry_policy.max_attempts:
                    await asyncio.sleep(self.retry_policy.delay(attempt))
        raise MirrorSourceError(f"mirror node request {path} failed after "
                                f"{self.retry_policy.max_attempts} attempts: {last_error}")

    async def fetch_messages(self, topic_id: str, from_sequence: int, limit: int = MAX_PAGE_SIZE) -> List[RawMirrorMessage]:
        """Messages of ``topic_id`` with sequence_number >= from_sequence, ascending."""
        if from_sequence < 0:
            raise ValueError("from_sequence must be >= 0")
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        params = {
            "sequencenumber": f"gte:{from_sequence}",
            "limit": limit,
            "order": "asc",
        }
        try:
            data = await self._get_json(f"/api/v1/topics/{topic_id}/messages", params)
            page = MirrorMessagesPage.model_validate(data)
        except MirrorSourceError as e:
            logger.error(f"giving up on topic {topic_id} from sequence {from_sequence} for this poll: {e.message}")
            return []
        except ValidationError as e:
            logger.error(f"unexpected mirror node response for topic {topic_id}: {e}")
            return []
        messages = [m if m.topic_id else m.model_copy(update={"topic_id": topic_id})
                    for m in page.messages if m.sequence_number >= from_sequence]
        messages.sort(key=lambda m: m.sequence_number)
        return messages
