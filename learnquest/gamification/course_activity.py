"""
CourseActivity collaborator

Supplies raw activity counts (completed courses, reviews, videos watched,
perfect-score assessments, ...) that achievement criteria are measured
against. The engine does not compute these counts itself; what exactly is
counted for each criteria type is owned by the course service.
"""

import logging
from typing import Mapping, Optional, Protocol

import httpx

from learnquest.exceptions import MalformedResponseError, wrap_external_exception
from learnquest.resilience.retry import retry_with_backoff

logger = logging.getLogger(__name__)


class CourseActivity(Protocol):
    """Source of per-user activity counts"""

    async def get_count(
        self, user_id: str, criteria_type: str, domain_filter: Optional[str] = None
    ) -> int:
        ...


class StaticCourseActivity:
    """
    Dict-backed counts

    Keys are (user_id, criteria_type) or (user_id, criteria_type, domain).
    Missing keys count as zero.
    """

    def __init__(self, counts: Optional[Mapping[tuple, int]] = None):
        self._counts: dict[tuple, int] = dict(counts or {})

    def set_count(
        self, user_id: str, criteria_type: str, count: int, domain: Optional[str] = None
    ) -> None:
        key = (user_id, criteria_type, domain) if domain else (user_id, criteria_type)
        self._counts[key] = count

    async def get_count(
        self, user_id: str, criteria_type: str, domain_filter: Optional[str] = None
    ) -> int:
        if domain_filter:
            return self._counts.get((user_id, criteria_type, domain_filter), 0)
        return self._counts.get((user_id, criteria_type), 0)


class HttpCourseActivity:
    """
    Counts fetched from the course service

    GET {base_url}/users/{user_id}/activity-counts/{criteria_type}?domain=...
    -> {"count": <int>}

    Transient failures (timeouts, 429, 5xx) are retried with backoff; anything
    else surfaces as ExternalAPIError.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        max_retries: int = 2,
    ):
        """
        Args:
            client: AsyncClient with base_url and timeout already configured
            max_retries: Retries for transient failures
        """
        self.client = client
        self.max_retries = max_retries

    @classmethod
    def from_url(cls, base_url: str, timeout: float = 5.0, **kwargs) -> "HttpCourseActivity":
        return cls(httpx.AsyncClient(base_url=base_url, timeout=timeout), **kwargs)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _fetch_count(self, user_id: str, criteria_type: str, domain_filter: Optional[str]) -> int:
        params = {"domain": domain_filter} if domain_filter else None
        response = await self.client.get(
            f"/users/{user_id}/activity-counts/{criteria_type}",
            params=params,
        )
        response.raise_for_status()
        try:
            payload = response.json()
        except ValueError:
            payload = response.text

        count = payload.get("count") if isinstance(payload, dict) else None
        if not isinstance(count, int) or isinstance(count, bool) or count < 0:
            raise MalformedResponseError(
                message=f"Malformed activity count for {criteria_type}: {payload!r}",
                service="course service",
                user_id=user_id,
                operation="get_count",
            )
        return count

    async def get_count(
        self, user_id: str, criteria_type: str, domain_filter: Optional[str] = None
    ) -> int:
        try:
            count = await retry_with_backoff(
                self._fetch_count,
                user_id,
                criteria_type,
                domain_filter,
                max_retries=self.max_retries,
                operation=f"course service {criteria_type} count",
            )
        except httpx.HTTPError as e:
            raise wrap_external_exception(e, operation="get_count", user_id=user_id) from e

        logger.debug(f"Course service count for user {user_id} {criteria_type}: {count}")
        return count
