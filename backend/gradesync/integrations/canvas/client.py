"""
Canvas LMS API client.
"""

import json
import logging
from typing import Dict, Any, List, Optional, Sequence, Tuple, Union

import aiohttp

from gradesync.integrations.canvas.error_handler import (
    AuthenticationError, CanvasAPIError
)
from gradesync.schemas.grade_sync import RollupSnapshot


logger = logging.getLogger(__name__)

Params = Union[Dict[str, Any], Sequence[Tuple[str, Any]], None]

SET_OVERRIDE_SCORE_MUTATION = """
mutation SetOverride($enrollmentId: ID!, $overrideScore: Float!) {
  setOverrideScore(input: { enrollmentId: $enrollmentId, overrideScore: $overrideScore }) {
    grades { customGradeStatusId overrideScore __typename }
    __typename
  }
}
"""


def _with_per_page(params: Params, per_page: int) -> List[Tuple[str, Any]]:
    if params is None:
        items: List[Tuple[str, Any]] = []
    elif isinstance(params, dict):
        items = list(params.items())
    else:
        items = list(params)

    if not any(key == "per_page" for key, _ in items):
        items.append(("per_page", per_page))
    return items


class CanvasClient:
    """Authenticated Canvas REST and GraphQL client."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str],
        timeout: int = 30,
        per_page: int = 100,
        session: Optional[aiohttp.ClientSession] = None
    ):
        if not token:
            raise AuthenticationError("Canvas API token not found - user may not be authenticated")

        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.per_page = per_page
        self._token = token
        self._http_session = session
        self._owns_session = session is None

    async def __aenter__(self):
        """Async context manager entry."""
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers=self._default_headers()
            )
            self._owns_session = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def close(self) -> None:
        if self._http_session is not None and self._owns_session:
            await self._http_session.close()
            self._http_session = None

    def _default_headers(self) -> Dict[str, str]:
        return {
            'User-Agent': 'Grade-Sync-Engine/1.0',
            'Accept': 'application/json',
            'Authorization': f'Bearer {self._token}',
        }

    def _url(self, path: str) -> str:
        if path.startswith(('http://', 'https://')):
            return path
        return f"{self.base_url}{path}"

    async def _request(
        self,
        method: str,
        path: str,
        params: Params = None,
        payload: Optional[Dict[str, Any]] = None,
        context: str = "request"
    ) -> Tuple[Any, Optional[str]]:
        """
        Make an HTTP request.

        Returns:
            Parsed JSON body and the ``rel="next"`` pagination URL, if any
        """
        if self._http_session is None:
            raise RuntimeError("CanvasClient must be used as an async context manager")

        url = self._url(path)
        logger.debug(f"[{context}] {method} {url}")

        try:
            async with self._http_session.request(
                method, url, params=params, json=payload, headers=self._default_headers()
            ) as response:
                body = await response.text()

                if response.status >= 400:
                    logger.warning(f"[{context}] {method} {url} failed with {response.status}")
                    raise CanvasAPIError(
                        f"{context} failed: HTTP {response.status}: {body[:500]}",
                        status=response.status,
                        body=body,
                        operation_type=context
                    )

                next_link = response.links.get('next') if response.links else None
                next_url = str(next_link.get('url')) if next_link else None

        except aiohttp.ClientError as e:
            raise CanvasAPIError(
                f"{context} failed: {e}",
                status=None,
                operation_type=context,
                original_exception=e
            )

        try:
            data = json.loads(body) if body else None
        except ValueError as e:
            raise CanvasAPIError(
                f"{context} returned invalid JSON",
                status=response.status,
                body=body,
                operation_type=context,
                original_exception=e
            )

        return data, next_url

    async def get(self, path: str, params: Params = None, context: str = "get") -> Any:
        data, _ = await self._request(
            "GET", path, _with_per_page(params, self.per_page), context=context
        )
        return data

    async def get_all_pages(self, path: str, params: Params = None, context: str = "get_all_pages") -> Any:
        """
        GET and follow ``Link: rel="next"`` headers.

        Array pages are concatenated; an object response is returned as-is.
        """
        all_data: List[Any] = []
        data, next_url = await self._request(
            "GET", path, _with_per_page(params, self.per_page), context=context
        )
        page_count = 1

        while True:
            if not isinstance(data, list):
                return data

            all_data.extend(data)
            logger.debug(f"[{context}] page {page_count} returned {len(data)} items (total: {len(all_data)})")

            if not next_url:
                return all_data

            # The next link already carries the query string
            data, next_url = await self._request("GET", next_url, context=context)
            page_count += 1

    async def post(self, path: str, payload: Dict[str, Any], context: str = "post") -> Any:
        data, _ = await self._request("POST", path, payload=payload, context=context)
        return data

    async def put(self, path: str, payload: Dict[str, Any], context: str = "put") -> Any:
        data, _ = await self._request("PUT", path, payload=payload, context=context)
        return data

    async def graphql(self, query: str, variables: Optional[Dict[str, Any]] = None, context: str = "graphql") -> Any:
        data, _ = await self._request(
            "POST", "/api/graphql",
            payload={'query': query, 'variables': variables or {}},
            context=context
        )

        if isinstance(data, dict) and data.get('errors'):
            raise CanvasAPIError(
                f"{context} GraphQL error: {json.dumps(data['errors'])}",
                status=200,
                body=json.dumps(data['errors']),
                operation_type=context
            )
        return data

    # Canvas endpoints used by the grade sync engine

    async def get_outcome_rollups(
        self,
        course_id: str,
        outcome_ids: Optional[List[str]] = None
    ) -> RollupSnapshot:
        """Fetch outcome rollups for a course, merging every page."""
        params: List[Tuple[str, Any]] = [("include[]", "outcomes"), ("include[]", "users")]
        for outcome_id in outcome_ids or []:
            params.append(("outcome_ids[]", outcome_id))

        context = "get_outcome_rollups"
        data, next_url = await self._request(
            "GET", f"/api/v1/courses/{course_id}/outcome_rollups",
            _with_per_page(params, self.per_page), context=context
        )
        snapshot = RollupSnapshot.model_validate(data or {})

        while next_url:
            data, next_url = await self._request("GET", next_url, context=context)
            snapshot = snapshot.merge(RollupSnapshot.model_validate(data or {}))

        logger.debug(f"Fetched {len(snapshot.rollups)} rollups for course {course_id}")
        return snapshot

    async def search_assignments(self, course_id: str, search_term: str) -> List[Dict[str, Any]]:
        return await self.get_all_pages(
            f"/api/v1/courses/{course_id}/assignments",
            {"search_term": search_term},
            context="search_assignments"
        )

    async def get_assignment(self, course_id: str, assignment_id: str) -> Dict[str, Any]:
        return await self.get(
            f"/api/v1/courses/{course_id}/assignments/{assignment_id}",
            context="get_assignment"
        )

    async def update_submission(
        self,
        course_id: str,
        assignment_id: str,
        user_id: str,
        payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        return await self.put(
            f"/api/v1/courses/{course_id}/assignments/{assignment_id}/submissions/{user_id}",
            payload,
            context=f"update_submission:{user_id}"
        )

    async def bulk_update_grades(
        self,
        course_id: str,
        assignment_id: str,
        grade_data: Dict[str, Any]
    ) -> Dict[str, Any]:
        return await self.post(
            f"/api/v1/courses/{course_id}/assignments/{assignment_id}/submissions/update_grades",
            {"grade_data": grade_data},
            context="bulk_update_grades"
        )

    async def get_progress(self, progress_id: str) -> Dict[str, Any]:
        return await self.get(f"/api/v1/progress/{progress_id}", context="get_progress")

    async def list_student_enrollments(self, course_id: str) -> List[Dict[str, Any]]:
        return await self.get_all_pages(
            f"/api/v1/courses/{course_id}/enrollments",
            [("type[]", "StudentEnrollment")],
            context="list_student_enrollments"
        )

    async def set_override_score(self, enrollment_id: str, override_score: float) -> Optional[float]:
        data = await self.graphql(
            SET_OVERRIDE_SCORE_MUTATION,
            {"enrollmentId": str(enrollment_id), "overrideScore": float(override_score)},
            context="set_override_score"
        )
        grades = (((data or {}).get('data') or {}).get('setOverrideScore') or {}).get('grades') or []
        return grades[0].get('overrideScore') if grades else None
