"""
Client for the external task-tracker API (users, daily activities, reviews).
"""
import logging
from typing import Optional
from urllib.parse import quote

import httpx

from config import TRACKER_API_URL, TRACKER_TIMEOUT, TRACKER_USERS_URL

logger = logging.getLogger(__name__)


class TrackerAPIError(Exception):
    """The tracker API could not be reached or answered with an error."""


class TrackerClient:
    def __init__(
        self,
        api_url: str = TRACKER_API_URL,
        users_url: str = TRACKER_USERS_URL,
        timeout: float = TRACKER_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.users_url = users_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def _get_json(self, url: str, params: Optional[dict] = None) -> dict:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(url, params=params)
                response.raise_for_status()
                return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TrackerAPIError(f"GET {url} failed: {e}") from e

    async def get_users(self) -> list[dict]:
        payload = await self._get_json(f"{self.users_url}/users/search")
        return [
            {
                "id": user.get("collaboratorId"),
                "email": user.get("email"),
                "firstName": user.get("firstName"),
                "lastName": user.get("lastName"),
            }
            for user in payload.get("items") or []
        ]

    async def find_user(self, email: str) -> Optional[dict]:
        """Find a collaborator by email (case-insensitive)."""
        target = email.lower()
        for user in await self.get_users():
            if (user.get("email") or "").lower() == target:
                return user
        return None

    async def get_activities_of_day(self, email: str) -> Optional[list[dict]]:
        """Today's activities assigned to email. None if the tracker answered with something that is not a list."""
        payload = await self._get_json(f"{self.api_url}/actividades/assignee/{quote(email)}/del-dia")
        activities = payload.get("data")
        if not isinstance(activities, list):
            return None
        return activities

    async def get_revisions_by_date(self, email: str, date: str) -> dict:
        """
        Reviews (pendientes per activity) for a collaborator on a date (YYYY-MM-DD).
        Raises TrackerAPIError when the call fails or the tracker reports success=false.
        """
        payload = await self._get_json(
            f"{self.api_url}/reportes/revisiones-por-fecha",
            params={"date": date, "colaborador": email},
        )
        if not payload.get("success"):
            raise TrackerAPIError("Tracker reported failure fetching revisions")
        return payload.get("data") or {"colaboradores": []}

    async def get_revisions_or_empty(self, email: str, date: str) -> dict:
        """Same as get_revisions_by_date, but a failure only logs and yields no reviews."""
        try:
            return await self.get_revisions_by_date(email, date)
        except TrackerAPIError as e:
            logger.warning("Error fetching revisions: %s", e)
            return {"colaboradores": []}
