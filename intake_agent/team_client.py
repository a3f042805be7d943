# intake_agent/team_client.py
import logging
from typing import Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from .config import TEAM_API_URL, TEAM_API_KEY
from .errors import ExternalServiceError
from .models import TeamConfig

logger = logging.getLogger(__name__)


class TeamClient:
    def __init__(self, base_url: str = TEAM_API_URL, api_key: str = TEAM_API_KEY, timeout: float = 6.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url
        self.transport = transport
        self.api_key = api_key
        self.timeout = timeout

    async def get_team(self, team_id: Optional[str]) -> Optional[TeamConfig]:
        """Team config, or None when no team service is configured or the team is unknown."""
        if not self.base_url or not team_id:
            return None
        headers = {"Accept": "application/json"}
        if self.api_key: headers["x-api-key"] = self.api_key
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                r = await client.get(f"{self.base_url.rstrip('/')}/teams/{team_id}", headers=headers)
                if r.status_code == 404:
                    logger.warning("Team %s not found", team_id)
                    return None
                r.raise_for_status()
                js = r.json()
            except httpx.HTTPError as e:
                raise ExternalServiceError("teams", type(e).__name__, context={"team_id": team_id}, original_error=e)
            except ValueError as e:
                raise ExternalServiceError("teams", "invalid JSON response", context={"team_id": team_id},
                                           retryable=False, original_error=e)
        data = js.get("team", js) if isinstance(js, dict) else {}
        # some deployments nest settings under "config"
        if isinstance(data.get("config"), dict):
            data = {**data["config"], **{k: v for k, v in data.items() if k != "config"}}
        data.setdefault("id", team_id)
        try:
            return TeamConfig.model_validate(data)
        except PydanticValidationError as e:
            raise ExternalServiceError("teams", "malformed team config", context={"team_id": team_id},
                                       retryable=False, original_error=e)
