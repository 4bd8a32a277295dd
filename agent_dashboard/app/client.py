# agent_dashboard/app/client.py
import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from .errors import ConversationError, TransportError
from .models import ConversationResponse, Snapshot

logger = logging.getLogger(__name__)


class DashboardClient:
    """Talks to another dashboard API: a peer instance, the owning instance of a
    relayed agent, or the relay itself."""

    def __init__(self, base_url: str, http_client: httpx.AsyncClient, timeout: float = 10.0,
                 token: Optional[str] = None):
        self.base_url = base_url.strip('/')
        self.http_client = http_client
        self.timeout = timeout
        self.token = token

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    async def fetch_state(self, scope: str = "merged") -> Optional[Snapshot]:
        """Returns the remote snapshot, or None if it could not be fetched."""
        url = f"{self.base_url}/api/state"
        try:
            response = await self.http_client.get(url, params={"scope": scope}, headers=self._headers(),
                                                   timeout=self.timeout)
            response.raise_for_status()
            return Snapshot.model_validate(response.json())
        except (httpx.TimeoutException, httpx.ConnectError) as e:
            logger.warning(f"Could not reach {url}: {e.__class__.__name__}")
        except httpx.HTTPStatusError as e:
            logger.warning(f"HTTP error {e.response.status_code} fetching {url}")
        except (ValueError, ValidationError) as e:
            logger.error(f"Invalid snapshot from {url}: {e}")
        except httpx.RequestError as e:
            logger.warning(f"Request to {url} failed: {e}")
        return None

    async def fetch_conversation(self, agent_id: str) -> ConversationResponse:
        """Proxies a conversation request, keeping the remote error code."""
        url = f"{self.base_url}/api/agents/{agent_id}/conversation"
        try:
            response = await self.http_client.get(url, headers=self._headers(), timeout=self.timeout)
        except httpx.RequestError as e:
            raise ConversationError(ConversationError.STORE_UNREACHABLE,
                                    f"Owning instance at {self.base_url} is unreachable: {e}") from e

        if response.status_code >= 400:
            code = ConversationError.STORE_UNREACHABLE
            detail = f"Owning instance answered HTTP {response.status_code}"
            try:
                body = response.json()
                code = body.get("code", code)
                detail = body.get("detail", detail)
            except ValueError:
                pass
            raise ConversationError(code, detail)

        try:
            return ConversationResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise ConversationError(ConversationError.MALFORMED_TRANSCRIPT,
                                    f"Owning instance returned an unreadable transcript: {e}") from e

    async def push_state(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/api/state"
        try:
            response = await self.http_client.post(url, json=payload, headers=self._headers(),
                                                    timeout=self.timeout)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TransportError(url, f"HTTP {e.response.status_code}", e.response.status_code) from e
        except httpx.RequestError as e:
            raise TransportError(url, str(e) or e.__class__.__name__) from e
        try:
            return response.json()
        except ValueError:
            return {}
