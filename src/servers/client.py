from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple
import re
import httpx
import logging

from config import Config

LOG = logging.getLogger(__name__)

# Console variables answer as: "name" = "value"
CONVAR_PATTERN = re.compile(r'"([^"]+)"\s*=\s*"([^"]*)"')


class ServerCommandError(Exception):
    """A command could not be delivered or the server rejected it"""
    pass


def parse_convar(response: Optional[str]) -> Optional[Tuple[str, str]]:
    """Extract (name, value) from a console variable response, None if absent"""
    if not response:
        return None
    match = CONVAR_PATTERN.search(response)
    if not match:
        return None
    return match.group(1), match.group(2)


class RemoteServerClient(ABC):
    """Sends console commands to a game server and returns the text response"""

    @abstractmethod
    async def send_command(self, server_id: str, command: str) -> str:
        pass


class HttpRelayClient(RemoteServerClient):
    """Delivers commands through an HTTP relay that holds the RCON connections"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: float = Config.SERVER_QUERY_TIMEOUT,
    ):
        self.base_url = (base_url or Config.SERVER_RELAY_URL or "").rstrip("/")
        self.token = token or Config.SERVER_TOKEN
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    async def send_command(self, server_id: str, command: str) -> str:
        if not self.base_url:
            raise ServerCommandError("No server relay configured")

        url = f"{self.base_url}/servers/{server_id}/command"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json={"command": command}, headers=self._headers())
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            raise ServerCommandError(f"Command to {server_id} failed: {e}")

        if not data.get("success", True):
            raise ServerCommandError(f"Server {server_id} rejected command: {data.get('error')}")
        return data.get("response") or ""
