"""
Issuer client - what a controller script uses to talk to the relay daemon.

    client = RelayClient()
    result = client.send_command("open", url="https://example.com")
    print(result.data["title"])

send_command() blocks until the relay returns the executor's Result. A relay
that cannot be reached after a few attempts raises Unavailable.
"""

import logging
import time
from typing import Optional

import httpx

from .config import COMMAND_TIMEOUT, relay_base_url
from .errors import Timeout, Unavailable, ValidationError
from .protocol import Command, RelayStatus, Result

logger = logging.getLogger(__name__)

CONNECT_RETRIES = 3
RETRY_DELAY = 0.5


class RelayClient:
    def __init__(self, base_url: Optional[str] = None, timeout: float = COMMAND_TIMEOUT,
                 transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url or relay_base_url()
        # Give the relay a few seconds past its own deadline to answer
        self._client = httpx.Client(base_url=self.base_url, timeout=timeout + 5, transport=transport)

    def close(self):
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        # Only connect failures are retried: past that point the relay may
        # already be running the command.
        last_error = None
        for attempt in range(1, CONNECT_RETRIES + 1):
            try:
                return self._client.request(method, path, **kwargs)
            except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                last_error = e
                logger.debug(f"Relay unreachable ({attempt}/{CONNECT_RETRIES}): {e}")
                if attempt < CONNECT_RETRIES:
                    time.sleep(RETRY_DELAY * attempt)
            except httpx.TimeoutException as e:
                raise Timeout(f"No answer from relay at {self.base_url}: {e}") from e
            except httpx.TransportError as e:
                raise Unavailable(f"Relay connection failed at {self.base_url}: {e}") from e
        raise Unavailable(f"Relay not reachable at {self.base_url}: {last_error}")

    def send(self, command: Command) -> Result:
        response = self._request("POST", "/command", json=command.to_wire())
        if response.status_code == 504:
            raise Timeout(response.json().get("error") or "Command timed out")
        if response.status_code == 503:
            raise Unavailable(response.json().get("error") or "Relay unavailable")
        if response.status_code in (400, 422):
            body = response.json()
            raise ValidationError(body.get("error") or str(body.get("detail")))
        response.raise_for_status()
        return Result.model_validate(response.json())

    def send_command(self, action: str, **fields) -> Result:
        return self.send(Command(action=action, **fields))

    def status(self) -> RelayStatus:
        response = self._request("GET", "/status")
        response.raise_for_status()
        return RelayStatus.model_validate(response.json())

    def is_running(self) -> bool:
        try:
            return self.status().running
        except Unavailable:
            return False

    def shutdown(self):
        self._request("POST", "/shutdown").raise_for_status()
