"""Relay discovery via identity probes.

The invocation side does not know which port a relay instance ended up
on. DiscoveryService walks a small, ordered candidate set of host/port
pairs and returns the first one whose ``/.identity`` endpoint answers
with a well-formed identity document.
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import httpx

from .errors import DiscoveryFailed
from .models import ResolvedEndpoint

logger = logging.getLogger(__name__)

IDENTITY_PATH = "/.identity"


def candidate_ports(start: int, count: int) -> List[int]:
    """Contiguous port range starting at ``start``."""
    return list(range(start, start + count))


def candidate_pairs(hosts: Iterable[str], ports: Iterable[int]) -> List[Tuple[str, int]]:
    """Ordered candidates: every port of the first host, then the next host."""
    ports = list(ports)
    return [(host, port) for host in hosts for port in ports]


class DiscoveryService:
    """Locates a running relay by probing candidates in preference order."""

    def __init__(
        self,
        identity_path: str = IDENTITY_PATH,
        expected_name: Optional[str] = None,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None
    ):
        """Initialize discovery service.

        Args:
            identity_path: Well-known path serving the identity document
            expected_name: If set, only accept identities with this name
            client_factory: Builds the HTTP client; tests inject a mock transport
        """
        self.identity_path = identity_path
        self.expected_name = expected_name
        self._client_factory = client_factory or httpx.AsyncClient

    async def locate(
        self,
        candidate_hosts: Sequence[str],
        candidate_ports: Sequence[int],
        per_attempt_timeout: float = 0.5
    ) -> ResolvedEndpoint:
        """Return the first candidate answering with a valid identity.

        Args:
            candidate_hosts: Hosts in preference order
            candidate_ports: Ports in preference order
            per_attempt_timeout: Bound on each probe in seconds

        Returns:
            Endpoint bound to the first matching candidate

        Raises:
            DiscoveryFailed: If every candidate failed
        """
        attempts: List[Dict[str, Any]] = []

        async with self._client_factory() as client:
            for host, port in candidate_pairs(candidate_hosts, candidate_ports):
                endpoint, reason = await self._probe(client, host, port, per_attempt_timeout)
                if endpoint is not None:
                    logger.info(f"Discovered {endpoint.name} {endpoint.version} at {host}:{port}")
                    return endpoint
                attempts.append({"host": host, "port": port, "reason": reason})

        logger.warning(f"Discovery failed after {len(attempts)} attempts")
        raise DiscoveryFailed(
            f"No relay responded on {len(attempts)} candidate endpoints",
            attempts=attempts
        )

    async def _probe(
        self,
        client: httpx.AsyncClient,
        host: str,
        port: int,
        timeout: float
    ) -> Tuple[Optional[ResolvedEndpoint], Optional[str]]:
        """Probe one candidate; returns (endpoint, None) or (None, reason)."""
        url = f"http://{host}:{port}{self.identity_path}"
        try:
            response = await client.get(url, timeout=timeout)
        except httpx.TimeoutException:
            logger.debug(f"Identity probe timed out: {url}")
            return None, "timeout"
        except httpx.RequestError as e:
            logger.debug(f"Identity probe failed: {url}: {e}")
            return None, "unreachable"

        if response.status_code != 200:
            logger.debug(f"Identity probe got HTTP {response.status_code}: {url}")
            return None, f"http_{response.status_code}"

        try:
            body = response.json()
        except ValueError:
            logger.debug(f"Identity probe returned invalid JSON: {url}")
            return None, "invalid_json"

        if not self.is_valid_identity(body):
            logger.debug(f"Identity probe returned unexpected shape: {url}")
            return None, "wrong_identity"

        return ResolvedEndpoint(
            host=host,
            port=port,
            name=body["name"],
            version=body["version"]
        ), None

    def is_valid_identity(self, body: Any) -> bool:
        """Check that a probe response carries a name and a version."""
        if not isinstance(body, dict):
            return False
        name = body.get("name")
        version = body.get("version")
        if not isinstance(name, str) or not isinstance(version, str):
            return False
        if self.expected_name is not None and name != self.expected_name:
            return False
        return True
