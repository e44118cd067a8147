"""
Locator Client

Member-side HTTP client for the locator's join protocol.

Reuses a single HTTP client for all requests.
"""

import httpx

from clustercfg.common.config import parse_group_list
from clustercfg.common.exceptions import ClusterConfigError
from clustercfg.common.logging_setup import get_service_logger
from clustercfg.storage.records import ApplyReport, ConfigurationBundle

logger = get_service_logger("member.client")


class LocatorClient:
    """Joins a member to a locator and reports the apply outcome"""

    def __init__(self, locator_url: str, timeout: float = 30.0):
        self.locator_url = locator_url.rstrip("/")
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create reusable HTTP client"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close HTTP client"""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _check(response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.is_error:
            message = data.get("message") or f"locator returned HTTP {response.status_code}"
            raise ClusterConfigError(message)
        return data

    async def join(
        self,
        member_id: str,
        groups: str | list[str] | None,
        member_url: str | None = None,
    ) -> ConfigurationBundle:
        """
        Announce this member and receive its resolved configuration.

        Args:
            member_id: Unique member name
            groups: Declared groups (comma-separated string or list)
            member_url: Where the locator can push later deploys

        Returns:
            ConfigurationBundle for this member
        """
        client = await self._get_client()
        group_list = parse_group_list(groups)
        try:
            response = await client.post(
                f"{self.locator_url}/members/join",
                json={"member_id": member_id, "groups": group_list, "url": member_url},
            )
        except httpx.HTTPError as e:
            logger.error(f"HTTP error joining locator: {e}")
            raise ClusterConfigError(f"cannot reach locator at {self.locator_url}: {e}") from e

        bundle = ConfigurationBundle.from_dict(self._check(response))
        logger.info(
            f"Joined locator with groups {group_list}: {len(bundle.records)} records, "
            f"{len(bundle.artifacts)} artifacts",
            extra={"member_id": member_id, "records": bundle.resolved.record_names},
        )
        return bundle

    async def acknowledge(self, member_id: str, report: ApplyReport) -> dict:
        client = await self._get_client()
        response = await client.post(
            f"{self.locator_url}/members/{member_id}/ack",
            json=report.to_dict(),
        )
        return self._check(response)

    async def leave(self, member_id: str) -> None:
        client = await self._get_client()
        try:
            response = await client.delete(f"{self.locator_url}/members/{member_id}")
            self._check(response)
        except (httpx.HTTPError, ClusterConfigError) as e:
            logger.warning(f"Failed to leave locator cleanly: {e}")
