"""
Member Channels

Transport used by the coordinator to push artifact changes to a connected
member and wait for its acknowledgment.
"""

import asyncio
from abc import ABC, abstractmethod
from urllib.parse import quote

import httpx

from clustercfg.common.exceptions import ApplyFailure
from clustercfg.common.logging_setup import get_service_logger
from clustercfg.storage.records import ApplyReport, ArtifactPayload

logger = get_service_logger("locator.channels")


class MemberChannel(ABC):
    """Push interface to one member"""

    @abstractmethod
    async def push_artifact(self, payload: ArtifactPayload) -> ApplyReport:
        """Install one artifact on the member and return its report"""

    @abstractmethod
    async def remove_artifact(self, record_name: str, base_name: str) -> ApplyReport:
        """Remove an artifact from the member and return its report"""

    async def close(self) -> None:
        return None


class LocalMemberChannel(MemberChannel):
    """
    In-process channel to a MemberAgent.

    Agent calls run in a worker thread so that a slow apply can be bounded by
    the coordinator's timeout.
    """

    def __init__(self, agent):
        self.agent = agent

    async def push_artifact(self, payload: ArtifactPayload) -> ApplyReport:
        return await asyncio.to_thread(self._apply, payload)

    async def remove_artifact(self, record_name: str, base_name: str) -> ApplyReport:
        return await asyncio.to_thread(self._remove, record_name, base_name)

    def _apply(self, payload: ArtifactPayload) -> ApplyReport:
        report = ApplyReport(member_id=self.agent.member_id)
        try:
            self.agent.apply_artifact(payload)
            report.applied.append(payload.artifact.stored_file_name)
        except ApplyFailure as e:
            report.failures.append(e.to_dict())
        return report

    def _remove(self, record_name: str, base_name: str) -> ApplyReport:
        report = ApplyReport(member_id=self.agent.member_id)
        removed = self.agent.remove_artifact(record_name, base_name)
        if removed is not None:
            report.applied.append(removed.stored_file_name)
        return report


class HttpMemberChannel(MemberChannel):
    """Channel to a member's HTTP endpoint"""

    def __init__(self, base_url: str, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        # Reusable HTTP client - avoids connection overhead per request
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create reusable HTTP client"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def push_artifact(self, payload: ArtifactPayload) -> ApplyReport:
        client = await self._get_client()
        response = await client.post(f"{self.base_url}/artifacts", json=payload.to_dict())
        response.raise_for_status()
        return ApplyReport.from_dict(response.json())

    async def remove_artifact(self, record_name: str, base_name: str) -> ApplyReport:
        client = await self._get_client()
        path = "/".join(quote(segment, safe="") for segment in (record_name, base_name))
        response = await client.delete(f"{self.base_url}/artifacts/{path}")
        response.raise_for_status()
        return ApplyReport.from_dict(response.json())
