"""
Member Service

Runs on each server. On start it joins the locator, applies the resolved
configuration and acknowledges it; afterwards it accepts artifact pushes
from the locator over HTTP.
"""

import asyncio
import signal
import uuid
from datetime import datetime, timezone

from aiohttp import web

from clustercfg.common.config import MemberSettings
from clustercfg.common.exceptions import ApplyFailure
from clustercfg.common.logging_setup import get_service_logger
from clustercfg.storage.records import ApplyReport, ArtifactPayload, ConfigurationBundle

from .agent import MemberAgent
from .client import LocatorClient

logger = get_service_logger("member")


class MemberService:
    """
    Member process.

    With use_cluster_configuration disabled the member never contacts the
    locator and serves only its local configuration.
    """

    def __init__(
        self,
        settings: MemberSettings,
        agent: MemberAgent | None = None,
        client: LocatorClient | None = None,
    ):
        self.settings = settings
        self.member_id = settings.member_id or f"member-{uuid.uuid4().hex[:8]}"
        self.agent = agent or MemberAgent(
            self.member_id,
            settings.work_dir,
            artifact_prefix=settings.artifact_prefix,
        )
        self.client = client or LocatorClient(settings.locator_url, timeout=settings.join_timeout)
        self._start_time = datetime.now(timezone.utc)
        self._joined = False

        self._runner: web.AppRunner | None = None
        self._shutdown_event = asyncio.Event()

    def build_app(self) -> web.Application:
        app = web.Application(client_max_size=256 * 1024 * 1024)
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/artifacts", self._list_handler)
        app.router.add_post("/artifacts", self._apply_handler)
        app.router.add_delete("/artifacts/{record_name}/{base_name}", self._remove_handler)
        return app

    async def join(self) -> ApplyReport:
        """Join the locator, apply the received bundle and acknowledge it"""
        bundle: ConfigurationBundle = await self.client.join(
            self.member_id,
            self.settings.groups,
            member_url=self.settings.url,
        )
        report = await asyncio.to_thread(self.agent.apply_resolved_configuration, bundle)
        await self.client.acknowledge(self.member_id, report)
        self._joined = True
        return report

    async def start(self) -> None:
        """Start serving pushes, join the locator and wait for shutdown"""
        logger.info(f"Starting Member Service {self.member_id}")

        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.settings.host, self.settings.port)
        await site.start()

        if self.settings.use_cluster_configuration:
            report = await self.join()
            if not report.ok:
                logger.warning(
                    f"Joined with {len(report.failures)} apply failures",
                    extra={"failures": report.failures},
                )
        else:
            logger.info("Cluster configuration disabled; not joining locator")

        self._setup_signal_handlers()
        await self._shutdown_event.wait()

    async def stop(self) -> None:
        logger.info(f"Stopping Member Service {self.member_id}")
        if self._joined:
            await self.client.leave(self.member_id)
            self._joined = False
        await self.client.close()
        if self._runner:
            await self._runner.cleanup()

    def _setup_signal_handlers(self) -> None:
        loop = asyncio.get_event_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                signal.signal(sig, lambda s, f: self._handle_shutdown())

    def _handle_shutdown(self) -> None:
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _health_handler(self, request: web.Request) -> web.Response:
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        return web.json_response({
            "status": "healthy",
            "service": "member",
            "member_id": self.member_id,
            "uptime": int(uptime),
            "joined": self._joined,
            "regions": sorted(self.agent.regions),
            "artifacts": [a.stored_file_name for a in self.agent.loaded_artifacts()],
        })

    async def _list_handler(self, request: web.Request) -> web.Response:
        return web.json_response({
            "artifacts": [a.to_dict() for a in self.agent.loaded_artifacts()],
            "files": self.agent.installed_files(),
        })

    async def _apply_handler(self, request: web.Request) -> web.Response:
        report = ApplyReport(member_id=self.member_id)
        try:
            payload = ArtifactPayload.from_dict(await request.json())
        except (ValueError, KeyError) as e:
            report.failures.append({"subject": None, "member_id": self.member_id,
                                    "message": f"malformed artifact payload: {e}"})
            return web.json_response(report.to_dict(), status=400)

        try:
            unit = await asyncio.to_thread(self.agent.apply_artifact, payload)
            report.applied.append(unit.artifact.stored_file_name)
        except ApplyFailure as e:
            report.failures.append(e.to_dict())
        return web.json_response(report.to_dict())

    async def _remove_handler(self, request: web.Request) -> web.Response:
        record_name = request.match_info["record_name"]
        base_name = request.match_info["base_name"]
        report = ApplyReport(member_id=self.member_id)
        removed = await asyncio.to_thread(self.agent.remove_artifact, record_name, base_name)
        if removed is not None:
            report.applied.append(removed.stored_file_name)
        return web.json_response(report.to_dict())


async def main(settings: MemberSettings) -> None:
    """Run a member until signalled"""
    service = MemberService(settings)

    try:
        await service.start()
    finally:
        await service.stop()
