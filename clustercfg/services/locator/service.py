"""
Locator Service

HTTP surface of the coordinator. Members join here; operators deploy,
import and export configuration here. Every command returns
{"status": "OK" | "ERROR", "message": ...}.
"""

import asyncio
import signal
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import httpx
from aiohttp import web

from clustercfg.common.config import LocatorSettings
from clustercfg.common.exceptions import (
    ClusterConfigError,
    ConflictError,
    CorruptArchiveError,
    NoMembersAvailableError,
    PermissionDeniedError,
)
from clustercfg.common.logging_setup import get_service_logger
from clustercfg.storage.records import ApplyReport

from .channels import HttpMemberChannel
from .coordinator import ConfigCoordinator, ImportResult

logger = get_service_logger("locator")

STATUS_OK = "OK"
STATUS_ERROR = "ERROR"

# Largest request body accepted (archives and artifacts)
MAX_BODY_BYTES = 256 * 1024 * 1024

ERROR_HTTP_STATUS: dict[type, int] = {
    ConflictError: 409,
    PermissionDeniedError: 403,
    CorruptArchiveError: 400,
    NoMembersAvailableError: 503,
}


@dataclass
class CommandResult:
    """Structured command outcome reported to the operator"""
    status: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "message": self.message, **self.data}


def error_status(error: Exception) -> int:
    for error_type, status in ERROR_HTTP_STATUS.items():
        if isinstance(error, error_type):
            return status
    if isinstance(error, ValueError):
        return 400
    return 500


async def run_command(operation: Callable[[], Awaitable[CommandResult]]) -> web.Response:
    """Run a command, converting failures to an ERROR result"""
    try:
        result = await operation()
        return web.json_response(result.to_dict())
    except NoMembersAvailableError as e:
        data = {"artifact": e.artifact.to_dict()} if e.artifact is not None else {}
        result = CommandResult(STATUS_ERROR, e.message, data)
        return web.json_response(result.to_dict(), status=error_status(e))
    except (ClusterConfigError, ValueError) as e:
        message = e.message if isinstance(e, ClusterConfigError) else str(e)
        logger.warning(f"Command failed: {message}")
        return web.json_response(CommandResult(STATUS_ERROR, message).to_dict(), status=error_status(e))
    except Exception as e:
        logger.error(f"Unexpected command failure: {e}", exc_info=True)
        return web.json_response(CommandResult(STATUS_ERROR, str(e)).to_dict(), status=500)


class LocatorService:
    """
    Locator process.

    Loads (or creates) the configuration store before accepting joins,
    then serves the coordinator API over HTTP.
    """

    def __init__(
        self,
        settings: LocatorSettings,
        coordinator: ConfigCoordinator | None = None,
    ):
        self.settings = settings
        self.coordinator = coordinator or ConfigCoordinator.from_settings(settings)
        self._start_time = datetime.now(timezone.utc)

        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._running = False
        self._shutdown_event = asyncio.Event()

    def build_app(self) -> web.Application:
        app = web.Application(client_max_size=MAX_BODY_BYTES)
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/configuration", self._configuration_handler)
        app.router.add_get("/members", self._members_handler)
        app.router.add_post("/members/join", self._join_handler)
        app.router.add_post("/members/{member_id}/ack", self._ack_handler)
        app.router.add_delete("/members/{member_id}", self._leave_handler)
        app.router.add_post("/deploy", self._deploy_handler)
        app.router.add_post("/undeploy", self._undeploy_handler)
        app.router.add_post("/import", self._import_handler)
        app.router.add_get("/export", self._export_handler)
        app.on_cleanup.append(self._on_cleanup)
        return app

    async def bootstrap_from_peer(self) -> ImportResult | None:
        """
        Seed an empty store from a running peer locator's export.

        Does nothing when no peer is configured or the store already holds
        configuration. An unreachable peer or a rejected archive is logged
        and the locator starts with its local store.

        Returns:
            The import result, or None if nothing was imported
        """
        peer = self.settings.peer_locator_url
        if not peer or not self.coordinator.store.is_empty():
            return None

        logger.info(f"Fetching cluster configuration from peer locator {peer}")
        try:
            async with httpx.AsyncClient(timeout=self.coordinator.push_timeout) as client:
                response = await client.get(f"{peer}/export")
                response.raise_for_status()
            result = await self.coordinator.on_import(response.content)
        except httpx.HTTPError as e:
            logger.warning(f"Peer locator {peer} unavailable, starting with local store: {e}")
            return None
        except ClusterConfigError as e:
            logger.error(f"Could not import configuration from {peer}: {e.message}")
            return None

        logger.info(
            f"Bootstrapped {len(result.records)} records from {peer}",
            extra={"records": result.records},
        )
        return result

    async def start(self) -> None:
        """Start serving and wait for a shutdown signal"""
        logger.info("Starting Locator Service")
        await self.bootstrap_from_peer()

        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.settings.host, self.settings.port)
        await site.start()
        self._running = True

        logger.info(
            f"Locator Service listening on {self.settings.host}:{self.settings.port}",
            extra={"store": str(self.coordinator.store.root_path)},
        )

        self._setup_signal_handlers()
        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the locator service"""
        logger.info("Stopping Locator Service")
        self._running = False
        if self._runner:
            await self._runner.cleanup()
        logger.info("Locator Service stopped")

    async def _on_cleanup(self, app: web.Application) -> None:
        await self.coordinator.close()

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers"""
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
            "service": "locator",
            "uptime": int(uptime),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "records": self.coordinator.store.list_names(),
            "members": len(self.coordinator.connected_members()),
        })

    async def _configuration_handler(self, request: web.Request) -> web.Response:
        store = self.coordinator.store
        records = [store.get(name) for name in store.list_names()]
        return web.json_response({
            "records": [r.to_dict() for r in records if r is not None],
        })

    async def _members_handler(self, request: web.Request) -> web.Response:
        return web.json_response({
            "members": [s.to_dict() for s in self.coordinator.sessions()],
        })

    async def _join_handler(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
            member_id = body["member_id"]
        except (ValueError, KeyError):
            return web.json_response(
                CommandResult(STATUS_ERROR, "join requires a JSON body with member_id").to_dict(),
                status=400,
            )

        url = body.get("url")
        channel = HttpMemberChannel(url, timeout=self.coordinator.push_timeout) if url else None

        try:
            bundle = await self.coordinator.on_member_join(member_id, body.get("groups"), channel)
        except ClusterConfigError as e:
            if channel is not None:
                await channel.close()
            return web.json_response(
                CommandResult(STATUS_ERROR, e.message).to_dict(), status=error_status(e)
            )
        return web.json_response(bundle.to_dict())

    async def _ack_handler(self, request: web.Request) -> web.Response:
        member_id = request.match_info["member_id"]

        async def ack() -> CommandResult:
            report = ApplyReport.from_dict(await request.json())
            session = self.coordinator.acknowledge(member_id, report)
            return CommandResult(STATUS_OK, f"{member_id} is {session.state.value}", session.to_dict())

        return await run_command(ack)

    async def _leave_handler(self, request: web.Request) -> web.Response:
        member_id = request.match_info["member_id"]
        removed = await self.coordinator.on_member_leave(member_id)
        if not removed:
            return web.json_response(
                CommandResult(STATUS_ERROR, f"unknown member {member_id}").to_dict(), status=404
            )
        return web.json_response(CommandResult(STATUS_OK, f"{member_id} left").to_dict())

    async def _deploy_handler(self, request: web.Request) -> web.Response:
        base_name = request.query.get("jar", "")
        group = request.query.get("group") or None

        async def deploy() -> CommandResult:
            content = await request.read()
            result = await self.coordinator.on_deploy(group, content, base_name)
            status = STATUS_OK if result.ok else STATUS_ERROR
            message = (
                f"Deployed {result.artifact.stored_file_name} to "
                f"{result.affected_member_count} member(s)"
            )
            if result.failures:
                message += f"; {len(result.failures)} member(s) failed"
            return CommandResult(status, message, result.to_dict())

        return await run_command(deploy)

    async def _undeploy_handler(self, request: web.Request) -> web.Response:
        base_name = request.query.get("jar", "")
        group = request.query.get("group") or None

        async def undeploy() -> CommandResult:
            result = await self.coordinator.on_undeploy(group, base_name)
            status = STATUS_OK if result.ok else STATUS_ERROR
            message = (
                f"Undeployed {result.artifact.base_name} from "
                f"{result.affected_member_count} member(s)"
            )
            return CommandResult(status, message, result.to_dict())

        return await run_command(undeploy)

    async def _import_handler(self, request: web.Request) -> web.Response:
        async def do_import() -> CommandResult:
            result = await self.coordinator.on_import(await request.read())
            return CommandResult(
                STATUS_OK,
                f"Cluster configuration imported ({len(result.records)} records)",
                result.to_dict(),
            )

        return await run_command(do_import)

    async def _export_handler(self, request: web.Request) -> web.Response:
        try:
            data = await self.coordinator.on_export()
        except ClusterConfigError as e:
            return web.json_response(
                CommandResult(STATUS_ERROR, e.message).to_dict(), status=error_status(e)
            )
        return web.Response(
            body=data,
            content_type="application/zip",
            headers={"Content-Disposition": 'attachment; filename="cluster_config.zip"'},
        )


async def main(settings: LocatorSettings) -> None:
    """Run a locator until signalled"""
    service = LocatorService(settings)

    try:
        await service.start()
    finally:
        await service.stop()
