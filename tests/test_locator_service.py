"""
Tests for the locator and member HTTP services.

Servers run on aiohttp's test server; each scenario is driven with
asyncio.run.
"""

import asyncio
import io
import zipfile

import pytest
from aiohttp import test_utils

from clustercfg.common.config import LOG_FILE_SIZE_LIMIT, LocatorSettings, MemberSettings
from clustercfg.common.exceptions import ConflictError, CorruptArchiveError, PermissionDeniedError
from clustercfg.services.locator.channels import HttpMemberChannel
from clustercfg.services.locator.service import (
    STATUS_ERROR,
    STATUS_OK,
    CommandResult,
    LocatorService,
    error_status,
)
from clustercfg.services.member.service import MemberService
from clustercfg.storage.config_store import sha256_digest
from clustercfg.storage.records import ArtifactPayload, ArtifactRecord

from conftest import CONFIG_NAMES, jar_bytes


def run_with_client(app, scenario):
    async def runner():
        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            return await scenario(client)
    return asyncio.run(runner())


@pytest.fixture
def locator(seeded_coordinator, locator_dir) -> LocatorService:
    settings = LocatorSettings(cluster_configuration_dir=str(locator_dir))
    return LocatorService(settings, coordinator=seeded_coordinator)


@pytest.fixture
def empty_locator(empty_coordinator, locator_dir) -> LocatorService:
    settings = LocatorSettings(cluster_configuration_dir=str(locator_dir))
    return LocatorService(settings, coordinator=empty_coordinator)


class TestErrorMapping:

    def test_status_codes(self):
        assert error_status(ConflictError("busy")) == 409
        assert error_status(PermissionDeniedError("CLUSTER:MANAGE")) == 403
        assert error_status(CorruptArchiveError("bad")) == 400
        assert error_status(ValueError("bad name")) == 400
        assert error_status(RuntimeError("boom")) == 500

    def test_command_result_flattens_data(self):
        result = CommandResult(STATUS_OK, "done", {"records": ["cluster"]})
        assert result.to_dict() == {"status": "OK", "message": "done", "records": ["cluster"]}
        assert result.ok


class TestLocatorApi:

    def test_health(self, locator):
        async def scenario(client):
            resp = await client.get("/health")
            return resp.status, await resp.json()

        status, body = run_with_client(locator.build_app(), scenario)
        assert status == 200
        assert body["status"] == "healthy"
        assert body["records"] == CONFIG_NAMES

    def test_join_returns_resolved_bundle(self, locator):
        async def scenario(client):
            resp = await client.post("/members/join", json={"member_id": "server-1", "groups": ["group1"]})
            return resp.status, await resp.json()

        status, body = run_with_client(locator.build_app(), scenario)
        assert status == 200
        assert [r["name"] for r in body["records"]] == ["cluster", "group1"]
        assert [a["stored_file_name"] for a in body["artifacts"]] == ["cluster.jar#1", "group1.jar#1"]

    def test_join_without_member_id_is_rejected(self, locator):
        async def scenario(client):
            resp = await client.post("/members/join", json={"groups": ["group1"]})
            return resp.status, await resp.json()

        status, body = run_with_client(locator.build_app(), scenario)
        assert status == 400
        assert body["status"] == STATUS_ERROR

    def test_join_then_ack_and_list_members(self, locator):
        async def scenario(client):
            await client.post("/members/join", json={"member_id": "server-1", "groups": "group2"})
            ack = await client.post("/members/server-1/ack",
                                    json={"member_id": "server-1", "applied": [], "failures": []})
            members = await client.get("/members")
            return await ack.json(), await members.json()

        ack, members = run_with_client(locator.build_app(), scenario)
        assert ack["status"] == STATUS_OK
        assert ack["state"] == "acked"
        assert members["members"][0]["groups"] == ["group2"]

    def test_ack_without_join_is_a_conflict(self, locator):
        async def scenario(client):
            resp = await client.post("/members/ghost/ack", json={"applied": [], "failures": []})
            return resp.status

        assert run_with_client(locator.build_app(), scenario) == 409

    def test_leave_unknown_member(self, locator):
        async def scenario(client):
            return (await client.delete("/members/ghost")).status

        assert run_with_client(locator.build_app(), scenario) == 404

    def test_deploy_with_no_members_reports_error_but_records_artifact(self, empty_locator, config_root):
        async def scenario(client):
            resp = await client.post("/deploy", params={"jar": "cluster.jar"}, data=b"jar-bytes")
            return resp.status, await resp.json()

        status, body = run_with_client(empty_locator.build_app(), scenario)
        assert status == 503
        assert body["status"] == STATUS_ERROR
        assert body["artifact"]["stored_file_name"] == "cluster.jar#1"
        assert (config_root / "cluster" / "cluster.jar#1").read_bytes() == b"jar-bytes"

    def test_deploy_with_member_reports_ok(self, empty_locator):
        async def scenario(client):
            await client.post("/members/join", json={"member_id": "server-1"})
            resp = await client.post("/deploy", params={"jar": "app.jar", "group": "group1"}, data=b"x")
            return resp.status, await resp.json()

        status, body = run_with_client(empty_locator.build_app(), scenario)
        assert status == 200
        assert body["status"] == STATUS_OK
        assert body["artifact"]["record_name"] == "group1"

    def test_deploy_with_invalid_name(self, empty_locator):
        async def scenario(client):
            resp = await client.post("/deploy", params={"jar": "../x.jar"}, data=b"x")
            return resp.status, await resp.json()

        status, body = run_with_client(empty_locator.build_app(), scenario)
        assert status == 400
        assert body["status"] == STATUS_ERROR

    @pytest.mark.parametrize("group", ["Cluster", "../escaped"])
    def test_deploy_to_unsafe_group_is_rejected(self, empty_locator, config_root, group):
        async def scenario(client):
            resp = await client.post("/deploy", params={"jar": "app.jar", "group": group}, data=b"x")
            return resp.status, await resp.json()

        status, body = run_with_client(empty_locator.build_app(), scenario)
        assert status == 400
        assert body["status"] == STATUS_ERROR
        assert sorted(p.name for p in config_root.iterdir()) == ["cluster"]

    def test_import_while_member_running_is_rejected(self, locator):
        async def scenario(client):
            export = await client.get("/export")
            data = await export.read()
            await client.post("/members/join", json={"member_id": "server-1"})
            resp = await client.post("/import", data=data)
            return resp.status, await resp.json()

        status, body = run_with_client(locator.build_app(), scenario)
        assert status == 409
        assert body["status"] == STATUS_ERROR

    def test_export_then_import(self, locator):
        async def scenario(client):
            export = await client.get("/export")
            data = await export.read()
            resp = await client.post("/import", data=data)
            return export.content_type, data, await resp.json()

        content_type, data, body = run_with_client(locator.build_app(), scenario)
        assert content_type == "application/zip"
        assert "group1/group1.xml" in zipfile.ZipFile(io.BytesIO(data)).namelist()
        assert body["status"] == STATUS_OK
        assert body["records"] == CONFIG_NAMES
        assert body["backup_path"]

    def test_configuration_listing(self, locator):
        async def scenario(client):
            return await (await client.get("/configuration")).json()

        body = run_with_client(locator.build_app(), scenario)
        group2 = next(r for r in body["records"] if r["name"] == "group2")
        assert group2["properties"] == {LOG_FILE_SIZE_LIMIT: "7000"}


class TestMemberApi:

    @pytest.fixture
    def member(self, tmp_path) -> MemberService:
        settings = MemberSettings(member_id="server-1", work_dir=str(tmp_path / "server-1"))
        return MemberService(settings)

    def test_push_and_remove_artifact(self, member):
        artifact = ArtifactRecord("cluster", "app.jar", 1, sha256_digest(b"x"))
        payload = ArtifactPayload(artifact, b"x").to_dict()

        async def scenario(client):
            pushed = await (await client.post("/artifacts", json=payload)).json()
            listed = await (await client.get("/artifacts")).json()
            removed = await (await client.delete("/artifacts/cluster/app.jar")).json()
            return pushed, listed, removed

        pushed, listed, removed = run_with_client(member.build_app(), scenario)
        assert pushed["ok"] and pushed["applied"] == ["app.jar#1"]
        assert listed["files"] == ["vf.gf#app.jar#1"]
        assert removed["applied"] == ["app.jar#1"]
        assert member.agent.installed_files() == []

    def test_http_channel_removes_artifact_with_reserved_characters(self, member):
        artifact = ArtifactRecord("cluster", "lib#x.jar", 1, sha256_digest(b"x"))

        async def scenario():
            server = test_utils.TestServer(member.build_app())
            await server.start_server()
            channel = HttpMemberChannel(f"http://127.0.0.1:{server.port}")
            try:
                pushed = await channel.push_artifact(ArtifactPayload(artifact, b"x"))
                removed = await channel.remove_artifact("cluster", "lib#x.jar")
            finally:
                await channel.close()
                await server.close()
            return pushed, removed

        pushed, removed = asyncio.run(scenario())
        assert pushed.applied == ["lib#x.jar#1"]
        assert removed.applied == ["lib#x.jar#1"]
        assert member.agent.installed_files() == []

    def test_corrupt_push_is_reported(self, member):
        artifact = ArtifactRecord("cluster", "app.jar", 1, sha256_digest(b"original"))
        payload = ArtifactPayload(artifact, b"tampered").to_dict()

        async def scenario(client):
            resp = await client.post("/artifacts", json=payload)
            return resp.status, await resp.json()

        status, body = run_with_client(member.build_app(), scenario)
        assert status == 200
        assert body["ok"] is False
        assert body["failures"][0]["subject"] == "artifact:app.jar#1"

    def test_malformed_push(self, member):
        async def scenario(client):
            return (await client.post("/artifacts", json={"nope": 1})).status

        assert run_with_client(member.build_app(), scenario) == 400


class TestEndToEnd:
    """Locator and member talking over real HTTP."""

    def test_member_joins_and_receives_later_deploys(self, locator, tmp_path):
        async def scenario():
            locator_server = test_utils.TestServer(locator.build_app())
            await locator_server.start_server()
            locator_url = f"http://127.0.0.1:{locator_server.port}"

            settings = MemberSettings(
                member_id="server-1",
                groups=["group1"],
                locator_url=locator_url,
                work_dir=str(tmp_path / "server-1"),
            )
            member = MemberService(settings)
            member_server = test_utils.TestServer(member.build_app())
            await member_server.start_server()
            settings.port = member_server.port

            try:
                report = await member.join()
                async with test_utils.TestClient(locator_server) as client:
                    resp = await client.post("/deploy", params={"jar": "late.jar", "group": "group1"},
                                             data=b"late")
                    deploy = await resp.json()
                    await member.client.leave(member.member_id)
                    members = await (await client.get("/members")).json()
            finally:
                await member.client.close()
                await member_server.close()
                await locator_server.close()
            return report, deploy, members, member.agent

        report, deploy, members, agent = asyncio.run(scenario())

        assert report.ok
        assert deploy["status"] == STATUS_OK
        assert deploy["affected_member_count"] == 1
        assert agent.installed_files() == [
            "vf.gf#cluster.jar#1", "vf.gf#group1.jar#1", "vf.gf#late.jar#1",
        ]
        assert (agent.work_dir / "vf.gf#group1.jar#1").read_bytes() == jar_bytes("group1")
        assert members["members"] == []


class TestPeerBootstrap:
    """A second locator started against a running one."""

    def second_locator(self, tmp_path, peer_url: str) -> LocatorService:
        settings = LocatorSettings(cluster_configuration_dir=str(tmp_path / "locator-2"),
                                   peer_locator_url=peer_url)
        return LocatorService(settings)

    def test_empty_locator_copies_all_records_from_peer(self, locator, tmp_path):
        async def scenario():
            peer = test_utils.TestServer(locator.build_app())
            await peer.start_server()
            second = self.second_locator(tmp_path, f"http://127.0.0.1:{peer.port}")
            try:
                result = await second.bootstrap_from_peer()
            finally:
                await peer.close()
            return second, result

        second, result = asyncio.run(scenario())

        assert result.records == CONFIG_NAMES
        store = second.coordinator.store
        assert store.list_names() == CONFIG_NAMES
        assert store.get("group2").properties == {LOG_FILE_SIZE_LIMIT: "7000"}
        assert [a.stored_file_name for a in store.get("group1").artifacts] == ["group1.jar#1"]

    def test_unreachable_peer_leaves_local_store(self, tmp_path):
        second = self.second_locator(tmp_path, "http://127.0.0.1:1")

        assert asyncio.run(second.bootstrap_from_peer()) is None
        assert second.coordinator.store.list_names() == ["cluster"]

    def test_configured_store_is_not_overwritten(self, seeded_coordinator, locator_dir):
        settings = LocatorSettings(cluster_configuration_dir=str(locator_dir),
                                   peer_locator_url="http://127.0.0.1:1")
        service = LocatorService(settings, coordinator=seeded_coordinator)

        assert asyncio.run(service.bootstrap_from_peer()) is None
        assert seeded_coordinator.store.list_names() == CONFIG_NAMES
