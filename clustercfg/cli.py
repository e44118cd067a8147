#!/usr/bin/env python3
"""
clustercfg CLI - Operator tool and process entry point

Usage:
    # Run a locator / member
    clustercfg locator --config config.yaml
    clustercfg member --config config.yaml --groups group1,group2
    clustercfg locator --peer http://10.0.0.2:10334   # second locator, copies the first

    # Deploy an artifact to every member, or to one group
    clustercfg deploy --jar=build/cluster.jar
    clustercfg deploy --jar=build/group1.jar --group=group1

    # Remove an artifact
    clustercfg undeploy --jar=group1.jar --group=group1

    # Replace / save the whole configuration
    clustercfg import cluster-configuration --zip-file-name=cluster_config.zip
    clustercfg export cluster-configuration --zip-file-name=cluster_config.zip

Command output is JSON with "status" (OK or ERROR) and "message".
Exit code is 0 for OK and 1 for ERROR.
"""

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

import httpx

from clustercfg.common.config import load_settings, parse_group_list
from clustercfg.common.exceptions import ClusterConfigError

CONFIG_RESOURCE = "cluster-configuration"


def _result(status: str, message: str, **data) -> dict:
    return {"status": status, "message": message, **data}


def _response_result(response: httpx.Response) -> dict:
    try:
        return response.json()
    except ValueError:
        return _result("ERROR", f"locator returned HTTP {response.status_code}")


def deploy(locator_url: str, jar_path: str, group: str | None = None, timeout: float = 60.0) -> dict:
    """Upload an artifact to the locator"""
    path = Path(jar_path)
    if not path.is_file():
        return _result("ERROR", f"Artifact not found: {jar_path}")

    params = {"jar": path.name}
    if group:
        params["group"] = group

    try:
        response = httpx.post(
            f"{locator_url}/deploy",
            params=params,
            content=path.read_bytes(),
            headers={"Content-Type": "application/octet-stream"},
            timeout=timeout,
        )
    except httpx.HTTPError as e:
        return _result("ERROR", f"Cannot reach locator: {e}")
    return _response_result(response)


def undeploy(locator_url: str, jar_name: str, group: str | None = None, timeout: float = 60.0) -> dict:
    params = {"jar": jar_name}
    if group:
        params["group"] = group
    try:
        response = httpx.post(f"{locator_url}/undeploy", params=params, timeout=timeout)
    except httpx.HTTPError as e:
        return _result("ERROR", f"Cannot reach locator: {e}")
    return _response_result(response)


def import_configuration(locator_url: str, zip_file_name: str, timeout: float = 60.0) -> dict:
    """Upload an exported archive to replace the locator's configuration"""
    path = Path(zip_file_name)
    if not path.is_file():
        return _result("ERROR", f"Archive not found: {zip_file_name}")
    try:
        response = httpx.post(
            f"{locator_url}/import",
            content=path.read_bytes(),
            headers={"Content-Type": "application/zip"},
            timeout=timeout,
        )
    except httpx.HTTPError as e:
        return _result("ERROR", f"Cannot reach locator: {e}")
    return _response_result(response)


def export_configuration(locator_url: str, zip_file_name: str, timeout: float = 60.0) -> dict:
    """Download the locator's configuration archive"""
    try:
        response = httpx.get(f"{locator_url}/export", timeout=timeout)
    except httpx.HTTPError as e:
        return _result("ERROR", f"Cannot reach locator: {e}")
    if response.is_error:
        return _response_result(response)

    Path(zip_file_name).write_bytes(response.content)
    return _result("OK", f"Cluster configuration exported to {zip_file_name}",
                   size_bytes=len(response.content))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="clustercfg", description="Cluster configuration service")
    parser.add_argument("--config", help="Settings YAML file")
    parser.add_argument("--locator", help="Locator URL (default from settings)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    loc = sub.add_parser("locator", help="Run a locator")
    loc.add_argument("--peer", help="URL of a running locator to copy configuration from")

    member = sub.add_parser("member", help="Run a member")
    member.add_argument("--groups", help="Comma-separated group list")
    member.add_argument("--member-id", help="Member name")

    dep = sub.add_parser("deploy", help="Deploy an artifact")
    dep.add_argument("--jar", required=True, help="Path of the artifact to deploy")
    dep.add_argument("--group", help="Target group (default: whole cluster)")

    undep = sub.add_parser("undeploy", help="Undeploy an artifact")
    undep.add_argument("--jar", required=True, help="Artifact name")
    undep.add_argument("--group", help="Target group (default: whole cluster)")

    imp = sub.add_parser("import", help="Import configuration")
    imp.add_argument("resource", choices=[CONFIG_RESOURCE])
    imp.add_argument("--zip-file-name", required=True)

    exp = sub.add_parser("export", help="Export configuration")
    exp.add_argument("resource", choices=[CONFIG_RESOURCE])
    exp.add_argument("--zip-file-name", required=True)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings(args.config)

    if args.verbose:
        # Service loggers are created on import below
        os.environ["CLUSTERCFG_LOG_LEVEL"] = "DEBUG"

    if args.command == "locator":
        from clustercfg.services.locator.service import main as locator_main
        if args.peer:
            settings.locator.peer_locator_url = args.peer.rstrip("/")
        try:
            asyncio.run(locator_main(settings.locator))
        except ClusterConfigError as e:
            print(f"Error: {e.message}", file=sys.stderr)
            return 1
        return 0

    if args.command == "member":
        from clustercfg.services.member.service import main as member_main
        if args.groups is not None:
            settings.member.groups = parse_group_list(args.groups)
        if args.member_id:
            settings.member.member_id = args.member_id
        try:
            asyncio.run(member_main(settings.member))
        except ClusterConfigError as e:
            print(f"Error: {e.message}", file=sys.stderr)
            return 1
        return 0

    locator_url = (args.locator or settings.member.locator_url).rstrip("/")

    if args.command == "deploy":
        result = deploy(locator_url, args.jar, args.group)
    elif args.command == "undeploy":
        result = undeploy(locator_url, args.jar, args.group)
    elif args.command == "import":
        result = import_configuration(locator_url, args.zip_file_name)
    else:
        result = export_configuration(locator_url, args.zip_file_name)

    print(json.dumps(result, indent=2))
    return 0 if result.get("status") == "OK" else 1


if __name__ == "__main__":
    sys.exit(main())
