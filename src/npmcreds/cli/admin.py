"""Administrative command line for the npmcreds backend."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Optional

import httpx


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="npmcreds administrative utilities")
    parser.add_argument("--base-url", default="http://127.0.0.1:8200", help="Backend base URL")
    parser.add_argument("--json", action="store_true", help="Output raw JSON")
    subparsers = parser.add_subparsers(dest="command", required=True)

    configure = subparsers.add_parser("configure", help="Set the registry connection")
    configure.add_argument("--connection-uri", required=True, help="Registry base URL")
    configure.add_argument("--username", required=True, help="Registry account with token rights")
    configure.add_argument("--password", required=True, help="Password for the registry account")
    configure.add_argument("--no-verify", action="store_true", help="Skip the live connection check")

    lease = subparsers.add_parser("lease", help="Lease policy and lease actions")
    lease_cmds = lease.add_subparsers(dest="lease_cmd", required=True)
    lease_config = lease_cmds.add_parser("config", help="Set the lease policy")
    lease_config.add_argument("--ttl", type=int, required=True, help="Lease TTL in seconds")
    lease_config.add_argument("--max-ttl", type=int, default=0, help="Maximum lease TTL in seconds")
    for action in ("renew", "revoke"):
        action_parser = lease_cmds.add_parser(action, help=f"{action.capitalize()} a lease")
        action_parser.add_argument("lease_id", help="Lease identifier returned by creds issue")

    roles = subparsers.add_parser("roles", help="Manage roles")
    role_cmds = roles.add_subparsers(dest="roles_cmd", required=True)
    role_cmds.add_parser("list", help="List role names")
    for action in ("read", "delete"):
        action_parser = role_cmds.add_parser(action, help=f"{action.capitalize()} a role")
        action_parser.add_argument("name", help="Role name")
    write = role_cmds.add_parser("write", help="Create or update a role")
    write.add_argument("name", help="Role name")
    write.add_argument("--password", required=True, help="Password credential consumers should use")
    write.add_argument("--readonly", action="store_true", help="Issue read-only tokens")
    write.add_argument("--cidr-whitelist", default=None, help="Comma separated CIDR blocks")

    creds = subparsers.add_parser("creds", help="Issue credentials")
    creds_cmds = creds.add_subparsers(dest="creds_cmd", required=True)
    issue = creds_cmds.add_parser("issue", help="Issue a token for a role")
    issue.add_argument("name", help="Role name")

    return parser.parse_args(argv)


async def call_backend(
    base_url: str,
    method: str,
    path: str,
    payload: Optional[dict[str, Any]] = None,
) -> Optional[dict[str, Any]]:
    async with httpx.AsyncClient(timeout=30.0) as client:
        response = await client.request(method, f"{base_url.rstrip('/')}/v1/{path}", json=payload)
        response.raise_for_status()
        if response.status_code == httpx.codes.NO_CONTENT or not response.content:
            return None
        return response.json()


def build_request(args: argparse.Namespace) -> tuple[str, str, Optional[dict[str, Any]]]:
    if args.command == "configure":
        return (
            "POST",
            "config/connection",
            {
                "connection_uri": args.connection_uri,
                "username": args.username,
                "password": args.password,
                "verify_connection": not args.no_verify,
            },
        )
    if args.command == "lease":
        if args.lease_cmd == "config":
            return "POST", "config/lease", {"ttl": args.ttl, "max_ttl": args.max_ttl}
        return "PUT", f"sys/leases/{args.lease_cmd}", {"lease_id": args.lease_id}
    if args.command == "roles":
        if args.roles_cmd == "list":
            return "GET", "roles", None
        if args.roles_cmd == "read":
            return "GET", f"roles/{args.name}", None
        if args.roles_cmd == "delete":
            return "DELETE", f"roles/{args.name}", None
        body: dict[str, Any] = {"password": args.password, "readonly": args.readonly}
        if args.cidr_whitelist:
            body["cidr_whitelist"] = args.cidr_whitelist
        return "POST", f"roles/{args.name}", body
    return "GET", f"creds/{args.name}", None


def render(args: argparse.Namespace, result: Optional[dict[str, Any]]) -> str:
    if args.json:
        return json.dumps(result, indent=2)
    if result is None:
        return "Success!"
    if args.command == "roles" and args.roles_cmd == "list":
        keys = result.get("keys", [])
        return "\n".join(keys) if keys else "No roles found"
    if args.command == "creds":
        return "\n".join(
            [
                f"lease_id:       {result['lease_id']}",
                f"lease_duration: {result['lease_duration']}",
                f"token:          {result['data']['token']}",
            ]
        )
    return "\n".join(f"{key}: {value}" for key, value in result.items())


async def run(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    method, path, payload = build_request(args)
    try:
        result = await call_backend(args.base_url, method, path, payload)
    except httpx.HTTPStatusError as exc:
        try:
            body = exc.response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        errors = body.get("errors") or [body.get("detail") or exc.response.text]
        print(f"Error: {'; '.join(map(str, errors))}", file=sys.stderr)
        return 1
    print(render(args, result))
    return 0


def main() -> None:
    sys.exit(asyncio.run(run()))


if __name__ == "__main__":
    main()
