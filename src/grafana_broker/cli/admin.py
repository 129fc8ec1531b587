"""Command-line utilities for administering a Grafana Cloud token broker."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any, Optional

import httpx
import yaml

from ..common.security import mint_admin_token


class BrokerRequestError(RuntimeError):
    def __init__(self, status_code: int, errors: list[str]) -> None:
        self.status_code = status_code
        self.errors = errors
        super().__init__(f"broker returned {status_code}: {'; '.join(errors)}")


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Administer the Grafana Cloud token broker")
    parser.add_argument(
        "--base-url",
        default=os.environ.get("GRAFANA_BROKER_ADDR", "http://127.0.0.1:8250"),
        help="Broker base URL",
    )
    parser.add_argument(
        "--token",
        default=os.environ.get("GRAFANA_BROKER_TOKEN"),
        help="Admin bearer token",
    )
    parser.add_argument("--json", action="store_true", help="Output raw JSON")

    subparsers = parser.add_subparsers(dest="command", required=True)

    configure = subparsers.add_parser("configure", help="Store the root Grafana Cloud credential")
    configure.add_argument("--root-token", required=True, help="Grafana Cloud access policy token (glc_...)")

    subparsers.add_parser("show-config", help="Show the stored root credential metadata")
    subparsers.add_parser("rotate-root", help="Rotate the root credential")

    lease = subparsers.add_parser("lease", help="Set lease TTL overrides")
    lease.add_argument("--ttl", type=int, help="Default TTL in seconds")
    lease.add_argument("--max-ttl", type=int, help="Maximum TTL in seconds")

    policy_write = subparsers.add_parser("policy-write", help="Create an access policy from a YAML or JSON file")
    policy_write.add_argument("name")
    policy_write.add_argument("--file", required=True, type=Path, help="Access policy definition")

    policy_read = subparsers.add_parser("policy-read", help="Show an access policy")
    policy_read.add_argument("name")

    policy_delete = subparsers.add_parser("policy-delete", help="Delete an access policy")
    policy_delete.add_argument("name")

    subparsers.add_parser("policy-list", help="List access policies")

    creds = subparsers.add_parser("creds", help="Issue a token for an access policy")
    creds.add_argument("name")

    subparsers.add_parser("leases", help="List tracked leases")

    renew = subparsers.add_parser("renew", help="Renew a lease")
    renew.add_argument("lease_id")

    revoke = subparsers.add_parser("revoke", help="Revoke a lease")
    revoke.add_argument("lease_id")

    subparsers.add_parser("tidy", help="Revoke expired leases")

    mint = subparsers.add_parser("mint-admin-token", help="Mint an admin JWT locally")
    mint.add_argument("--subject", required=True)
    mint.add_argument(
        "--secret",
        default=os.environ.get("GRAFANA_BROKER_ADMIN_JWT_SECRET"),
        help="Signing secret (defaults to GRAFANA_BROKER_ADMIN_JWT_SECRET)",
    )
    mint.add_argument("--ttl", type=int, default=3600)

    return parser.parse_args(argv)


def load_policy_file(path: Path) -> dict[str, Any]:
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"access policy file {path} must contain a mapping")
    return data


async def call_broker(
    base_url: str,
    token: Optional[str],
    method: str,
    path: str,
    *,
    payload: Optional[dict[str, Any]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Optional[dict[str, Any]]:
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    async with httpx.AsyncClient(timeout=30.0, transport=transport) as client:
        response = await client.request(
            method,
            f"{base_url.rstrip('/')}{path}",
            headers=headers,
            json=payload,
        )
    if response.status_code == httpx.codes.NO_CONTENT:
        return None
    if not response.is_success:
        raise BrokerRequestError(response.status_code, _error_messages(response))
    return response.json()


def _error_messages(response: httpx.Response) -> list[str]:
    try:
        body = response.json()
    except ValueError:
        return [response.text or response.reason_phrase]
    if isinstance(body, dict):
        if isinstance(body.get("errors"), list):
            return [str(item) for item in body["errors"]]
        if "detail" in body:
            return [json.dumps(body["detail"]) if not isinstance(body["detail"], str) else body["detail"]]
    return [str(body)]


def _request_for(args: argparse.Namespace) -> tuple[str, str, Optional[dict[str, Any]]]:
    command = args.command
    if command == "configure":
        return "POST", "/v1/config/token", {"token": args.root_token}
    if command == "show-config":
        return "GET", "/v1/config/token", None
    if command == "rotate-root":
        return "POST", "/v1/config/rotate-root", None
    if command == "lease":
        return "POST", "/v1/config/lease", {"ttl": args.ttl, "max_ttl": args.max_ttl}
    if command == "policy-write":
        return "POST", f"/v1/access_policies/{args.name}", {"policy": load_policy_file(args.file)}
    if command == "policy-read":
        return "GET", f"/v1/access_policies/{args.name}", None
    if command == "policy-delete":
        return "DELETE", f"/v1/access_policies/{args.name}", None
    if command == "policy-list":
        return "GET", "/v1/access_policies", None
    if command == "creds":
        return "GET", f"/v1/creds/{args.name}", None
    if command == "leases":
        return "GET", "/v1/sys/leases", None
    if command == "renew":
        return "POST", "/v1/sys/leases/renew", {"lease_id": args.lease_id}
    if command == "revoke":
        return "POST", "/v1/sys/leases/revoke", {"lease_id": args.lease_id}
    if command == "tidy":
        return "POST", "/v1/sys/leases/tidy", None
    raise ValueError(f"unknown command: {command}")


def print_result(result: Optional[dict[str, Any]], *, as_json: bool) -> None:
    if result is None:
        print("Success!")
        return
    if as_json:
        print(json.dumps(result, indent=2))
        return
    rows: dict[str, Any] = {key: value for key, value in result.items() if key != "data"}
    data = result.get("data")
    if isinstance(data, dict):
        rows.update(data)
    elif data is not None:
        rows["data"] = data
    if not rows:
        print("Success!")
        return
    width = max(len(key) for key in rows)
    print(f"{'Key'.ljust(width)}  Value")
    print(f"{'-' * width}  -----")
    for key, value in rows.items():
        rendered = json.dumps(value) if isinstance(value, (dict, list)) else ("-" if value is None else str(value))
        print(f"{key.ljust(width)}  {rendered}")


async def run(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    if args.command == "mint-admin-token":
        if not args.secret:
            print("error: --secret or GRAFANA_BROKER_ADMIN_JWT_SECRET is required", file=sys.stderr)
            return 2
        print(mint_admin_token(subject=args.subject, secret=args.secret, ttl_seconds=args.ttl))
        return 0

    method, path, payload = _request_for(args)
    try:
        result = await call_broker(args.base_url, args.token, method, path, payload=payload)
    except BrokerRequestError as exc:
        for message in exc.errors:
            print(f"error: {message}", file=sys.stderr)
        return 1
    print_result(result, as_json=args.json)
    return 0


def main() -> None:
    sys.exit(asyncio.run(run()))


if __name__ == "__main__":
    main()
