"""relayctl: drive promotions, rollbacks and approvals through the Relay API.

Reads RELAY_API_BASE (default http://127.0.0.1:8000) and RELAY_TOKEN from the
environment. Prints the JSON response. Exit codes: 0 success, 1 API error,
2 usage error.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any

import requests


EXIT_OK = 0
EXIT_API_ERROR = 1
EXIT_USAGE = 2


class CliError(RuntimeError):
    """Raised for user-facing validation/runtime errors."""


def normalize_api_base(value: str) -> str:
    base = value.strip().rstrip("/")
    if not base:
        raise CliError("RELAY_API_BASE must not be empty")
    if not base.endswith("/v1"):
        base = f"{base}/v1"
    return base


def _headers(token: str) -> dict[str, str]:
    headers = {"Accept": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def _call(method: str, url: str, token: str, payload: dict[str, Any] | None = None):
    try:
        response = requests.request(
            method,
            url,
            json=payload,
            headers=_headers(token),
            timeout=30,
        )
    except requests.RequestException as exc:
        raise CliError(f"HTTP request failed for {url}: {exc}") from exc
    try:
        body = response.json()
    except ValueError:
        body = {"code": "HTTP_ERROR", "message": response.text}
    return response.status_code, body


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="relayctl", description="Relay release orchestration CLI")
    parser.add_argument("--api-base", default=os.environ.get("RELAY_API_BASE", "http://127.0.0.1:8000"))
    parser.add_argument("--token", default=os.environ.get("RELAY_TOKEN", ""))
    commands = parser.add_subparsers(dest="command", required=True)

    promote = commands.add_parser("promote", help="Promote a version into an environment")
    promote.add_argument("service")
    promote.add_argument("version")
    promote.add_argument("environment")
    promote.add_argument("--summary", default=None, help="Change summary recorded with the deployment")

    rollback = commands.add_parser("rollback", help="Roll back a deployment")
    rollback.add_argument("deployment_id")
    rollback.add_argument("--reason", default=None)

    for name in ("approve", "deny"):
        decision = commands.add_parser(name, help=f"{name.capitalize()} a deployment awaiting approval")
        decision.add_argument("deployment_id")
        decision.add_argument("--comment", default=None)

    status = commands.add_parser("status", help="Show a deployment or the latest deployment of a target")
    status.add_argument("deployment_id", nargs="?")
    status.add_argument("--service")
    status.add_argument("--environment")
    return parser


def _request_for(args: argparse.Namespace, base: str) -> tuple[str, str, dict | None]:
    if args.command == "promote":
        payload = {"service": args.service, "version": args.version, "environment": args.environment}
        if args.summary:
            payload["changeSummary"] = args.summary
        return "POST", f"{base}/promotions", payload
    if args.command == "rollback":
        payload = {"reason": args.reason} if args.reason else None
        return "POST", f"{base}/deployments/{args.deployment_id}/rollback", payload
    if args.command in ("approve", "deny"):
        payload = {"comment": args.comment} if args.comment else None
        return "POST", f"{base}/deployments/{args.deployment_id}/{args.command}", payload
    if args.deployment_id:
        if args.service or args.environment:
            raise CliError("status takes either a deployment id or --service and --environment")
        return "GET", f"{base}/deployments/{args.deployment_id}", None
    if not (args.service and args.environment):
        raise CliError("status requires a deployment id or both --service and --environment")
    return "GET", f"{base}/services/{args.service}/environments/{args.environment}/status", None


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        return EXIT_OK if exc.code == 0 else EXIT_USAGE
    try:
        method, url, payload = _request_for(args, normalize_api_base(args.api_base))
    except CliError as exc:
        print(f"relayctl: {exc}", file=sys.stderr)
        return EXIT_USAGE
    try:
        status_code, body = _call(method, url, args.token, payload)
    except CliError as exc:
        print(f"relayctl: {exc}", file=sys.stderr)
        return EXIT_API_ERROR
    print(json.dumps(body, indent=2, sort_keys=True))
    if status_code >= 400:
        code = body.get("code") if isinstance(body, dict) else None
        print(f"relayctl: request failed status={status_code} code={code}", file=sys.stderr)
        return EXIT_API_ERROR
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
