#!/usr/bin/env python3
import argparse
import json
import os


DEFAULT_ENVIRONMENTS = [
    {
        "name": "dev",
        "order": 0,
        "display_name": "Development",
        "requires_approval": False,
        "health_check_timeout_seconds": 300,
        "config": {"replicas": 1, "log_level": "debug", "registry": "registry.internal"},
    },
    {
        "name": "staging",
        "order": 1,
        "display_name": "Staging",
        "requires_approval": False,
        "health_check_timeout_seconds": 600,
        "config": {"replicas": 2, "log_level": "info", "registry": "registry.internal"},
    },
    {
        "name": "prod",
        "order": 2,
        "display_name": "Production",
        "requires_approval": True,
        "approval_timeout_seconds": 86400,
        "health_check_timeout_seconds": 900,
        "config": {"replicas": 4, "log_level": "warn", "registry": "registry.internal"},
    },
]


def default_service(name: str) -> dict:
    return {
        "service_name": name,
        "allowed_environments": [item["name"] for item in DEFAULT_ENVIRONMENTS],
        "manifest": {
            "image": "${registry}/" + name + "@${artifact.digest}",
            "replicas": "${replicas}",
            "env": {"LOG_LEVEL": "${log_level}", "RELEASE": "${artifact.version}"},
            "labels": {"app": "${service}", "environment": "${environment}"},
            "healthPath": "/healthz",
        },
    }


def _write(path: str, data: list, force: bool) -> None:
    if os.path.exists(path) and not force:
        print(f"skip {path}: exists (use --force to overwrite)")
        return
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(data, handle, indent=2)
        handle.write("\n")
    print(f"wrote {path} ({len(data)} entries)")


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed the Relay environment chain and service registry")
    parser.add_argument(
        "--data-dir",
        default=os.path.join(os.path.dirname(__file__), "..", "relay-api", "data"),
        help="Directory holding environments.json and services.json",
    )
    parser.add_argument("--service", action="append", default=[], help="Service to register (repeatable)")
    parser.add_argument("--force", action="store_true", help="Overwrite existing files")
    args = parser.parse_args()

    services = [default_service(name) for name in (args.service or ["demo-service"])]
    _write(os.path.join(args.data_dir, "environments.json"), DEFAULT_ENVIRONMENTS, args.force)
    _write(os.path.join(args.data_dir, "services.json"), services, args.force)


if __name__ == "__main__":
    main()
