import json
import logging
import os
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError

from config import SETTINGS, Settings
from delivery_state import TERMINAL_STATES, is_valid_transition
from models import Environment, ServiceEntry
from observability import log_event
from policy import ConflictError, InvalidStateError, NotFoundError


_TERMINAL_SQL = ", ".join(f"'{state.value}'" for state in sorted(TERMINAL_STATES, key=lambda s: s.value))

# Projection columns a transition may update alongside the state.
_TRANSITION_FIELDS = {"snapshot_ref", "apply_handle", "rendered_spec", "failure_reason"}


def _read_ssm_parameter(name: str, cache: dict) -> Optional[str]:
    if name in cache:
        return cache[name]
    try:
        client = boto3.client("ssm")
        response = client.get_parameter(Name=name)
        value = response.get("Parameter", {}).get("Value")
    except (BotoCoreError, ClientError):
        value = None
    cache[name] = value
    return value


def _resolve_ssm_template(value, cache: dict):
    if not isinstance(value, str) or not value.startswith("ssm:"):
        return value
    resolved = _read_ssm_parameter(value[len("ssm:") :], cache)
    return resolved or value


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Storage:
    def __init__(self, db_path: str, environment_registry_path: str, service_registry_path: str) -> None:
        self.db_path = db_path
        self.environment_registry_path = environment_registry_path
        self.service_registry_path = service_registry_path
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS deployments (
                id TEXT PRIMARY KEY,
                service TEXT NOT NULL,
                environment TEXT NOT NULL,
                rank INTEGER NOT NULL,
                version TEXT NOT NULL,
                artifact TEXT NOT NULL,
                state TEXT NOT NULL,
                change_summary TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                snapshot_ref TEXT,
                apply_handle TEXT,
                rendered_spec TEXT,
                failure_reason TEXT,
                rollback_requested INTEGER NOT NULL DEFAULT 0,
                rollback_requested_by TEXT,
                requested_by TEXT
            )
            """
        )
        cur.execute(
            f"""
            CREATE UNIQUE INDEX IF NOT EXISTS deployments_active_target
            ON deployments (service, environment)
            WHERE state NOT IN ({_TERMINAL_SQL})
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS transitions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                deployment_id TEXT NOT NULL,
                from_state TEXT,
                to_state TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                metadata TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS failures (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                deployment_id TEXT NOT NULL,
                category TEXT NOT NULL,
                summary TEXT NOT NULL,
                detail TEXT,
                action_hint TEXT,
                observed_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS snapshots (
                id TEXT PRIMARY KEY,
                service TEXT NOT NULL,
                environment TEXT NOT NULL,
                captured_spec TEXT NOT NULL,
                captured_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS approvals (
                deployment_id TEXT PRIMARY KEY,
                requested_at TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                decision TEXT NOT NULL,
                decided_by TEXT,
                decided_at TEXT,
                comment TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS builds (
                id TEXT PRIMARY KEY,
                service TEXT NOT NULL,
                version TEXT NOT NULL,
                digest TEXT NOT NULL,
                artifact_ref TEXT,
                created_at TEXT NOT NULL,
                registered_at TEXT NOT NULL
            )
            """
        )
        conn.commit()
        conn.close()

    # Registries

    def _read_json_list(self, path: str, label: str) -> List:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return []
        except json.JSONDecodeError as exc:
            log_event("registry_invalid", level=logging.WARNING, registry=label, error=str(exc))
            return []
        if not isinstance(data, list):
            log_event("registry_invalid", level=logging.WARNING, registry=label, error="root must be a list")
            return []
        return data

    def list_environments(self) -> List[Environment]:
        environments = []
        seen_orders = set()
        seen_names = set()
        ssm_cache: dict = {}
        for entry in self._read_json_list(self.environment_registry_path, "environments"):
            try:
                environment = Environment.model_validate(entry)
            except ValidationError as exc:
                log_event(
                    "registry_entry_invalid",
                    level=logging.WARNING,
                    registry="environments",
                    error=str(exc.errors()[0].get("msg")),
                )
                continue
            if environment.order in seen_orders or environment.name in seen_names:
                log_event(
                    "registry_entry_invalid",
                    level=logging.WARNING,
                    registry="environments",
                    name=environment.name,
                    error="duplicate name or order",
                )
                continue
            seen_orders.add(environment.order)
            seen_names.add(environment.name)
            environment.config = {
                key: _resolve_ssm_template(value, ssm_cache) for key, value in environment.config.items()
            }
            environments.append(environment)
        return sorted(environments, key=lambda item: item.order)

    def get_environment(self, name: str) -> Optional[Environment]:
        for environment in self.list_environments():
            if environment.name == name:
                return environment
        return None

    def list_services(self) -> List[ServiceEntry]:
        services = []
        for entry in self._read_json_list(self.service_registry_path, "services"):
            try:
                services.append(ServiceEntry.model_validate(entry))
            except ValidationError as exc:
                name = entry.get("service_name") if isinstance(entry, dict) else None
                log_event(
                    "registry_entry_invalid",
                    level=logging.WARNING,
                    registry="services",
                    name=name,
                    error=str(exc.errors()[0].get("msg")),
                )
        return sorted(services, key=lambda item: item.service_name)

    def get_service(self, service_name: str) -> Optional[ServiceEntry]:
        for entry in self.list_services():
            if entry.service_name == service_name:
                return entry
        return None

    # Deployments

    def insert_deployment(self, record: dict) -> dict:
        now = utc_now()
        conn = self._connect()
        cur = conn.cursor()
        try:
            cur.execute(
                """
                INSERT INTO deployments (
                    id, service, environment, rank, version, artifact, state,
                    change_summary, created_at, updated_at, requested_by
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record["id"],
                    record["service"],
                    record["environment"],
                    record["rank"],
                    record["version"],
                    json.dumps(record["artifact"]),
                    "PENDING",
                    record.get("changeSummary"),
                    now,
                    now,
                    record.get("requestedBy"),
                ),
            )
            self._insert_transition(cur, record["id"], None, "PENDING", now, {"requestedBy": record.get("requestedBy")})
            conn.commit()
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            raise ConflictError(
                f"A deployment is already in progress for {record['service']} in {record['environment']}"
            ) from exc
        finally:
            conn.close()
        log_event(
            "deployment_transition",
            deployment_id=record["id"],
            service=record["service"],
            environment=record["environment"],
            from_state="-",
            to_state="PENDING",
        )
        return self.get_deployment(record["id"])

    def record_transition(
        self,
        deployment_id: str,
        from_state: str,
        to_state: str,
        metadata: Optional[dict] = None,
        failures: Optional[List[dict]] = None,
        **fields,
    ) -> dict:
        """Move a deployment from `from_state` to `to_state` in one transaction.

        The update is a compare-and-set on the current state; a deployment that
        has already moved on raises InvalidStateError.
        """
        from_state = getattr(from_state, "value", from_state)
        to_state = getattr(to_state, "value", to_state)
        if not is_valid_transition(from_state, to_state):
            raise InvalidStateError(f"Transition {from_state} -> {to_state} is not allowed")
        unknown = set(fields) - _TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Unknown deployment fields: {sorted(unknown)}")
        now = utc_now()
        assignments = ["state = ?", "updated_at = ?"]
        params: list = [to_state, now]
        for name, value in fields.items():
            assignments.append(f"{name} = ?")
            params.append(json.dumps(value) if name == "rendered_spec" and value is not None else value)
        params.extend([deployment_id, from_state])
        conn = self._connect()
        cur = conn.cursor()
        try:
            cur.execute(
                f"UPDATE deployments SET {', '.join(assignments)} WHERE id = ? AND state = ?",
                tuple(params),
            )
            if cur.rowcount == 0:
                conn.rollback()
                cur.execute("SELECT state FROM deployments WHERE id = ?", (deployment_id,))
                row = cur.fetchone()
                if not row:
                    raise NotFoundError(f"Deployment {deployment_id} not found")
                raise InvalidStateError(
                    f"Deployment {deployment_id} is {row['state']}, expected {from_state}"
                )
            if failures is not None:
                self._replace_failures(cur, deployment_id, failures)
            self._insert_transition(cur, deployment_id, from_state, to_state, now, metadata or {})
            conn.commit()
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            raise ConflictError(f"Another deployment is active on the target of {deployment_id}") from exc
        finally:
            conn.close()
        deployment = self.get_deployment(deployment_id)
        log_event(
            "deployment_transition",
            deployment_id=deployment_id,
            service=deployment["service"],
            environment=deployment["environment"],
            from_state=from_state,
            to_state=to_state,
        )
        return deployment

    def mark_rollback_requested(self, deployment_id: str, actor_id: Optional[str]) -> None:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE deployments
            SET rollback_requested = 1, rollback_requested_by = ?, updated_at = ?
            WHERE id = ?
            """,
            (actor_id, utc_now(), deployment_id),
        )
        conn.commit()
        conn.close()

    def _insert_transition(
        self, cur: sqlite3.Cursor, deployment_id: str, from_state: Optional[str], to_state: str, timestamp: str, metadata: dict
    ) -> None:
        cur.execute(
            """
            INSERT INTO transitions (deployment_id, from_state, to_state, timestamp, metadata)
            VALUES (?, ?, ?, ?, ?)
            """,
            (deployment_id, from_state, to_state, timestamp, json.dumps(metadata, default=str)),
        )

    def _replace_failures(self, cur: sqlite3.Cursor, deployment_id: str, failures: List[dict]) -> None:
        cur.execute("DELETE FROM failures WHERE deployment_id = ?", (deployment_id,))
        for failure in failures:
            cur.execute(
                """
                INSERT INTO failures (
                    deployment_id, category, summary, detail, action_hint, observed_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    deployment_id,
                    failure.get("category"),
                    failure.get("summary"),
                    failure.get("detail"),
                    failure.get("actionHint"),
                    failure.get("observedAt"),
                ),
            )

    def get_deployment(self, deployment_id: str) -> Optional[dict]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute("SELECT * FROM deployments WHERE id = ?", (deployment_id,))
        row = cur.fetchone()
        if not row:
            conn.close()
            return None
        failures = self._get_failures(cur, deployment_id)
        conn.close()
        return self._row_to_deployment(row, failures)

    def list_deployments(
        self,
        service: Optional[str] = None,
        environment: Optional[str] = None,
        state: Optional[str] = None,
    ) -> List[dict]:
        conn = self._connect()
        cur = conn.cursor()
        query = "SELECT * FROM deployments"
        params = []
        conditions = []
        if service:
            conditions.append("service = ?")
            params.append(service)
        if environment:
            conditions.append("environment = ?")
            params.append(environment)
        if state:
            conditions.append("state = ?")
            params.append(state)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at DESC, rowid DESC"
        cur.execute(query, tuple(params))
        rows = cur.fetchall()
        deployments = [self._row_to_deployment(row, self._get_failures(cur, row["id"])) for row in rows]
        conn.close()
        return deployments

    def list_non_terminal_deployments(self) -> List[dict]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(f"SELECT * FROM deployments WHERE state NOT IN ({_TERMINAL_SQL}) ORDER BY created_at, rowid")
        rows = cur.fetchall()
        deployments = [self._row_to_deployment(row, self._get_failures(cur, row["id"])) for row in rows]
        conn.close()
        return deployments

    def _find_one(self, query: str, params: tuple) -> Optional[dict]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(query, params)
        row = cur.fetchone()
        if not row:
            conn.close()
            return None
        failures = self._get_failures(cur, row["id"])
        conn.close()
        return self._row_to_deployment(row, failures)

    def find_latest_deployment(self, service: str, environment: str) -> Optional[dict]:
        return self._find_one(
            """
            SELECT * FROM deployments
            WHERE service = ? AND environment = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT 1
            """,
            (service, environment),
        )

    def find_live_deployment(self, service: str, environment: str) -> Optional[dict]:
        return self._find_one(
            """
            SELECT * FROM deployments
            WHERE service = ? AND environment = ? AND state = 'SUCCEEDED'
            ORDER BY created_at DESC, rowid DESC
            LIMIT 1
            """,
            (service, environment),
        )

    def find_latest_deployment_for_version(self, service: str, environment: str, version: str) -> Optional[dict]:
        return self._find_one(
            """
            SELECT * FROM deployments
            WHERE service = ? AND environment = ? AND version = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT 1
            """,
            (service, environment, version),
        )

    def _get_failures(self, cur: sqlite3.Cursor, deployment_id: str) -> List[dict]:
        cur.execute("SELECT * FROM failures WHERE deployment_id = ? ORDER BY id", (deployment_id,))
        return [
            {
                "category": row["category"],
                "summary": row["summary"],
                "detail": row["detail"],
                "actionHint": row["action_hint"],
                "observedAt": row["observed_at"],
            }
            for row in cur.fetchall()
        ]

    def _row_to_deployment(self, row: sqlite3.Row, failures: List[dict]) -> dict:
        return {
            "id": row["id"],
            "service": row["service"],
            "environment": row["environment"],
            "rank": row["rank"],
            "version": row["version"],
            "artifact": json.loads(row["artifact"]),
            "state": row["state"],
            "changeSummary": row["change_summary"],
            "createdAt": row["created_at"],
            "updatedAt": row["updated_at"],
            "snapshotRef": row["snapshot_ref"],
            "applyHandle": row["apply_handle"],
            "renderedSpec": json.loads(row["rendered_spec"]) if row["rendered_spec"] else None,
            "failureReason": row["failure_reason"],
            "rollbackRequested": bool(row["rollback_requested"]),
            "rollbackRequestedBy": row["rollback_requested_by"],
            "requestedBy": row["requested_by"],
            "failures": failures,
        }

    # Transitions

    def list_transitions(self, deployment_id: str) -> List[dict]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute("SELECT * FROM transitions WHERE deployment_id = ? ORDER BY id", (deployment_id,))
        rows = cur.fetchall()
        conn.close()
        return [
            {
                "deploymentId": row["deployment_id"],
                "fromState": row["from_state"],
                "toState": row["to_state"],
                "timestamp": row["timestamp"],
                "metadata": json.loads(row["metadata"]),
            }
            for row in rows
        ]

    def has_reached_state(self, deployment_id: str, state: str) -> bool:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            "SELECT 1 FROM transitions WHERE deployment_id = ? AND to_state = ? LIMIT 1",
            (deployment_id, getattr(state, "value", state)),
        )
        row = cur.fetchone()
        conn.close()
        return row is not None

    # Snapshots

    def insert_snapshot(self, service: str, environment: str, captured_spec) -> dict:
        snapshot = {
            "id": str(uuid.uuid4()),
            "service": service,
            "environment": environment,
            "capturedSpec": captured_spec,
            "capturedAt": utc_now(),
        }
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO snapshots (id, service, environment, captured_spec, captured_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (snapshot["id"], service, environment, json.dumps(captured_spec), snapshot["capturedAt"]),
        )
        conn.commit()
        conn.close()
        return snapshot

    def get_snapshot(self, snapshot_id: str) -> Optional[dict]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute("SELECT * FROM snapshots WHERE id = ?", (snapshot_id,))
        row = cur.fetchone()
        conn.close()
        if not row:
            return None
        return {
            "id": row["id"],
            "service": row["service"],
            "environment": row["environment"],
            "capturedSpec": json.loads(row["captured_spec"]),
            "capturedAt": row["captured_at"],
        }

    def list_snapshot_ids(self, service: str, environment: str) -> List[str]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            SELECT id FROM snapshots
            WHERE service = ? AND environment = ?
            ORDER BY captured_at DESC, rowid DESC
            """,
            (service, environment),
        )
        ids = [row["id"] for row in cur.fetchall()]
        conn.close()
        return ids

    def prune_snapshots(self, service: str, environment: str, keep: int) -> int:
        """Delete all but the newest `keep` snapshots of a target.

        Snapshots still referenced by a non-terminal deployment are kept.
        """
        stale = self.list_snapshot_ids(service, environment)[max(keep, 0) :]
        if not stale:
            return 0
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT snapshot_ref FROM deployments
            WHERE snapshot_ref IS NOT NULL AND state NOT IN ({_TERMINAL_SQL})
            """
        )
        protected = {row["snapshot_ref"] for row in cur.fetchall()}
        removed = 0
        for snapshot_id in stale:
            if snapshot_id in protected:
                continue
            cur.execute("DELETE FROM snapshots WHERE id = ?", (snapshot_id,))
            removed += cur.rowcount
        conn.commit()
        conn.close()
        return removed

    # Approvals

    def insert_approval(self, record: dict) -> dict:
        conn = self._connect()
        cur = conn.cursor()
        try:
            cur.execute(
                """
                INSERT INTO approvals (deployment_id, requested_at, expires_at, decision)
                VALUES (?, ?, ?, ?)
                """,
                (record["deploymentId"], record["requestedAt"], record["expiresAt"], "PENDING"),
            )
            conn.commit()
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            raise ConflictError(f"Approval already requested for {record['deploymentId']}") from exc
        finally:
            conn.close()
        return self.get_approval(record["deploymentId"])

    def get_approval(self, deployment_id: str) -> Optional[dict]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute("SELECT * FROM approvals WHERE deployment_id = ?", (deployment_id,))
        row = cur.fetchone()
        conn.close()
        if not row:
            return None
        return {
            "deploymentId": row["deployment_id"],
            "requestedAt": row["requested_at"],
            "expiresAt": row["expires_at"],
            "decision": row["decision"],
            "decidedBy": row["decided_by"],
            "decidedAt": row["decided_at"],
            "comment": row["comment"],
        }

    def decide_approval(
        self, deployment_id: str, decision: str, decided_by: Optional[str], comment: Optional[str] = None
    ) -> bool:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE approvals
            SET decision = ?, decided_by = ?, decided_at = ?, comment = ?
            WHERE deployment_id = ? AND decision = 'PENDING'
            """,
            (decision, decided_by, utc_now(), comment, deployment_id),
        )
        changed = cur.rowcount == 1
        conn.commit()
        conn.close()
        return changed

    # Builds

    def insert_build(self, record: dict) -> dict:
        build_id = str(uuid.uuid4())
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO builds (id, service, version, digest, artifact_ref, created_at, registered_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                build_id,
                record["service"],
                record["version"],
                record["digest"],
                record.get("artifactRef"),
                record["createdAt"],
                record["registeredAt"],
            ),
        )
        conn.commit()
        conn.close()
        record["id"] = build_id
        return record

    def find_latest_build(self, service: str, version: str) -> Optional[dict]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            SELECT * FROM builds
            WHERE service = ? AND version = ?
            ORDER BY registered_at DESC, rowid DESC
            LIMIT 1
            """,
            (service, version),
        )
        row = cur.fetchone()
        conn.close()
        return self._row_to_build(row) if row else None

    def _row_to_build(self, row: sqlite3.Row) -> dict:
        return {
            "id": row["id"],
            "service": row["service"],
            "version": row["version"],
            "digest": row["digest"],
            "artifactRef": row["artifact_ref"],
            "createdAt": row["created_at"],
            "registeredAt": row["registered_at"],
        }


def build_storage(settings: Optional[Settings] = None) -> Storage:
    settings = settings or SETTINGS
    return Storage(
        settings.db_path,
        settings.environment_registry_path,
        settings.service_registry_path,
    )
