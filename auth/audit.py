"""
auth/audit.py -- Append-only audit trail for privileged actions.

AuditLogger exposes exactly two operations: log() and list_entries(). There
is no update or delete surface -- entries are immutable once written.

Availability over completeness: log() never raises. When the primary sink
(the audit_logs table) rejects a write, the full entry is serialized to the
"clinicconnect.audit.fallback" logger at ERROR level so operators still see
the action, and the calling request completes normally.

Layer rule: no imports from api/ or ratelimit/.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Column, Integer, String, Table, Text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import AuditEntry
from core.db import make_engine, metadata

logger = logging.getLogger("clinicconnect.audit")
fallback_logger = logging.getLogger("clinicconnect.audit.fallback")


class AuditActions:
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    USER_CREATED = "USER_CREATED"
    USER_UPDATED = "USER_UPDATED"
    SESSIONS_REVOKED = "SESSIONS_REVOKED"
    ORGANIZATION_ASSUMED = "ORGANIZATION_ASSUMED"
    ORGANIZATION_RELEASED = "ORGANIZATION_RELEASED"
    ACCESS_DENIED = "ACCESS_DENIED"
    MFA_SETUP_INITIATED = "MFA_SETUP_INITIATED"
    MFA_SETUP_REJECTED = "MFA_SETUP_REJECTED"
    MFA_ENABLED = "MFA_ENABLED"
    MFA_SETUP_VERIFICATION_FAILED = "MFA_SETUP_VERIFICATION_FAILED"
    MFA_VERIFIED = "MFA_VERIFIED"
    MFA_VERIFICATION_FAILED = "MFA_VERIFICATION_FAILED"
    MFA_LOCKED_OUT = "MFA_LOCKED_OUT"
    MFA_DISABLED = "MFA_DISABLED"
    MFA_BACKUP_CODES_REGENERATED = "MFA_BACKUP_CODES_REGENERATED"


@dataclass(frozen=True)
class AuditContext:
    """Request facts copied onto every entry a service writes on a caller's behalf."""

    ip_address: str | None = None
    user_agent: str | None = None
    organization_id: int | None = None

    def entry(self, action: str, actor_user_id: int | None, **fields) -> AuditEntry:
        fields.setdefault("organization_id", self.organization_id)
        return AuditEntry(
            action=action,
            actor_user_id=actor_user_id,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
            **fields,
        )


_audit_logs = Table(
    "audit_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("actor_user_id", Integer, index=True),
    Column("action", String(64), nullable=False),
    Column("entity_type", String(64), nullable=False),
    Column("entity_id", String(64)),
    Column("details", Text, nullable=False),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("organization_id", Integer, index=True),
    Column("timestamp", String(32), nullable=False),
)


class AuditLogger:
    """Writes AuditEntry records to the audit_logs table.

    Usage:
        audit = AuditLogger(engine=user_store.engine)
        audit.log(AuditEntry(action=AuditActions.MFA_ENABLED, actor_user_id=7))
    """

    def __init__(self, db_url: str | None = None, *, engine: Engine | None = None) -> None:
        if engine is None:
            if db_url is None:
                raise ValueError("AuditLogger needs a db_url or an engine")
            engine = make_engine(db_url)
        self.engine: Engine = engine
        try:
            metadata.create_all(self.engine, tables=[_audit_logs])
        except SQLAlchemyError:
            # The logger must come up even when its sink is down; log() will
            # route every entry to the fallback channel until the table exists.
            logger.exception("Audit table could not be created; entries will go to the fallback log")

    def log(self, entry: AuditEntry) -> None:
        """Persist entry. Never raises; failures escalate to the fallback channel."""
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _audit_logs.insert().values(
                        actor_user_id=entry.actor_user_id,
                        action=entry.action,
                        entity_type=entry.entity_type,
                        entity_id=entry.entity_id,
                        details=json.dumps(entry.details, default=str),
                        ip_address=entry.ip_address,
                        user_agent=entry.user_agent,
                        organization_id=entry.organization_id,
                        timestamp=entry.timestamp.isoformat(),
                    )
                )
        except Exception as exc:
            fallback_logger.error(
                "AUDIT SINK FAILURE (%s): %s",
                type(exc).__name__,
                _entry_to_json(entry),
            )

    def list_entries(
        self,
        *,
        organization_id: int | None = None,
        actor_user_id: int | None = None,
        action: str | None = None,
        limit: int = 100,
    ) -> list[AuditEntry]:
        """Return entries newest first, optionally filtered."""
        query = _audit_logs.select().order_by(_audit_logs.c.id.desc()).limit(limit)
        if organization_id is not None:
            query = query.where(_audit_logs.c.organization_id == organization_id)
        if actor_user_id is not None:
            query = query.where(_audit_logs.c.actor_user_id == actor_user_id)
        if action is not None:
            query = query.where(_audit_logs.c.action == action)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_entry(r) for r in rows]


def _entry_to_json(entry: AuditEntry) -> str:
    return json.dumps(
        {
            "action": entry.action,
            "actor_user_id": entry.actor_user_id,
            "entity_type": entry.entity_type,
            "entity_id": entry.entity_id,
            "details": entry.details,
            "ip_address": entry.ip_address,
            "user_agent": entry.user_agent,
            "organization_id": entry.organization_id,
            "timestamp": entry.timestamp.isoformat(),
        },
        default=str,
    )


def _row_to_entry(row) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        action=row.action,
        actor_user_id=row.actor_user_id,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        details=json.loads(row.details),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        organization_id=row.organization_id,
        timestamp=datetime.fromisoformat(row.timestamp),
    )
