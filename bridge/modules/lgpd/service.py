"""LGPD data-subject requests: erasure and portable exports.

Both run as Celery jobs. Export progress lives in shared state under
``export_metadata:{export_id}`` for 24 hours; finished files sit in
``EXPORT_STORAGE_PATH`` and are served through signed, expiring links.
"""

from __future__ import annotations

import csv
import io
import json
import re
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

import structlog
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from bridge.core.config import settings
from bridge.core.errors import BridgeError
from bridge.core.security import export_download_token, validate_download_token
from bridge.core.shared_state import SharedState, get_shared_state
from bridge.models.audit import AuditLog
from bridge.models.base import utcnow
from bridge.models.consent import ConsentRecord
from bridge.models.enums import AuditModel
from bridge.models.mappings import ActivityMapping, ContactMapping, ConversationMapping
from bridge.modules.audit.service import AuditService

logger = structlog.get_logger()

ExportFormat = Literal["json", "csv"]

EXPORT_METADATA_TTL = 86400
FINISHED_STATUSES = frozenset({"completed", "failed", "cancelled"})

_FILENAME = re.compile(r"^data-export-[A-Za-z0-9_]+(-[A-Za-z0-9_]+)*\.(json|csv)$")


class ExportNotFoundError(BridgeError):
    error_code = "EXPORT_NOT_FOUND"
    status_code = 404


class ExportFileNotFoundError(BridgeError):
    error_code = "EXPORT_FILE_NOT_FOUND"
    status_code = 404


class InvalidDownloadTokenError(BridgeError):
    error_code = "INVALID_DOWNLOAD_TOKEN"
    status_code = 403


class ExportCancellationError(BridgeError):
    error_code = "EXPORT_CANCELLATION_FAILED"
    status_code = 400


@dataclass(frozen=True)
class ExportOptions:
    include_conversations: bool = True
    include_messages: bool = True
    include_consent_records: bool = True
    include_audit_logs: bool = True

    def to_dict(self) -> dict[str, bool]:
        return asdict(self)


# ── Erasure ───────────────────────────────────────────────────────────────────


def delete_contact_data(session: Session, contact_id: int) -> dict[str, int]:
    """Remove everything held about a Chatwoot contact. Runs in the caller's transaction.

    Conversations are found through the contact's Krayin lead; their activity
    mappings go first, then the conversations, the contact mapping, consent
    records and the Contact audit trail.
    """
    lead_ids = list(
        session.scalars(
            select(ContactMapping.krayin_lead_id).where(
                ContactMapping.chatwoot_contact_id == contact_id,
                ContactMapping.krayin_lead_id.is_not(None),
            )
        )
    )
    conversation_ids: list[int] = []
    if lead_ids:
        conversation_ids = list(
            session.scalars(
                select(ConversationMapping.chatwoot_conversation_id).where(
                    ConversationMapping.krayin_lead_id.in_(lead_ids)
                )
            )
        )

    counts = {"activity_mappings": 0, "conversation_mappings": 0}
    if conversation_ids:
        counts["activity_mappings"] = session.execute(
            delete(ActivityMapping).where(ActivityMapping.conversation_id.in_(conversation_ids))
        ).rowcount or 0
        counts["conversation_mappings"] = session.execute(
            delete(ConversationMapping).where(
                ConversationMapping.chatwoot_conversation_id.in_(conversation_ids)
            )
        ).rowcount or 0
    counts["contact_mappings"] = session.execute(
        delete(ContactMapping).where(ContactMapping.chatwoot_contact_id == contact_id)
    ).rowcount or 0
    counts["consent_records"] = session.execute(
        delete(ConsentRecord).where(ConsentRecord.contact_id == contact_id)
    ).rowcount or 0
    counts["audit_logs"] = session.execute(
        delete(AuditLog).where(
            AuditLog.model == AuditModel.CONTACT.value,
            AuditLog.model_id == str(contact_id),
        )
    ).rowcount or 0

    logger.info("contact_data_deleted", contact_id=contact_id, deleted_counts=counts)
    return counts


# ── Export gathering ──────────────────────────────────────────────────────────


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def _conversation_ids(session: Session, contact_id: int) -> list[int]:
    stmt = (
        select(ConversationMapping.chatwoot_conversation_id)
        .join(ContactMapping, ContactMapping.krayin_lead_id == ConversationMapping.krayin_lead_id)
        .where(ContactMapping.chatwoot_contact_id == contact_id)
    )
    return list(session.scalars(stmt))


def gather_contact_data(
    session: Session, contact_id: int, options: ExportOptions | None = None
) -> dict[str, Any]:
    options = options or ExportOptions()
    mapping = session.scalar(
        select(ContactMapping).where(ContactMapping.chatwoot_contact_id == contact_id)
    )
    data: dict[str, Any] = {
        "contact_id": contact_id,
        "contact": {
            "chatwoot_contact_id": mapping.chatwoot_contact_id,
            "krayin_lead_id": mapping.krayin_lead_id,
            "contact_name": mapping.contact_name,
            "contact_email": mapping.contact_email,
            "contact_phone": mapping.contact_phone,
            "created_at": _iso(mapping.created_at),
        }
        if mapping
        else {},
    }

    conversation_ids = _conversation_ids(session, contact_id)
    if options.include_conversations:
        conversations = session.scalars(
            select(ConversationMapping)
            .where(ConversationMapping.chatwoot_conversation_id.in_(conversation_ids))
            .order_by(ConversationMapping.created_at)
        )
        data["conversations"] = [
            {
                "chatwoot_conversation_id": c.chatwoot_conversation_id,
                "krayin_lead_id": c.krayin_lead_id,
                "status": c.status.value,
                "message_count": c.message_count,
                "resolved_at": _iso(c.resolved_at),
                "created_at": _iso(c.created_at),
                "updated_at": _iso(c.updated_at),
            }
            for c in conversations
        ]
    if options.include_messages:
        activities = session.scalars(
            select(ActivityMapping)
            .where(ActivityMapping.conversation_id.in_(conversation_ids))
            .order_by(ActivityMapping.created_at)
        )
        data["messages"] = [
            {
                "chatwoot_message_id": a.chatwoot_message_id,
                "krayin_activity_id": a.krayin_activity_id,
                "message_type": a.message_type.value,
                "content_type": a.content_type,
                "content": a.content,
                "sender_name": a.sender_name,
                "sender_type": a.sender_type,
                "created_at": _iso(a.created_at),
            }
            for a in activities
        ]
    if options.include_consent_records:
        consents = session.scalars(
            select(ConsentRecord)
            .where(ConsentRecord.contact_id == contact_id)
            .order_by(ConsentRecord.created_at)
        )
        data["consent_records"] = [
            {
                "consent_type": r.consent_type.value,
                "status": r.status.value,
                "granted_at": _iso(r.granted_at),
                "withdrawn_at": _iso(r.withdrawn_at),
                "expired_at": _iso(r.expired_at),
                "consent_text": r.consent_text,
                "consent_version": r.consent_version,
                "created_at": _iso(r.created_at),
            }
            for r in consents
        ]
    if options.include_audit_logs:
        logs = AuditService(session).get_model_audit_logs(
            AuditModel.CONTACT.value, contact_id, limit=1000
        )
        data["audit_logs"] = [
            {key: log[key] for key in ("action", "changes", "ip_address", "user_agent", "created_at")}
            for log in logs
        ]
    return data


def gather_bulk_data(
    session: Session, contact_ids: list[int], fmt: str, options: ExportOptions
) -> dict[str, Any]:
    contacts = [gather_contact_data(session, contact_id, options) for contact_id in contact_ids]
    return {
        "export_info": {
            "contact_count": len(contact_ids),
            "format": fmt,
            "exported_at": utcnow().isoformat(),
            "includes": options.to_dict(),
        },
        "contacts": [c for c in contacts if c["contact"]],
    }


# ── Serialization ─────────────────────────────────────────────────────────────


def _sections(data: dict[str, Any]) -> dict[str, list[dict[str, Any]]]:
    """Flatten an export document into named tables of rows."""
    contacts = data["contacts"] if "contacts" in data else [data]
    sections: dict[str, list[dict[str, Any]]] = {}
    for contact in contacts:
        for name, value in contact.items():
            if name == "contact_id":
                continue
            rows = value if isinstance(value, list) else [value] if value else []
            for row in rows:
                sections.setdefault(name, []).append({"contact_id": contact["contact_id"], **row})
    return sections


def render_csv(data: dict[str, Any]) -> str:
    output = io.StringIO()
    writer = csv.writer(output)
    for name, rows in _sections(data).items():
        columns = list(dict.fromkeys(key for row in rows for key in row))
        writer.writerow([f"# {name}"])
        writer.writerow(columns)
        for row in rows:
            writer.writerow(
                [
                    json.dumps(row.get(col), default=str)
                    if isinstance(row.get(col), (dict, list))
                    else row.get(col, "")
                    for col in columns
                ]
            )
        writer.writerow([])
    return output.getvalue()


def render_export(data: dict[str, Any], fmt: str) -> str:
    if fmt == "csv":
        return render_csv(data)
    return json.dumps(data, indent=2, ensure_ascii=False, default=str)


def export_filename(subject: str | int, fmt: str) -> str:
    return f"data-export-{subject}-{utcnow().strftime('%Y-%m-%d-%H-%M-%S')}.{fmt}"


def storage_dir() -> Path:
    return Path(settings.EXPORT_STORAGE_PATH)


def write_export_file(data: dict[str, Any], subject: str | int, fmt: str) -> str:
    filename = export_filename(subject, fmt)
    directory = storage_dir()
    directory.mkdir(parents=True, exist_ok=True)
    (directory / filename).write_text(render_export(data, fmt), encoding="utf-8")
    return filename


def download_url(filename: str, timestamp: int | None = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    token = export_download_token(filename, ts)
    return f"{settings.API_URL}/v1/export/download/{filename}?token={token}&ts={ts}"


def resolve_download(filename: str, token: str, timestamp: int) -> Path:
    """Validate a signed link and return the file it points at."""
    if not _FILENAME.match(filename) or not validate_download_token(filename, timestamp, token):
        logger.warning("export_download_rejected", filename=filename)
        raise InvalidDownloadTokenError("Invalid or expired download token")
    path = storage_dir() / filename
    if not path.is_file():
        raise ExportFileNotFoundError("Export file not found", details={"filename": filename})
    return path


# ── Export tracking ───────────────────────────────────────────────────────────


def new_export_id() -> str:
    return f"export_{uuid.uuid4().hex}"


class ExportTracker:
    """Export metadata and per-operator history in shared state."""

    def __init__(self, state: SharedState | None = None) -> None:
        self.state = state or get_shared_state()

    @staticmethod
    def _key(export_id: str) -> str:
        return f"export_metadata:{export_id}"

    @staticmethod
    def _history_key(user_id: str) -> str:
        return f"user_exports:{user_id}"

    def get(self, export_id: str) -> dict[str, Any] | None:
        raw = self.state.get(self._key(export_id))
        return json.loads(raw) if raw else None

    def put(self, export_id: str, metadata: dict[str, Any]) -> None:
        self.state.set(self._key(export_id), json.dumps(metadata), ttl=EXPORT_METADATA_TTL)

    def update(self, export_id: str, **changes: Any) -> dict[str, Any] | None:
        metadata = self.get(export_id)
        if metadata is None:
            return None
        metadata.update(changes)
        self.put(export_id, metadata)
        return metadata

    def create(
        self,
        export_id: str,
        *,
        contact_ids: list[int],
        fmt: str,
        created_by: str | None,
        bulk: bool,
    ) -> dict[str, Any]:
        metadata = {
            "export_id": export_id,
            "contact_ids": contact_ids,
            "format": fmt,
            "bulk": bulk,
            "status": "scheduled",
            "progress": 0,
            "created_by": created_by,
            "created_at": utcnow().isoformat(),
        }
        self.put(export_id, metadata)
        if created_by:
            history = self.history_ids(created_by)
            history.insert(0, export_id)
            self.state.set(
                self._history_key(created_by), json.dumps(history[:100]), ttl=EXPORT_METADATA_TTL
            )
        return metadata

    def history_ids(self, user_id: str) -> list[str]:
        raw = self.state.get(self._history_key(user_id))
        return json.loads(raw) if raw else []

    def history(self, user_id: str) -> list[dict[str, Any]]:
        entries = []
        for export_id in self.history_ids(user_id):
            metadata = self.get(export_id)
            if metadata is not None:
                entries.append(
                    {
                        "export_id": export_id,
                        "status": metadata["status"],
                        "format": metadata["format"],
                        "contact_count": len(metadata["contact_ids"]),
                        "progress": metadata.get("progress", 0),
                        "created_at": metadata.get("created_at"),
                        "completed_at": metadata.get("completed_at"),
                    }
                )
        return entries

    def status(self, export_id: str) -> dict[str, Any]:
        metadata = self.get(export_id)
        if metadata is None:
            raise ExportNotFoundError("Export not found", details={"export_id": export_id})
        return {
            "export_id": export_id,
            "status": metadata["status"],
            "progress": metadata.get("progress", 0),
            "download_url": metadata.get("download_url"),
            "expires_at": metadata.get("expires_at"),
            "created_at": metadata.get("created_at"),
            "completed_at": metadata.get("completed_at"),
            "error": metadata.get("error"),
        }

    def is_cancelled(self, export_id: str) -> bool:
        metadata = self.get(export_id)
        return metadata is not None and metadata["status"] == "cancelled"

    def cancel(self, export_id: str, user_id: str) -> None:
        metadata = self.get(export_id)
        if metadata is None or metadata.get("created_by") != user_id:
            raise ExportCancellationError(
                "Export not found or not owned by the requester",
                details={"export_id": export_id},
            )
        if metadata["status"] in FINISHED_STATUSES:
            raise ExportCancellationError(
                f"Export already {metadata['status']}",
                details={"export_id": export_id, "status": metadata["status"]},
            )
        self.update(export_id, status="cancelled", cancelled_at=utcnow().isoformat())
        logger.info("export_cancelled", export_id=export_id, cancelled_by=user_id)

    def complete(self, export_id: str, filename: str) -> dict[str, Any] | None:
        issued_at = int(time.time())
        expires = issued_at + settings.EXPORT_LINK_TTL_HOURS * 3600
        return self.update(
            export_id,
            status="completed",
            progress=100,
            filename=filename,
            download_url=download_url(filename, issued_at),
            completed_at=utcnow().isoformat(),
            expires_at=datetime.fromtimestamp(expires, tz=timezone.utc).isoformat(),
        )


# ── Scheduling ────────────────────────────────────────────────────────────────


class LgpdService:
    """Queues erasure and export jobs and records who asked for them."""

    def __init__(
        self,
        *,
        state: SharedState | None = None,
        audit: AuditService | None = None,
        user_id: str | None = None,
    ) -> None:
        self.tracker = ExportTracker(state)
        self.audit = audit or AuditService()
        self.user_id = user_id

    def schedule_data_deletion(
        self,
        contact_id: int,
        reason: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        from bridge.core.jobs import DELETION_POLICY
        from bridge.modules.lgpd.tasks import process_data_deletion

        process_data_deletion.apply_async(
            args=[contact_id, reason, self.user_id, ip_address, user_agent],
            queue=DELETION_POLICY.queue,
        )
        self.audit.log_security_event(
            "data_deletion_requested",
            {
                "contact_id": contact_id,
                "reason": reason,
                "requested_by": self.user_id,
                "ip": ip_address,
                "user_agent": user_agent,
            },
        )
        logger.info("data_deletion_scheduled", contact_id=contact_id, requested_by=self.user_id)

    def schedule_export(
        self,
        contact_id: int,
        fmt: ExportFormat,
        options: ExportOptions,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> str:
        from bridge.core.jobs import EXPORT_POLICY
        from bridge.modules.lgpd.tasks import process_data_export

        export_id = new_export_id()
        self.tracker.create(
            export_id, contact_ids=[contact_id], fmt=fmt, created_by=self.user_id, bulk=False
        )
        process_data_export.apply_async(
            args=[export_id, contact_id, fmt, options.to_dict(), ip_address, user_agent],
            queue=EXPORT_POLICY.queue,
        )
        self.audit.log_security_event(
            "data_export_requested",
            {
                "contact_id": contact_id,
                "export_id": export_id,
                "requested_by": self.user_id,
                "ip": ip_address,
                "user_agent": user_agent,
            },
        )
        logger.info("data_export_scheduled", contact_id=contact_id, export_id=export_id, format=fmt)
        return export_id

    def schedule_bulk_export(
        self,
        contact_ids: list[int],
        fmt: ExportFormat,
        options: ExportOptions,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> str:
        from bridge.core.jobs import BULK_EXPORT_POLICY
        from bridge.modules.lgpd.tasks import process_bulk_data_export

        export_id = new_export_id()
        self.tracker.create(
            export_id, contact_ids=contact_ids, fmt=fmt, created_by=self.user_id, bulk=True
        )
        process_bulk_data_export.apply_async(
            args=[export_id, contact_ids, fmt, options.to_dict(), ip_address, user_agent],
            queue=BULK_EXPORT_POLICY.queue,
        )
        self.audit.log_security_event(
            "bulk_export_requested",
            {
                "contact_count": len(contact_ids),
                "export_id": export_id,
                "requested_by": self.user_id,
                "ip": ip_address,
                "user_agent": user_agent,
            },
        )
        logger.info(
            "bulk_export_scheduled",
            contact_count=len(contact_ids),
            export_id=export_id,
            format=fmt,
        )
        return export_id
