"""LGPD API: consent, erasure and data exports for operators."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session

from bridge.core.database import get_db
from bridge.core.security import verify_token
from bridge.models.base import utcnow
from bridge.models.enums import ConsentType
from bridge.modules.audit.service import AuditService
from bridge.modules.consent.schemas import (
    ConsentRecordedResponse,
    ConsentRecordResponse,
    ConsentRequest,
    ConsentStatsResponse,
    ContactConsentsResponse,
    WithdrawConsentRequest,
)
from bridge.modules.consent.service import ConsentService, consent_to_dict
from bridge.modules.lgpd.schemas import (
    BulkExportRequest,
    DataDeletionRequest,
    DataExportRequest,
    ExportHistoryEntry,
    ExportStatusResponse,
    ScheduledResponse,
)
from bridge.modules.lgpd.service import ExportTracker, LgpdService, resolve_download
from bridge.modules.webhooks.router import client_ip

logger = structlog.get_logger()

router = APIRouter(prefix="/lgpd", tags=["LGPD"])
export_router = APIRouter(prefix="/export", tags=["Exports"])

MEDIA_TYPES = {".json": "application/json", ".csv": "text/csv"}


def _audit(request: Request) -> AuditService:
    return AuditService(
        ip_address=client_ip(request), user_agent=request.headers.get("user-agent")
    )


def _consents(db: Session, request: Request, current_user: dict) -> ConsentService:
    return ConsentService(db, audit=_audit(request), user_id=current_user["user_id"])


def _lgpd(request: Request, current_user: dict) -> LgpdService:
    return LgpdService(audit=_audit(request), user_id=current_user["user_id"])


# ── Consent ───────────────────────────────────────────────────────────────────


@router.post(
    "/consent",
    response_model=ConsentRecordedResponse,
    status_code=status.HTTP_201_CREATED,
)
def record_consent(
    body: ConsentRequest,
    request: Request,
    current_user: dict = Depends(verify_token),
    db: Session = Depends(get_db),
) -> ConsentRecordedResponse:
    """Record a data subject's answer: a grant, or a refusal that withdraws any grant."""
    svc = _consents(db, request, current_user)
    ip_address = body.ip_address or client_ip(request)
    user_agent = body.user_agent or request.headers.get("user-agent")
    if body.consent_granted:
        record = svc.grant_consent(
            body.contact_id, body.consent_type, ip_address=ip_address, user_agent=user_agent
        )
    else:
        record = svc.deny_consent(
            body.contact_id, body.consent_type, ip_address=ip_address, user_agent=user_agent
        )
    return ConsentRecordedResponse(
        consent_id=record.id,
        contact_id=record.contact_id,
        consent_type=record.consent_type.value,
        status=record.status.value,
        granted_at=record.granted_at,
        consent_version=record.consent_version,
        timestamp=utcnow(),
    )


@router.get("/consent/stats", response_model=ConsentStatsResponse)
def consent_stats(
    request: Request,
    current_user: dict = Depends(verify_token),
    db: Session = Depends(get_db),
) -> ConsentStatsResponse:
    return ConsentStatsResponse(stats=_consents(db, request, current_user).get_consent_stats())


@router.get("/consent/{contact_id}", response_model=ContactConsentsResponse)
def get_consent_status(
    contact_id: int,
    request: Request,
    current_user: dict = Depends(verify_token),
    db: Session = Depends(get_db),
) -> ContactConsentsResponse:
    """Full consent history for a contact plus current validity per type."""
    svc = _consents(db, request, current_user)
    records = svc.get_contact_consents(contact_id)
    return ContactConsentsResponse(
        contact_id=contact_id,
        consents=[ConsentRecordResponse.model_validate(consent_to_dict(r)) for r in records],
        valid={kind.value: svc.has_valid_consent(contact_id, kind) for kind in ConsentType},
        timestamp=utcnow(),
    )


@router.delete("/consent/{contact_id}/{consent_type}", response_model=ConsentRecordResponse)
def withdraw_consent(
    contact_id: int,
    consent_type: str,
    request: Request,
    body: WithdrawConsentRequest | None = None,
    current_user: dict = Depends(verify_token),
    db: Session = Depends(get_db),
) -> ConsentRecordResponse:
    record = _consents(db, request, current_user).withdraw_consent(
        contact_id, consent_type, body.reason if body else None
    )
    return ConsentRecordResponse.model_validate(consent_to_dict(record))


# ── Erasure / single export ───────────────────────────────────────────────────


@router.delete(
    "/data/{contact_id}",
    response_model=ScheduledResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def delete_data(
    contact_id: int,
    body: DataDeletionRequest,
    request: Request,
    current_user: dict = Depends(verify_token),
) -> ScheduledResponse:
    """Schedule erasure of everything held about a contact."""
    _lgpd(request, current_user).schedule_data_deletion(
        contact_id,
        body.reason,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return ScheduledResponse(
        contact_id=contact_id,
        status="deletion_scheduled",
        message="Data deletion has been scheduled and will be processed within 24 hours",
        timestamp=utcnow(),
    )


@router.post(
    "/export/{contact_id}",
    response_model=ScheduledResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def export_data(
    contact_id: int,
    request: Request,
    body: DataExportRequest | None = None,
    current_user: dict = Depends(verify_token),
) -> ScheduledResponse:
    body = body or DataExportRequest()
    export_id = _lgpd(request, current_user).schedule_export(
        contact_id,
        body.format,
        body.options(),
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return ScheduledResponse(
        contact_id=contact_id,
        export_id=export_id,
        status="export_scheduled",
        message="Data export has been scheduled and will be available within 1 hour",
        timestamp=utcnow(),
    )


# ── Exports ───────────────────────────────────────────────────────────────────


@export_router.post(
    "/bulk",
    response_model=ScheduledResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def bulk_export(
    body: BulkExportRequest,
    request: Request,
    current_user: dict = Depends(verify_token),
) -> ScheduledResponse:
    export_id = _lgpd(request, current_user).schedule_bulk_export(
        body.contact_ids,
        body.format,
        body.options(),
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return ScheduledResponse(
        export_id=export_id,
        status="export_scheduled",
        message=f"Bulk export of {len(body.contact_ids)} contacts has been scheduled",
        timestamp=utcnow(),
    )


@export_router.get("/status/{export_id}", response_model=ExportStatusResponse)
def export_status(
    export_id: str,
    current_user: dict = Depends(verify_token),
) -> ExportStatusResponse:
    return ExportStatusResponse.model_validate(ExportTracker().status(export_id))


@export_router.get("/download/{filename}")
def download_export(
    filename: str,
    request: Request,
    token: str = Query(...),
    ts: int = Query(...),
) -> FileResponse:
    """Serve a finished export. The signed link is the credential."""
    path = resolve_download(filename, token, ts)
    _audit(request).log_security_event("data_export_downloaded", {"filename": filename})
    return FileResponse(
        path,
        media_type=MEDIA_TYPES.get(path.suffix, "application/octet-stream"),
        filename=filename,
    )


@export_router.get("/history", response_model=list[ExportHistoryEntry])
def export_history(current_user: dict = Depends(verify_token)) -> list[ExportHistoryEntry]:
    entries = ExportTracker().history(current_user["user_id"])
    return [ExportHistoryEntry.model_validate(e) for e in entries]


@export_router.delete("/{export_id}")
def cancel_export(
    export_id: str,
    current_user: dict = Depends(verify_token),
) -> dict:
    """Cancel an export that has not finished yet."""
    ExportTracker().cancel(export_id, current_user["user_id"])
    return {
        "success": True,
        "export_id": export_id,
        "status": "cancelled",
        "timestamp": utcnow().isoformat(),
    }
