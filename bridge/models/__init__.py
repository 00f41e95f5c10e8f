"""SQLAlchemy models package: import all models so Base.metadata is populated."""

from bridge.models.base import BaseModel, ModelMixin, TimestampedModel
from bridge.models.enums import (
    AuditAction,
    AuditModel,
    ConsentStatus,
    ConsentType,
    ConversationStatus,
    MessageType,
    TriggerSource,
    WebhookEvent,
)
from bridge.models.audit import AuditLog
from bridge.models.consent import ConsentRecord
from bridge.models.dead_letter import (
    FailedAuditLog,
    FailedDataDeletion,
    FailedDataExport,
    FailedWebhook,
)
from bridge.models.mappings import (
    ActivityMapping,
    ContactMapping,
    ConversationMapping,
    StageChangeLog,
)

__all__ = [
    "ActivityMapping",
    "AuditAction",
    "AuditLog",
    "AuditModel",
    "BaseModel",
    "ConsentRecord",
    "ConsentStatus",
    "ConsentType",
    "ContactMapping",
    "ConversationMapping",
    "ConversationStatus",
    "FailedAuditLog",
    "FailedDataDeletion",
    "FailedDataExport",
    "FailedWebhook",
    "MessageType",
    "ModelMixin",
    "StageChangeLog",
    "TimestampedModel",
    "TriggerSource",
    "WebhookEvent",
]
