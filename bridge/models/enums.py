"""Constrained value sets for all domain models.

Every enum parses through ``parse()``, which raises ``DomainValidationError``
for values outside the set, so an invalid status never reaches a model.
"""

import enum

from bridge.core.errors import DomainValidationError


class _ParsableEnum(str, enum.Enum):
    @classmethod
    def parse(cls, value: "str | _ParsableEnum") -> "_ParsableEnum":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError as exc:
            raise DomainValidationError(
                f"Invalid {cls.__name__}: {value!r}",
                details={"allowed": cls.values()},
            ) from exc

    @classmethod
    def values(cls) -> list[str]:
        return [member.value for member in cls]


# ── Mapping store ────────────────────────────────────────────────────────────


class ConversationStatus(_ParsableEnum):
    OPEN = "open"
    RESOLVED = "resolved"
    PENDING = "pending"
    SNOOZED = "snoozed"


class MessageType(_ParsableEnum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"
    ACTIVITY = "activity"


class TriggerSource(_ParsableEnum):
    WEBHOOK = "webhook"
    MANUAL = "manual"
    AUTOMATION = "automation"


# ── LGPD ─────────────────────────────────────────────────────────────────────


class ConsentType(_ParsableEnum):
    DATA_PROCESSING = "data_processing"
    MARKETING = "marketing"
    HEALTH_DATA = "health_data"
    ANALYTICS = "analytics"


class ConsentStatus(_ParsableEnum):
    GRANTED = "granted"
    DENIED = "denied"
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"


# ── Audit ────────────────────────────────────────────────────────────────────


class AuditAction(_ParsableEnum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    EXPORT = "export"
    LOGIN = "login"
    LOGOUT = "logout"
    ACCESS = "access"


class AuditModel(_ParsableEnum):
    CONTACT = "Contact"
    LEAD = "Lead"
    CONVERSATION = "Conversation"
    ACTIVITY = "Activity"
    CONSENT_RECORD = "ConsentRecord"
    USER = "User"
    SECURITY = "Security"
    API = "API"


# ── Webhooks ─────────────────────────────────────────────────────────────────


class WebhookEvent(_ParsableEnum):
    CONVERSATION_CREATED = "conversation_created"
    MESSAGE_CREATED = "message_created"
    CONVERSATION_STATUS_CHANGED = "conversation_status_changed"
