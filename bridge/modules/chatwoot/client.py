"""Chatwoot (chat platform) API client."""

from __future__ import annotations

from typing import Any

import structlog

from bridge.core.config import settings
from bridge.services.api_client import ResilientApiClient, params_digest

logger = structlog.get_logger()

CONVERSATION_TTL = 300
MESSAGES_TTL = 60
CONTACT_TTL = 600
ACCOUNT_TTL = 3600

CONVERSATIONS_ENDPOINT = "/api/v1/conversations"
MESSAGES_ENDPOINT = "/api/v1/messages"
CONTACTS_ENDPOINT = "/api/v1/contacts"
ACCOUNTS_ENDPOINT = "/api/v1/accounts"


def conversation_namespace(conversation_id: int) -> str:
    return f"chatwoot:conversation:{conversation_id}"


def contact_namespace(contact_id: int) -> str:
    return f"chatwoot:contact:{contact_id}"


class ChatwootClient(ResilientApiClient):
    upstream = "chatwoot"
    health_path = "/health"

    # ── Reads ────────────────────────────────────────────────────────────────

    def get_conversation(self, conversation_id: int) -> dict[str, Any]:
        return self.cache.remember(
            conversation_namespace(conversation_id),
            CONVERSATION_TTL,
            lambda: self.request(
                "GET",
                f"{CONVERSATIONS_ENDPOINT}/{conversation_id}",
                operation="get_conversation",
            ),
        )

    def get_messages(
        self, conversation_id: int, params: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Messages live in the conversation namespace so a new message invalidates them."""
        query = {**(params or {}), "conversation_id": conversation_id}
        return self.cache.remember(
            conversation_namespace(conversation_id),
            MESSAGES_TTL,
            lambda: self.request(
                "GET", MESSAGES_ENDPOINT, operation="get_messages", params=query
            ),
            suffix=f"messages:{params_digest(query)}",
        )

    def get_contact(self, contact_id: int) -> dict[str, Any]:
        return self.cache.remember(
            contact_namespace(contact_id),
            CONTACT_TTL,
            lambda: self.request(
                "GET", f"{CONTACTS_ENDPOINT}/{contact_id}", operation="get_contact"
            ),
        )

    def get_account(self, account_id: int | None = None) -> dict[str, Any]:
        account_id = account_id or settings.CHATWOOT_ACCOUNT_ID
        return self.cache.remember(
            f"chatwoot:account:{account_id}",
            ACCOUNT_TTL,
            lambda: self.request(
                "GET", f"{ACCOUNTS_ENDPOINT}/{account_id}", operation="get_account"
            ),
        )

    # ── Writes ───────────────────────────────────────────────────────────────

    def create_contact(self, data: dict[str, Any]) -> dict[str, Any]:
        return self.request("POST", CONTACTS_ENDPOINT, operation="create_contact", json=data)

    def update_contact(self, contact_id: int, data: dict[str, Any]) -> dict[str, Any]:
        result = self.request(
            "PUT", f"{CONTACTS_ENDPOINT}/{contact_id}", operation="update_contact", json=data
        )
        self.cache.invalidate(contact_namespace(contact_id))
        return result

    def create_message(self, conversation_id: int, data: dict[str, Any]) -> dict[str, Any]:
        result = self.request(
            "POST",
            MESSAGES_ENDPOINT,
            operation="create_message",
            json={**data, "conversation_id": conversation_id},
        )
        self.cache.invalidate(conversation_namespace(conversation_id))
        return result

    def update_conversation_status(self, conversation_id: int, status: str) -> dict[str, Any]:
        result = self.request(
            "PUT",
            f"{CONVERSATIONS_ENDPOINT}/{conversation_id}",
            operation="update_conversation_status",
            json={"status": status},
        )
        self.cache.invalidate(conversation_namespace(conversation_id))
        logger.info(
            "chatwoot_conversation_status_updated",
            conversation_id=conversation_id,
            status=status,
        )
        return result

    def cache_ttls(self) -> dict[str, int]:
        return {
            "conversation_ttl": CONVERSATION_TTL,
            "messages_ttl": MESSAGES_TTL,
            "contact_ttl": CONTACT_TTL,
            "account_ttl": ACCOUNT_TTL,
        }


def get_chatwoot_client() -> ChatwootClient:
    return ChatwootClient(
        settings.CHATWOOT_BASE_URL,
        settings.CHATWOOT_API_TOKEN,
        timeout=settings.CHATWOOT_TIMEOUT,
        rate_limit_per_minute=settings.CHATWOOT_RATE_LIMIT_PER_MINUTE,
        debug=settings.APP_DEBUG,
    )
