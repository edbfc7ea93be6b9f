"""
Data models (dataclasses) for AgencyChat.
These are plain Python objects used across the DB, chat core, and API layers.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Optional, Any


CONVERSATION_TYPES = {"direct", "group", "support", "ai_assistant"}
MESSAGE_TYPES = {"text", "file", "system", "bot", "ai_response"}
AUDIT_ACTIONS = {"send", "read", "edit", "delete", "join", "leave"}

ADMIN_ROLE = "agency_admin"

# Ids that can never belong to a human user
RESERVED_USER_IDS = {"system", "bot", "ai"}


@dataclass
class User:
    id: str
    agency_id: str
    role: str            # agency_admin | team_member | client | ...
    display_name: Optional[str] = None


@dataclass
class ConversationSettings:
    allow_file_uploads: bool = True
    notifications_enabled: bool = True
    retention_days: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ConversationSettings":
        data = data or {}
        return cls(
            allow_file_uploads=bool(data.get("allow_file_uploads", True)),
            notifications_enabled=bool(data.get("notifications_enabled", True)),
            retention_days=data.get("retention_days"),
        )


@dataclass
class Conversation:
    id: str
    agency_id: str
    type: str            # direct | group | support | ai_assistant
    title: Optional[str]
    participants: list[str]
    created_by: str
    last_message_at: Optional[datetime]
    is_active: bool
    settings: ConversationSettings
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agencyId": self.agency_id,
            "type": self.type,
            "title": self.title,
            "participants": list(self.participants),
            "createdBy": self.created_by,
            "lastMessageAt": self.last_message_at.isoformat() if self.last_message_at else None,
            "isActive": self.is_active,
            "settings": asdict(self.settings),
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass
class Message:
    id: str
    conversation_id: str
    sender_id: Optional[str]     # None for system / bot / AI authored messages
    content: str
    type: str                    # text | file | system | bot | ai_response
    metadata: dict[str, Any]
    read_by: dict[str, str]      # user_id -> ISO timestamp
    is_edited: bool
    edited_at: Optional[datetime]
    is_deleted: bool
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "senderId": self.sender_id,
            "content": self.content,
            "type": self.type,
            "metadata": dict(self.metadata),
            "readBy": dict(self.read_by),
            "isEdited": self.is_edited,
            "editedAt": self.edited_at.isoformat() if self.edited_at else None,
            "isDeleted": self.is_deleted,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class AuditEntry:
    """Append-only record of a chat action. Never updated by normal flows."""
    id: str
    agency_id: str
    user_id: Optional[str]
    conversation_id: Optional[str]
    message_id: Optional[str]
    action: str          # send | read | edit | delete | join | leave
    metadata: dict[str, Any]
    created_at: datetime


@dataclass
class BotConfig:
    enabled: bool = True
    name: str = "עוזר הסוכנות"
    welcome_message: str = "שלום! איך אוכל לעזור לכם היום?"
    tone: str = "professional"   # professional | friendly | casual
    auto_respond: bool = True


@dataclass
class AIAssistantConfig:
    enabled: bool = True
    model: str = "gpt-4"
    temperature: float = 0.7
    max_tokens: int = 1000
    system_prompt: str = "אתה עוזר וירטואלי של סוכנות דיגיטלית. עזור ללקוחות באופן מקצועי ובעברית."


@dataclass
class RateLimits:
    messages_per_minute: Optional[int] = None
    files_per_minute: Optional[int] = None


@dataclass
class ChatSettings:
    """Per-agency chat configuration. A missing section means the feature is not configured."""
    agency_id: str
    bot_config: Optional[BotConfig] = None
    ai_assistant_config: Optional[AIAssistantConfig] = None
    rate_limits: RateLimits = field(default_factory=RateLimits)
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agency_id": self.agency_id,
            "bot_config": asdict(self.bot_config) if self.bot_config else None,
            "ai_assistant_config": asdict(self.ai_assistant_config) if self.ai_assistant_config else None,
            "rate_limits": asdict(self.rate_limits),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
