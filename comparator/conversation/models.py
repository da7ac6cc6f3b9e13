"""
Conversation domain records.

Plain pydantic models shared by the cache facade, the repository and the AI
provider gateway. The cache stores them as-is; persisted snapshots come back
as dictionaries and are re-validated through these models on read.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC so timestamps from any source compare."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AIProvider(str, Enum):
    """AI providers a research topic can be sent to"""
    CLAUDE = "claude"
    OPENAI = "openai"
    GROK = "grok"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Conversation(BaseModel):
    """A research conversation owned by one user"""
    model_config = ConfigDict(use_enum_values=True)

    id: str
    user_id: str
    title: str = "Untitled research"
    is_pinned: bool = False
    is_archived: bool = False
    message_count: int = 0
    last_message_at: Optional[datetime] = None
    folder_id: Optional[str] = None
    providers: List[AIProvider] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator('message_count')
    @classmethod
    def validate_message_count(cls, v):
        if v < 0:
            raise ValueError(f"message_count cannot be negative, got {v}")
        return v

    @field_validator('last_message_at', 'created_at', 'updated_at')
    @classmethod
    def validate_timestamps(cls, v):
        return as_utc(v)

    @property
    def last_activity_at(self) -> datetime:
        """Most recent of the last message time and the update time."""
        if self.last_message_at is None:
            return self.updated_at
        return max(self.last_message_at, self.updated_at)


class Message(BaseModel):
    """
    One message of a conversation.

    Message ids are time-ordered, so sorting by id gives chronological order.
    ``is_optimistic`` marks a message inserted locally before the backing
    store confirmed it.
    """
    model_config = ConfigDict(use_enum_values=True)

    id: str
    conversation_id: str
    role: MessageRole = MessageRole.USER
    content: str = ""
    provider: Optional[AIProvider] = None
    created_at: datetime = Field(default_factory=utc_now)
    is_optimistic: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('created_at')
    @classmethod
    def validate_created_at(cls, v):
        return as_utc(v)


class Folder(BaseModel):
    """User-defined grouping of conversations"""
    id: str
    user_id: str
    name: str
    color: Optional[str] = None
    position: int = 0
    conversation_count: int = 0
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator('created_at')
    @classmethod
    def validate_created_at(cls, v):
        return as_utc(v)


class ConversationListPage(BaseModel):
    """One page of a user's conversation list"""
    items: List[Conversation] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 20
    has_more: bool = False


class AIRequest(BaseModel):
    """Prompt sent to an AI provider"""
    system_prompt: Optional[str] = None
    user_prompt: str
    model: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None

    @field_validator('temperature')
    @classmethod
    def validate_temperature(cls, v):
        if v is not None and not 0 <= v <= 2:
            raise ValueError(f"temperature must be between 0 and 2, got {v}")
        return v


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class AIResponse(BaseModel):
    """Completion returned by an AI provider"""
    model_config = ConfigDict(use_enum_values=True, protected_namespaces=())

    content: str
    usage: TokenUsage = Field(default_factory=TokenUsage)
    cost: float = 0.0
    model_name: Optional[str] = None
    provider: AIProvider
    processing_time: float = 0.0
