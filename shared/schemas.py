from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

SEED_MAX = 2147483647


class _Request(BaseModel):
    # the browser client sends camelCase, scripts tend to send snake_case
    model_config = ConfigDict(populate_by_name=True)


# ----- Chat -----
class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class ChatRequest(_Request):
    provider: str
    model: str = ""
    messages: List[ChatMessage] = Field(min_length=1)
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    profile_id: Optional[str] = Field(default=None, alias="profileId")
    options: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("messages")
    @classmethod
    def _last_turn_from_user(cls, v: List[ChatMessage]) -> List[ChatMessage]:
        if v[-1].role != "user":
            raise ValueError("last message must have role 'user'")
        return v


# ----- Image -----
class LoraConfig(BaseModel):
    name: str
    strength_model: float = 1.0
    strength_clip: float = 1.0


class ImageParameters(_Request):
    width: int = Field(default=512, ge=64, le=4096)
    height: int = Field(default=512, ge=64, le=4096)
    steps: int = Field(default=20, ge=1, le=150)
    cfg_scale: float = Field(default=7.0, ge=1, le=30, alias="cfgScale")
    seed: int = Field(default=-1, ge=-1, le=SEED_MAX)
    sampler_name: str = Field(default="euler", alias="samplerName")
    scheduler: str = "normal"
    batch_size: int = Field(default=1, ge=1, le=8, alias="batchSize")
    checkpoint_name: Optional[str] = Field(default=None, alias="checkpointName")
    loras: List[LoraConfig] = Field(default_factory=list)

    @field_validator("width", "height")
    @classmethod
    def _multiple_of_eight(cls, v: int) -> int:
        if v % 8:
            raise ValueError("must be a multiple of 8")
        return v


class ImageRequest(_Request):
    provider: str = "comfyui"
    model: Optional[str] = None
    prompt: str
    negative_prompt: Optional[str] = Field(default=None, alias="negativePrompt")
    parameters: ImageParameters = Field(default_factory=ImageParameters)
    workflow: Optional[Dict[str, Any]] = None
    name: Optional[str] = None

    @field_validator("prompt")
    @classmethod
    def _prompt_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("prompt must not be empty")
        return v


# ----- Tasks -----
class TaskCreate(_Request):
    kind: Literal["text", "image"] = Field(alias="type")
    provider: str
    model: str = ""
    prompt: str
    name: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)


# ----- Settings -----
class CredentialUpdate(_Request):
    api_key: str = Field(alias="apiKey", min_length=1)
    endpoint_url: Optional[str] = Field(default=None, alias="endpointUrl")
    default_model: Optional[str] = Field(default=None, alias="defaultModel")


# ----- Profiles -----
class ProfileCreate(_Request):
    name: str = Field(min_length=1)
    kind: Literal["text", "image"] = Field(alias="type")
    provider: str
    description: Optional[str] = None
    model: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)
    prompt_template: Optional[str] = Field(default=None, alias="promptTemplate")
    api_key: Optional[str] = Field(default=None, alias="apiKey")
    url: Optional[str] = None


class ProfileUpdate(_Request):
    name: Optional[str] = Field(default=None, min_length=1)
    kind: Optional[Literal["text", "image"]] = Field(default=None, alias="type")
    provider: Optional[str] = None
    description: Optional[str] = None
    model: Optional[str] = None
    options: Optional[Dict[str, Any]] = None
    prompt_template: Optional[str] = Field(default=None, alias="promptTemplate")
    # "" clears the stored key, omitted leaves it alone
    api_key: Optional[str] = Field(default=None, alias="apiKey")
    url: Optional[str] = None


# ----- Conversations -----
class ConversationCreate(_Request):
    provider: str
    model: str
    title: Optional[str] = None


class ConversationUpdate(_Request):
    title: str = Field(min_length=1)


class MessageCreate(_Request):
    role: Literal["user", "assistant", "system"]
    content: str


# ----- Events -----
class Event(BaseModel):
    type: str
    job_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    ts: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
