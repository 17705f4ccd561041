"""Pydantic models for the subset of ACP messages a client exchanges.

Field names follow the wire format (camelCase) so instances round-trip through
``model_validate`` / ``model_dump`` without aliases.
"""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class _WireModel(BaseModel):
    # agents attach `_meta` and vendor fields freely
    model_config = ConfigDict(extra="allow")


# --- Content blocks -------------------------------------------------------------

class TextContentBlock(_WireModel):
    type: Literal["text"] = "text"
    text: str


class ImageContentBlock(_WireModel):
    type: Literal["image"] = "image"
    data: str
    mimeType: str
    uri: Optional[str] = None


class AudioContentBlock(_WireModel):
    type: Literal["audio"] = "audio"
    data: str
    mimeType: str


class ResourceLinkContentBlock(_WireModel):
    type: Literal["resource_link"] = "resource_link"
    uri: str
    name: str
    mimeType: Optional[str] = None
    description: Optional[str] = None


class TextResourceContents(_WireModel):
    uri: str
    text: str
    mimeType: Optional[str] = None


class EmbeddedResourceContentBlock(_WireModel):
    type: Literal["resource"] = "resource"
    resource: TextResourceContents


ContentBlock = Annotated[
    Union[
        TextContentBlock,
        ImageContentBlock,
        AudioContentBlock,
        ResourceLinkContentBlock,
        EmbeddedResourceContentBlock,
    ],
    Field(discriminator="type"),
]


def text_block(text: str) -> Dict[str, Any]:
    return TextContentBlock(text=text).model_dump(exclude_none=True)


def resource_block(uri: str, text: str, mime_type: str = "text/markdown") -> Dict[str, Any]:
    """Embed a note's content in a prompt."""
    return EmbeddedResourceContentBlock(
        resource=TextResourceContents(uri=uri, text=text, mimeType=mime_type)
    ).model_dump(exclude_none=True)


def resource_link_block(uri: str, name: str) -> Dict[str, Any]:
    return ResourceLinkContentBlock(uri=uri, name=name).model_dump(exclude_none=True)


# --- Handshake ------------------------------------------------------------------

class FileSystemCapability(_WireModel):
    readTextFile: bool = False
    writeTextFile: bool = False


class ClientCapabilities(_WireModel):
    fs: FileSystemCapability = Field(default_factory=FileSystemCapability)
    terminal: bool = False


class Implementation(_WireModel):
    name: str
    title: Optional[str] = None
    version: str


class InitializeRequest(_WireModel):
    protocolVersion: int
    clientCapabilities: ClientCapabilities = Field(default_factory=ClientCapabilities)
    clientInfo: Optional[Implementation] = None


class PromptCapabilities(_WireModel):
    image: bool = False
    audio: bool = False
    embeddedContext: bool = False


class AgentCapabilities(_WireModel):
    loadSession: bool = False
    promptCapabilities: PromptCapabilities = Field(default_factory=PromptCapabilities)


class AuthMethod(_WireModel):
    id: str
    name: str
    description: Optional[str] = None


class InitializeResponse(_WireModel):
    protocolVersion: int
    agentCapabilities: Optional[AgentCapabilities] = None
    authMethods: List[AuthMethod] = Field(default_factory=list)
    agentInfo: Optional[Implementation] = None


class NewSessionRequest(_WireModel):
    cwd: str
    mcpServers: List[Dict[str, Any]] = Field(default_factory=list)


class NewSessionResponse(_WireModel):
    sessionId: str


# --- Prompt turn ----------------------------------------------------------------

StopReason = Literal["end_turn", "max_tokens", "max_turn_requests", "refusal", "cancelled"]


class PromptRequest(_WireModel):
    sessionId: str
    prompt: List[Dict[str, Any]]


class PromptResponse(_WireModel):
    stopReason: StopReason


class CancelNotification(_WireModel):
    sessionId: str


# --- Session updates ------------------------------------------------------------

ToolCallStatus = Literal["pending", "in_progress", "completed", "failed"]


class AgentMessageChunk(_WireModel):
    sessionUpdate: Literal["agent_message_chunk"]
    content: ContentBlock


class AgentThoughtChunk(_WireModel):
    sessionUpdate: Literal["agent_thought_chunk"]
    content: ContentBlock


class UserMessageChunk(_WireModel):
    sessionUpdate: Literal["user_message_chunk"]
    content: ContentBlock


class ToolCallStart(_WireModel):
    sessionUpdate: Literal["tool_call"]
    toolCallId: str
    title: str
    kind: Optional[str] = None
    status: Optional[ToolCallStatus] = None
    content: Optional[List[Dict[str, Any]]] = None
    locations: Optional[List[Dict[str, Any]]] = None
    rawInput: Optional[Any] = None


class ToolCallProgress(_WireModel):
    sessionUpdate: Literal["tool_call_update"]
    toolCallId: str
    title: Optional[str] = None
    kind: Optional[str] = None
    status: Optional[ToolCallStatus] = None
    content: Optional[List[Dict[str, Any]]] = None
    locations: Optional[List[Dict[str, Any]]] = None
    rawOutput: Optional[Any] = None


class PlanEntry(_WireModel):
    content: str
    priority: Optional[str] = None
    status: Optional[str] = None


class AgentPlanUpdate(_WireModel):
    sessionUpdate: Literal["plan"]
    entries: List[PlanEntry]


class AvailableCommandsUpdate(_WireModel):
    sessionUpdate: Literal["available_commands_update"]
    availableCommands: List[Dict[str, Any]] = Field(default_factory=list)


class CurrentModeUpdate(_WireModel):
    sessionUpdate: Literal["current_mode_update"]
    currentModeId: str


SessionUpdate = Annotated[
    Union[
        AgentMessageChunk,
        AgentThoughtChunk,
        UserMessageChunk,
        ToolCallStart,
        ToolCallProgress,
        AgentPlanUpdate,
        AvailableCommandsUpdate,
        CurrentModeUpdate,
    ],
    Field(discriminator="sessionUpdate"),
]


class SessionNotification(_WireModel):
    sessionId: str
    update: SessionUpdate


# --- Permissions ----------------------------------------------------------------

PermissionOptionKind = Literal["allow_once", "allow_always", "reject_once", "reject_always"]


class PermissionOption(_WireModel):
    optionId: str
    name: str
    kind: PermissionOptionKind


class PermissionToolCall(_WireModel):
    toolCallId: str
    title: Optional[str] = None
    kind: Optional[str] = None
    status: Optional[ToolCallStatus] = None
    rawInput: Optional[Any] = None


class RequestPermissionRequest(_WireModel):
    sessionId: str
    toolCall: PermissionToolCall
    options: List[PermissionOption]


class AllowedOutcome(_WireModel):
    outcome: Literal["selected"] = "selected"
    optionId: str


class DeniedOutcome(_WireModel):
    outcome: Literal["cancelled"] = "cancelled"


class RequestPermissionResponse(_WireModel):
    outcome: Annotated[Union[AllowedOutcome, DeniedOutcome], Field(discriminator="outcome")]
