from .meta import (
    PROTOCOL_VERSION,
    AGENT_METHODS,
    CLIENT_METHODS,
)
from .core import (
    AgentClientError,
    SpawnError,
    WriteError,
    ProtocolError,
    UnknownRequestId,
    StalePermissionError,
    HandshakeError,
    SessionBusyError,
    SessionStateError,
    ConnectionClosedError,
    RequestError,
    Correlator,
)
from .codec import (
    Request,
    Notification,
    Response,
    FrameDecoder,
    encode,
    decode_line,
)
from .events import (
    TurnEndReason,
    PermissionChoice,
    PermissionRequest,
    TextDelta,
    ThoughtDelta,
    ToolCallStarted,
    ToolCallUpdated,
    ToolCallEnded,
    PlanUpdated,
    PermissionRequested,
    PermissionAutoApproved,
    TurnEnded,
    ErrorOccurred,
    StreamEvent,
)
from .schema import (
    text_block,
    resource_block,
    resource_link_block,
)
from .settings import (
    EnvVar,
    AgentConfig,
    AgentSettings,
    PluginSettings,
    SessionOptions,
    normalize_env_vars,
    sanitize_args,
    to_agent_config,
)
from .transport import ProcessTransport
from .permissions import PermissionGate
from .session import AcpSession, SessionState, TurnStream
from .registry import HostCommand, SessionRegistry

__all__ = [
    # constants
    "PROTOCOL_VERSION",
    "AGENT_METHODS",
    "CLIENT_METHODS",
    # errors
    "AgentClientError",
    "SpawnError",
    "WriteError",
    "ProtocolError",
    "UnknownRequestId",
    "StalePermissionError",
    "HandshakeError",
    "SessionBusyError",
    "SessionStateError",
    "ConnectionClosedError",
    "RequestError",
    # wire
    "Correlator",
    "Request",
    "Notification",
    "Response",
    "FrameDecoder",
    "encode",
    "decode_line",
    "text_block",
    "resource_block",
    "resource_link_block",
    # events
    "TurnEndReason",
    "PermissionChoice",
    "PermissionRequest",
    "TextDelta",
    "ThoughtDelta",
    "ToolCallStarted",
    "ToolCallUpdated",
    "ToolCallEnded",
    "PlanUpdated",
    "PermissionRequested",
    "PermissionAutoApproved",
    "TurnEnded",
    "ErrorOccurred",
    "StreamEvent",
    # configuration
    "EnvVar",
    "AgentConfig",
    "AgentSettings",
    "PluginSettings",
    "SessionOptions",
    "normalize_env_vars",
    "sanitize_args",
    "to_agent_config",
    # engine
    "ProcessTransport",
    "PermissionGate",
    "AcpSession",
    "SessionState",
    "TurnStream",
    "HostCommand",
    "SessionRegistry",
]
