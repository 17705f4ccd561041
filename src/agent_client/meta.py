"""Protocol constants shared by the codec, the session and the tests."""

PROTOCOL_VERSION = 1

# client -> agent
AGENT_METHODS = {
    "initialize": "initialize",
    "authenticate": "authenticate",
    "session_new": "session/new",
    "session_load": "session/load",
    "session_prompt": "session/prompt",
    "session_cancel": "session/cancel",
}

# agent -> client
CLIENT_METHODS = {
    "session_update": "session/update",
    "session_request_permission": "session/request_permission",
    "fs_read_text_file": "fs/read_text_file",
    "fs_write_text_file": "fs/write_text_file",
    "terminal_create": "terminal/create",
    "terminal_output": "terminal/output",
    "terminal_release": "terminal/release",
    "terminal_wait_for_exit": "terminal/wait_for_exit",
    "terminal_kill": "terminal/kill",
}

CLIENT_NAME = "agent-client"
CLIENT_TITLE = "Agent Client"
CLIENT_VERSION = "0.1.0"

TERMINAL_TOOL_STATUSES = frozenset({"completed", "failed"})
