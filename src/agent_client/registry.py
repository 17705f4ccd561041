"""Sessions keyed by the host's chat-view id, and the host command surface."""

from __future__ import annotations

import enum
import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from .log import log_context
from .session import AcpSession
from .settings import AgentConfig, SessionOptions

logger = logging.getLogger(__name__)


class HostCommand(str, enum.Enum):
    NEW_TURN = "new_turn"
    CANCEL = "cancel"
    APPROVE_PERMISSION = "approve_permission"
    REJECT_PERMISSION = "reject_permission"


class SessionRegistry:
    """
    One ``AcpSession`` per chat view.

    Opening a view that already has a session replaces it: the old session is
    closed first, so one view never drives two agent processes.
    """

    def __init__(
        self,
        options: Optional[SessionOptions] = None,
        session_factory: Callable[[SessionOptions], AcpSession] = AcpSession,
    ) -> None:
        self.options = options or SessionOptions()
        self._session_factory = session_factory
        self._sessions: Dict[str, AcpSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, view_id: object) -> bool:
        return view_id in self._sessions

    def view_ids(self) -> List[str]:
        return list(self._sessions)

    def get(self, view_id: str) -> Optional[AcpSession]:
        return self._sessions.get(view_id)

    async def open(self, view_id: str, config: AgentConfig) -> AcpSession:
        await self.close(view_id)
        session = self._session_factory(self.options)
        with log_context(view=view_id):
            # HandshakeError propagates; a failed session is never registered
            await session.initialize(config)
        self._sessions[view_id] = session
        logger.debug("view %s bound to session %s", view_id, session.session_id)
        return session

    async def close(self, view_id: str) -> bool:
        session = self._sessions.pop(view_id, None)
        if session is None:
            return False
        await session.close()
        return True

    async def close_all(self) -> None:
        for view_id in list(self._sessions):
            await self.close(view_id)

    async def dispatch(
        self,
        view_id: str,
        command: Union[HostCommand, str],
        prompt: Optional[str] = None,
        context: Iterable[Mapping[str, Any]] = (),
    ) -> Any:
        """Run a host command against the session of ``view_id``.

        ``NEW_TURN`` returns the ``TurnStream``, the permission commands return
        whether a request was pending, ``CANCEL`` returns ``None``. Raises
        ``KeyError`` for an unknown view.
        """
        command = HostCommand(command)
        session = self._sessions.get(view_id)
        if session is None:
            raise KeyError(f"no session for view {view_id!r}")

        with log_context(view=view_id, session=session.session_id):
            logger.debug("dispatching %s", command.value)
            if command is HostCommand.NEW_TURN:
                if prompt is None:
                    raise ValueError("NEW_TURN requires a prompt")
                return await session.send_turn(prompt, context)
            if command is HostCommand.CANCEL:
                await session.cancel()
                return None
            if command is HostCommand.APPROVE_PERMISSION:
                return await session.approve_active_permission()
            return await session.reject_active_permission()
