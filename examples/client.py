import asyncio
import os
import sys

from agent_client import AcpSession, AgentConfig, ErrorOccurred, TextDelta, TurnEnded
from agent_client.log import build_log_config, configure_logging

AGENT = os.path.join(os.path.dirname(__file__), "agent.py")


async def main() -> None:
    configure_logging(build_log_config())
    config = AgentConfig(
        id="echo",
        display_name="Echo Agent",
        command=sys.executable,
        args=(AGENT,),
        working_directory=os.getcwd(),
    )
    async with AcpSession() as session:
        # 1) spawn + initialize + session/new
        await session.initialize(config)
        print(f"Connected to session {session.session_id}", file=sys.stderr)
        # 2) prompt and stream the answer
        async for event in await session.send_turn("Hello from client"):
            if isinstance(event, TextDelta):
                print(event.content, end="", flush=True)
            elif isinstance(event, TurnEnded):
                print(f"\n[{event.reason.value}]")
            elif isinstance(event, ErrorOccurred):
                print(f"\n[error] {event.detail}", file=sys.stderr)
        # 3) a second turn, cancelled halfway
        stream = await session.send_turn("one two three four five six seven eight nine ten")
        await asyncio.sleep(0.2)
        await session.cancel()
        print(f"cancelled turn ended with: {[type(e).__name__ for e in await stream.collect()]}")


if __name__ == "__main__":
    asyncio.run(main())
