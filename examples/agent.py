import asyncio
import sys

from agent_client.codec import Notification, Request, Response, decode_line, encode
from agent_client.core import RequestError
from agent_client.meta import AGENT_METHODS, CLIENT_METHODS, PROTOCOL_VERSION
from agent_client.schema import InitializeResponse, NewSessionResponse, PromptRequest, text_block
from agent_client.stdio import stdin_reader


def send(message) -> None:
    # stdout belongs to the protocol; diagnostics go to stderr
    sys.stdout.buffer.write(encode(message))
    sys.stdout.buffer.flush()


class EchoAgent:
    """Streams the prompt text back word by word."""

    def __init__(self) -> None:
        self.cancelled = False

    async def handle(self, message) -> None:
        if isinstance(message, Notification):
            if message.method == AGENT_METHODS["session_cancel"]:
                self.cancelled = True
            return
        if not isinstance(message, Request):
            return
        if message.method == AGENT_METHODS["initialize"]:
            result = InitializeResponse(protocolVersion=PROTOCOL_VERSION)
            send(Response(message.id, result=result.model_dump(exclude_none=True)))
        elif message.method == AGENT_METHODS["session_new"]:
            send(Response(message.id, result=NewSessionResponse(sessionId="sess-1").model_dump()))
        elif message.method == AGENT_METHODS["session_prompt"]:
            await self.prompt(message)
        else:
            send(Response.failure(message.id, RequestError.method_not_found(message.method)))

    async def prompt(self, request: Request) -> None:
        params = PromptRequest.model_validate(request.params)
        self.cancelled = False
        text = " ".join(block.get("text", "") for block in params.prompt if block.get("type") == "text")
        for word in text.split():
            if self.cancelled:
                send(Response(request.id, result={"stopReason": "cancelled"}))
                return
            update = {"sessionUpdate": "agent_message_chunk", "content": text_block(word + " ")}
            send(Notification(CLIENT_METHODS["session_update"], {"sessionId": params.sessionId, "update": update}))
            await asyncio.sleep(0.05)
        send(Response(request.id, result={"stopReason": "end_turn"}))


async def main() -> None:
    reader = await stdin_reader()
    agent = EchoAgent()
    tasks = set()
    while True:
        line = await reader.readline()
        if not line:
            break
        if line.strip():
            # handled as a task so session/cancel is read while a prompt streams
            task = asyncio.create_task(agent.handle(decode_line(line)))
            tasks.add(task)
            task.add_done_callback(tasks.discard)


if __name__ == "__main__":
    asyncio.run(main())
