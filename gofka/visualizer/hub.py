"""Message hub of the visualizer: buffers cluster events and fans them out to web clients."""

from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

QUEUE_SIZE = 256
BROADCAST_ACTIONS = frozenset({"metadata", "log_append", "error"})
BROADCAST_LOG_INDEX = -420
JSON_ACTIONS = frozenset({"metadata", "assigns"})
COMMAND_TYPES = frozenset(
    {
        "create-topic",
        "update-topic",
        "add-topic",
        "remove-topic",
        "send-message",
        "stop-send-message",
        "consume-message",
        "stop-consume-message",
        "fence",
    }
)

_STR_FIELDS = ("type", "node_type", "action", "target")
_INT_FIELDS = ("log_index", "timestamp")


def _wire(data: Any) -> Any:
    if isinstance(data, (bytes, bytearray)):
        return base64.b64encode(bytes(data)).decode("ascii")
    return data


@dataclass
class Message:
    """An event shown by the visualizer, or a request sent by a web client."""

    type: str = ""
    log_index: int = 0
    node_type: str = ""
    action: str = ""
    target: str = ""
    data: Any = None
    timestamp: int = 0

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready mapping; byte data is base64 encoded."""
        return {
            "type": self.type,
            "log_index": self.log_index,
            "node_type": self.node_type,
            "action": self.action,
            "target": self.target,
            "data": _wire(self.data),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Message:
        """Build a message from decoded JSON; raise ValueError on a wrong shape."""
        if not isinstance(data, Mapping):
            raise ValueError("message must be a JSON object")
        values: dict[str, Any] = {}
        for name in _STR_FIELDS:
            if name in data and data[name] is not None:
                if not isinstance(data[name], str):
                    raise ValueError(f"field {name} must be a string")
                values[name] = data[name]
        for name in _INT_FIELDS:
            if name in data and data[name] is not None:
                value = data[name]
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    raise ValueError(f"field {name} must be a number")
                values[name] = int(value)
        if "data" in data:
            values["data"] = data["data"]
        return cls(**values)


@dataclass
class Command:
    """A command waiting to be picked up by a cluster node."""

    action: str
    target: str
    data: bytes = field(default=b"")

    def to_dict(self) -> dict[str, Any]:
        return {"action": self.action, "target": self.target, "data": _wire(self.data)}


def generate_client_id() -> str:
    return f"client_{time.time_ns()}"


class ClientSession:
    """One connected web client: an outgoing queue and its read position."""

    def __init__(
        self,
        client_id: str | None = None,
        *,
        append_command: Callable[[Message], Any] | None = None,
        maxsize: int = QUEUE_SIZE,
    ) -> None:
        self.id = client_id or generate_client_id()
        self.last_offset = 0
        self.append_command = append_command
        self.queue: asyncio.Queue[list[Message] | None] = asyncio.Queue(maxsize)
        self.closed = False

    def send(self, messages: Iterable[Message]) -> bool:
        """Queue a batch without waiting; return False if it was dropped."""
        if self.closed:
            return False
        try:
            self.queue.put_nowait(list(messages))
        except asyncio.QueueFull:
            logger.warning("failed to send message to client %s: queue full", self.id)
            return False
        return True

    def close(self) -> None:
        """Tell the writer to finish; later sends are dropped."""
        if self.closed:
            return
        self.closed = True
        with contextlib.suppress(asyncio.QueueFull):
            self.queue.put_nowait(None)

    def handle_message(self, message: Message) -> None:
        """React to a message received from the web client."""
        if message.type == "ping":
            self.send(
                [
                    Message(
                        type="pong",
                        data=message.data,
                        timestamp=int(time.time()),
                        log_index=-1,
                    )
                ]
            )
        elif message.type == "offset":
            value = message.data
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                logger.warning("cannot convert offset data: %r", value)
                return
            self.last_offset = int(value)
        elif message.type in COMMAND_TYPES:
            logger.info("queueing %s from client %s", message.type, self.id)
            if self.append_command is not None:
                self.append_command(message)
        else:
            logger.warning("unknown message type: %s", message.type)


def _normalise_json(data: Any) -> bytes | None:
    """Re-encode JSON data compactly; None when it is not JSON."""
    if data is None:
        return None
    try:
        value = json.loads(data)
    except (ValueError, TypeError):
        return None
    return json.dumps(value, separators=(",", ":")).encode()


class VisualizerHub:
    """Keeps the event log and the commands queued for each node."""

    def __init__(self) -> None:
        self.clients: set[ClientSession] = set()
        self.buffer: list[Message] = []
        self.command_log: dict[str, list[Message]] = {}

    def register(self, client: ClientSession) -> None:
        """Add a client, greet it and send it the whole event log."""
        client.append_command = self.append_command
        self.clients.add(client)
        welcome = Message(
            type="welcome",
            data={"message": "Connected to visualizer"},
            timestamp=int(time.time()),
            log_index=-1,
        )
        if not client.send([welcome]):
            client.close()
            self.clients.discard(client)
            return
        client.send(list(self.buffer))

    def unregister(self, client: ClientSession) -> None:
        if client in self.clients:
            self.clients.discard(client)
            client.close()
            logger.info("client %s unregistered, total clients: %d", client.id, len(self.clients))

    def publish(self, message: Message) -> None:
        """Broadcast live events; append everything else to the log."""
        if message.action in BROADCAST_ACTIONS:
            message.log_index = BROADCAST_LOG_INDEX
            for client in list(self.clients):
                client.send([message])
        elif message.action == "commands":
            return
        else:
            message.log_index = len(self.buffer)
            self.buffer.append(message)
            self.send_to_clients()

    def update(self, node_type: str, action: str, target: str, data: Any = b"") -> list[Command]:
        """Take a report from a node; a "commands" report returns its pending commands."""
        if action == "commands":
            return self.pending_commands_for(target)
        if action in JSON_ACTIONS:
            data = _normalise_json(data)
        self.publish(Message(node_type=node_type, action=action, target=target, data=data))
        return []

    def send_to_clients(self) -> None:
        for client in list(self.clients):
            client.send(self.buffer[client.last_offset :])

    def append_command(self, command: Message) -> None:
        self.command_log.setdefault(command.target, []).append(command)

    def commands_for(self, target: str) -> list[Message]:
        """Take the queued commands of ``target``; KeyError if it never had any."""
        if target not in self.command_log:
            raise KeyError("cannot find logs for item")
        commands = self.command_log[target]
        if commands:
            self.command_log[target] = []
            return commands
        return []

    def pending_commands_for(self, target: str) -> list[Command]:
        try:
            messages = self.commands_for(target)
        except KeyError:
            return []
        commands = []
        for message in messages:
            if isinstance(message.data, str):
                payload = message.data.encode()
            else:
                logger.warning("failed parsing command data: %s", type(message.data).__name__)
                payload = b""
            commands.append(Command(action=message.action, target=message.target, data=payload))
        return commands