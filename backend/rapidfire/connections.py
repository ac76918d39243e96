from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...


class _Outbox:
    def __init__(self, connection: Connection):
        self.connection = connection
        self.queue: asyncio.Queue = asyncio.Queue()
        self.sender: Optional[asyncio.Task] = None


class ConnectionRegistry:
    """Live connections for the rapid fire channel and who is behind them.

    A connection is registered as soon as the transport accepts it and only
    gets an identity once its ``joinRapidFire`` is accepted. Anonymous
    connections still receive broadcasts.

    ``send`` and ``broadcast`` only enqueue. Each connection has its own
    sender task, so frames to one socket stay in order and a slow socket
    never holds up the caller or any other socket.
    """

    def __init__(self, send_timeout: float = 5.0):
        self.send_timeout = send_timeout
        self._outboxes: Dict[str, _Outbox] = {}
        self._identities: Dict[str, str] = {}

    def add(self, connection: Connection) -> str:
        connection_id = uuid.uuid4().hex
        self._outboxes[connection_id] = _Outbox(connection)
        return connection_id

    def remove(self, connection_id: str) -> Optional[str]:
        """Forget a connection and return the participant it belonged to."""
        outbox = self._outboxes.pop(connection_id, None)
        if outbox is not None and outbox.sender is not None:
            outbox.sender.cancel()
        return self._identities.pop(connection_id, None)

    def attach(self, connection_id: str, participant_id: str) -> None:
        if connection_id not in self._outboxes:
            raise KeyError(f"Unknown connection {connection_id}")
        self._identities[connection_id] = participant_id

    def detach(self, participant_id: str) -> List[str]:
        """Drop a participant's identity from every connection; they stay listeners."""
        connection_ids = [cid for cid, pid in self._identities.items() if pid == participant_id]
        for connection_id in connection_ids:
            del self._identities[connection_id]
        return connection_ids

    def participant_for(self, connection_id: str) -> Optional[str]:
        return self._identities.get(connection_id)

    def is_connected(self, participant_id: str) -> bool:
        return participant_id in self._identities.values()

    def clear_identities(self) -> None:
        self._identities.clear()

    def __len__(self) -> int:
        return len(self._outboxes)

    def send(self, connection_id: str, event: str, data: Any) -> bool:
        """Queue an event for one connection; ``False`` if it is gone."""
        outbox = self._outboxes.get(connection_id)
        if outbox is None:
            return False
        outbox.queue.put_nowait({"event": event, "data": data})
        if outbox.sender is None or outbox.sender.done():
            outbox.sender = asyncio.create_task(self._pump(connection_id, outbox))
        return True

    def broadcast(self, event: str, data: Any, exclude: Optional[str] = None) -> int:
        """Queue an event for every live connection and return how many got it."""
        queued = 0
        for connection_id in list(self._outboxes):
            if connection_id == exclude:
                continue
            if self.send(connection_id, event, data):
                queued += 1
        return queued

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued frame was written or dropped."""
        queues = [outbox.queue.join() for outbox in self._outboxes.values()]
        if not queues:
            return True
        try:
            await asyncio.wait_for(asyncio.gather(*queues), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def close(self) -> None:
        senders = [o.sender for o in self._outboxes.values() if o.sender is not None]
        for sender in senders:
            sender.cancel()
        await asyncio.gather(*senders, return_exceptions=True)

    async def _pump(self, connection_id: str, outbox: _Outbox) -> None:
        while True:
            message = await outbox.queue.get()
            try:
                await asyncio.wait_for(outbox.connection.send_json(message), self.send_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Dropping %s for connection %s: send timed out after %ss",
                    message["event"],
                    connection_id,
                    self.send_timeout,
                )
            except Exception as exc:
                # The transport reports the disconnect on its own; just skip here.
                logger.debug("Dropping %s for connection %s: %s", message["event"], connection_id, exc)
            finally:
                outbox.queue.task_done()
