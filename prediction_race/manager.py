import asyncio
import logging
from typing import AsyncGenerator, Set

from pydantic import BaseModel

MAX_PENDING_FRAMES = 2


class FrameBroadcaster:
    def __init__(self, max_pending: int = MAX_PENDING_FRAMES):
        self.max_pending = max_pending
        self.active_connections: Set[asyncio.Queue] = set()

    def connect(self) -> asyncio.Queue:
        """Registers a stream client

        Returns:
            asyncio.Queue: Queue the client's frames are delivered to
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_pending)
        self.active_connections.add(queue)
        logging.info(f"Stream client connected ({len(self.active_connections)} active)")
        return queue

    def disconnect(self, queue: asyncio.Queue):
        self.active_connections.discard(queue)
        logging.info(f"Stream client disconnected ({len(self.active_connections)} active)")

    async def broadcast(self, frame: BaseModel):
        for queue in list(self.active_connections):
            if queue.full():
                # Slow client: drop its oldest frame, renderers only need the latest.
                queue.get_nowait()
            queue.put_nowait(frame)

    async def event_generator(self, queue: asyncio.Queue) -> AsyncGenerator[str, None]:
        """Server-sent events for one client, until it goes away."""
        try:
            while True:
                frame: BaseModel = await queue.get()
                payload = frame.model_dump_json()
                yield f"event: frame\ndata: {payload}\n\n"
        finally:
            self.disconnect(queue)
