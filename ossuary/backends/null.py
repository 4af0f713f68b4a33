"""Null adapter: accepts nothing, stores nothing.

Useful as a placeholder and for exercising capability negotiation: it
declares no optional capability and no send or receive options.
"""

from ossuary.backends.base import BaseAdapter
from ossuary.core.errors import UnsupportedOperationError


class NullAdapter(BaseAdapter):
    name = "null"

    async def connect(self) -> bool:
        return True

    async def queue_exists(self, name: str) -> bool:
        return False

    async def get_queue_id(self, name: str) -> str | None:
        return None

    async def create_queue(self, name: str) -> bool:
        raise UnsupportedOperationError("create_queue")

    async def delete_queue(self, name: str) -> bool:
        raise UnsupportedOperationError("delete_queue")

    async def send_message(self, queue, envelope, params=None):
        raise UnsupportedOperationError("send_message")

    async def receive_messages(self, queue, max_messages=None, params=None):
        raise UnsupportedOperationError("receive_messages")
