import json

import pytest

from p2pdrop.websocket_manager import Connection, RoomRegistry

ROOM = "abcdefghij0123456789"
OTHER_ROOM = "zyxwvutsrq9876543210"
TOKEN = "0123456789abcdefghijklmnopqrstuv"
OTHER_TOKEN = "vutsrqponmlkjihgfedcba9876543210"


class FakeWebSocket:
    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send_text(self, text: str):
        if self.fail:
            raise ConnectionError("socket gone")
        self.sent.append(text)

    @property
    def messages(self):
        return [json.loads(text) for text in self.sent]


@pytest.fixture
def registry():
    return RoomRegistry(max_members=2)


@pytest.fixture
def make_connection():
    def _make(fail: bool = False) -> Connection:
        return Connection(FakeWebSocket(fail=fail))

    return _make
