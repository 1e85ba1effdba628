import asyncio

import pytest

from p2pdrop import cli
from p2pdrop.cli import build_parser, main, save_received_file, settings_from_args
from p2pdrop.config import Settings
from p2pdrop.models import ReceivedFile
from p2pdrop.transfer import DataChannel


def test_save_received_file_never_overwrites(tmp_path):
    received = ReceivedFile(name="a.txt", mime_type="text/plain", data=b"one")
    first = save_received_file(received, str(tmp_path))
    second = save_received_file(received, str(tmp_path))
    assert first.endswith("a.txt")
    assert second.endswith("a (1).txt")
    assert (tmp_path / "a (1).txt").read_bytes() == b"one"


@pytest.mark.parametrize("name", ["../../etc/passwd", "..\\..\\boot.ini", "/abs/path/x.bin"])
def test_save_received_file_strips_directories(tmp_path, name):
    path = save_received_file(ReceivedFile(name=name, mime_type="x", data=b""), str(tmp_path))
    assert path.startswith(str(tmp_path))
    assert "/" not in path[len(str(tmp_path)) + 1:]


def test_settings_from_args_overrides_env(monkeypatch):
    monkeypatch.setenv("P2PDROP_SIGNALING_URL", "ws://env/ws")
    monkeypatch.setenv("P2PDROP_HTTP_ORIGIN", "http://env")
    args = build_parser().parse_args(["--signaling-url", "ws://cli/ws", "serve", "--port", "9999"])
    settings = settings_from_args(args)
    assert settings.signaling_url == "ws://cli/ws"
    assert settings.http_origin == "http://env"
    assert settings.port == 9999


def test_send_requires_room_and_token():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["send", "file.txt"])


def test_send_rejects_malformed_room(tmp_path):
    target = tmp_path / "f.txt"
    target.write_text("x")
    with pytest.raises(SystemExit) as excinfo:
        main(["send", "--room", "short", "--token", "a" * 32, str(target)])
    assert excinfo.value.code == 2


class RecordingChannel(DataChannel):
    ready_state = "open"
    buffered_amount = 0

    def __init__(self, log):
        self.log = log
        self.opened = asyncio.Event()
        self.opened.set()

    def send(self, data):
        self.log.append(("frame", data if isinstance(data, str) else len(data)))


class RecordingPeer:
    def __init__(self, log):
        self.log = log

    def create_data_channel(self):
        return RecordingChannel(self.log)

    async def wait_for_delivery(self):
        self.log.append("delivered")

    async def close(self):
        self.log.append("peer closed")


class IdleSignaling:
    def __init__(self, log):
        self.log = log

    async def join(self, room, token):
        self.log.append("join")

    async def messages(self):
        await asyncio.Event().wait()
        yield

    async def close(self):
        self.log.append("signaling closed")


class ConnectedDriver:
    async def wait_connected(self):
        pass

    def on_signaling_closed(self):
        pass


@pytest.mark.asyncio
async def test_send_waits_for_delivery_before_closing(tmp_path, monkeypatch, capsys):
    target = tmp_path / "f.bin"
    target.write_bytes(b"x" * 100)
    log = []

    async def fake_connect(role, settings, room):
        return RecordingPeer(log), IdleSignaling(log), ConnectedDriver()

    monkeypatch.setattr(cli, "_connect", fake_connect)
    await cli.send(Settings(), "a" * 20, "b" * 32, [str(target)])

    assert log[0] == "join"
    assert log[1][0] == "frame" and log[1][1].startswith("meta:")
    assert log[2] == ("frame", 100)
    assert log[3:] == ["delivered", "signaling closed", "peer closed"]
    assert "All files sent!" in capsys.readouterr().out
