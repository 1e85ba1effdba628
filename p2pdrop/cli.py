"""
Command-line peers and server launcher.

    p2pdrop serve
    p2pdrop receive [--out DIR]
    p2pdrop send --room ROOM --token TOKEN FILE...

The receiver hosts the room: it generates the room id and token, prints them,
and answers the sender's offer.
"""
import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

from .config import Settings
from .credentials import fetch_ice_servers
from .identity import generate_id, generate_token, is_valid_room_id, is_valid_token
from .models import ReceivedFile
from .negotiation import NegotiationDriver, NegotiationError, Role
from .rtc import AiortcPeerConnection
from .signaling import SignalingClient
from .transfer import FileReceiver, FileSender, TransferError

logger = logging.getLogger(__name__)


def status(text: str):
    print(text, flush=True)


def save_received_file(received: ReceivedFile, out_dir: str) -> str:
    """Write a received file into ``out_dir`` without overwriting anything"""
    os.makedirs(out_dir, exist_ok=True)
    name = os.path.basename(received.name.replace("\\", "/")) or "received"
    stem, ext = os.path.splitext(name)
    path = os.path.join(out_dir, name)
    counter = 1
    while os.path.exists(path):
        path = os.path.join(out_dir, f"{stem} ({counter}){ext}")
        counter += 1
    with open(path, "wb") as f:
        f.write(received.data)
    return path


async def _pump_signals(signaling: SignalingClient, driver: NegotiationDriver):
    try:
        async for message in signaling.messages():
            try:
                await driver.handle_signal(message)
            except NegotiationError:
                # already surfaced through the driver status
                return
    finally:
        driver.on_signaling_closed()


async def _connect(role: Role, settings: Settings, room: str):
    ice_servers = await fetch_ice_servers(settings.http_origin, room)
    peer = AiortcPeerConnection(ice_servers)
    signaling = await SignalingClient.from_settings(settings).connect()
    driver = NegotiationDriver(role, peer, signaling.send, on_status=status)
    return peer, signaling, driver


async def receive(settings: Settings, out_dir: str, room: Optional[str] = None, token: Optional[str] = None) -> List[str]:
    room = room or generate_id()
    token = token or generate_token()
    saved = []

    def on_file(received: ReceivedFile):
        path = save_received_file(received, out_dir)
        saved.append(path)
        status(f"File received: {path} ({received.size} bytes). Waiting for more...")

    receiver = FileReceiver(on_file=on_file, on_warning=lambda text: status(f"Warning: {text}"))
    peer, signaling, driver = await _connect(Role.RESPONDER, settings, room)
    pump = asyncio.create_task(_pump_signals(signaling, driver))
    try:
        await signaling.join(room, token)
        status(f"Hosting room with Session ID: {room} & Token: {token}. Waiting for sender...")
        await driver.wait_connected()
        channel = await peer.accept_data_channel(on_message=receiver.handle_message)
        status("DataChannel open, ready to receive files!")
        await channel.closed.wait()
        status("DataChannel closed")
    finally:
        pump.cancel()
        await signaling.close()
        await peer.close()
    return saved


async def send(settings: Settings, room: str, token: str, paths: List[str]):
    peer, signaling, driver = await _connect(Role.INITIATOR, settings, room)
    channel = peer.create_data_channel()
    sender = FileSender(
        channel,
        on_progress=lambda name, sent, total: logger.info(f"Sending {name}: {sent}/{total} bytes"),
    )
    pump = asyncio.create_task(_pump_signals(signaling, driver))
    try:
        await signaling.join(room, token)
        status(f"Joined {room}, setting up connection...")
        await driver.wait_connected()
        await channel.opened.wait()
        status("DataChannel open, sending files...")
        await sender.send_files(paths)
        await sender.flush()
        await peer.wait_for_delivery()
        status("All files sent!")
    finally:
        pump.cancel()
        await signaling.close()
        await peer.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="p2pdrop", description="Peer-to-peer file drop")
    parser.add_argument("--signaling-url", help="Websocket URL of the signaling relay")
    parser.add_argument("--http-origin", help="HTTP origin of the relay, for ICE server credentials")
    parser.add_argument("--log-level", help="Logging level")
    sub = parser.add_subparsers(dest="command", required=True)

    serve_p = sub.add_parser("serve", help="Run the signaling relay")
    serve_p.add_argument("--host")
    serve_p.add_argument("--port", type=int)

    recv_p = sub.add_parser("receive", help="Host a room and save incoming files")
    recv_p.add_argument("--out", default="received_files", help="Directory for received files")
    recv_p.add_argument("--room", help="Room id to host (generated when omitted)")
    recv_p.add_argument("--token", help="Room token (generated when omitted)")

    send_p = sub.add_parser("send", help="Join a room and send files")
    send_p.add_argument("--room", required=True)
    send_p.add_argument("--token", required=True)
    send_p.add_argument("files", nargs="+")
    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    overrides = {
        "signaling_url": args.signaling_url,
        "http_origin": args.http_origin,
        "log_level": args.log_level,
        "host": getattr(args, "host", None),
        "port": getattr(args, "port", None),
    }
    settings = Settings.from_env()
    return settings.model_copy(update={k: v for k, v in overrides.items() if v is not None})


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = settings_from_args(args)
    logging.basicConfig(level=settings.log_level.upper())

    if args.command == "serve":
        from .main import run
        run(settings)
        return 0

    for attr, check in (("room", is_valid_room_id), ("token", is_valid_token)):
        value = getattr(args, attr)
        if value is not None:
            value = value.strip().lower()
            if not check(value):
                parser.error(f"invalid {attr}")
            setattr(args, attr, value)

    try:
        if args.command == "receive":
            asyncio.run(receive(settings, args.out, args.room, args.token))
        else:
            missing = [p for p in args.files if not os.path.isfile(p)]
            if missing:
                parser.error(f"not a file: {', '.join(missing)}")
            asyncio.run(send(settings, args.room, args.token, args.files))
    except NegotiationError as e:
        status(f"Connection failed: {e}")
        return 1
    except TransferError as e:
        status(f"Error sending file: {e}")
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
