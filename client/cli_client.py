#!/usr/bin/env python3
"""
CLI Client for End-to-End Encrypted Chat

Provides a command-line interface for:
- Creating a chat session and sharing its link
- Joining a session from a link or session id
- P-256 key exchange through the relay
- AES-256-GCM encrypted messaging
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime
from typing import Optional
from urllib.parse import urlparse

import websockets
from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from crypto.primitives import NotReady
from client.party import ChatParty

HELP_TEXT = """Commands:
  /link - Show the shareable link
  /help - Show this help
  /quit - Quit application"""


def session_id_from(target: str) -> str:
    """Accept either a bare session id or a full /chat/<id> link"""
    path = urlparse(target).path if "://" in target else target
    return path.rstrip("/").split("/")[-1]


def ws_url_for(server_url: str) -> str:
    if server_url.startswith("https://"):
        return "wss://" + server_url[len("https://"):].rstrip("/") + "/ws"
    if server_url.startswith("http://"):
        return "ws://" + server_url[len("http://"):].rstrip("/") + "/ws"
    return server_url.rstrip("/") + "/ws"


class ChatClient:
    """
    Terminal front end for one chat party.
    """

    def __init__(self, server_url: str = "http://localhost:3000"):
        """
        Initialize chat client.

        Args:
            server_url: Base URL of the relay server
        """
        self.server_url = server_url
        self.ws_url = ws_url_for(server_url)
        self.party = ChatParty()
        self.websocket = None
        self.running = False
        self.typing = False

    async def connect(self, session_id: Optional[str] = None) -> bool:
        """Connect to the relay and create or join a session"""
        try:
            self.websocket = await websockets.connect(self.ws_url)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            print(f"WebSocket connection error: {e}")
            return False

        if session_id:
            await self._send(self.party.join_request(session_id))
        else:
            await self._send(self.party.create_request())

        # The first answer decides whether we are in a session at all.
        data = json.loads(await self.websocket.recv())
        await self._process(data)
        if data.get("type") == "error":
            await self.websocket.close()
            return False

        if self.party.link:
            print(f"Share this link: {self.party.link}")
        return True

    async def _send(self, frame: dict):
        await self.websocket.send(json.dumps(frame))

    async def _process(self, data: dict):
        for reply in await self.party.handle(data):
            await self._send(reply)
        self._render()

    def _render(self):
        for kind, text in self.party.drain_notices():
            if kind == "message":
                print(f"[{datetime.now().strftime('%H:%M')}] Peer: {text}")
            elif kind == "typing":
                if text:
                    print(f"[{text}]")
            elif kind == "warning":
                print(f"[Warning: {text}]")
            elif kind == "error":
                print(f"[Error: {text}]")
            else:
                print(f"[{text}]")

    async def receive_messages(self):
        """Background task to receive frames from the relay"""
        try:
            while self.running:
                data = json.loads(await self.websocket.recv())
                await self._process(data)
        except websockets.exceptions.ConnectionClosed:
            print("\nDisconnected from server")
            self.running = False

    async def send_message(self, text: str):
        """Encrypt and send one message"""
        try:
            frame = await self.party.compose(text)
        except NotReady:
            print("[Encryption not ready yet. Please wait...]")
            return
        await self._send(frame)
        if self.typing:
            self.typing = False
            await self._send(self.party.typing_request(False))

    async def run_interactive(self):
        """Run interactive chat session"""
        self.running = True
        receive_task = asyncio.create_task(self.receive_messages())
        session = PromptSession()
        session.default_buffer.on_text_changed += self._on_text_changed

        print(HELP_TEXT)
        try:
            while self.running:
                try:
                    with patch_stdout():
                        user_input = await session.prompt_async("> ")
                except (KeyboardInterrupt, EOFError):
                    break

                user_input = user_input.strip()
                if not user_input:
                    continue
                if user_input.startswith("/"):
                    self._handle_command(user_input)
                else:
                    await self.send_message(user_input)
        finally:
            self.running = False
            receive_task.cancel()
            if self.websocket:
                await self.websocket.close()
            self.party.engine.reset()

    def _on_text_changed(self, buffer):
        """Tell the peer we started typing, once per message"""
        if self.typing or not buffer.text or buffer.text.startswith("/"):
            return
        if self.party.session_id and self.party.peer_present:
            self.typing = True
            asyncio.ensure_future(self._send(self.party.typing_request(True)))

    def _handle_command(self, command: str):
        """Handle slash commands"""
        cmd = command.split(maxsplit=1)[0].lower()
        if cmd == "/link":
            print(self.party.link or f"{self.server_url.rstrip('/')}/chat/{self.party.session_id}")
        elif cmd == "/quit":
            self.running = False
        elif cmd == "/help":
            print(HELP_TEXT)
        else:
            print("Unknown command. Type /help for help.")


async def run(args: argparse.Namespace) -> int:
    client = ChatClient(args.server)
    session_id = session_id_from(args.target) if args.target else None
    if not await client.connect(session_id):
        return 1
    await client.run_interactive()
    print("\nGoodbye!")
    return 0


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(description="End-to-end encrypted two-party chat")
    parser.add_argument("target", nargs="?", help="session id or chat link to join; omit to create one")
    parser.add_argument("--server", default="http://localhost:3000", help="relay base URL")
    args = parser.parse_args()

    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    main()
