#!/usr/bin/env python3
import asyncio
import json
import os
import sys
from typing import Any, Dict, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed

from common import DEFAULT_PORT, WS_PATH, encode

HELP = """
Commands:
  <text>                      # send a message
  /typing                     # tell the room you are typing
  /stop                       # tell the room you stopped typing
  /who                        # show who is typing right now
  /quit
  /help

Notes:
- You get a random anonymous name when you connect.
- The last 50 messages are shown on connect.
"""


def format_message(message: Dict[str, Any]) -> str:
    ts = str(message.get("createdAt", ""))[11:19]
    if message.get("kind") == "system":
        return f"[{ts}] << {message.get('content', '')} >>"
    return f"[{ts}] <{message.get('authorDisplayName', '?')}>: {message.get('content', '')}"


class Client:
    def __init__(self, uri: str):
        self.uri = uri
        self.username: Optional[str] = None
        self.typing: Set[str] = set()

    def handle_event(self, data: Dict[str, Any]) -> Optional[str]:
        """Update local state from one server event; return a line to print, if any."""
        t = data.get("type")
        if t == "init":
            identity = data.get("identity") or {}
            self.username = identity.get("displayName") or data.get("username")
            msgs = data.get("messages", [])
            lines = [f"--- you are {self.username} ---", f"--- last {len(msgs)} messages ---"]
            lines.extend(format_message(m) for m in msgs)
            lines.append("--- end history ---")
            return "\n".join(lines)
        elif t == "message":
            message = data.get("message") or {}
            self.typing.discard(message.get("authorDisplayName"))
            return format_message(message)
        elif t == "userCount":
            return f"<< {data.get('count', 0)} online >>"
        elif t == "typing":
            name = data.get("username")
            # The server never echoes our own typing back, but a stale
            # event for our name must not show up either.
            if not name or name == self.username:
                return None
            if data.get("isTyping"):
                if name in self.typing:
                    return None
                self.typing.add(name)
                return f"<< {name} is typing... >>"
            self.typing.discard(name)
            return None
        elif t == "error":
            return f"<< ERROR - {data.get('reason', '')} >>"
        return "<< unknown message >>"

    async def input_loop(self, ws):
        print(HELP)
        while True:
            try:
                line = await asyncio.get_running_loop().run_in_executor(None, sys.stdin.readline)
            except (EOFError, KeyboardInterrupt):
                break
            if not line:
                break
            line = line.rstrip("\n")
            if not line.strip():
                continue
            if line.startswith("/"):
                cmd = line.split(" ", 1)[0].lower()
                if cmd == "/help":
                    print(HELP)
                elif cmd == "/typing":
                    await ws.send(encode({"type": "typing", "isTyping": True}))
                elif cmd == "/stop":
                    await ws.send(encode({"type": "typing", "isTyping": False}))
                elif cmd == "/who":
                    print("Typing:", ", ".join(sorted(self.typing)) if self.typing else "(nobody)")
                elif cmd == "/quit":
                    break
                else:
                    print("Unknown/invalid command. Type /help")
            else:
                await ws.send(encode({"type": "typing", "isTyping": False}))
                await ws.send(encode({"type": "message", "content": line}))
        await ws.close()

    async def recv_loop(self, ws):
        async for raw in ws:
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                print("<< invalid JSON >>")
                continue
            line = self.handle_event(data)
            if line:
                print(line)

    async def run(self):
        print(f"Connecting to {self.uri} ...")
        try:
            async with websockets.connect(self.uri, ping_interval=20, ping_timeout=20, max_queue=64) as ws:
                await asyncio.gather(self.input_loop(ws), self.recv_loop(ws))
        except ConnectionRefusedError:
            print("\nConnection failed. Is the server running?")
        except ConnectionClosed:
            print("\nConnection closed.")


def main():
    host = os.environ.get("CHAT_HOST", "localhost")
    port = int(os.environ.get("CHAT_PORT", DEFAULT_PORT))
    uri = f"ws://{host}:{port}{WS_PATH}"
    try:
        asyncio.run(Client(uri).run())
    except KeyboardInterrupt:
        pass

if __name__ == "__main__":
    main()
