from __future__ import annotations

import asyncio
import json
import urllib.error
import urllib.request

import pytest
from websockets.asyncio.client import connect

from common import Settings
from server import ChatServer


async def _recv(ws):
    return json.loads(await asyncio.wait_for(ws.recv(), 5))


def _get(url):
    with urllib.request.urlopen(url, timeout=5) as resp:
        return resp.status, resp.headers["Content-Type"], json.loads(resp.read())


def test_end_to_end_chat_session():
    async def scenario():
        chat = ChatServer(Settings(host="127.0.0.1", port=0))
        async with chat.serve() as server:
            await chat.hub.start()
            try:
                port = next(iter(server.sockets)).getsockname()[1]
                base = f"127.0.0.1:{port}"
                async with connect(f"ws://{base}/ws") as a:
                    init_a = await _recv(a)
                    assert init_a["type"] == "init"
                    name_a = init_a["identity"]["displayName"]
                    assert (await _recv(a))["message"]["content"] == f"{name_a} joined the chat"
                    assert await _recv(a) == {"type": "userCount", "count": 1}

                    async with connect(f"ws://{base}/ws") as b:
                        init_b = await _recv(b)
                        name_b = init_b["identity"]["displayName"]
                        assert [m["content"] for m in init_b["messages"]] == [f"{name_a} joined the chat"]
                        assert (await _recv(b))["type"] == "message"
                        assert await _recv(b) == {"type": "userCount", "count": 2}
                        assert (await _recv(a))["message"]["content"] == f"{name_b} joined the chat"
                        assert await _recv(a) == {"type": "userCount", "count": 2}

                        await a.send(json.dumps({"type": "message", "content": "hi"}))
                        for ws in (a, b):
                            event = await _recv(ws)
                            assert event["type"] == "message"
                            assert event["message"]["content"] == "hi"
                            assert event["message"]["authorDisplayName"] == name_a

                        await a.send("{not json")
                        assert (await _recv(a))["type"] == "error"
                        await a.send(json.dumps({"type": "message", "content": ""}))
                        assert (await _recv(a))["type"] == "error"
                        await a.send("[" * 100000)
                        assert (await _recv(a))["type"] == "error"
                        await a.send(json.dumps({"type": "message", "content": "still open"}))
                        for ws in (a, b):
                            assert (await _recv(ws))["message"]["content"] == "still open"

                        await b.send(json.dumps({"type": "typing", "isTyping": True}))
                        assert await _recv(a) == {"type": "typing", "username": name_b, "isTyping": True}
                        await b.send(json.dumps({"type": "message", "content": "done"}))
                        assert (await _recv(b))["message"]["content"] == "done"
                        assert (await _recv(a))["message"]["content"] == "done"
                        await b.send(json.dumps({"type": "typing", "isTyping": False}))
                        assert await _recv(a) == {"type": "typing", "username": name_b, "isTyping": False}

                        status, content_type, messages = await asyncio.to_thread(
                            _get, f"http://{base}/api/messages"
                        )
                        assert status == 200
                        assert content_type.startswith("application/json")
                        assert [m["content"] for m in messages][-3:] == ["hi", "still open", "done"]

                        _, _, active = await asyncio.to_thread(_get, f"http://{base}/api/users/active")
                        assert active["count"] == 2
                        assert sorted(u["displayName"] for u in active["users"]) == sorted([name_a, name_b])

                        with pytest.raises(urllib.error.HTTPError) as excinfo:
                            await asyncio.to_thread(_get, f"http://{base}/nope")
                        assert excinfo.value.code == 404

                    assert (await _recv(a))["message"]["content"] == f"{name_b} left the chat"
                    assert await _recv(a) == {"type": "userCount", "count": 1}
            finally:
                await chat.hub.stop()

    asyncio.run(scenario())
