import asyncio
import json

from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

_CLOSE = object()   # we closed it
_DROP = object()    # the server went away


class FakeWS:
    """
    Minimal websocket stub compatible with the `websockets` connect() context manager.
    Script behavior by pushing JSON-serializable messages (or raw strings) with push().
    Captures outbound `send()` payloads in `outbound`.
    drop() simulates the server closing the connection without warning.
    """
    def __init__(self, scripted=None, fail_open: Exception | None = None):
        self.inbound = asyncio.Queue()
        self.outbound = []
        self.closed = False
        self.fail_open = fail_open
        for m in scripted or []:
            self.push(m)

    def push(self, m):
        self.inbound.put_nowait(m if isinstance(m, str) else json.dumps(m))

    def drop(self):
        self.inbound.put_nowait(_DROP)

    def sent_json(self):
        """Outbound JSON payloads only (skips text keep-alives like PING)."""
        return [json.loads(x) for x in self.outbound if x.startswith(("{", "["))]

    async def __aenter__(self):
        if self.fail_open is not None:
            raise self.fail_open
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.closed = True

    async def send(self, data: str):
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.outbound.append(data)

    async def close(self):
        if not self.closed:
            self.closed = True
            self.inbound.put_nowait(_CLOSE)

    async def recv(self) -> str:
        item = await self.inbound.get()
        if item is _CLOSE:
            raise ConnectionClosedOK(None, None)
        if item is _DROP:
            self.closed = True
            raise ConnectionClosedError(None, None)
        return item

    def __aiter__(self):
        return self

    async def __anext__(self):
        try:
            return await self.recv()
        except ConnectionClosedOK:
            raise StopAsyncIteration


class FakeConnect:
    """
    Stand-in for `ws_connect`: hands out scripted FakeWS instances in order
    (fresh empty ones once the script runs out) and records each call.
    """
    def __init__(self, *sockets: FakeWS):
        self.sockets = list(sockets)
        self.calls = []
        self.opened = []

    def __call__(self, url, **kwargs):   # <-- NOTE: not async
        self.calls.append(url)
        ws = self.sockets.pop(0) if self.sockets else FakeWS()
        self.opened.append(ws)
        return ws


async def wait_until(pred, timeout: float = 2.0, interval: float = 0.01):
    """Poll pred() until true or fail after timeout."""
    loop = asyncio.get_running_loop()
    end = loop.time() + timeout
    while loop.time() < end:
        if pred():
            return
        await asyncio.sleep(interval)
    raise AssertionError("timed out waiting for condition")
