"""Fakes shared by the test modules: sockets without a network."""
import asyncio, json

import pytest
from websockets.exceptions import ConnectionClosedOK
from websockets.protocol import State

from connections import Peer


class FakeTransport:
    def __init__(self, ws):
        self.ws = ws
        self.aborted = False

    def abort(self):
        self.aborted = True
        self.ws.state = State.CLOSED


class FakeSocket:
    """Stands in for a websockets connection. Sent frames are decoded into ``sent``.

    An unresponsive socket never answers pings.
    """

    def __init__(self, responsive=True):
        self.state = State.OPEN
        self.sent = []
        self.pings = 0
        self.responsive = responsive
        self.transport = FakeTransport(self)

    async def send(self, text):
        if self.state is not State.OPEN:
            raise ConnectionClosedOK(None, None)
        self.sent.append(json.loads(text))

    async def ping(self):
        self.pings += 1
        pong = asyncio.get_running_loop().create_future()
        if self.responsive:
            pong.set_result(0.0)
        return pong

    def close(self):
        self.state = State.CLOSED


class FakePeer:
    """Minimal participant for Session tests: records envelopes synchronously."""

    def __init__(self, user_id=None, is_open=True):
        self.user_id = user_id
        self.is_open = is_open
        self.sent = []

    def send(self, message):
        self.sent.append(message)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


async def drain(*peers):
    for peer in peers:
        await peer.flush()


def signals(peer):
    """Envelopes a peer received, minus the room-wide roomStatus counts."""
    return [m for m in peer.ws.sent if m['type'] != 'roomStatus']


def room_counts(peer):
    return [m['participants'] for m in peer.ws.sent if m['type'] == 'roomStatus']


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_peer():
    def factory(responsive=True):
        return Peer(FakeSocket(responsive=responsive))
    return factory
