"""Live WebSocket connections and their heartbeat."""
import asyncio, json, logging, uuid
from typing import Callable, Dict, List, Optional

from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

log = logging.getLogger('relay.connections')


class Peer:
    """A transport connection plus the relay's bookkeeping for it.

    The relay never stores attributes on the socket itself; user id,
    session binding and liveness live here.
    """

    def __init__(self, ws):
        self.ws = ws
        self.id = uuid.uuid4().hex
        self.user_id: Optional[str] = None
        self.session_id: Optional[str] = None
        self.alive = True
        self._pending = set()

    def __repr__(self):
        return f'<Peer {self.id[:8]} user={self.user_id!r} session={self.session_id}>'

    @property
    def is_open(self) -> bool:
        return self.ws.state is State.OPEN

    def bind(self, user_id: str, session_id: str):
        self.user_id = user_id
        self.session_id = session_id

    def unbind(self):
        self.session_id = None

    def send(self, message: dict):
        """Queue a JSON envelope for delivery without waiting on the socket."""
        if not self.is_open:
            log.debug('Skipping send to closed %r', self)
            return
        self._track(self._send(json.dumps(message)))

    async def _send(self, text: str):
        try:
            await self.ws.send(text)
        except ConnectionClosed:
            log.debug('%r closed mid-send', self)

    def ping(self):
        """Clear the liveness flag and ask for a pong that will set it again."""
        self.alive = False
        if self.is_open:
            self._track(self._ping())

    async def _ping(self):
        try:
            pong = await self.ws.ping()
            await pong
        except ConnectionClosed:
            return
        self.alive = True

    def terminate(self):
        transport = getattr(self.ws, 'transport', None)
        if transport is not None:
            transport.abort()
        for task in list(self._pending):
            task.cancel()

    async def flush(self):
        """Wait for every send/ping scheduled so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _track(self, coro):
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)


class ConnectionRegistry:
    """Tracks accepted connections and runs the heartbeat over them.

    ``on_dead`` receives every peer terminated by a heartbeat tick so its
    session membership can be cleaned up like a disconnect.
    """

    def __init__(self, on_dead: Optional[Callable[[Peer], None]] = None):
        self._peers: Dict[str, Peer] = {}
        self.on_dead = on_dead

    def __len__(self):
        return len(self._peers)

    def __iter__(self):
        return iter(list(self._peers.values()))

    def __contains__(self, peer):
        return getattr(peer, 'id', None) in self._peers

    def add(self, ws) -> Peer:
        peer = Peer(ws)
        self._peers[peer.id] = peer
        log.info('Connection %s opened (%d live)', peer.id[:8], len(self._peers))
        return peer

    def discard(self, peer: Peer):
        if self._peers.pop(peer.id, None) is not None:
            log.info('Connection %s closed (%d live)', peer.id[:8], len(self._peers))

    def heartbeat(self) -> List[Peer]:
        """One tick: terminate peers that missed the last pong, ping the rest."""
        dead = []
        for peer in list(self._peers.values()):
            if peer.alive:
                peer.ping()
                continue
            log.info('Terminating unresponsive %r', peer)
            self.discard(peer)
            peer.terminate()
            dead.append(peer)
            if self.on_dead is not None:
                self.on_dead(peer)
        return dead
