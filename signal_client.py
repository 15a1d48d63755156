"""Headless peer for the pairwise signaling relay, no browser needed.

Joins a room over WebSocket, then negotiates a WebRTC data channel with
every peer the relay seats in the same session. The peer that joins second
sends the offer. With a room key, every ``data`` blob is sealed with
AES-256-GCM so the relay only ever forwards ciphertext.

Usage:
    client = SignalClient('ws://localhost:8080', room='r1', user_id='bot')
    session_id = await client.connect()
    ev = await client.receive()            # newPeer, channel, message, ...
    channel = await client.wait_channel('alice')
    channel.send('hello')
    await client.close()
"""
import asyncio, base64, json, logging, os, uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

log = logging.getLogger('signal_client')

STUN_URLS = ['stun:stun.l.google.com:19302']

# ============ CRYPTO ============

def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b'=').decode()

def b64url_decode(s: str) -> bytes:
    return base64.urlsafe_b64decode(s + '=' * (-len(s) % 4))

def generate_room_key() -> bytes:
    """Generate a 256-bit AES key shared out of band by both peers."""
    return AESGCM.generate_key(256)

def seal(key: bytes, payload) -> str:
    """AES-256-GCM encrypt a JSON value. Returns base64url(iv + ciphertext)."""
    iv = os.urandom(12)
    ct = AESGCM(key).encrypt(iv, json.dumps(payload).encode(), None)
    return b64url_encode(iv + ct)

def unseal(key: bytes, data: str):
    """Inverse of seal(); raises cryptography's InvalidTag on a wrong key."""
    raw = b64url_decode(data)
    iv, ct = raw[:12], raw[12:]
    return json.loads(AESGCM(key).decrypt(iv, ct, None).decode())

# ============ CLIENT ============

@dataclass
class Event:
    type: str  # 'newPeer', 'peerLeft', 'channel', 'message', 'recordingRequest', 'error', ...
    from_id: str = ''
    data: object = None
    raw: dict = field(default_factory=dict)


class SignalClient:
    def __init__(self, url: str, room: str, user_id: Optional[str] = None,
                 room_key: Optional[bytes] = None, ice_urls: Optional[List[str]] = None):
        self.url = url
        self.room = room
        self.user_id = user_id or str(uuid.uuid4())
        self.room_key = room_key
        self.session_id: Optional[str] = None
        self.peers: List[str] = []
        self.room_size = 0  # participants across the whole room, from roomStatus
        self.ws = None
        self._ice_urls = STUN_URLS if ice_urls is None else ice_urls
        self._pcs: Dict[str, RTCPeerConnection] = {}
        self._channels: Dict[str, object] = {}
        self._channel_open: Dict[str, asyncio.Event] = {}
        self._events: asyncio.Queue = asyncio.Queue()
        self._joined = asyncio.Event()
        self._reader = None

    # ---- relay I/O ----

    async def connect(self, timeout: float = 10.0) -> str:
        """Open the socket, join the room and return the session id."""
        self.ws = await connect(self.url)
        self._reader = asyncio.ensure_future(self._read_loop())
        await self._send({'type': 'join', 'room': self.room})
        await asyncio.wait_for(self._joined.wait(), timeout)
        return self.session_id

    async def _send(self, msg: dict):
        msg.setdefault('userId', self.user_id)
        await self.ws.send(json.dumps(msg))

    async def _signal(self, msg_type: str, target: Optional[str], payload):
        msg = {'type': msg_type, 'data': self._seal(payload)}
        if target is not None:
            msg['targetUserId'] = target
        await self._send(msg)

    def _seal(self, payload):
        return seal(self.room_key, payload) if self.room_key else payload

    def _unseal(self, data):
        return unseal(self.room_key, data) if self.room_key else data

    async def _read_loop(self):
        try:
            async for raw in self.ws:
                try:
                    await self._handle(json.loads(raw))
                except Exception:
                    log.exception('Failed to handle %.80s', raw)
        except ConnectionClosed:
            pass
        finally:
            await self._events.put(Event(type='closed'))

    async def _handle(self, msg: dict):
        msg_type = msg.get('type', '')
        sender = msg.get('from', '')

        if msg_type == 'sessionInfo':
            self.session_id = msg.get('sessionId')
            self.peers = list(msg.get('peers', []))
            self._joined.set()
            for peer_id in self.peers:
                await self._call(peer_id)
        elif msg_type == 'newPeer':
            self.peers.append(msg.get('userId'))
            await self._events.put(Event(type='newPeer', from_id=msg.get('userId', ''), raw=msg))
        elif msg_type == 'peerLeft':
            peer_id = msg.get('userId', '')
            if peer_id in self.peers:
                self.peers.remove(peer_id)
            await self._drop(peer_id)
            await self._events.put(Event(type='peerLeft', from_id=peer_id, raw=msg))
        elif msg_type == 'offer':
            await self._answer(sender, self._unseal(msg.get('data')))
        elif msg_type == 'answer':
            desc = self._unseal(msg.get('data'))
            pc = self._pcs.get(sender)
            if pc is not None:
                await pc.setRemoteDescription(RTCSessionDescription(sdp=desc['sdp'], type=desc['type']))
        elif msg_type == 'candidate':
            await self._add_candidate(sender, self._unseal(msg.get('data')))
        elif msg_type in ('recordingRequest', 'recordingResponse'):
            await self._events.put(Event(type=msg_type, from_id=sender,
                                         data=self._unseal(msg.get('data')), raw=msg))
        elif msg_type == 'roomStatus':
            self.room_size = msg.get('participants', 0)
        elif msg_type == 'error':
            await self._events.put(Event(type='error', data=msg.get('message'), raw=msg))

    # ---- negotiation ----

    def _create_pc(self, peer_id: str) -> RTCPeerConnection:
        config = RTCConfiguration(iceServers=[RTCIceServer(urls=self._ice_urls)] if self._ice_urls else [])
        pc = RTCPeerConnection(config)
        self._pcs[peer_id] = pc
        return pc

    def _setup_channel(self, peer_id: str, channel):
        self._channels[peer_id] = channel
        opened = self._channel_open.setdefault(peer_id, asyncio.Event())

        def do_open():
            opened.set()
            self._events.put_nowait(Event(type='channel', from_id=peer_id))

        @channel.on('open')
        def on_open():
            do_open()

        @channel.on('message')
        def on_message(data):
            self._events.put_nowait(Event(type='message', from_id=peer_id, data=data))

        @channel.on('close')
        def on_close():
            opened.clear()

        # answerer side: the channel may already be open when handed over
        if getattr(channel, 'readyState', None) == 'open':
            do_open()

    async def _call(self, peer_id: str):
        await self._drop(peer_id)
        pc = self._create_pc(peer_id)
        self._setup_channel(peer_id, pc.createDataChannel('pairwise', ordered=True))
        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)
        await self._wait_ice(pc)
        await self._signal('offer', peer_id, self._description(pc))

    async def _answer(self, peer_id: str, desc: dict):
        await self._drop(peer_id)
        pc = self._create_pc(peer_id)

        @pc.on('datachannel')
        def on_dc(channel):
            self._setup_channel(peer_id, channel)

        await pc.setRemoteDescription(RTCSessionDescription(sdp=desc['sdp'], type=desc['type']))
        answer = await pc.createAnswer()
        await pc.setLocalDescription(answer)
        await self._wait_ice(pc)
        await self._signal('answer', peer_id, self._description(pc))

    async def _add_candidate(self, peer_id: str, cand):
        pc = self._pcs.get(peer_id)
        if pc is None or not cand or not cand.get('candidate'):
            return
        sdp = cand['candidate']
        if sdp.startswith('candidate:'):
            sdp = sdp[len('candidate:'):]
        ice = candidate_from_sdp(sdp)
        ice.sdpMid = cand.get('sdpMid')
        ice.sdpMLineIndex = cand.get('sdpMLineIndex')
        await pc.addIceCandidate(ice)

    async def _drop(self, peer_id: str):
        pc = self._pcs.pop(peer_id, None)
        self._channels.pop(peer_id, None)
        opened = self._channel_open.get(peer_id)
        if opened is not None:
            opened.clear()
        if pc is not None:
            await pc.close()

    @staticmethod
    def _description(pc) -> dict:
        return {'type': pc.localDescription.type, 'sdp': pc.localDescription.sdp}

    @staticmethod
    async def _wait_ice(pc, timeout: float = 5.0):
        """Wait for ICE gathering so the SDP carries every candidate."""
        if pc.iceGatheringState == 'complete':
            return
        done = asyncio.Event()

        @pc.on('icegatheringstatechange')
        def check():
            if pc.iceGatheringState == 'complete':
                done.set()
        try:
            await asyncio.wait_for(done.wait(), timeout)
        except asyncio.TimeoutError:
            pass  # use whatever candidates we have

    # ============ PUBLIC API ============

    async def request_recording(self, data):
        """Ask every other participant of the session to start recording."""
        await self._signal('recordingRequest', None, data)

    async def respond_recording(self, target: str, data):
        await self._signal('recordingResponse', target, data)

    async def wait_channel(self, peer_id: str, timeout: float = 15.0):
        """Wait until the data channel with ``peer_id`` is open and return it."""
        opened = self._channel_open.setdefault(peer_id, asyncio.Event())
        await asyncio.wait_for(opened.wait(), timeout)
        return self._channels[peer_id]

    async def receive(self, timeout: Optional[float] = None) -> Event:
        """Receive the next event. Blocks until one arrives."""
        if timeout is not None:
            return await asyncio.wait_for(self._events.get(), timeout)
        return await self._events.get()

    def has_events(self) -> bool:
        return not self._events.empty()

    async def leave(self):
        for peer_id in list(self._pcs):
            await self._drop(peer_id)
        self.session_id = None
        self.peers = []
        self._joined.clear()
        await self._send({'type': 'leave'})

    async def close(self):
        for peer_id in list(self._pcs):
            await self._drop(peer_id)
        if self.ws is not None:
            await self.ws.close()
        if self._reader is not None:
            await self._reader

    @property
    def joined(self) -> bool:
        return self._joined.is_set()
