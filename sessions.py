"""Rooms, two-party sessions and the directory that places peers into them.

A room is only a key: it buckets sessions. Each session holds at most two
participants, which is all a single offer/answer negotiation needs.
"""
import logging, time, uuid
from typing import Dict, List, Optional, Set

from errors import SessionFullError

log = logging.getLogger('relay.sessions')

CAPACITY = 2


class Session:
    """Negotiation context between at most two participants of one room."""

    capacity = CAPACITY

    def __init__(self, room_id: str, session_id: Optional[str] = None, clock=time.monotonic):
        self.id = session_id or uuid.uuid4().hex
        self.room_id = room_id
        self.participants: Dict[str, object] = {}  # user_id -> Peer, join order
        self._clock = clock
        self.last_activity = clock()

    def __len__(self):
        return len(self.participants)

    def __repr__(self):
        return f'<Session {self.id[:8]} room={self.room_id!r} users={self.user_ids}>'

    @property
    def user_ids(self) -> List[str]:
        return list(self.participants)

    def get(self, user_id):
        if not isinstance(user_id, str):
            return None
        return self.participants.get(user_id)

    def touch(self):
        self.last_activity = self._clock()

    def add_participant(self, user_id: str, peer):
        if not self.is_available():
            raise SessionFullError(f'session {self.id} is full')
        others = self.user_ids
        self.participants[user_id] = peer
        self.touch()
        self.broadcast({'type': 'newPeer', 'userId': user_id}, exclude=user_id)
        peer.send({'type': 'sessionInfo', 'sessionId': self.id, 'peers': others})

    def remove_participant(self, user_id: str) -> bool:
        """Drop a participant; returns True when the session is left empty."""
        if self.participants.pop(user_id, None) is not None:
            self.touch()
            self.broadcast({'type': 'peerLeft', 'userId': user_id})
        return not self.participants

    def broadcast(self, message: dict, exclude: Optional[str] = None):
        # closed peers stay registered; disconnect handling removes them
        for user_id, peer in list(self.participants.items()):
            if user_id == exclude or not peer.is_open:
                continue
            peer.send(message)

    def is_available(self) -> bool:
        return len(self.participants) < self.capacity

    def is_expired(self, timeout: float, now: Optional[float] = None) -> bool:
        if self.participants:
            return False
        now = self._clock() if now is None else now
        return now - self.last_activity > timeout


class SessionDirectory:
    """Process-wide index of sessions by id and by room.

    ``sessions`` and ``rooms`` always agree: every id in a room's set is a
    live session of that room, and every live session is in its room's set.
    """

    def __init__(self, clock=time.monotonic):
        self.sessions: Dict[str, Session] = {}
        self.rooms: Dict[str, Dict[str, None]] = {}  # room_id -> ordered set of ids
        self._clock = clock

    def __len__(self):
        return len(self.sessions)

    def __contains__(self, session_id):
        return session_id in self.sessions

    def get(self, session_id: str) -> Optional[Session]:
        return self.sessions.get(session_id)

    def sessions_in(self, room_id: str) -> List[Session]:
        return [self.sessions[sid] for sid in self.rooms.get(room_id, ())]

    def room_ids(self) -> Set[str]:
        return set(self.rooms)

    def participant_count(self, room_id: str) -> int:
        return sum(len(s) for s in self.sessions_in(room_id))

    def broadcast_room_status(self, room_id: str):
        """Tell every open participant of the room how many people it holds."""
        message = {'type': 'roomStatus', 'participants': self.participant_count(room_id)}
        for session in self.sessions_in(room_id):
            session.broadcast(message)

    def find_or_create_session(self, room_id: str, user_id: Optional[str] = None) -> Session:
        """Oldest session in the room with a free seat, or a new one."""
        for session in self.sessions_in(room_id):
            if not session.is_available():
                continue
            if user_id is not None and user_id in session.participants:
                continue
            return session

        session = Session(room_id, clock=self._clock)
        while session.id in self.sessions:
            session = Session(room_id, clock=self._clock)
        self.sessions[session.id] = session
        self.rooms.setdefault(room_id, {})[session.id] = None
        log.info('Created session %s in room %r', session.id, room_id)
        return session

    def remove_session(self, session_id: str):
        session = self.sessions.pop(session_id, None)
        if session is None:
            return
        room = self.rooms.get(session.room_id)
        if room is not None:
            room.pop(session_id, None)
            if not room:
                del self.rooms[session.room_id]
                log.info('Removed empty room %r', session.room_id)
        log.info('Removed session %s', session_id)

    def sweep(self, timeout: float, now: Optional[float] = None) -> List[str]:
        """Evict every empty session idle for longer than ``timeout``."""
        now = self._clock() if now is None else now
        expired = [sid for sid, s in self.sessions.items() if s.is_expired(timeout, now)]
        for sid in expired:
            self.remove_session(sid)
        if expired:
            log.info('Swept %d expired session(s)', len(expired))
        return expired

    def stats(self) -> dict:
        return {
            'rooms': len(self.rooms),
            'sessions': len(self.sessions),
            'participants': sum(len(s) for s in self.sessions.values()),
        }
