"""Dispatches inbound signaling envelopes to sessions and participants."""
import json, logging
from typing import Optional

from errors import MalformedMessageError, MissingRoomError, NoActiveSessionError, SignalError
from sessions import Session, SessionDirectory

log = logging.getLogger('relay.router')

NEGOTIATION_TYPES = ('offer', 'answer', 'candidate')


class MessageRouter:
    """Owns the session directory and applies one message at a time to it.

    Every method here is synchronous, so a message is applied to shared
    state in full before the event loop can run anything else.
    """

    def __init__(self, directory: Optional[SessionDirectory] = None):
        self.directory = directory if directory is not None else SessionDirectory()
        self._handlers = {
            'join': self._join,
            'leave': self._leave,
            'recordingRequest': self._recording_request,
            'recordingResponse': self._recording_response,
        }
        for msg_type in NEGOTIATION_TYPES:
            self._handlers[msg_type] = self._negotiate

    def handle(self, peer, raw):
        """Apply one raw frame from ``peer``; failures go back to the sender."""
        try:
            msg = self.parse(raw)
            handler = self._handlers.get(msg['type'])
            if handler is None:
                log.debug('Ignoring %r message from %r', msg['type'], peer)
                return
            handler(peer, msg)
        except SignalError as e:
            log.info('Rejected message from %r: %s', peer, e)
            peer.send({'type': 'error', 'message': str(e)})
        except Exception as e:
            log.exception('Failed to handle message from %r', peer)
            peer.send({'type': 'error', 'message': str(e) or e.__class__.__name__})

    @staticmethod
    def parse(raw) -> dict:
        if isinstance(raw, (bytes, bytearray)):
            try:
                raw = raw.decode()
            except UnicodeDecodeError:
                raise MalformedMessageError('message is not valid UTF-8')
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            raise MalformedMessageError('message is not valid JSON')
        if not isinstance(msg, dict):
            raise MalformedMessageError('message must be a JSON object')
        if not isinstance(msg.get('type'), str):
            raise MalformedMessageError('message has no type')
        return msg

    def disconnect(self, peer):
        """Clean up after a closed or terminated connection, exactly like leave."""
        self._leave(peer, {})

    # ============ HANDLERS ============

    def _session_of(self, peer) -> Session:
        session = self.directory.get(peer.session_id) if peer.session_id else None
        if session is None:
            raise NoActiveSessionError()
        return session

    def _join(self, peer, msg):
        room_id = msg.get('room')
        if room_id is None or room_id == '':
            raise MissingRoomError()
        room_id = str(room_id)
        user_id = msg.get('userId')
        user_id = peer.id if user_id is None or user_id == '' else str(user_id)

        # one session per connection: rejoining moves the peer
        if peer.session_id is not None:
            self._leave(peer, {})

        session = self.directory.find_or_create_session(room_id, user_id)
        session.add_participant(user_id, peer)
        peer.bind(user_id, session.id)
        self.directory.broadcast_room_status(room_id)
        log.info('%s joined room %r session %s (%d/%d)',
                 user_id, room_id, session.id, len(session), session.capacity)

    def _negotiate(self, peer, msg):
        session = self._session_of(peer)
        target_id = msg.get('targetUserId')
        target = session.get(target_id)
        if target is None or not target.is_open:
            log.debug('Dropping %s from %s: %r not reachable', msg['type'], peer.user_id, target_id)
            return
        target.send({
            'type': msg['type'],
            'data': msg.get('data'),
            'from': peer.user_id,
            'targetUserId': target_id,
        })
        log.debug('Forwarded %s %s -> %s', msg['type'], peer.user_id, target_id)

    def _leave(self, peer, msg):
        if peer.session_id is None:
            return
        session = self.directory.get(peer.session_id)
        peer.unbind()
        if session is None:
            return
        if session.get(peer.user_id) is not peer:
            # seat held by another connection
            return
        if session.remove_participant(peer.user_id):
            self.directory.remove_session(session.id)
        self.directory.broadcast_room_status(session.room_id)
        log.info('%s left session %s', peer.user_id, session.id)

    def _recording_request(self, peer, msg):
        session = self._session_of(peer)
        session.broadcast({'type': 'recordingRequest', 'data': msg.get('data'), 'from': peer.user_id},
                          exclude=peer.user_id)

    def _recording_response(self, peer, msg):
        session = self._session_of(peer)
        target = session.get(msg.get('targetUserId'))
        if target is None or not target.is_open:
            return
        target.send({'type': 'recordingResponse', 'data': msg.get('data'), 'from': peer.user_id})
