"""Message routing over fake sockets: placement, forwarding, errors, cleanup."""
import json

import pytest

from conftest import drain, room_counts, signals
from router import MessageRouter


def send(router, peer, **msg):
    router.handle(peer, json.dumps(msg))


@pytest.fixture
def router():
    return MessageRouter()


@pytest.fixture
async def pair(router, make_peer):
    a, b = make_peer(), make_peer()
    send(router, a, type='join', room='r1', userId='A')
    send(router, b, type='join', room='r1', userId='B')
    await drain(a, b)
    a.ws.sent.clear()
    b.ws.sent.clear()
    return a, b


async def test_join_placement_and_announcements(router, make_peer):
    a, b, c = make_peer(), make_peer(), make_peer()
    send(router, a, type='join', room='r1', userId='A')
    await drain(a)
    sid = a.session_id
    assert signals(a) == [{'type': 'sessionInfo', 'sessionId': sid, 'peers': []}]

    send(router, b, type='join', room='r1', userId='B')
    await drain(a, b)
    assert signals(b) == [{'type': 'sessionInfo', 'sessionId': sid, 'peers': ['A']}]
    assert signals(a)[-1] == {'type': 'newPeer', 'userId': 'B'}

    send(router, c, type='join', room='r1', userId='C')
    await drain(c)
    assert c.session_id != sid
    assert signals(c) == [{'type': 'sessionInfo', 'sessionId': c.session_id, 'peers': []}]
    assert len(router.directory.sessions_in('r1')) == 2


async def test_offer_reaches_only_target(router, pair):
    a, b = pair
    data = {'type': 'offer', 'sdp': 'v=0\r\n...'}
    send(router, a, type='offer', targetUserId='B', data=data, userId='A')
    await drain(a, b)
    assert signals(b) == [{'type': 'offer', 'data': data, 'from': 'A', 'targetUserId': 'B'}]
    assert a.ws.sent == []


async def test_answer_and_candidate_are_forwarded(router, pair):
    a, b = pair
    send(router, b, type='answer', targetUserId='A', data={'sdp': 'x'})
    send(router, b, type='candidate', targetUserId='A', data={'candidate': 'candidate:1'})
    await drain(a, b)
    assert [m['type'] for m in a.ws.sent] == ['answer', 'candidate']
    assert all(m['from'] == 'B' for m in a.ws.sent)


async def test_negotiation_to_absent_or_closed_target_is_dropped(router, pair):
    a, b = pair
    send(router, a, type='offer', targetUserId='nobody', data={})
    b.ws.close()
    send(router, a, type='offer', targetUserId='B', data={})
    await drain(a, b)
    assert a.ws.sent == []
    assert b.ws.sent == []


async def test_negotiation_without_session_is_an_error(router, make_peer):
    p = make_peer()
    send(router, p, type='offer', targetUserId='B', data={})
    await drain(p)
    assert signals(p) == [{'type': 'error', 'message': 'no active session'}]


async def test_join_without_room_is_an_error_and_connection_survives(router, make_peer):
    p = make_peer()
    send(router, p, type='join', userId='A')
    send(router, p, type='join', room='', userId='A')
    send(router, p, type='join', room='r1', userId='A')
    await drain(p)
    assert signals(p)[0] == {'type': 'error', 'message': 'join requires a room'}
    assert signals(p)[1] == {'type': 'error', 'message': 'join requires a room'}
    assert signals(p)[2]['type'] == 'sessionInfo'


@pytest.mark.parametrize('raw, reason', [
    ('{not json', 'message is not valid JSON'),
    ('[1, 2]', 'message must be a JSON object'),
    ('{"room": "r1"}', 'message has no type'),
    (b'\xff\xfe', 'message is not valid UTF-8'),
])
async def test_malformed_frames_are_reported(router, make_peer, raw, reason):
    p = make_peer()
    router.handle(p, raw)
    await drain(p)
    assert signals(p) == [{'type': 'error', 'message': reason}]


async def test_unknown_type_is_ignored(router, pair):
    a, b = pair
    send(router, a, type='dance', targetUserId='B')
    await drain(a, b)
    assert a.ws.sent == [] and b.ws.sent == []


async def test_unexpected_failure_becomes_error_envelope(router, make_peer, monkeypatch):
    def boom(*args):
        raise RuntimeError('boom')
    monkeypatch.setattr(router.directory, 'find_or_create_session', boom)
    p = make_peer()
    send(router, p, type='join', room='r1', userId='A')
    await drain(p)
    assert signals(p) == [{'type': 'error', 'message': 'boom'}]
    assert p.session_id is None


async def test_leave_notifies_and_is_idempotent(router, pair):
    a, b = pair
    sid = a.session_id
    send(router, b, type='leave', userId='B')
    send(router, b, type='leave', userId='B')
    await drain(a, b)
    assert signals(a) == [{'type': 'peerLeft', 'userId': 'B'}]
    assert room_counts(a) == [1]
    assert b.session_id is None
    assert router.directory.get(sid).user_ids == ['A']


async def test_last_leave_removes_session_and_room(router, pair):
    a, b = pair
    sid = a.session_id
    send(router, a, type='leave')
    send(router, b, type='leave')
    assert sid not in router.directory
    assert 'r1' not in router.directory.rooms


async def test_leave_without_session_is_a_noop(router, make_peer):
    p = make_peer()
    send(router, p, type='leave')
    await drain(p)
    assert p.ws.sent == []


async def test_disconnect_cleans_up_like_leave(router, pair):
    a, b = pair
    sid = a.session_id
    router.disconnect(b)
    router.disconnect(b)
    await drain(a)
    assert signals(a) == [{'type': 'peerLeft', 'userId': 'B'}]
    assert len(router.directory.get(sid)) == 1
    router.disconnect(a)
    assert sid not in router.directory
    assert router.directory.rooms == {}


async def test_recording_request_goes_to_everyone_else(router, pair):
    a, b = pair
    send(router, a, type='recordingRequest', data={'start': True})
    await drain(a, b)
    assert signals(b) == [{'type': 'recordingRequest', 'data': {'start': True}, 'from': 'A'}]
    assert a.ws.sent == []


async def test_recording_response_goes_to_target_only(router, pair):
    a, b = pair
    send(router, b, type='recordingResponse', targetUserId='A', data='ok')
    await drain(a, b)
    assert signals(a) == [{'type': 'recordingResponse', 'data': 'ok', 'from': 'B'}]
    assert b.ws.sent == []


@pytest.mark.parametrize('msg_type', ['recordingRequest', 'recordingResponse'])
async def test_recording_without_session_is_an_error(router, make_peer, msg_type):
    p = make_peer()
    send(router, p, type=msg_type, targetUserId='A', data=None)
    await drain(p)
    assert signals(p) == [{'type': 'error', 'message': 'no active session'}]


async def test_rejoin_moves_connection_to_new_room(router, pair):
    a, b = pair
    old = a.session_id
    send(router, a, type='join', room='r2', userId='A')
    await drain(a, b)
    assert signals(b) == [{'type': 'peerLeft', 'userId': 'A'}]
    assert a.session_id != old
    assert router.directory.get(old).user_ids == ['B']
    assert router.directory.get(a.session_id).room_id == 'r2'


async def test_join_without_user_id_uses_connection_id(router, make_peer):
    p = make_peer()
    send(router, p, type='join', room='r1')
    assert p.user_id == p.id


async def test_sessions_never_exceed_two(router, make_peer):
    peers = [make_peer() for _ in range(9)]
    for i, p in enumerate(peers):
        send(router, p, type='join', room='busy', userId=f'u{i}')
    await drain(*peers)
    sessions = router.directory.sessions_in('busy')
    assert [len(s) for s in sessions] == [2, 2, 2, 2, 1]
    assert all(signals(p)[0]['type'] == 'sessionInfo' for p in peers)


@pytest.mark.parametrize('msg_type', ['offer', 'recordingResponse'])
@pytest.mark.parametrize('target', [['B'], {'id': 'B'}, 7, None])
async def test_non_string_target_is_dropped_silently(router, pair, msg_type, target):
    a, b = pair
    send(router, a, type=msg_type, targetUserId=target, data={})
    await drain(a, b)
    assert a.ws.sent == []
    assert b.ws.sent == []


async def test_room_status_counts_every_session(router, make_peer):
    a, b, c = make_peer(), make_peer(), make_peer()
    send(router, a, type='join', room='r1', userId='A')
    await drain(a)
    assert a.ws.sent[-1] == {'type': 'roomStatus', 'participants': 1}

    send(router, b, type='join', room='r1', userId='B')
    send(router, c, type='join', room='r1', userId='C')
    await drain(a, b, c)
    assert room_counts(a) == [1, 2, 3]
    assert room_counts(b) == [2, 3]
    assert room_counts(c) == [3]
    assert a.session_id != c.session_id


async def test_room_status_follows_leave_and_disconnect(router, make_peer):
    a, b, c = make_peer(), make_peer(), make_peer()
    for peer, user in ((a, 'A'), (b, 'B'), (c, 'C')):
        send(router, peer, type='join', room='r1', userId=user)
    await drain(a, b, c)
    for peer in (a, b, c):
        peer.ws.sent.clear()

    send(router, c, type='leave')
    router.disconnect(b)
    await drain(a, b, c)
    assert room_counts(a) == [2, 1]
    assert room_counts(b) == [2]
    assert c.ws.sent == []


async def test_room_status_is_scoped_to_one_room(router, make_peer):
    a, z = make_peer(), make_peer()
    send(router, a, type='join', room='r1', userId='A')
    send(router, z, type='join', room='r2', userId='Z')
    send(router, z, type='leave')
    await drain(a, z)
    assert room_counts(a) == [1]
    assert room_counts(z) == [1]
