"""
CallSessionController tests.

Two controllers (or one controller and a scripted peer) share an
InMemorySignalRelay; FakeAdapter stands in for the peer connection.

Invariants checked:
- Remote descriptions are applied once per call, whatever the relay delivers
- No remote candidate reaches the connection before its remote description
- Terminal states are final: late signals and transport events are dropped
- Every failure path leaves a terminal session with a classified error
"""

import asyncio
import itertools

import pytest

from duet_call.adapter import PeerConnectionAdapter
from duet_call.controller import CallSessionController
from duet_call.errors import ErrorKind, InvalidCallState, MediaAccessDenied
from duet_call.events import TimerExpired
from duet_call.media import SyntheticMediaSource
from duet_call.records import CallRecordSink
from duet_call.session import CallRole, CallStatus, SignalType

from conftest import AUDIO_SDP, VIDEO_SDP, make_candidate, settle


ANSWER = {'type': 'answer', 'sdp': AUDIO_SDP}


async def _connect(alice, bob, has_video=False):
    await alice.start_outgoing('bob', has_video)
    await bob.accept_incoming(alice.call_id, has_video)
    await settle(alice, bob)
    alice.adapters.adapter.emit_state('connected')
    bob.adapters.adapter.emit_state('connected')
    await settle(alice, bob)


async def _answer_from_bob(relay, alice, payload=ANSWER):
    await relay.publish(alice.call_id, 'bob', 'alice', SignalType.ANSWER, payload)


async def _connect_scripted(relay, alice, has_video=False):
    """Drive alice to connected with bob simulated through the relay."""
    await alice.start_outgoing('bob', has_video)
    await _answer_from_bob(relay, alice)
    await settle(alice)
    alice.adapters.adapter.emit_state('connected')
    await settle(alice)


# ============================================================================
# Happy path
# ============================================================================

async def test_offer_answer_connects_both_sides(make_controller, relay):
    alice = make_controller('alice')
    bob = make_controller('bob')

    await alice.start_outgoing('bob', False)
    assert alice.session.status == CallStatus.REQUESTING
    assert alice.session.role == CallRole.OFFERER
    assert [s.type for s in relay.published] == [SignalType.OFFER]

    await bob.accept_incoming(alice.call_id, False)
    await settle(alice, bob)

    assert bob.session.remote_user_id == 'alice'
    assert bob.session.role == CallRole.ANSWERER
    assert alice.session.status == CallStatus.NEGOTIATING
    assert bob.session.status == CallStatus.NEGOTIATING
    assert [s.type for s in relay.published] == [SignalType.OFFER, SignalType.ANSWER]

    alice.adapters.adapter.emit_state('connected')
    bob.adapters.adapter.emit_state('connected')
    await settle(alice, bob)

    assert alice.states == [CallStatus.REQUESTING, CallStatus.NEGOTIATING, CallStatus.CONNECTED]
    assert bob.states == [CallStatus.NEGOTIATING, CallStatus.CONNECTED]
    assert alice.session.was_connected
    assert alice.adapters.adapter.log[:3] == ['acquire', 'create_offer', 'local_offer']
    assert bob.adapters.adapter.log == ['acquire', 'remote_offer', 'create_answer', 'local_answer']


async def test_full_call_exchanges_candidates_and_remote_media(make_controller, relay):
    alice = make_controller('alice')
    bob = make_controller('bob')
    alice_streams, bob_streams = [], []
    alice.on_remote_stream = alice_streams.append
    bob.on_remote_stream = bob_streams.append

    await alice.start_outgoing('bob', True)
    await bob.accept_incoming(alice.call_id, True)
    await settle(alice, bob)
    alice_adapter = alice.adapters.adapter
    bob_adapter = bob.adapters.adapter

    for n in (1, 2):
        alice_adapter.emit_local_candidate(make_candidate(n))
    for n in (3, 4):
        bob_adapter.emit_local_candidate(make_candidate(n))
    await settle(alice, bob)

    for adapter in (alice_adapter, bob_adapter):
        adapter.emit_track('audio')
        adapter.emit_track('video')
        adapter.emit_state('connected')
    await settle(alice, bob)

    assert bob_adapter.applied_candidates == [make_candidate(1), make_candidate(2)]
    assert alice_adapter.applied_candidates == [make_candidate(3), make_candidate(4)]
    assert not alice_adapter.candidate_before_remote
    assert not bob_adapter.candidate_before_remote
    assert [s.type for s in relay.published].count(SignalType.ICE_CANDIDATE) == 4

    for controller, adapter, streams in ((alice, alice_adapter, alice_streams), (bob, bob_adapter, bob_streams)):
        assert controller.session.status == CallStatus.CONNECTED
        assert controller.session.remote_stream is not None
        assert controller.session.remote_stream is adapter.remote_stream
        assert streams == [adapter.remote_stream]
        assert controller.errors == []


async def test_hangup_ends_both_sides(make_controller):
    alice = make_controller('alice')
    bob = make_controller('bob')
    await _connect(alice, bob)
    alice_adapter = alice.adapters.adapter

    alice.end_call()
    assert alice.session.status == CallStatus.ENDED
    assert alice.session.local_stream is None
    assert alice_adapter.tracks_stopped

    await alice.wait_closed()
    await settle(bob)

    assert alice_adapter.closed
    assert bob.session.status == CallStatus.ENDED
    assert bob.session.end_reason == 'hangup'
    assert bob.session.error is None
    assert bob.adapters.adapter.tracks_stopped


async def test_video_offer_is_negotiated(make_controller):
    alice = make_controller('alice')
    bob = make_controller('bob')
    await _connect(alice, bob, has_video=True)

    offer = bob.adapters.adapter.remote_descriptions[0]
    assert offer['sdp'] == VIDEO_SDP
    assert alice.session.has_video and bob.session.has_video


# ============================================================================
# Idempotency and ordering
# ============================================================================

async def test_duplicate_answer_applied_once(make_controller, relay):
    alice = make_controller('alice')
    await alice.start_outgoing('bob', False)

    await _answer_from_bob(relay, alice)
    await _answer_from_bob(relay, alice, {'type': 'answer', 'sdp': VIDEO_SDP})
    await settle(alice)

    assert alice.adapters.adapter.remote_descriptions == [ANSWER]
    assert alice.states.count(CallStatus.NEGOTIATING) == 1


async def test_candidates_before_answer_are_buffered_then_drained_in_order(make_controller, relay):
    alice = make_controller('alice')
    await alice.start_outgoing('bob', False)
    candidates = [make_candidate(n) for n in (1, 2, 3)]

    for candidate in candidates:
        await relay.publish(alice.call_id, 'bob', 'alice', SignalType.ICE_CANDIDATE, candidate)
    await settle(alice)
    adapter = alice.adapters.adapter
    assert adapter.applied_candidates == []

    await _answer_from_bob(relay, alice)
    await settle(alice)

    assert adapter.applied_candidates == candidates
    assert not adapter.candidate_before_remote
    assert adapter.log.index('remote_answer') < adapter.log.index('candidate')


@pytest.mark.parametrize('order', list(itertools.permutations(['c1', 'c2', 'answer', 'c3'])))
async def test_any_delivery_order_applies_candidates_after_answer(make_controller, relay, order):
    alice = make_controller('alice')
    await alice.start_outgoing('bob', False)
    candidates = {f'c{n}': make_candidate(n) for n in (1, 2, 3)}

    for item in order:
        if item == 'answer':
            await _answer_from_bob(relay, alice)
        else:
            await relay.publish(alice.call_id, 'bob', 'alice', SignalType.ICE_CANDIDATE, candidates[item])
        await settle(alice)

    adapter = alice.adapters.adapter
    assert not adapter.candidate_before_remote
    assert adapter.applied_candidates == [candidates[item] for item in order if item != 'answer']
    assert alice.session.status == CallStatus.NEGOTIATING


async def test_duplicate_deliveries_are_ignored(make_controller, relay):
    relay.duplicate_delivery = True
    alice = make_controller('alice')
    bob = make_controller('bob')
    await alice.start_outgoing('bob', False)
    await bob.accept_incoming(alice.call_id, False)

    candidate = make_candidate(7)
    await relay.publish(alice.call_id, 'bob', 'alice', SignalType.ICE_CANDIDATE, candidate)
    await relay.publish(alice.call_id, 'bob', 'alice', SignalType.ICE_CANDIDATE, dict(candidate))
    await settle(alice, bob)

    adapter = alice.adapters.adapter
    assert len(adapter.remote_descriptions) == 1
    assert adapter.applied_candidates == [candidate]
    assert alice.states == [CallStatus.REQUESTING, CallStatus.NEGOTIATING]


async def test_local_candidates_are_published(make_controller, relay):
    alice = make_controller('alice')
    await alice.start_outgoing('bob', False)

    alice.adapters.adapter.emit_local_candidate(make_candidate(4))
    await settle(alice)

    published = relay.published[-1]
    assert published.type == SignalType.ICE_CANDIDATE
    assert published.to_user_id == 'bob'
    assert published.payload == make_candidate(4)


# ============================================================================
# Answerer
# ============================================================================

async def test_answerer_waits_for_late_offer(make_controller):
    alice = make_controller('alice', call_id='call-1')
    bob = make_controller('bob')

    accepting = asyncio.ensure_future(bob.accept_incoming('call-1', False))
    await settle(bob)
    assert bob.session.status == CallStatus.NEGOTIATING
    assert bob.adapters.built == []

    await alice.start_outgoing('bob', False)
    await accepting
    await settle(alice, bob)

    assert bob.session.remote_user_id == 'alice'
    assert bob.adapters.adapter.remote_descriptions[0]['type'] == 'offer'
    assert alice.session.status == CallStatus.NEGOTIATING


async def test_answerer_buffers_candidates_that_beat_the_offer(make_controller, relay):
    bob = make_controller('bob')
    accepting = asyncio.ensure_future(bob.accept_incoming('call-2', False))
    await settle(bob)

    candidates = [make_candidate(n) for n in (1, 2)]
    for candidate in candidates:
        await relay.publish('call-2', 'alice', 'bob', SignalType.ICE_CANDIDATE, candidate)
    await settle(bob)
    await relay.publish('call-2', 'alice', 'bob', SignalType.OFFER, {'type': 'offer', 'sdp': AUDIO_SDP})
    await accepting
    await settle(bob)

    adapter = bob.adapters.adapter
    assert adapter.applied_candidates == candidates
    assert not adapter.candidate_before_remote
    assert relay.published[-1].type == SignalType.ANSWER
    assert relay.published[-1].to_user_id == 'alice'


async def test_waiting_answerer_ignores_signals_from_strangers(make_controller, relay):
    bob = make_controller('bob')
    accepting = asyncio.ensure_future(bob.accept_incoming('call-3', False))
    await settle(bob)

    await relay.publish('call-3', 'mallory', 'bob', SignalType.HANGUP, {})
    await relay.publish('call-3', 'mallory', 'bob', SignalType.ICE_CANDIDATE, make_candidate(9))
    await relay.publish('call-3', 'alice', 'bob', SignalType.ICE_CANDIDATE, make_candidate(1))
    await settle(bob)
    assert bob.session.status == CallStatus.NEGOTIATING

    await relay.publish('call-3', 'alice', 'bob', SignalType.OFFER, {'type': 'offer', 'sdp': AUDIO_SDP})
    await accepting
    await settle(bob)

    # Once the offer names the caller, later strangers are filtered too
    await relay.publish('call-3', 'mallory', 'bob', SignalType.HANGUP, {})
    await settle(bob)

    assert bob.session.status == CallStatus.NEGOTIATING
    assert bob.session.remote_user_id == 'alice'
    assert bob.adapters.adapter.applied_candidates == [make_candidate(1)]
    assert relay.published[-2].type == SignalType.ANSWER


async def test_caller_hangup_before_offer_ends_the_accept(make_controller, relay):
    bob = make_controller('bob')
    accepting = asyncio.ensure_future(bob.accept_incoming('call-4', False))
    await settle(bob)

    await relay.publish('call-4', 'alice', 'bob', SignalType.HANGUP, {'reason': 'gave up'})
    await settle(bob)
    assert bob.session.status == CallStatus.NEGOTIATING

    await relay.publish('call-4', 'alice', 'bob', SignalType.OFFER, {'type': 'offer', 'sdp': AUDIO_SDP})
    await accepting
    await settle(bob)

    assert bob.session.status == CallStatus.FAILED
    assert bob.session.end_reason == 'gave up'
    assert bob.session.local_stream is None


async def test_stranger_hangup_is_ignored_when_offer_is_known(make_controller, relay):
    alice = make_controller('alice')
    bob = make_controller('bob')
    await alice.start_outgoing('bob', False)

    # The offer is in history but bob has not resolved it yet
    bob._create_session(alice.call_id, None, CallRole.ANSWERER, False)
    bob._subscribe()
    await relay.publish(alice.call_id, 'mallory', 'bob', SignalType.HANGUP, {})
    await settle(bob)

    assert bob.session.status == CallStatus.IDLE
    assert bob._unverified == []


async def test_accept_without_offer_times_out(make_controller):
    bob = make_controller('bob', negotiation_timeout=0.05)
    session = await asyncio.wait_for(bob.accept_incoming('missing-call', False), timeout=1)

    assert session.status == CallStatus.FAILED
    assert session.error == ErrorKind.NEGOTIATION_TIMEOUT
    assert bob.adapters.built == []


async def test_controller_cannot_be_reused(make_controller):
    alice = make_controller('alice')
    await alice.start_outgoing('bob', False)

    with pytest.raises(InvalidCallState):
        await alice.start_outgoing('carol', False)


# ============================================================================
# Decline
# ============================================================================

async def test_decline_never_touches_media(make_controller, relay):
    alice = make_controller('alice')
    bob = make_controller('bob')
    await alice.start_outgoing('bob', True)

    bob.decline(alice.call_id, remote_user_id='alice')
    assert bob.session.status == CallStatus.DECLINED
    assert bob.adapters.built == []

    await bob.wait_closed()
    await settle(alice)

    assert relay.published[-1].type == SignalType.DECLINE
    assert alice.session.status == CallStatus.DECLINED
    assert alice.session.end_reason == 'declined'
    assert alice.errors == []
    assert alice.adapters.adapter.tracks_stopped


async def test_decline_finds_caller_from_history(make_controller, relay):
    alice = make_controller('alice')
    bob = make_controller('bob')
    await alice.start_outgoing('bob', False)

    bob.decline(alice.call_id, reason='busy')
    await bob.wait_closed()
    await settle(alice)

    decline = relay.published[-1]
    assert decline.to_user_id == 'alice'
    assert decline.payload == {'reason': 'busy'}
    assert alice.session.status == CallStatus.DECLINED
    assert alice.session.end_reason == 'busy'


# ============================================================================
# Terminal finality
# ============================================================================

async def test_end_call_is_idempotent_and_final(make_controller, relay):
    alice = make_controller('alice')
    await alice.start_outgoing('bob', False)
    adapter = alice.adapters.adapter

    alice.end_call('first')
    alice.end_call('second')
    await alice.wait_closed()

    hangups = [s for s in relay.published if s.type == SignalType.HANGUP]
    assert len(hangups) == 1
    assert hangups[0].payload == {'reason': 'first'}

    # Late events change nothing
    await _answer_from_bob(relay, alice)
    adapter.emit_state('connected')
    await settle(alice)

    assert alice.session.status == CallStatus.ENDED
    assert alice.session.end_reason == 'first'
    assert alice.states == [CallStatus.REQUESTING, CallStatus.ENDED]
    assert adapter.remote_descriptions == []
    assert relay.subscriber_count(alice.call_id) == 0


async def test_end_call_while_media_is_opening_releases_it(make_controller, relay):
    alice = make_controller('alice', media_delay=0.05)
    starting = asyncio.ensure_future(alice.start_outgoing('bob', True))
    await asyncio.sleep(0.01)

    alice.end_call()
    session = await starting
    await alice.wait_closed()

    adapter = alice.adapters.adapter
    assert session.status == CallStatus.ENDED
    assert session.local_stream is None
    assert adapter.local_stream.stopped
    assert adapter.log == ['acquire']
    assert SignalType.OFFER not in [s.type for s in relay.published]


async def test_remote_hangup_while_answerer_media_is_opening(make_controller, relay):
    bob = make_controller('bob', media_delay=0.05)
    await relay.publish('call-5', 'alice', 'bob', SignalType.OFFER, {'type': 'offer', 'sdp': AUDIO_SDP})
    accepting = asyncio.ensure_future(bob.accept_incoming('call-5', False))
    await asyncio.sleep(0.01)

    await relay.publish('call-5', 'alice', 'bob', SignalType.HANGUP, {})
    session = await accepting
    await bob.wait_closed()

    adapter = bob.adapters.adapter
    assert session.status == CallStatus.FAILED
    assert session.local_stream is None
    assert adapter.local_stream.stopped
    assert adapter.remote_descriptions == []
    assert SignalType.ANSWER not in [s.type for s in relay.published]


class SlowMediaSource(SyntheticMediaSource):
    async def get_user_media(self, audio=True, video=False):
        await asyncio.sleep(0.05)
        return await super().get_user_media(audio, video)


async def test_tracks_opened_after_end_call_are_stopped(relay, fake_pc_factory):
    adapters = []

    def build_adapter():
        adapter = PeerConnectionAdapter(SlowMediaSource(), connection_factory=fake_pc_factory)
        adapters.append(adapter)
        return adapter

    # Slow hangup publish keeps the connection open past the end of capture
    relay.fail_publishes = 2
    alice = CallSessionController('alice', relay, build_adapter, publish_base_delay=0.1)
    starting = asyncio.ensure_future(alice.start_outgoing('bob', True))
    await asyncio.sleep(0.01)

    alice.end_call()
    session = await starting

    stream = adapters[0].local_stream
    assert session.status == CallStatus.ENDED
    assert session.local_stream is None
    assert [track.readyState for track in stream.tracks()] == ['ended', 'ended']

    await alice.wait_closed()
    assert session.local_stream is None
    assert fake_pc_factory.created[0].close_calls == 1


async def test_stale_timer_generation_is_ignored(make_controller):
    alice = make_controller('alice')
    await alice.start_outgoing('bob', False)

    alice.dispatch(TimerExpired('negotiation', generation=0))
    await settle(alice)

    assert alice.session.status == CallStatus.REQUESTING


# ============================================================================
# Failures
# ============================================================================

async def test_offerer_media_denied_publishes_nothing(make_controller, relay):
    alice = make_controller('alice', media_error=MediaAccessDenied('camera busy'))

    with pytest.raises(MediaAccessDenied):
        await alice.start_outgoing('bob', True)
    await alice.wait_closed()

    assert alice.session.status == CallStatus.FAILED
    assert alice.session.error == ErrorKind.MEDIA_ACCESS_DENIED
    assert alice.errors == [(ErrorKind.MEDIA_ACCESS_DENIED, 'camera busy')]
    assert relay.published == []


async def test_answerer_media_denied_notifies_caller(make_controller, relay):
    alice = make_controller('alice')
    bob = make_controller('bob', media_error=MediaAccessDenied('microphone refused'))
    await alice.start_outgoing('bob', False)

    with pytest.raises(MediaAccessDenied):
        await bob.accept_incoming(alice.call_id, False)
    await bob.wait_closed()
    await settle(alice)

    assert bob.session.status == CallStatus.FAILED
    assert relay.published[-1].type == SignalType.HANGUP
    assert alice.session.status == CallStatus.FAILED
    assert alice.session.error is None


async def test_publish_retries_then_succeeds(make_controller, relay):
    relay.fail_publishes = 2
    alice = make_controller('alice')

    await alice.start_outgoing('bob', False)

    assert alice.session.status == CallStatus.REQUESTING
    assert [s.type for s in relay.published] == [SignalType.OFFER]


async def test_publish_gives_up_after_retry_bound(make_controller, relay):
    relay.fail_publishes = 3
    alice = make_controller('alice')

    await alice.start_outgoing('bob', False)
    await alice.wait_closed()

    assert alice.session.status == CallStatus.FAILED
    assert alice.session.error == ErrorKind.SIGNAL_PUBLISH_FAILED
    assert relay.published == []
    assert alice.adapters.adapter.closed


async def test_negotiation_timeout_fails_and_notifies(make_controller, relay):
    alice = make_controller('alice', negotiation_timeout=0.05)
    await alice.start_outgoing('bob', False)

    await asyncio.sleep(0.1)
    await settle(alice)
    await alice.wait_closed()

    assert alice.session.status == CallStatus.FAILED
    assert alice.session.error == ErrorKind.NEGOTIATION_TIMEOUT
    assert alice.errors[0][0] == ErrorKind.NEGOTIATION_TIMEOUT
    assert [s.type for s in relay.published] == [SignalType.OFFER, SignalType.HANGUP]


async def test_connected_call_is_not_timed_out(make_controller, relay):
    alice = make_controller('alice', negotiation_timeout=0.05)
    await _connect_scripted(relay, alice)

    await asyncio.sleep(0.1)
    await settle(alice)

    assert alice.session.status == CallStatus.CONNECTED


async def test_disconnect_within_grace_recovers(make_controller, relay):
    alice = make_controller('alice', disconnect_grace=0.05)
    await _connect_scripted(relay, alice)
    adapter = alice.adapters.adapter

    adapter.emit_state('disconnected')
    await settle(alice)
    adapter.emit_state('connected')
    await asyncio.sleep(0.1)
    await settle(alice)

    assert alice.session.status == CallStatus.CONNECTED
    assert alice.states.count(CallStatus.CONNECTED) == 1


async def test_disconnect_past_grace_ends_with_transport_lost(make_controller, relay):
    alice = make_controller('alice', disconnect_grace=0.05)
    await _connect_scripted(relay, alice)

    alice.adapters.adapter.emit_state('disconnected')
    await asyncio.sleep(0.1)
    await settle(alice)

    assert alice.session.status == CallStatus.ENDED
    assert alice.session.error == ErrorKind.TRANSPORT_LOST
    assert alice.errors[0][0] == ErrorKind.TRANSPORT_LOST


async def test_transport_failure_before_connect_fails(make_controller, relay):
    alice = make_controller('alice')
    await alice.start_outgoing('bob', False)
    await _answer_from_bob(relay, alice)
    await settle(alice)

    alice.adapters.adapter.emit_state('failed')
    await settle(alice)

    assert alice.session.status == CallStatus.FAILED
    assert alice.session.error == ErrorKind.TRANSPORT_LOST


async def test_remote_hangup_after_connect_ends(make_controller, relay):
    alice = make_controller('alice')
    await _connect_scripted(relay, alice)

    await relay.publish(alice.call_id, 'bob', 'alice', SignalType.HANGUP, {'reason': 'bye'})
    await settle(alice)

    assert alice.session.status == CallStatus.ENDED
    assert alice.session.end_reason == 'bye'
    assert alice.session.error is None


async def test_remote_hangup_before_connect_fails(make_controller, relay):
    alice = make_controller('alice')
    await alice.start_outgoing('bob', False)

    await relay.publish(alice.call_id, 'bob', 'alice', SignalType.HANGUP, {})
    await settle(alice)

    assert alice.session.status == CallStatus.FAILED
    assert alice.session.end_reason == 'remote hangup'
    assert alice.errors == []


# ============================================================================
# Filtering
# ============================================================================

async def test_signals_for_someone_else_are_ignored(make_controller, relay):
    alice = make_controller('alice')
    await alice.start_outgoing('bob', False)

    await relay.publish(alice.call_id, 'bob', 'carol', SignalType.ANSWER, ANSWER)
    await relay.publish(alice.call_id, 'mallory', 'alice', SignalType.ANSWER, ANSWER)
    await relay.publish(alice.call_id, 'mallory', 'alice', SignalType.HANGUP, {})
    await settle(alice)

    assert alice.session.status == CallStatus.REQUESTING
    assert alice.adapters.adapter.remote_descriptions == []


# ============================================================================
# In-call controls
# ============================================================================

async def test_mute_and_video_flags(make_controller, relay):
    alice = make_controller('alice')
    await _connect_scripted(relay, alice, has_video=False)

    assert alice.mute_audio(True)
    assert alice.session.is_muted
    assert not alice.disable_video(True)
    assert not alice.session.is_video_off

    alice.end_call()
    assert not alice.mute_audio(False)


async def test_video_toggle_and_screen_share(make_controller, relay):
    alice = make_controller('alice')
    await _connect_scripted(relay, alice, has_video=True)
    adapter = alice.adapters.adapter

    assert alice.disable_video(True)
    assert alice.session.is_video_off and adapter.video_off

    assert await alice.start_screen_share()
    assert alice.session.is_screen_sharing
    assert await alice.stop_screen_share()
    assert not alice.session.is_screen_sharing

    assert await alice.start_screen_share()
    adapter._share_ended_cb()
    assert not alice.session.is_screen_sharing


async def test_controls_do_nothing_after_end_call(make_controller, relay):
    alice = make_controller('alice')
    await _connect_scripted(relay, alice, has_video=True)
    adapter = alice.adapters.adapter

    alice.end_call()

    assert not alice.mute_audio(True)
    assert not alice.disable_video(True)
    assert not await alice.start_screen_share()
    assert not await alice.stop_screen_share()
    assert not (adapter.muted or adapter.video_off or adapter.sharing)
    session = alice.session
    assert not (session.is_muted or session.is_video_off or session.is_screen_sharing)
    assert session.status == CallStatus.ENDED


async def test_refused_screen_share_keeps_call(make_controller, relay):
    alice = make_controller('alice')
    await _connect_scripted(relay, alice, has_video=True)
    alice.adapters.adapter.share_error = MediaAccessDenied('display refused')

    assert not await alice.start_screen_share()
    assert alice.session.status == CallStatus.CONNECTED
    assert alice.errors == [(ErrorKind.MEDIA_ACCESS_DENIED, 'display refused')]


async def test_remote_stream_reported_once(make_controller, relay):
    alice = make_controller('alice')
    streams = []
    alice.on_remote_stream = streams.append
    await _connect_scripted(relay, alice, has_video=True)
    adapter = alice.adapters.adapter

    adapter.emit_track('audio')
    adapter.emit_track('video')
    await settle(alice)

    assert streams == [adapter.remote_stream]
    assert alice.session.remote_stream is adapter.remote_stream


async def test_get_stats(make_controller, relay):
    alice = make_controller('alice')
    await _connect_scripted(relay, alice)

    stats = await alice.get_stats()

    assert stats['call']['status'] == 'connected'
    assert stats['connection'] == {'connection_state': 'connected'}


# ============================================================================
# Records
# ============================================================================

async def test_records_notable_transitions(make_controller, relay, sink):
    alice = make_controller('alice')
    await _connect_scripted(relay, alice)
    alice.end_call('done')

    assert sink.statuses(alice.call_id) == ['connected', 'ended']
    last = sink.records[-1]
    assert last.role == 'offerer'
    assert last.remote_user_id == 'bob'
    assert last.reason == 'done'


class ExplodingSink(CallRecordSink):
    def record(self, record):
        raise RuntimeError("disk full")


async def test_failing_record_sink_does_not_affect_call(make_controller, relay):
    alice = make_controller('alice', record_sink=ExplodingSink())
    await _connect_scripted(relay, alice)

    alice.end_call()

    assert alice.session.status == CallStatus.ENDED
    assert alice.states[-1] == CallStatus.ENDED
