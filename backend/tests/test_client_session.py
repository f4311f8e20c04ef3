"""
Client session tests: sender filtering, progress reporting and the host's
authority over final results.
"""
import sys
import os
import random

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from client_session import ClientSession
from events import EventChannel, GameEvent
from fakes import FakeTransport, make_quiz_engine, record_events
from message_types import MsgType, encode_payload
from roster import Roster, SessionPhase
from transport import PeerConnectionError

HOST = "HOST01"


def make_roster():
    roster = Roster(HOST, "Hana")
    roster.add("me", "Bob")
    return roster


def game_info(num_questions=3):
    return encode_payload(
        MsgType.GAME_INFO,
        questions_data=make_quiz_engine(num_questions).to_questions_data(),
        difficulty="medium",
        players=make_roster().snapshot(),
        settings={"selection": ["Test"], "difficulty": "medium"},
    )


async def joined_client(**kwargs):
    transport = FakeTransport(peer_id="me")
    events = EventChannel()
    session = ClientSession(transport, "Bob", events=events, feedback_delay=0, rng=random.Random(2), **kwargs)
    await session.join(HOST)
    return session, transport, events


async def playing_client(num_questions=3):
    session, transport, events = await joined_client()
    await transport.deliver(HOST, MsgType.GAME_INFO, game_info(num_questions))
    await transport.deliver(HOST, MsgType.GAME_START, {"players": make_roster().snapshot()})
    return session, transport, events


async def answer_correctly(session):
    game = session.game
    return await session.submit_answer(game.quiz_engine.get_correct_answer(game.current_question_index))


# ---------------------------------------------------------------------------
# Joining and lobby
# ---------------------------------------------------------------------------

class TestJoin:
    @pytest.mark.asyncio
    async def test_join_sends_request(self):
        session, transport, _ = await joined_client()
        assert session.host_id == HOST
        assert session.phase == SessionPhase.LOBBY
        assert transport.payloads(MsgType.C_REQUEST_JOIN, HOST) == [{"name": "Bob"}]

    @pytest.mark.asyncio
    async def test_unreachable_host_raises(self):
        transport = FakeTransport()
        transport.fail_connect = True
        session = ClientSession(transport, "Bob")
        with pytest.raises(PeerConnectionError):
            await session.join(HOST)
        assert session.phase is None
        assert transport.sent == []

    def test_invalid_name_rejected(self):
        with pytest.raises(ValueError):
            ClientSession(FakeTransport(), "")

    @pytest.mark.asyncio
    async def test_ready_and_rename(self):
        session, transport, _ = await joined_client()
        assert await session.set_ready()
        assert await session.update_name("<i>Bobby</i>")
        assert transport.payloads(MsgType.CLIENT_READY, HOST) == [{"isReady": True}]
        assert transport.payloads(MsgType.C_UPDATE_NAME, HOST) == [{"name": "Bobby"}]
        assert session.player_name == "Bobby"

    @pytest.mark.asyncio
    async def test_game_info_stored_and_published(self):
        session, transport, events = await joined_client()
        log = record_events(events, GameEvent.GAME_INFO_RECEIVED)
        await transport.deliver(HOST, MsgType.GAME_INFO, game_info(4))
        assert session.game_info["difficulty"] == "medium"
        assert session.settings == {"selection": ["Test"], "difficulty": "medium"}
        assert list(session.players) == [HOST, "me"]
        assert log[0][1]["question_count"] == 4

    @pytest.mark.asyncio
    async def test_game_info_without_questions_reported(self):
        session, transport, events = await joined_client()
        log = record_events(events, GameEvent.ERROR)
        payload = game_info()
        payload["questionsData"] = {"sheets": []}
        await transport.deliver(HOST, MsgType.GAME_INFO, payload)
        assert session.game_info is None
        assert len(log) == 1

    @pytest.mark.asyncio
    async def test_player_list_replaces_roster(self):
        session, transport, events = await joined_client()
        log = record_events(events, GameEvent.ROSTER_CHANGED)
        roster = make_roster()
        roster.add("p2", "Cleo")
        await transport.deliver(HOST, MsgType.PLAYER_LIST_UPDATE, {"players": roster.snapshot()})
        assert session.players == roster.snapshot()
        assert log[0][1]["players"] == roster.snapshot()

    @pytest.mark.asyncio
    async def test_game_start_without_game_info_cannot_play(self):
        session, transport, events = await joined_client()
        log = record_events(events, GameEvent.ERROR)
        await transport.deliver(HOST, MsgType.GAME_START, {"players": make_roster().snapshot()})
        assert session.game is None
        assert session.phase == SessionPhase.LOBBY
        assert len(log) == 1


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------

class TestMessageFiltering:
    @pytest.mark.asyncio
    async def test_non_host_sender_discarded(self):
        session, transport, _ = await joined_client()
        await transport.deliver("impostor", MsgType.GAME_INFO, game_info())
        assert session.game_info is None

    @pytest.mark.asyncio
    async def test_messages_before_join_discarded(self):
        transport = FakeTransport()
        session = ClientSession(transport, "Bob")
        await transport.deliver(HOST, MsgType.GAME_INFO, game_info())
        assert session.game_info is None

    @pytest.mark.asyncio
    async def test_spoofed_game_over_does_not_end_game(self):
        session, transport, _ = await playing_client()
        await transport.deliver("impostor", MsgType.GAME_OVER, {"results": {"players": []}})
        assert session.phase == SessionPhase.ACTIVE
        assert session.results is None
        session.game.destroy()

    @pytest.mark.asyncio
    async def test_message_invalid_for_phase_discarded(self):
        session, transport, _ = await joined_client()
        await transport.deliver(HOST, MsgType.GAME_OVER, {"results": {}})
        assert session.phase == SessionPhase.LOBBY
        await transport.deliver(HOST, MsgType.H_REMATCH_ACCEPTED)
        assert session.phase == SessionPhase.LOBBY

    @pytest.mark.asyncio
    async def test_client_bound_types_from_host_discarded(self):
        session, transport, _ = await joined_client()
        await transport.deliver(HOST, MsgType.C_SCORE_UPDATE, {"score": 1})
        assert session.phase == SessionPhase.LOBBY

    @pytest.mark.asyncio
    async def test_malformed_message_discarded(self):
        session, transport, _ = await joined_client()
        await transport.handler.on_message({"type": "game_info", "payload": {"bad": 1}}, HOST)
        await transport.handler.on_message({"nope": True}, HOST)
        assert session.game_info is None


# ---------------------------------------------------------------------------
# Playing
# ---------------------------------------------------------------------------

class TestPlaying:
    @pytest.mark.asyncio
    async def test_game_start_begins_local_loop(self):
        session, _, events = await playing_client()
        assert session.phase == SessionPhase.ACTIVE
        assert session.game.current_question_index == 0
        session.game.destroy()

    @pytest.mark.asyncio
    async def test_score_update_after_every_answer(self):
        session, transport, _ = await playing_client(num_questions=3)
        await answer_correctly(session)
        await session.submit_answer("definitely wrong")
        updates = [p["score"] for p in transport.payloads(MsgType.C_SCORE_UPDATE, HOST)]
        assert len(updates) == 2
        assert updates[0] > 0
        assert updates[1] == updates[0]
        assert updates == sorted(updates)
        session.game.destroy()

    @pytest.mark.asyncio
    async def test_client_finished_sent_exactly_once(self):
        session, transport, events = await playing_client(num_questions=2)
        log = record_events(events, GameEvent.LOCAL_PLAYER_FINISHED)
        await answer_correctly(session)
        await answer_correctly(session)
        await session.game.finish_game()
        await session.submit_answer("late")
        finished = transport.payloads(MsgType.CLIENT_FINISHED, HOST)
        assert finished == [{"score": session.score}]
        assert len(log) == 1
        types = transport.types_sent()
        assert types.index(MsgType.CLIENT_FINISHED.value) > max(
            i for i, t in enumerate(types) if t == MsgType.C_SCORE_UPDATE.value
        )

    @pytest.mark.asyncio
    async def test_final_question_timeout_sends_finish_once(self):
        session, transport, _ = await playing_client(num_questions=2)
        await answer_correctly(session)
        assert session.game.timer.is_running
        await session.game.handle_time_up()
        assert transport.payloads(MsgType.CLIENT_FINISHED, HOST) == [{"score": session.score}]
        assert session.game.is_finished
        assert not session.game.timer.is_running

        sent_before = len(transport.sent)
        await session.game.handle_time_up()
        assert await session.submit_answer("late") is False
        assert len(transport.sent) == sent_before

    @pytest.mark.asyncio
    async def test_scores_update_from_host(self):
        session, transport, _ = await playing_client()
        roster = make_roster()
        roster.update_score(HOST, 90)
        await transport.deliver(HOST, MsgType.H_PLAYER_SCORES_UPDATE, {"players": roster.snapshot()})
        assert session.players[HOST]["score"] == 90
        session.game.destroy()

    @pytest.mark.asyncio
    async def test_game_over_freezes_and_surfaces_host_results(self):
        session, transport, events = await playing_client(num_questions=3)
        log = record_events(events, GameEvent.GAME_FINISHED)
        await answer_correctly(session)
        score = session.score
        results = {"players": [{"rank": 1, "peerId": HOST, "name": "Hana", "score": 999, "isHost": True}],
                   "winner": "Hana", "winnerId": HOST, "difficulty": "medium", "gameName": "Test", "departed": []}
        await transport.deliver(HOST, MsgType.GAME_OVER, {"results": results})
        assert session.phase == SessionPhase.OVER
        assert session.results == results
        assert log[0][1]["results"] == results
        assert log[0][1]["local_player_score"] == score

        sent_before = len(transport.sent)
        assert await session.submit_answer("anything") is False
        await session.game.finish_game()
        assert len(transport.sent) == sent_before


# ---------------------------------------------------------------------------
# Rematch and session end
# ---------------------------------------------------------------------------

class BrokenSendTransport(FakeTransport):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.fail_sends = False

    async def send_to_peer(self, peer_id, msg_type, payload=None) -> bool:
        if self.fail_sends:
            raise ConnectionResetError("link gone")
        return await super().send_to_peer(peer_id, msg_type, payload)


async def finished_client():
    session, transport, events = await playing_client(num_questions=1)
    await answer_correctly(session)
    await transport.deliver(HOST, MsgType.GAME_OVER, {"results": {"players": []}})
    return session, transport, events


class TestRematchAndEnd:
    @pytest.mark.asyncio
    async def test_rematch_request_only_after_game(self):
        session, transport, _ = await joined_client()
        assert await session.request_rematch() is False
        assert transport.payloads(MsgType.C_REQUEST_REMATCH) == []

    @pytest.mark.asyncio
    async def test_rematch_cycle(self):
        session, transport, events = await finished_client()
        log = record_events(events, GameEvent.REMATCH_ACCEPTED)
        assert await session.request_rematch()
        assert session.phase == SessionPhase.AWAITING_REMATCH_QUORUM
        await transport.deliver(HOST, MsgType.H_REMATCH_ACCEPTED)
        assert session.phase == SessionPhase.LOBBY
        assert session.game is None
        assert len(log) == 1
        await transport.deliver(HOST, MsgType.GAME_START, {"players": make_roster().snapshot()})
        assert session.phase == SessionPhase.ACTIVE
        assert session.score == 0
        assert session.game.current_question_index == 0
        session.game.destroy()

    @pytest.mark.asyncio
    async def test_session_closed_by_host(self):
        session, transport, events = await playing_client()
        log = record_events(events, GameEvent.HOST_LOST)
        game = session.game
        await transport.deliver(HOST, MsgType.H_SESSION_CLOSED, {"reason": "bye"})
        assert session.phase == SessionPhase.CLOSED
        assert game.is_finished
        assert log == [(GameEvent.HOST_LOST, {"reason": "bye"})]
        assert transport.closed

    @pytest.mark.asyncio
    async def test_host_disconnect_is_terminal(self):
        session, transport, events = await playing_client()
        log = record_events(events, GameEvent.HOST_LOST)
        await transport.drop(HOST, "timeout")
        assert session.phase == SessionPhase.CLOSED
        assert log[0][1]["reason"] == "timeout"
        await transport.drop(HOST, "closed")
        assert len(log) == 1

    @pytest.mark.asyncio
    async def test_other_peer_disconnect_ignored(self):
        session, transport, _ = await joined_client()
        await transport.drop("someone", "closed")
        assert session.phase == SessionPhase.LOBBY

    @pytest.mark.asyncio
    async def test_leave_is_best_effort_and_local(self):
        session, transport, _ = await playing_client()
        game = session.game
        await session.leave()
        assert transport.payloads(MsgType.PLAYER_LEFT, HOST) == [{}]
        assert game.is_finished
        assert session.phase == SessionPhase.CLOSED
        assert transport.closed
        assert await session.set_ready() is False

    @pytest.mark.asyncio
    async def test_leave_cleans_up_when_notice_fails(self):
        transport = BrokenSendTransport(peer_id="me")
        session = ClientSession(transport, "Bob", feedback_delay=0, rng=random.Random(2))
        await session.join(HOST)
        await transport.deliver(HOST, MsgType.GAME_INFO, game_info())
        await transport.deliver(HOST, MsgType.GAME_START, {"players": make_roster().snapshot()})
        game = session.game
        transport.fail_sends = True
        await session.leave()
        assert game.is_finished
        assert not game.timer.is_running
        assert session.phase == SessionPhase.CLOSED
        assert transport.closed

    @pytest.mark.asyncio
    async def test_host_error_published(self):
        session, transport, events = await joined_client()
        log = record_events(events, GameEvent.ERROR)
        await transport.deliver(HOST, MsgType.ERROR, {"message": "Session is full"})
        assert log[0][1]["message"] == "Session is full"
