"""
Host lobby tests driven through an in-memory transport.
"""
import sys
import os
import random

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from events import EventChannel, GameEvent
from fakes import FakeTransport, record_events
from host_lobby import HostLobby
from message_types import MsgType
from quiz_engine import ContentLoadError, QuestionsManager
from roster import SessionPhase
from transport import PeerConnectionError
import config

SHEETS_DIR = os.path.join(os.path.dirname(__file__), '..', 'sheets')


def make_lobby(host_plays=False, transport=None):
    transport = transport or FakeTransport()
    events = EventChannel()
    lobby = HostLobby(
        transport,
        player_name="Hana",
        questions_manager=QuestionsManager(SHEETS_DIR),
        events=events,
        host_plays=host_plays,
        feedback_delay=0,
        rng=random.Random(1),
    )
    return lobby, transport, events


async def open_lobby(**kwargs):
    lobby, transport, events = make_lobby(**kwargs)
    await lobby.start_hosting(["Animals"], "medium")
    return lobby, transport, events


def assert_broadcast_matches_roster(lobby, transport):
    last = transport.broadcast_payloads(MsgType.PLAYER_LIST_UPDATE)[-1]
    assert last["players"] == lobby.roster.snapshot()


# ---------------------------------------------------------------------------
# Opening the lobby
# ---------------------------------------------------------------------------

class TestStartHosting:
    @pytest.mark.asyncio
    async def test_opens_with_host_ready(self):
        lobby, transport, _ = await open_lobby()
        assert lobby.phase == SessionPhase.LOBBY
        assert lobby.host_id == transport.host_id
        assert lobby.roster.host.name == "Hana"
        assert lobby.roster.host.is_ready
        assert lobby.quiz_engine.get_question_count() == 5

    @pytest.mark.asyncio
    async def test_content_failure_never_opens_lobby(self):
        lobby, transport, _ = make_lobby()
        transport.initialize_as_host = None  # must not be reached
        with pytest.raises(ContentLoadError):
            await lobby.start_hosting(["DoesNotExist"])
        assert lobby.phase is None
        assert lobby.roster is None

    @pytest.mark.asyncio
    async def test_transport_failure_propagates(self):
        transport = FakeTransport()
        transport.fail_connect = True
        lobby, _, _ = make_lobby(transport=transport)
        with pytest.raises(PeerConnectionError):
            await lobby.start_hosting(["Animals"])
        assert lobby.phase is None

    @pytest.mark.asyncio
    async def test_invalid_settings_rejected(self):
        lobby, _, _ = make_lobby()
        with pytest.raises(ValueError):
            await lobby.start_hosting(["Animals"], "impossible")
        with pytest.raises(ValueError):
            await lobby.start_hosting([], "easy")

    @pytest.mark.asyncio
    async def test_cannot_host_twice(self):
        lobby, _, _ = await open_lobby()
        with pytest.raises(RuntimeError):
            await lobby.start_hosting(["Animals"])


# ---------------------------------------------------------------------------
# Roster handling
# ---------------------------------------------------------------------------

class TestLobbyRoster:
    @pytest.mark.asyncio
    async def test_connect_adds_not_ready_and_sends_game_info(self):
        lobby, transport, events = await open_lobby()
        log = record_events(events, GameEvent.ROSTER_CHANGED)
        await transport.connect("p1", "Alice")
        assert lobby.roster.get("p1").name == "Alice"
        assert not lobby.roster.get("p1").is_ready
        info = transport.payloads(MsgType.GAME_INFO, "p1")
        assert len(info) == 1
        assert info[0]["difficulty"] == "medium"
        assert info[0]["settings"] == {"selection": ["Animals"], "difficulty": "medium"}
        assert sum(len(s["questions"]) for s in info[0]["questionsData"]["sheets"]) == 5
        assert_broadcast_matches_roster(lobby, transport)
        assert log[-1][1]["players"] == lobby.roster.snapshot()

    @pytest.mark.asyncio
    async def test_blank_name_gets_default(self):
        lobby, transport, _ = await open_lobby()
        await transport.connect("p1", "  ")
        assert lobby.roster.get("p1").name == "Player 1"

    @pytest.mark.asyncio
    async def test_join_request_and_rename(self):
        lobby, transport, _ = await open_lobby()
        await transport.connect("p1", "")
        await transport.deliver("p1", MsgType.C_REQUEST_JOIN, {"name": "Alice"})
        assert lobby.roster.get("p1").name == "Alice"
        await transport.deliver("p1", MsgType.C_UPDATE_NAME, {"name": "<b>Ally</b>"})
        assert lobby.roster.get("p1").name == "Ally"
        assert_broadcast_matches_roster(lobby, transport)

    @pytest.mark.asyncio
    async def test_ready_resends_game_info(self):
        lobby, transport, _ = await open_lobby()
        await transport.connect("p1", "Alice")
        await transport.deliver("p1", MsgType.CLIENT_READY, {})
        await transport.deliver("p1", MsgType.CLIENT_READY, {})
        assert lobby.roster.get("p1").is_ready
        assert len(transport.payloads(MsgType.GAME_INFO, "p1")) == 3
        assert_broadcast_matches_roster(lobby, transport)

    @pytest.mark.asyncio
    async def test_unready(self):
        lobby, transport, _ = await open_lobby()
        await transport.connect("p1", "Alice")
        await transport.deliver("p1", MsgType.CLIENT_READY, {"isReady": True})
        await transport.deliver("p1", MsgType.CLIENT_READY, {"isReady": False})
        assert not lobby.roster.get("p1").is_ready

    @pytest.mark.asyncio
    async def test_disconnect_removes_and_rebroadcasts(self):
        lobby, transport, _ = await open_lobby()
        await transport.connect("p1", "Alice")
        await transport.connect("p2", "Bob")
        await transport.drop("p1")
        assert "p1" not in lobby.roster
        assert_broadcast_matches_roster(lobby, transport)

    @pytest.mark.asyncio
    async def test_player_left_message(self):
        lobby, transport, _ = await open_lobby()
        await transport.connect("p1", "Alice")
        await transport.deliver("p1", MsgType.PLAYER_LEFT)
        assert "p1" not in lobby.roster
        assert transport.disconnected == ["p1"]

    @pytest.mark.asyncio
    async def test_roster_broadcast_tracks_every_mutation(self):
        lobby, transport, _ = await open_lobby()
        steps = [
            transport.connect("a", "A"),
            transport.connect("b", "B"),
            transport.deliver("a", MsgType.C_UPDATE_NAME, {"name": "Anna"}),
            transport.deliver("b", MsgType.CLIENT_READY),
            transport.drop("a"),
            transport.connect("c", "C"),
            transport.deliver("c", MsgType.PLAYER_LEFT),
        ]
        for step in steps:
            await step
            assert_broadcast_matches_roster(lobby, transport)

    @pytest.mark.asyncio
    async def test_session_full(self, monkeypatch):
        monkeypatch.setattr(config, "MAX_PLAYERS_PER_SESSION", 2)
        lobby, transport, _ = await open_lobby()
        await transport.connect("p1", "Alice")
        await transport.connect("p2", "Bob")
        assert "p2" not in lobby.roster
        assert transport.payloads(MsgType.ERROR, "p2") == [{"message": "Session is full"}]
        assert transport.disconnected == ["p2"]


# ---------------------------------------------------------------------------
# Discarded traffic
# ---------------------------------------------------------------------------

class TestLobbyDiscards:
    @pytest.mark.asyncio
    async def test_unknown_sender_ignored(self):
        lobby, transport, _ = await open_lobby()
        await transport.deliver("ghost", MsgType.C_UPDATE_NAME, {"name": "Boo"})
        assert "ghost" not in lobby.roster

    @pytest.mark.asyncio
    async def test_malformed_message_ignored(self):
        lobby, transport, _ = await open_lobby()
        await transport.connect("p1", "Alice")
        before = len(transport.sent)
        await transport.handler.on_message({"type": "c_updateName", "payload": {"name": ""}}, "p1")
        await transport.handler.on_message({"type": "bogus"}, "p1")
        await transport.handler.on_message("not a dict", "p1")
        assert len(transport.sent) == before
        assert lobby.roster.get("p1").name == "Alice"

    @pytest.mark.asyncio
    async def test_host_only_message_from_client_ignored(self):
        lobby, transport, _ = await open_lobby()
        await transport.connect("p1", "Alice")
        before = len(transport.sent)
        await transport.deliver("p1", MsgType.GAME_START, {"players": {}})
        assert len(transport.sent) == before
        assert lobby.phase == SessionPhase.LOBBY

    @pytest.mark.asyncio
    async def test_game_messages_in_lobby_ignored(self):
        lobby, transport, _ = await open_lobby()
        await transport.connect("p1", "Alice")
        await transport.deliver("p1", MsgType.C_SCORE_UPDATE, {"score": 500})
        assert lobby.roster.get("p1").score == 0


# ---------------------------------------------------------------------------
# Starting and leaving
# ---------------------------------------------------------------------------

class TestStartGame:
    @pytest.mark.asyncio
    async def test_needs_a_client(self):
        lobby, _, _ = await open_lobby()
        assert await lobby.start_game() is False
        assert lobby.phase == SessionPhase.LOBBY

    @pytest.mark.asyncio
    async def test_needs_everyone_ready(self):
        lobby, transport, _ = await open_lobby()
        await transport.connect("p1", "Alice")
        await transport.connect("p2", "Bob")
        await transport.deliver("p1", MsgType.CLIENT_READY)
        assert await lobby.start_game() is False
        await transport.deliver("p2", MsgType.CLIENT_READY)
        assert await lobby.start_game() is True
        assert lobby.phase == SessionPhase.ACTIVE
        assert len(transport.broadcast_payloads(MsgType.GAME_START)) == 1

    @pytest.mark.asyncio
    async def test_start_only_once(self):
        lobby, transport, _ = await open_lobby()
        await transport.connect("p1", "Alice")
        await transport.deliver("p1", MsgType.CLIENT_READY)
        assert await lobby.start_game()
        assert await lobby.start_game() is False
        assert len(transport.broadcast_payloads(MsgType.GAME_START)) == 1

    @pytest.mark.asyncio
    async def test_joins_refused_after_start(self):
        lobby, transport, _ = await open_lobby()
        await transport.connect("p1", "Alice")
        await transport.deliver("p1", MsgType.CLIENT_READY)
        await lobby.start_game()
        await transport.connect("late", "Late")
        assert "late" not in lobby.roster
        assert transport.payloads(MsgType.ERROR, "late") == [{"message": "Game already started"}]
        assert "late" in transport.disconnected

    @pytest.mark.asyncio
    async def test_lobby_messages_ignored_after_start(self):
        lobby, transport, _ = await open_lobby()
        await transport.connect("p1", "Alice")
        await transport.deliver("p1", MsgType.CLIENT_READY)
        await lobby.start_game()
        await transport.deliver("p1", MsgType.C_UPDATE_NAME, {"name": "Renamed"})
        assert lobby.roster.get("p1").name == "Alice"

    @pytest.mark.asyncio
    async def test_disconnects_still_honored_after_start(self):
        lobby, transport, _ = await open_lobby()
        await transport.connect("p1", "Alice")
        await transport.connect("p2", "Bob")
        for pid in ("p1", "p2"):
            await transport.deliver(pid, MsgType.CLIENT_READY)
        await lobby.start_game()
        await transport.drop("p1")
        assert "p1" not in lobby.roster
        assert lobby.game_session.departed == ["Alice"]


class BrokenBroadcastTransport(FakeTransport):
    def __init__(self):
        super().__init__()
        self.fail_broadcasts = False

    async def broadcast_message(self, msg_type, payload=None, exclude_peer_ids=()):
        if self.fail_broadcasts:
            raise ConnectionResetError("link gone")
        await super().broadcast_message(msg_type, payload, exclude_peer_ids)


class TestLeave:
    @pytest.mark.asyncio
    async def test_leave_notifies_and_closes(self):
        lobby, transport, events = await open_lobby()
        log = record_events(events, GameEvent.PHASE_CHANGED)
        await transport.connect("p1", "Alice")
        await lobby.leave()
        assert transport.payloads(MsgType.H_SESSION_CLOSED, "p1") == [{"reason": "Host ended the session"}]
        assert transport.closed
        assert lobby.phase == SessionPhase.CLOSED
        assert log[-1][1]["phase"] == SessionPhase.CLOSED

    @pytest.mark.asyncio
    async def test_leave_during_game_stops_host_game(self):
        lobby, transport, _ = await open_lobby(host_plays=True)
        await transport.connect("p1", "Alice")
        await transport.deliver("p1", MsgType.CLIENT_READY)
        await lobby.start_game()
        host_game = lobby.game_session.host_game
        await lobby.leave()
        assert host_game.is_finished
        assert lobby.phase == SessionPhase.CLOSED
        assert transport.closed

    @pytest.mark.asyncio
    async def test_leave_twice_is_noop(self):
        lobby, transport, _ = await open_lobby()
        await lobby.leave()
        sent = len(transport.broadcasts)
        await lobby.leave()
        assert len(transport.broadcasts) == sent

    @pytest.mark.asyncio
    async def test_leave_closes_even_if_notice_fails(self):
        transport = BrokenBroadcastTransport()
        lobby, _, _ = make_lobby(host_plays=True, transport=transport)
        await lobby.start_hosting(["Animals"], "medium")
        await transport.connect("p1", "Alice")
        await transport.deliver("p1", MsgType.CLIENT_READY)
        await lobby.start_game()
        host_game = lobby.game_session.host_game
        transport.fail_broadcasts = True
        await lobby.leave()
        assert host_game.is_finished
        assert lobby.phase == SessionPhase.CLOSED
        assert transport.closed
