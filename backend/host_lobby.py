"""
Host-side lobby: owns the roster from the moment hosting starts, answers
joins and ready signals, and hands the session over to ``HostGameSession``
when the host starts the game. It stays the transport's handler for the
whole session and forwards traffic to the game session after the hand-off.
"""
from typing import List, Optional
import logging
import random

import config
from events import EventChannel, GameEvent
from host_session import HostGameSession
from message_types import (
    CLIENT_TO_HOST, HOST_ACCEPTS, GameSettings, MsgType, ProtocolError,
    accepts, decode_message, encode_payload, sanitize_name,
)
from quiz_engine import QuestionsManager, QuizEngine
from roster import Roster, SessionPhase
from transport import Transport

logger = logging.getLogger(__name__)


class HostLobby:
    def __init__(self, transport: Transport, player_name: str = "Host",
                 questions_manager: Optional[QuestionsManager] = None,
                 events: Optional[EventChannel] = None,
                 host_plays: bool = config.HOST_PLAYS,
                 feedback_delay: float = config.ANSWER_FEEDBACK_DELAY,
                 rng: Optional[random.Random] = None):
        self.transport = transport
        self.player_name = player_name
        self.questions_manager = questions_manager
        self.events = events or EventChannel()
        self.host_plays = host_plays
        self.feedback_delay = feedback_delay
        self.rng = rng

        self.host_id: Optional[str] = None
        self.roster: Optional[Roster] = None
        self.settings: dict = {}
        self.quiz_engine: Optional[QuizEngine] = None
        self.questions_data: dict = {}
        self.game_session: Optional[HostGameSession] = None
        self._phase: Optional[SessionPhase] = None
        transport.set_handler(self)

    @property
    def phase(self) -> Optional[SessionPhase]:
        if self.game_session is not None:
            return self.game_session.phase
        return self._phase

    def _set_phase(self, phase: SessionPhase):
        logger.info("Lobby phase -> %s", phase.value)
        self._phase = phase
        self.events.publish(GameEvent.PHASE_CHANGED, phase=phase)

    async def start_hosting(self, selection: List[str], difficulty: str = config.DEFAULT_DIFFICULTY) -> str:
        """
        Load the questions, then open the lobby. Returns the host id clients
        connect with.

        Raises ``ContentLoadError`` if the selection yields no questions and
        ``PeerConnectionError`` if the transport can't start; in both cases
        the lobby never opens.
        """
        if self._phase is not None:
            raise RuntimeError("This lobby is already hosting")
        settings = GameSettings(selection=selection, difficulty=difficulty)
        self.settings = settings.model_dump(by_alias=True)

        self.quiz_engine = QuizEngine(self.questions_manager, rng=self.rng)
        await self.quiz_engine.load_questions(settings.selection, settings.difficulty)
        self.questions_data = self.quiz_engine.to_questions_data()

        self.host_id = await self.transport.initialize_as_host()
        self.roster = Roster(self.host_id, self.player_name)
        self._set_phase(SessionPhase.LOBBY)
        self.events.publish(GameEvent.ROSTER_CHANGED, players=self.roster.snapshot())
        logger.info("Lobby open as %s with %d questions", self.host_id, self.quiz_engine.get_question_count())
        return self.host_id

    def _game_info(self) -> dict:
        return encode_payload(
            MsgType.GAME_INFO,
            questions_data=self.questions_data,
            difficulty=self.settings["difficulty"],
            players=self.roster.snapshot(),
            settings=self.settings,
        )

    async def _broadcast_roster(self):
        players = self.roster.snapshot()
        await self.transport.broadcast_message(
            MsgType.PLAYER_LIST_UPDATE, encode_payload(MsgType.PLAYER_LIST_UPDATE, players=players)
        )
        self.events.publish(GameEvent.ROSTER_CHANGED, players=players)

    async def _refuse(self, peer_id: str, reason: str):
        logger.warning("Refusing peer %s: %s", peer_id, reason)
        await self.transport.send_to_peer(peer_id, MsgType.ERROR, encode_payload(MsgType.ERROR, message=reason))
        await self.transport.disconnect_peer(peer_id)

    # --- Transport handler ---

    async def on_client_connected(self, peer_id: str, player_name: str):
        if self.phase != SessionPhase.LOBBY:
            await self._refuse(peer_id, "Game already started")
            return
        if len(self.roster) >= config.MAX_PLAYERS_PER_SESSION:
            await self._refuse(peer_id, "Session is full")
            return
        name = sanitize_name(player_name or "")[:config.MAX_NICKNAME_LENGTH] or f"Player {len(self.roster)}"
        self.roster.add(peer_id, name)
        await self.transport.send_to_peer(peer_id, MsgType.GAME_INFO, self._game_info())
        await self._broadcast_roster()

    async def on_client_disconnected(self, peer_id: str, reason: str):
        if self.game_session is not None:
            await self.game_session.handle_disconnect(peer_id, reason)
            return
        if self.roster is not None and self.roster.remove(peer_id):
            logger.info("Peer %s left the lobby (%s)", peer_id, reason)
            await self._broadcast_roster()

    async def on_message(self, msg: dict, sender: str):
        try:
            message = decode_message(msg)
        except ProtocolError as e:
            logger.warning("Discarding message from %s: %s", sender, e)
            return
        if message.type not in CLIENT_TO_HOST:
            logger.warning("Discarding host-only message %s from %s", message.type.value, sender)
            return
        if self.game_session is not None:
            await self.game_session.handle_message(message, sender)
            return
        if self.roster is None or sender not in self.roster:
            logger.warning("Discarding %s from unknown peer %s", message.type.value, sender)
            return
        if not accepts(HOST_ACCEPTS, self.phase, message.type):
            logger.warning("Discarding %s from %s in phase %s", message.type.value, sender, self.phase)
            return

        if message.type in (MsgType.C_REQUEST_JOIN, MsgType.C_UPDATE_NAME):
            if self.roster.rename(sender, message.payload.name):
                await self._broadcast_roster()
        elif message.type == MsgType.CLIENT_READY:
            self.roster.set_ready(sender, message.payload.is_ready)
            # Resent on every ready signal so a reconnecting peer gets the content again.
            await self.transport.send_to_peer(sender, MsgType.GAME_INFO, self._game_info())
            await self._broadcast_roster()
        elif message.type == MsgType.PLAYER_LEFT:
            self.roster.remove(sender)
            await self.transport.disconnect_peer(sender)
            await self._broadcast_roster()

    async def on_connection_failed(self, error: Exception, peer_id: Optional[str] = None):
        logger.error("Connection failure for peer %s: %s", peer_id, error)
        self.events.publish(GameEvent.ERROR, message=str(error), context="transport")

    # --- Host actions ---

    def can_start(self) -> bool:
        return (
            self.phase == SessionPhase.LOBBY
            and len(self.roster.client_ids()) > 0
            and self.roster.all_clients_ready()
        )

    async def start_game(self) -> bool:
        if not self.can_start():
            logger.warning("Cannot start: phase=%s, clients=%d, all ready=%s",
                           self.phase, len(self.roster.client_ids()) if self.roster else 0,
                           self.roster.all_clients_ready() if self.roster else False)
            return False
        self.game_session = HostGameSession(
            self.transport, self.roster, self.quiz_engine, self.settings,
            events=self.events, host_plays=self.host_plays, feedback_delay=self.feedback_delay,
        )
        await self.game_session.start()
        return True

    async def submit_answer(self, answer) -> bool:
        if self.game_session is None:
            return False
        return await self.game_session.submit_answer(answer)

    async def leave(self):
        """End the session: tell clients (best effort) and shut the transport down."""
        if self.phase in (None, SessionPhase.CLOSED):
            return
        try:
            await self.transport.broadcast_message(
                MsgType.H_SESSION_CLOSED, encode_payload(MsgType.H_SESSION_CLOSED, reason="Host ended the session")
            )
        except Exception as e:
            logger.warning("Could not notify clients that session %s is closing: %s", self.host_id, e)
        if self.game_session is not None:
            self.game_session.end()
        else:
            self._set_phase(SessionPhase.CLOSED)
        await self.transport.close()
        logger.info("Session %s closed", self.host_id)
