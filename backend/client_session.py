"""
Client side of a multiplayer session.

The client trusts exactly one peer, the host it joined. It mirrors the host's
roster, runs its own quiz loop once the game starts and reports progress, but
never ranks players itself: final results come from the host's GAME_OVER.
"""
from typing import Dict, Optional
import logging
import random

import config
from events import EventChannel, GameEvent
from game_modes import BaseGameMode
from message_types import (
    CLIENT_ACCEPTS, HOST_TO_CLIENT, Message, MsgType, NamePayload, ProtocolError,
    accepts, decode_message, encode_payload,
)
from quiz_engine import ContentLoadError, QuizEngine
from roster import SessionPhase
from transport import Transport

logger = logging.getLogger(__name__)


class MultiplayerClientGame(BaseGameMode):
    """Local quiz loop that reports every score change and its finish to the host."""
    mode = "multiplayer_client"

    def __init__(self, session: "ClientSession", settings: dict, quiz_engine: QuizEngine,
                 player_name: str, events: EventChannel,
                 feedback_delay: float = config.ANSWER_FEEDBACK_DELAY):
        super().__init__(settings, quiz_engine, player_name, events, feedback_delay)
        self.session = session
        self.timer = self._create_timer()
        self.finish_sent = False

    async def _after_answer_checked(self, is_correct: bool, score_delta: int):
        await super()._after_answer_checked(is_correct, score_delta)
        await self.session.send_message(MsgType.C_SCORE_UPDATE, score=self.score)

    async def _before_finish(self):
        await super()._before_finish()
        if not self.finish_sent:
            self.finish_sent = True
            await self.session.send_message(MsgType.CLIENT_FINISHED, score=self.score)

    def _after_finish(self, results: dict):
        # The overall result arrives later with GAME_OVER.
        self.events.publish(GameEvent.LOCAL_PLAYER_FINISHED, score=self.score, results=results)


class ClientSession:
    def __init__(self, transport: Transport, player_name: str = "Player",
                 events: Optional[EventChannel] = None,
                 feedback_delay: float = config.ANSWER_FEEDBACK_DELAY,
                 rng: Optional[random.Random] = None):
        self.transport = transport
        self.player_name = NamePayload(name=player_name).name
        self.events = events or EventChannel()
        self.feedback_delay = feedback_delay
        self.rng = rng

        self.phase: Optional[SessionPhase] = None
        self.host_id: Optional[str] = None
        self.peer_id: Optional[str] = None
        self.players: Dict[str, dict] = {}
        self.settings: dict = {}
        self.game_info: Optional[dict] = None
        self.game: Optional[MultiplayerClientGame] = None
        self.results: Optional[dict] = None
        transport.set_handler(self)

        self._handlers = {
            MsgType.GAME_INFO: self._on_game_info,
            MsgType.PLAYER_LIST_UPDATE: self._on_players,
            MsgType.H_PLAYER_SCORES_UPDATE: self._on_players,
            MsgType.GAME_START: self._on_game_start,
            MsgType.GAME_OVER: self._on_game_over,
            MsgType.H_REMATCH_ACCEPTED: self._on_rematch_accepted,
            MsgType.H_SESSION_CLOSED: self._on_session_closed,
            MsgType.ERROR: self._on_error,
        }

    def _set_phase(self, phase: SessionPhase):
        if phase == self.phase:
            return
        logger.info("Client phase -> %s", phase.value)
        self.phase = phase
        self.events.publish(GameEvent.PHASE_CHANGED, phase=phase)

    @property
    def score(self) -> int:
        return self.game.score if self.game else 0

    # --- Player actions ---

    async def join(self, host_id: str) -> str:
        """Connect to a host. Raises ``PeerConnectionError`` if it can't be reached."""
        self.peer_id = await self.transport.connect_to_host(host_id, self.player_name)
        self.host_id = host_id
        self._set_phase(SessionPhase.LOBBY)
        await self.send_message(MsgType.C_REQUEST_JOIN, name=self.player_name)
        return self.peer_id

    async def set_ready(self, is_ready: bool = True) -> bool:
        if self.phase != SessionPhase.LOBBY:
            return False
        return await self.send_message(MsgType.CLIENT_READY, is_ready=is_ready)

    async def update_name(self, name: str) -> bool:
        self.player_name = NamePayload(name=name).name
        if self.phase != SessionPhase.LOBBY:
            return False
        return await self.send_message(MsgType.C_UPDATE_NAME, name=self.player_name)

    async def submit_answer(self, answer) -> bool:
        if self.game is None or self.phase != SessionPhase.ACTIVE:
            return False
        return await self.game.submit_answer(answer)

    async def request_rematch(self) -> bool:
        if self.phase not in (SessionPhase.OVER, SessionPhase.AWAITING_REMATCH_QUORUM):
            logger.warning("Rematch can only be requested after the game is over")
            return False
        sent = await self.send_message(MsgType.C_REQUEST_REMATCH)
        self._set_phase(SessionPhase.AWAITING_REMATCH_QUORUM)
        return sent

    async def leave(self):
        """Tell the host we're leaving (best effort) and clean up locally."""
        if self.phase in (None, SessionPhase.CLOSED):
            return
        try:
            await self.send_message(MsgType.PLAYER_LEFT)
        except Exception as e:
            logger.warning("Could not notify host %s of leave: %s", self.host_id, e)
        self._discard_game()
        self._set_phase(SessionPhase.CLOSED)
        await self.transport.close()

    async def send_message(self, msg_type: MsgType, **fields) -> bool:
        if self.host_id is None or self.phase == SessionPhase.CLOSED:
            return False
        return await self.transport.send_to_peer(self.host_id, msg_type, encode_payload(msg_type, **fields))

    def _discard_game(self):
        if self.game is not None:
            self.game.destroy()
            self.game = None

    # --- Transport handler ---

    async def on_client_connected(self, peer_id: str, player_name: str):
        pass

    async def on_client_disconnected(self, peer_id: str, reason: str):
        if peer_id != self.host_id or self.phase in (None, SessionPhase.CLOSED):
            return
        await self._host_lost(reason)

    async def on_connection_failed(self, error: Exception, peer_id: Optional[str] = None):
        logger.error("Connection to host failed: %s", error)
        self.events.publish(GameEvent.ERROR, message=str(error), context="transport")

    async def on_message(self, msg: dict, sender: str):
        if self.host_id is None or sender != self.host_id:
            logger.warning("Discarding message from non-host sender %s", sender)
            return
        try:
            message = decode_message(msg)
        except ProtocolError as e:
            logger.warning("Discarding message from host: %s", e)
            return
        if message.type not in HOST_TO_CLIENT:
            logger.warning("Discarding client-only message %s from host", message.type.value)
            return
        if not accepts(CLIENT_ACCEPTS, self.phase, message.type):
            logger.warning("Discarding %s in phase %s", message.type.value, self.phase)
            return
        await self._handlers[message.type](message)

    # --- Host messages ---

    async def _on_game_info(self, message: Message):
        payload = message.payload
        try:
            QuizEngine.from_host_data(payload.questions_data.model_dump(by_alias=True), payload.difficulty)
        except ContentLoadError as e:
            logger.error("Host sent unusable questions: %s", e)
            self.events.publish(GameEvent.ERROR, message=str(e), context="game_info")
            return
        self.game_info = payload.model_dump(by_alias=True)
        self.settings = payload.settings.model_dump(by_alias=True)
        self.players = {pid: p.to_wire() for pid, p in payload.players.items()}
        question_count = sum(len(s.questions) for s in payload.questions_data.sheets)
        self.events.publish(
            GameEvent.GAME_INFO_RECEIVED,
            settings=self.settings,
            players=self.players,
            question_count=question_count,
        )

    async def _on_players(self, message: Message):
        self.players = {pid: p.to_wire() for pid, p in message.payload.players.items()}
        self.events.publish(GameEvent.ROSTER_CHANGED, players=self.players)

    async def _on_game_start(self, message: Message):
        if self.game_info is None:
            logger.error("GAME_START before GAME_INFO, cannot play")
            self.events.publish(GameEvent.ERROR, message="Game started before questions arrived",
                                context="game_start")
            return
        self._set_phase(SessionPhase.STARTING)
        self.players = {pid: p.to_wire() for pid, p in message.payload.players.items()}
        self.results = None
        quiz_engine = QuizEngine.from_host_data(
            self.game_info["questionsData"], self.game_info["difficulty"], rng=self.rng
        )
        self._discard_game()
        self.game = MultiplayerClientGame(
            self, self.settings, quiz_engine, self.player_name, self.events, self.feedback_delay,
        )
        self._set_phase(SessionPhase.ACTIVE)
        await self.game.start()

    async def _on_game_over(self, message: Message):
        final_score = self.score
        if self.game is not None:
            # Freeze: nothing the local game does from here on reaches the host.
            self.game.destroy()
        self.results = message.payload.results
        self._set_phase(SessionPhase.OVER)
        self.events.publish(
            GameEvent.GAME_FINISHED,
            mode="multiplayer",
            results=self.results,
            local_player_score=final_score,
        )

    async def _on_rematch_accepted(self, message: Message):
        self._discard_game()
        self.results = None
        self._set_phase(SessionPhase.LOBBY)
        self.events.publish(GameEvent.REMATCH_ACCEPTED)

    async def _on_session_closed(self, message: Message):
        await self._host_lost(message.payload.reason or "closed")

    async def _on_error(self, message: Message):
        logger.warning("Host reported an error: %s", message.payload.message)
        self.events.publish(GameEvent.ERROR, message=message.payload.message, context="host")

    async def _host_lost(self, reason: str):
        logger.warning("Lost connection to host %s (%s)", self.host_id, reason)
        self._discard_game()
        self._set_phase(SessionPhase.CLOSED)
        self.events.publish(GameEvent.HOST_LOST, reason=reason)
        await self.transport.close()
