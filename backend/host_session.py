"""
Host side of a running game: score aggregation, completion, final results
and the rematch quorum.
"""
from typing import List, Optional, Set
import logging

import config
from events import EventChannel, GameEvent
from game_modes import BaseGameMode
from message_types import HOST_ACCEPTS, Message, MsgType, accepts, encode_payload
from quiz_engine import QuizEngine
from roster import Roster, SessionPhase, compute_rankings
from transport import Transport

logger = logging.getLogger(__name__)


class HostPlayerGame(BaseGameMode):
    """The host's own quiz loop. Reports to the session by direct calls."""
    mode = "multiplayer_host"

    def __init__(self, session: "HostGameSession", settings: dict, quiz_engine: QuizEngine,
                 player_name: str, events: EventChannel,
                 feedback_delay: float = config.ANSWER_FEEDBACK_DELAY):
        super().__init__(settings, quiz_engine, player_name, events, feedback_delay)
        self.session = session
        self.timer = self._create_timer()

    async def _after_answer_checked(self, is_correct: bool, score_delta: int):
        await super()._after_answer_checked(is_correct, score_delta)
        await self.session.report_host_score(self.score)

    async def _before_finish(self):
        await super()._before_finish()
        await self.session.report_host_finished(self.score)

    def _after_finish(self, results: dict):
        self.events.publish(GameEvent.LOCAL_PLAYER_FINISHED, score=self.score, results=results)


class HostGameSession:
    def __init__(self, transport: Transport, roster: Roster, quiz_engine: QuizEngine,
                 settings: dict, events: Optional[EventChannel] = None,
                 host_plays: bool = config.HOST_PLAYS,
                 feedback_delay: float = config.ANSWER_FEEDBACK_DELAY):
        self.transport = transport
        self.roster = roster
        self.quiz_engine = quiz_engine
        self.settings = settings
        self.events = events or EventChannel()
        self.host_plays = host_plays
        self.feedback_delay = feedback_delay

        self.phase = SessionPhase.LOBBY
        self.rematch_requests: Set[str] = set()
        self.departed: List[str] = []
        self.results: Optional[dict] = None
        self.host_game: Optional[HostPlayerGame] = None
        self._game_over_sent = False

    def _set_phase(self, phase: SessionPhase):
        if phase == self.phase:
            return
        logger.info("Session phase %s -> %s", self.phase.value, phase.value)
        self.phase = phase
        self.events.publish(GameEvent.PHASE_CHANGED, phase=phase)

    async def start(self):
        if self.phase != SessionPhase.LOBBY:
            logger.warning("Cannot start game from phase %s", self.phase.value)
            return
        self._reset_game_state()
        self._set_phase(SessionPhase.STARTING)
        await self._begin_game()

    def _reset_game_state(self):
        self.rematch_requests.clear()
        self.departed = []
        self.results = None
        self._game_over_sent = False

    async def _begin_game(self):
        players = self.roster.snapshot()
        await self.transport.broadcast_message(MsgType.GAME_START, encode_payload(MsgType.GAME_START, players=players))
        self.events.publish(GameEvent.GAME_STARTED, mode="multiplayer", settings=self.settings, players=players)
        self._set_phase(SessionPhase.ACTIVE)

        if self.host_plays:
            self.quiz_engine.reset_progress()
            self.host_game = HostPlayerGame(
                self, self.settings, self.quiz_engine, self.roster.host.name,
                self.events, self.feedback_delay,
            )
            await self.host_game.start()
        else:
            self.roster.mark_finished(self.roster.host_id)
            await self._check_completion()

    async def submit_answer(self, answer) -> bool:
        if self.host_game is None:
            logger.warning("Host is not playing, ignoring answer")
            return False
        return await self.host_game.submit_answer(answer)

    # --- Host's own progress ---

    async def report_host_score(self, score: int):
        if self.phase not in (SessionPhase.STARTING, SessionPhase.ACTIVE):
            return
        if self.roster.update_score(self.roster.host_id, score):
            await self._broadcast_scores()

    async def report_host_finished(self, score: int):
        if self.phase not in (SessionPhase.STARTING, SessionPhase.ACTIVE):
            return
        self.roster.update_score(self.roster.host_id, score)
        if self.roster.mark_finished(self.roster.host_id):
            logger.info("Host finished with score %d", score)
            await self._broadcast_scores()
            await self._check_completion()

    # --- Client messages ---

    async def handle_message(self, message: Message, sender: str):
        if sender not in self.roster:
            logger.warning("Discarding %s from unknown peer %s", message.type.value, sender)
            return
        if not accepts(HOST_ACCEPTS, self.phase, message.type):
            logger.warning("Discarding %s from %s in phase %s", message.type.value, sender, self.phase.value)
            return

        if message.type == MsgType.C_SCORE_UPDATE:
            if self.roster.update_score(sender, message.payload.score):
                await self._broadcast_scores()
        elif message.type == MsgType.CLIENT_FINISHED:
            await self._handle_client_finished(sender, message.payload.score)
        elif message.type == MsgType.PLAYER_LEFT:
            await self.handle_disconnect(sender, "left")
            await self.transport.disconnect_peer(sender)
        elif message.type == MsgType.C_REQUEST_REMATCH:
            await self._handle_rematch_request(sender)

    async def _handle_client_finished(self, peer_id: str, score: int):
        self.roster.update_score(peer_id, score)
        if not self.roster.mark_finished(peer_id):
            logger.info("Duplicate finish from %s ignored", peer_id)
            return
        logger.info("Player %s finished with score %d", peer_id, self.roster.get(peer_id).score)
        await self._broadcast_scores()
        await self._check_completion()

    async def handle_disconnect(self, peer_id: str, reason: str):
        player = self.roster.get(peer_id)
        if player is None or player.is_host:
            return
        if self.phase in (SessionPhase.STARTING, SessionPhase.ACTIVE):
            # Leaving mid-game counts as finishing; the player no longer blocks completion.
            self.roster.mark_finished(peer_id)
            self.roster.remove(peer_id)
            self.departed.append(player.name)
            logger.info("Player '%s' left mid-game (%s)", player.name, reason)
            await self._broadcast_roster()
            await self._check_completion()
        elif self.phase in (SessionPhase.OVER, SessionPhase.AWAITING_REMATCH_QUORUM):
            self.roster.remove(peer_id)
            self.rematch_requests.discard(peer_id)
            logger.info("Player '%s' left after the game (%s)", player.name, reason)
            await self._broadcast_roster()
            await self._evaluate_rematch()

    # --- Completion ---

    async def _check_completion(self):
        if self._game_over_sent or self.phase not in (SessionPhase.STARTING, SessionPhase.ACTIVE):
            return
        if not self.roster.all_finished():
            return
        self._game_over_sent = True
        self.results = self.build_results()
        logger.info("All players finished, broadcasting GAME_OVER")
        await self.transport.broadcast_message(
            MsgType.GAME_OVER, encode_payload(MsgType.GAME_OVER, results=self.results)
        )
        self._set_phase(SessionPhase.OVER)
        self.events.publish(
            GameEvent.GAME_FINISHED,
            mode="multiplayer",
            results=self.results,
            local_player_score=self.roster.host.score,
        )

    def build_results(self) -> dict:
        rankings = compute_rankings(list(self.roster))
        top = rankings[0] if rankings else None
        tied = len(rankings) > 1 and rankings[1]["score"] == top["score"]
        return {
            "players": rankings,
            "winner": None if top is None or tied else top["name"],
            "winnerId": None if top is None or tied else top["peerId"],
            "difficulty": self.settings.get("difficulty", config.DEFAULT_DIFFICULTY),
            "gameName": ", ".join(self.quiz_engine.sources.values()),
            "departed": list(self.departed),
        }

    # --- Rematch ---

    async def _handle_rematch_request(self, peer_id: str):
        if peer_id in self.rematch_requests:
            logger.info("Duplicate rematch request from %s ignored", peer_id)
            return
        self.rematch_requests.add(peer_id)
        logger.info("Rematch requested by %s (%d/%d)", peer_id,
                    len(self.rematch_requests), len(self.roster.client_ids()))
        self._set_phase(SessionPhase.AWAITING_REMATCH_QUORUM)
        await self._evaluate_rematch()

    def rematch_quorum_reached(self) -> bool:
        """Every connected client has asked for a rematch, and there is at least one."""
        connected = set(self.roster.client_ids())
        return bool(connected) and connected <= self.rematch_requests

    async def _evaluate_rematch(self):
        if self.phase not in (SessionPhase.OVER, SessionPhase.AWAITING_REMATCH_QUORUM):
            return
        if not self.rematch_quorum_reached():
            return
        logger.info("Rematch quorum reached, restarting")
        # Out of the rematch phases before the first await: later requests are discarded.
        if self.host_game:
            self.host_game.destroy()
            self.host_game = None
        self.roster.reset_for_new_game()
        self._reset_game_state()
        self._set_phase(SessionPhase.LOBBY)
        self._set_phase(SessionPhase.STARTING)
        await self.transport.broadcast_message(
            MsgType.H_REMATCH_ACCEPTED, encode_payload(MsgType.H_REMATCH_ACCEPTED)
        )
        self.events.publish(GameEvent.REMATCH_ACCEPTED)
        await self._begin_game()

    # --- Broadcasts ---

    async def _broadcast_scores(self):
        players = self.roster.snapshot()
        await self.transport.broadcast_message(
            MsgType.H_PLAYER_SCORES_UPDATE, encode_payload(MsgType.H_PLAYER_SCORES_UPDATE, players=players)
        )
        self.events.publish(GameEvent.ROSTER_CHANGED, players=players)

    async def _broadcast_roster(self):
        players = self.roster.snapshot()
        await self.transport.broadcast_message(
            MsgType.PLAYER_LIST_UPDATE, encode_payload(MsgType.PLAYER_LIST_UPDATE, players=players)
        )
        self.events.publish(GameEvent.ROSTER_CHANGED, players=players)

    def end(self):
        if self.host_game:
            self.host_game.destroy()
        self._set_phase(SessionPhase.CLOSED)
