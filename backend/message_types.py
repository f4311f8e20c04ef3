"""
Wire protocol between the session host and its clients.

Every message is a two-field envelope ``{"type": str, "payload": dict}``.
The catalog is closed: each ``MsgType`` has exactly one payload model, and
``decode_message`` turns an untrusted envelope into a typed ``Message`` or
raises ``ProtocolError``. Session handlers catch ``ProtocolError``, log it
and drop the message.
"""
from enum import Enum
from typing import Dict, FrozenSet, List, NamedTuple, Optional, Type
import re

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

import config
from roster import Player, SessionPhase


class ProtocolError(Exception):
    """Malformed envelope, unknown type, or invalid payload."""
    pass


class MsgType(str, Enum):
    # Lobby phase
    C_REQUEST_JOIN = "c_requestJoin"
    C_UPDATE_NAME = "c_updateName"
    CLIENT_READY = "client_ready"
    GAME_INFO = "game_info"
    PLAYER_LIST_UPDATE = "player_list_update"
    PLAYER_LEFT = "player_left"
    # Game phase
    GAME_START = "game_start"
    C_SCORE_UPDATE = "c_score_update"
    H_PLAYER_SCORES_UPDATE = "h_player_scores_update"
    CLIENT_FINISHED = "client_finished"
    GAME_OVER = "game_over"
    # Rematch
    C_REQUEST_REMATCH = "c_request_rematch"
    H_REMATCH_ACCEPTED = "h_rematch_accepted"
    # Session
    H_SESSION_CLOSED = "h_session_closed"
    ERROR = "error"


# Transport-internal liveness probes; never handed to the sessions.
PING = "ping"
PONG = "pong"


def sanitize_name(name: str) -> str:
    """Strip HTML tags and control characters from a display name."""
    name = re.sub(r'<[^>]+>', '', name)
    name = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', name)
    return name.strip()


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EmptyPayload(WireModel):
    pass


class NamePayload(WireModel):
    name: str

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = sanitize_name(v)
        if not v or len(v) > config.MAX_NICKNAME_LENGTH:
            raise ValueError(f'Name must be 1-{config.MAX_NICKNAME_LENGTH} characters')
        return v


class ReadyPayload(WireModel):
    is_ready: bool = True


class QuestionItem(WireModel):
    question: str
    answer: str


class SheetData(WireModel):
    id: str
    name: str
    is_custom: bool = False
    questions: List[QuestionItem]


class QuestionsData(WireModel):
    sheets: List[SheetData]


class GameSettings(WireModel):
    selection: List[str] = Field(min_length=1)
    difficulty: str = config.DEFAULT_DIFFICULTY

    @field_validator('difficulty')
    @classmethod
    def validate_difficulty(cls, v: str) -> str:
        v = v.lower().strip()
        if v not in config.VALID_DIFFICULTIES:
            raise ValueError(f'Difficulty must be one of: {", ".join(config.VALID_DIFFICULTIES)}')
        return v


class GameInfoPayload(WireModel):
    questions_data: QuestionsData
    difficulty: str
    players: Dict[str, Player]
    settings: GameSettings


class PlayersPayload(WireModel):
    players: Dict[str, Player]


class ScorePayload(WireModel):
    score: int = Field(ge=0)


class GameOverPayload(WireModel):
    results: dict


class SessionClosedPayload(WireModel):
    reason: str = ""


class ErrorPayload(WireModel):
    message: str


PAYLOAD_MODELS: Dict[MsgType, Type[WireModel]] = {
    MsgType.C_REQUEST_JOIN: NamePayload,
    MsgType.C_UPDATE_NAME: NamePayload,
    MsgType.CLIENT_READY: ReadyPayload,
    MsgType.GAME_INFO: GameInfoPayload,
    MsgType.PLAYER_LIST_UPDATE: PlayersPayload,
    MsgType.PLAYER_LEFT: EmptyPayload,
    MsgType.GAME_START: PlayersPayload,
    MsgType.C_SCORE_UPDATE: ScorePayload,
    MsgType.H_PLAYER_SCORES_UPDATE: PlayersPayload,
    MsgType.CLIENT_FINISHED: ScorePayload,
    MsgType.GAME_OVER: GameOverPayload,
    MsgType.C_REQUEST_REMATCH: EmptyPayload,
    MsgType.H_REMATCH_ACCEPTED: EmptyPayload,
    MsgType.H_SESSION_CLOSED: SessionClosedPayload,
    MsgType.ERROR: ErrorPayload,
}

CLIENT_TO_HOST: FrozenSet[MsgType] = frozenset({
    MsgType.C_REQUEST_JOIN,
    MsgType.C_UPDATE_NAME,
    MsgType.CLIENT_READY,
    MsgType.PLAYER_LEFT,
    MsgType.C_SCORE_UPDATE,
    MsgType.CLIENT_FINISHED,
    MsgType.C_REQUEST_REMATCH,
})

HOST_TO_CLIENT: FrozenSet[MsgType] = frozenset(set(MsgType) - CLIENT_TO_HOST)

_HOST_IN_GAME = frozenset({MsgType.C_SCORE_UPDATE, MsgType.CLIENT_FINISHED, MsgType.PLAYER_LEFT})
_HOST_AFTER_GAME = frozenset({MsgType.C_REQUEST_REMATCH, MsgType.PLAYER_LEFT})

# Which client->host messages the host handles in each phase.
HOST_ACCEPTS: Dict[SessionPhase, FrozenSet[MsgType]] = {
    SessionPhase.LOBBY: frozenset({
        MsgType.C_REQUEST_JOIN, MsgType.C_UPDATE_NAME, MsgType.CLIENT_READY, MsgType.PLAYER_LEFT,
    }),
    SessionPhase.STARTING: _HOST_IN_GAME,
    SessionPhase.ACTIVE: _HOST_IN_GAME,
    SessionPhase.OVER: _HOST_AFTER_GAME,
    SessionPhase.AWAITING_REMATCH_QUORUM: _HOST_AFTER_GAME,
    SessionPhase.CLOSED: frozenset(),
}

_CLIENT_AFTER_GAME = frozenset({
    MsgType.PLAYER_LIST_UPDATE, MsgType.H_PLAYER_SCORES_UPDATE, MsgType.H_REMATCH_ACCEPTED,
    MsgType.H_SESSION_CLOSED, MsgType.ERROR,
})

# Which host->client messages a client handles in each phase.
CLIENT_ACCEPTS: Dict[SessionPhase, FrozenSet[MsgType]] = {
    SessionPhase.LOBBY: frozenset({
        MsgType.GAME_INFO, MsgType.PLAYER_LIST_UPDATE, MsgType.GAME_START,
        MsgType.H_SESSION_CLOSED, MsgType.ERROR,
    }),
    SessionPhase.STARTING: frozenset({MsgType.H_SESSION_CLOSED, MsgType.ERROR}),
    SessionPhase.ACTIVE: frozenset({
        MsgType.H_PLAYER_SCORES_UPDATE, MsgType.PLAYER_LIST_UPDATE, MsgType.GAME_OVER,
        MsgType.H_SESSION_CLOSED, MsgType.ERROR,
    }),
    SessionPhase.OVER: _CLIENT_AFTER_GAME,
    SessionPhase.AWAITING_REMATCH_QUORUM: _CLIENT_AFTER_GAME,
    SessionPhase.CLOSED: frozenset(),
}


def accepts(table: Dict[SessionPhase, FrozenSet[MsgType]], phase: SessionPhase, msg_type: MsgType) -> bool:
    return msg_type in table.get(phase, frozenset())


class Message(NamedTuple):
    type: MsgType
    payload: WireModel


def decode_message(raw) -> Message:
    if not isinstance(raw, dict):
        raise ProtocolError(f"Envelope must be an object, got {type(raw).__name__}")
    try:
        msg_type = MsgType(raw.get("type"))
    except ValueError:
        raise ProtocolError(f"Unknown message type: {raw.get('type')!r}")
    payload = raw.get("payload")
    if payload is None:
        payload = {}
    try:
        parsed = PAYLOAD_MODELS[msg_type].model_validate(payload)
    except ValidationError as e:
        raise ProtocolError(f"Invalid {msg_type.value} payload: {e.errors()[0].get('msg', e)}")
    return Message(msg_type, parsed)


def encode_payload(msg_type: MsgType, **fields) -> dict:
    """Validate outbound payload fields and dump them with wire (camelCase) keys."""
    return PAYLOAD_MODELS[msg_type](**fields).model_dump(by_alias=True)


def envelope(msg_type, payload: Optional[dict] = None) -> dict:
    type_value = msg_type.value if isinstance(msg_type, MsgType) else msg_type
    return {"type": type_value, "payload": payload or {}}
