from enum import Enum
from typing import Callable, Dict, List
import logging

logger = logging.getLogger(__name__)


class GameEvent(str, Enum):
    ROSTER_CHANGED = "roster_changed"
    PHASE_CHANGED = "phase_changed"
    GAME_INFO_RECEIVED = "game_info_received"
    GAME_STARTED = "game_started"
    QUESTION_NEW = "question_new"
    ANSWER_CHECKED = "answer_checked"
    SCORE_UPDATED = "score_updated"
    TIME_TICK = "time_tick"
    TIME_UP = "time_up"
    LOCAL_PLAYER_FINISHED = "local_player_finished"
    GAME_FINISHED = "game_finished"
    REMATCH_ACCEPTED = "rematch_accepted"
    HOST_LOST = "host_lost"
    ERROR = "error"


class EventChannel:
    """Outbound notifications from one session to its presentation layer.

    Each session owns its own channel. Subscribers only observe; a subscriber
    that raises is logged and skipped.
    """

    def __init__(self):
        self._subscribers: Dict[GameEvent, List[Callable[..., None]]] = {}

    def subscribe(self, event: GameEvent, callback: Callable[..., None]) -> Callable[[], None]:
        self._subscribers.setdefault(event, []).append(callback)

        def unsubscribe():
            callbacks = self._subscribers.get(event, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def publish(self, event: GameEvent, **data):
        for callback in list(self._subscribers.get(event, [])):
            try:
                callback(**data)
            except Exception:
                logger.exception("Subscriber for %s failed", event.value)

    def clear(self):
        self._subscribers.clear()
