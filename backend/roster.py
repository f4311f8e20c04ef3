from enum import Enum
from typing import Dict, Iterator, List, Optional
import logging

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


class SessionPhase(str, Enum):
    LOBBY = "lobby"
    STARTING = "starting"
    ACTIVE = "active"
    OVER = "over"
    AWAITING_REMATCH_QUORUM = "awaiting_rematch_quorum"
    CLOSED = "closed"


class Player(BaseModel):
    """One roster entry. Serialized with camelCase keys on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    peer_id: str
    name: str
    is_host: bool = False
    is_ready: bool = False
    score: int = Field(default=0, ge=0)
    finished: bool = False

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class Roster:
    """Authoritative, insertion-ordered player table owned by the host.

    The host entry is created with the roster and can't be removed through
    ``remove``; it goes away only when the host ends the session.
    """

    def __init__(self, host_id: str, host_name: str):
        self.host_id = host_id
        self._players: Dict[str, Player] = {
            host_id: Player(peer_id=host_id, name=host_name, is_host=True, is_ready=True)
        }

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self._players

    def __len__(self) -> int:
        return len(self._players)

    def __iter__(self) -> Iterator[Player]:
        return iter(list(self._players.values()))

    def get(self, peer_id: str) -> Optional[Player]:
        return self._players.get(peer_id)

    @property
    def host(self) -> Player:
        return self._players[self.host_id]

    def client_ids(self) -> List[str]:
        return [pid for pid in self._players if pid != self.host_id]

    def add(self, peer_id: str, name: str) -> Player:
        existing = self._players.get(peer_id)
        if existing:
            existing.name = name
            return existing
        player = Player(peer_id=peer_id, name=name)
        self._players[peer_id] = player
        logger.info("Player '%s' (%s) added to roster", name, peer_id)
        return player

    def rename(self, peer_id: str, name: str) -> bool:
        player = self._players.get(peer_id)
        if not player or player.name == name:
            return False
        logger.info("Player %s renamed '%s' -> '%s'", peer_id, player.name, name)
        player.name = name
        return True

    def set_ready(self, peer_id: str, is_ready: bool = True) -> bool:
        player = self._players.get(peer_id)
        if not player:
            return False
        player.is_ready = is_ready
        return True

    def remove(self, peer_id: str) -> Optional[Player]:
        if peer_id == self.host_id:
            logger.warning("Refusing to remove the host entry from the roster")
            return None
        player = self._players.pop(peer_id, None)
        if player:
            logger.info("Player '%s' (%s) removed from roster", player.name, peer_id)
        return player

    def update_score(self, peer_id: str, score: int) -> bool:
        """Apply a reported cumulative score. Scores never go down within a game."""
        player = self._players.get(peer_id)
        if not player:
            return False
        if score < player.score:
            logger.warning("Ignoring score regression for %s: %d -> %d", peer_id, player.score, score)
            return False
        player.score = score
        return True

    def mark_finished(self, peer_id: str) -> bool:
        player = self._players.get(peer_id)
        if not player or player.finished:
            return False
        player.finished = True
        return True

    def all_finished(self) -> bool:
        return all(p.finished for p in self._players.values())

    def all_clients_ready(self) -> bool:
        return all(self._players[pid].is_ready for pid in self.client_ids())

    def reset_for_new_game(self):
        """Zero scores and clear finished/ready flags, keeping everyone connected."""
        for player in self._players.values():
            player.score = 0
            player.finished = False
            player.is_ready = player.is_host

    def snapshot(self) -> Dict[str, dict]:
        return {pid: p.to_wire() for pid, p in self._players.items()}


def compute_rankings(players: List[Player]) -> List[dict]:
    # sorted() is stable, so equal scores keep roster insertion order
    ranked = sorted(players, key=lambda p: p.score, reverse=True)
    return [
        {
            "rank": i + 1,
            "peerId": p.peer_id,
            "name": p.name,
            "score": p.score,
            "isHost": p.is_host,
        }
        for i, p in enumerate(ranked)
    ]
