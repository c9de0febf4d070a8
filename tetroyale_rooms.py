"""Server-side match rooms: roster, lifecycle, rankings and attack routing."""

from __future__ import annotations

import logging
import random
import string
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from tetroyale_engine import MAX_SEED, Board

logger = logging.getLogger(__name__)

WAITING = "waiting"
PLAYING = "playing"
FINISHED = "finished"

DUEL = "duel"
BATTLE = "battle"

DUEL_CAPACITY = 2
MIN_BATTLE_PLAYERS = 3
MAX_BATTLE_PLAYERS = 21
MIN_PLAYERS_TO_START = 2
UNIFORM_ATTACK_CHANCE = 0.7


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class RoomError(Exception):
    code = "room_error"
    message = "Room request rejected"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.message)

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code, "message": str(self)}


class RoomNotFound(RoomError):
    code = "room_not_found"
    message = "Room not found"


class RoomFull(RoomError):
    code = "room_full"
    message = "Room is full"


class MatchAlreadyStarted(RoomError):
    code = "match_already_started"
    message = "Game already started"


class InsufficientPlayers(RoomError):
    code = "insufficient_players"
    message = "At least 2 players are needed to start"


class InvalidResetState(RoomError):
    code = "invalid_reset_state"
    message = "The game can only be reset after it has finished"


class NotHost(RoomError):
    code = "not_host"
    message = "Only the host can do that"


class NotInRoom(RoomError):
    code = "not_in_room"
    message = "You are not in a room"


# ---------------------------------------------------------------------------
# Room members
# ---------------------------------------------------------------------------


@dataclass
class PlayerInRoom:
    player_id: str
    user_id: str
    username: str
    score: int = 0
    board: Optional[Board] = None
    alive: bool = True
    rank: Optional[int] = None

    def reset(self) -> None:
        self.score = 0
        self.board = None
        self.alive = True
        self.rank = None


@dataclass
class Elimination:
    player_id: str
    username: str
    rank: int
    reason: str

    def to_dict(self) -> Dict[str, object]:
        return {
            "player_id": self.player_id,
            "username": self.username,
            "rank": self.rank,
            "reason": self.reason,
        }


@dataclass
class LeaveResult:
    player: PlayerInRoom
    room_deleted: bool = False
    elimination: Optional[Elimination] = None
    rankings: Optional[List[Dict[str, object]]] = None
    new_host: Optional[PlayerInRoom] = None


def generate_room_id(
    length: int = 6, alphabet: str = string.ascii_lowercase + string.digits
) -> str:
    return "".join(random.choice(alphabet) for _ in range(length))


def draw_seed(rng: random.Random) -> int:
    return rng.randrange(MAX_SEED)


# ---------------------------------------------------------------------------
# Attack routing
# ---------------------------------------------------------------------------


def select_attack_target(
    players: Iterable[PlayerInRoom], attacker_id: str, rng: random.Random
) -> Optional[PlayerInRoom]:
    """Pick who receives an attacker's garbage.

    70% of the time the target is uniform among living opponents; otherwise
    it is weighted by ``score + 1`` so leaders draw more fire.
    """
    candidates = [p for p in players if p.player_id != attacker_id and p.alive]
    if not candidates:
        return None
    if rng.random() < UNIFORM_ATTACK_CHANCE:
        return candidates[rng.randrange(len(candidates))]
    total = sum(p.score + 1 for p in candidates)
    remaining = rng.random() * total
    for candidate in candidates:
        remaining -= candidate.score + 1
        if remaining <= 0:
            return candidate
    return candidates[-1]


# ---------------------------------------------------------------------------
# Rooms
# ---------------------------------------------------------------------------


class Room(ABC):
    kind = ""

    def __init__(self, room_id: str, capacity: int, rng: random.Random) -> None:
        self.room_id = room_id
        self.capacity = capacity
        self.rng = rng
        self.players: Dict[str, PlayerInRoom] = {}
        self.status: str = WAITING
        self.seed: Optional[int] = None

    def __contains__(self, player_id: object) -> bool:
        return player_id in self.players

    @property
    def player_count(self) -> int:
        return len(self.players)

    @property
    def is_empty(self) -> bool:
        return not self.players

    def check_joinable(self) -> None:
        if self.player_count >= self.capacity:
            raise RoomFull()
        if self.status != WAITING:
            raise MatchAlreadyStarted()

    def add_player(self, player: PlayerInRoom) -> None:
        self.check_joinable()
        self.players[player.player_id] = player

    def remove_player(self, player_id: str) -> Optional[PlayerInRoom]:
        return self.players.pop(player_id, None)

    def member(self, player_id: str) -> PlayerInRoom:
        try:
            return self.players[player_id]
        except KeyError:
            raise NotInRoom() from None

    @abstractmethod
    def leave(self, player_id: str) -> LeaveResult:
        """Remove a member and apply the room-kind specific consequences."""

    def others(self, player_id: str) -> List[PlayerInRoom]:
        return [p for pid, p in self.players.items() if pid != player_id]

    def summary(self) -> Dict[str, object]:
        return {
            "id": self.room_id,
            "type": self.kind,
            "max_players": self.capacity,
            "player_count": self.player_count,
            "status": self.status,
        }


class DuelRoom(Room):
    """Two-player room; starts as soon as the second player arrives."""

    kind = DUEL

    def __init__(self, room_id: str, rng: random.Random) -> None:
        super().__init__(room_id, DUEL_CAPACITY, rng)
        self.wins: Dict[str, int] = {}

    def join(self, player: PlayerInRoom) -> Optional[int]:
        """Add ``player``; return the new seed when the room becomes full."""
        self.add_player(player)
        if self.player_count == self.capacity:
            return self.start()
        return None

    def start(self) -> int:
        if self.player_count < MIN_PLAYERS_TO_START:
            raise InsufficientPlayers()
        self.seed = draw_seed(self.rng)
        self.status = PLAYING
        for player in self.players.values():
            player.reset()
        logger.info("Duel %s started with seed %s", self.room_id, self.seed)
        return self.seed

    def opponent(self, player_id: str) -> Optional[PlayerInRoom]:
        others = self.others(player_id)
        return others[0] if others else None

    def report_game_over(self, loser_id: str) -> Optional[PlayerInRoom]:
        """The other member wins, whatever the scores say."""
        winner = self.opponent(loser_id)
        if winner is None:
            return None
        self.players[loser_id].alive = False
        self.wins[winner.player_id] = self.wins.get(winner.player_id, 0) + 1
        self.status = FINISHED
        logger.info("Duel %s won by %s", self.room_id, winner.username)
        return winner

    def reset(self) -> int:
        return self.start()

    def leave(self, player_id: str) -> LeaveResult:
        player = self.remove_player(player_id)
        if player is None:
            raise NotInRoom()
        result = LeaveResult(player=player)
        if self.is_empty:
            result.room_deleted = True
            return result
        self.status = WAITING
        self.seed = None
        self.wins = {}
        return result

    def tally_text(self) -> str:
        return "  vs  ".join(
            "%s: %d" % (p.username, self.wins.get(pid, 0))
            for pid, p in self.players.items()
        )

    def summary(self) -> Dict[str, object]:
        data = super().summary()
        data["players"] = [p.username for p in self.players.values()]
        return data


class BattleRoom(Room):
    """3-21 player room with a host, eliminations and final rankings."""

    kind = BATTLE

    def __init__(
        self, room_id: str, capacity: int, host_id: str, rng: random.Random
    ) -> None:
        super().__init__(room_id, capacity, rng)
        self.host_id = host_id
        self.alive_count = 0

    def add_player(self, player: PlayerInRoom) -> None:
        super().add_player(player)
        self.alive_count += 1

    def remove_player(self, player_id: str) -> Optional[PlayerInRoom]:
        player = super().remove_player(player_id)
        if player is not None and player.alive:
            self.alive_count -= 1
        return player

    def is_host(self, player_id: str) -> bool:
        return player_id == self.host_id

    def start(self, requester_id: str) -> int:
        if not self.is_host(requester_id):
            raise NotHost()
        if self.status != WAITING:
            raise MatchAlreadyStarted("Game is already in progress")
        if self.player_count < MIN_PLAYERS_TO_START:
            raise InsufficientPlayers()
        self.status = PLAYING
        self.alive_count = self.player_count
        self.seed = draw_seed(self.rng)
        for player in self.players.values():
            player.reset()
        logger.info(
            "Battle %s started with %d players, seed %s",
            self.room_id,
            self.player_count,
            self.seed,
        )
        return self.seed

    def update_score(self, player_id: str, score: int) -> None:
        self.member(player_id).score = score

    def update_board(self, player_id: str, board: Board) -> None:
        self.member(player_id).board = board

    def eliminate(self, player_id: str, reason: str = "game_over") -> Optional[Elimination]:
        player = self.member(player_id)
        if self.status != PLAYING or not player.alive:
            return None
        player.alive = False
        player.rank = self.alive_count
        self.alive_count -= 1
        logger.info(
            "Battle %s: %s eliminated (%s), rank %d",
            self.room_id,
            player.username,
            reason,
            player.rank,
        )
        return Elimination(player_id, player.username, player.rank, reason)

    def check_end(self) -> Optional[List[Dict[str, object]]]:
        """Finish the match once at most one player is left alive."""
        if self.status != PLAYING or self.alive_count > 1:
            return None
        self.status = FINISHED
        for player in self.players.values():
            if player.alive:
                player.alive = False
                player.rank = 1
                self.alive_count -= 1
                break
        rankings = self.rankings()
        logger.info(
            "Battle %s finished: %s",
            self.room_id,
            " | ".join("#%s %s" % (r["rank"], r["username"]) for r in rankings),
        )
        return rankings

    def rankings(self) -> List[Dict[str, object]]:
        ranked = sorted(
            self.players.values(),
            key=lambda p: p.rank if p.rank is not None else self.capacity + 1,
        )
        return [
            {
                "player_id": p.player_id,
                "username": p.username,
                "rank": p.rank,
                "score": p.score,
            }
            for p in ranked
        ]

    def select_target(self, attacker_id: str) -> Optional[PlayerInRoom]:
        return select_attack_target(self.players.values(), attacker_id, self.rng)

    def reset(self, requester_id: str) -> None:
        self.member(requester_id)
        if self.status != FINISHED:
            raise InvalidResetState()
        self.status = WAITING
        self.seed = None
        self.alive_count = self.player_count
        for player in self.players.values():
            player.reset()
        logger.info("Battle %s reset", self.room_id)

    def leave(self, player_id: str) -> LeaveResult:
        player = self.member(player_id)
        elimination = None
        rankings = None
        if self.status == PLAYING and player.alive:
            elimination = self.eliminate(player_id, reason="left")
            rankings = self.check_end()
        self.remove_player(player_id)
        result = LeaveResult(player=player, elimination=elimination, rankings=rankings)
        if self.is_empty:
            result.room_deleted = True
            return result
        if self.host_id == player_id:
            self.host_id = next(iter(self.players))
            result.new_host = self.players[self.host_id]
            logger.info(
                "Battle %s host moved to %s", self.room_id, result.new_host.username
            )
        return result

    def player_list(self) -> List[Dict[str, object]]:
        return [
            {
                "player_id": pid,
                "username": p.username,
                "score": p.score,
                "alive": p.alive,
                "rank": p.rank,
                "is_host": pid == self.host_id,
            }
            for pid, p in self.players.items()
        ]

    def summary(self) -> Dict[str, object]:
        data = super().summary()
        host = self.players.get(self.host_id)
        data["host_name"] = host.username if host else "Unknown"
        return data


# ---------------------------------------------------------------------------
# Room store
# ---------------------------------------------------------------------------


@dataclass
class RoomStore:
    """In-memory registry of every active room, owned by the running app."""

    rng: random.Random = field(default_factory=random.Random)
    min_battle_players: int = MIN_BATTLE_PLAYERS
    max_battle_players: int = MAX_BATTLE_PLAYERS
    rooms: Dict[str, Room] = field(default_factory=dict)

    def _new_id(self, prefix: str, length: int, alphabet: str) -> str:
        for _ in range(5):
            room_id = prefix + generate_room_id(length, alphabet)
            if room_id not in self.rooms:
                return room_id
        raise RuntimeError("Unable to create room id")

    def create_duel(self, host: PlayerInRoom) -> DuelRoom:
        room_id = self._new_id("", 6, string.ascii_lowercase + string.digits)
        room = DuelRoom(room_id, self.rng)
        room.join(host)
        self.rooms[room_id] = room
        logger.info("Duel room %s created by %s", room_id, host.username)
        return room

    def clamp_capacity(self, max_players: object) -> int:
        try:
            value = int(max_players)
        except (TypeError, ValueError, OverflowError):
            value = self.min_battle_players
        return min(self.max_battle_players, max(self.min_battle_players, value))

    def create_battle(self, host: PlayerInRoom, max_players: object) -> BattleRoom:
        capacity = self.clamp_capacity(max_players)
        room_id = self._new_id("M", 5, string.ascii_uppercase + string.digits)
        room = BattleRoom(room_id, capacity, host.player_id, self.rng)
        room.add_player(host)
        self.rooms[room_id] = room
        logger.info(
            "Battle room %s (max %d) created by %s", room_id, capacity, host.username
        )
        return room

    def get(self, room_id: object) -> Room:
        room = self.rooms.get(room_id) if isinstance(room_id, str) else None
        if room is None:
            raise RoomNotFound()
        return room

    def list_rooms(self, kind: Optional[str] = None) -> List[Room]:
        return [r for r in list(self.rooms.values()) if kind is None or r.kind == kind]

    def find_by_player(self, player_id: str) -> Optional[Room]:
        for room in self.rooms.values():
            if player_id in room:
                return room
        return None

    def add_player(self, room_id: str, player: PlayerInRoom) -> Optional[int]:
        """Add ``player``; a duel returns its seed when this join fills it."""
        room = self.get(room_id)
        if isinstance(room, DuelRoom):
            return room.join(player)
        room.add_player(player)
        return None

    def remove_player(self, room_id: str, player_id: str) -> Optional[PlayerInRoom]:
        room = self.get(room_id)
        player = room.remove_player(player_id)
        if room.is_empty:
            self.delete(room_id)
        return player

    def leave(self, player_id: str) -> Optional[Tuple[Room, LeaveResult]]:
        """Run the leave path for ``player_id``; returns ``(room, LeaveResult)``."""
        room = self.find_by_player(player_id)
        if room is None:
            return None
        result = room.leave(player_id)
        if result.room_deleted:
            self.delete(room.room_id)
        return room, result

    def player_count(self, room_id: str) -> int:
        return self.get(room_id).player_count

    def alive_count(self, room_id: str) -> int:
        room = self.get(room_id)
        if isinstance(room, BattleRoom):
            return room.alive_count
        return sum(1 for p in room.players.values() if p.alive)

    def delete(self, room_id: str) -> None:
        if self.rooms.pop(room_id, None) is not None:
            logger.info("Room %s deleted", room_id)

    def summaries(self, kind: str) -> List[Dict[str, object]]:
        return [room.summary() for room in self.list_rooms(kind)]
