"""Routes WebSocket messages between players and the room state machine."""

from __future__ import annotations

import json
import logging
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from fastapi import WebSocket, WebSocketDisconnect

from tetroyale_config import AppConfig
from tetroyale_protocol import (
    BoardAction,
    GameAction,
    GameOverAction,
    GarbageAction,
    ProtocolError,
    ScoreAction,
    action_to_dict,
    parse_action,
)
from tetroyale_rooms import (
    BATTLE,
    DUEL,
    BattleRoom,
    DuelRoom,
    LeaveResult,
    NotInRoom,
    PLAYING,
    PlayerInRoom,
    Room,
    RoomError,
    RoomNotFound,
    RoomStore,
)
from tetroyale_store import ScoreStore, StoreError

logger = logging.getLogger(__name__)

Message = Dict[str, object]


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------


class ConnectionHub:
    """Open WebSockets keyed by connection id, with the user behind each."""

    def __init__(self) -> None:
        self.sockets: Dict[str, WebSocket] = {}
        self.users: Dict[str, Dict[str, str]] = {}

    def register(self, conn_id: str, websocket: WebSocket, user_id: str, username: str) -> None:
        self.sockets[conn_id] = websocket
        self.users[conn_id] = {"user_id": user_id, "username": username}

    def unregister(self, conn_id: str) -> None:
        self.sockets.pop(conn_id, None)
        self.users.pop(conn_id, None)

    def ids(self) -> List[str]:
        return list(self.sockets)

    def online_users(self) -> List[Dict[str, str]]:
        return [dict(user) for user in self.users.values()]

    async def send(self, conn_id: str, payload: str) -> None:
        websocket = self.sockets.get(conn_id)
        if websocket is None:
            return
        try:
            await websocket.send_text(payload)
        except (RuntimeError, WebSocketDisconnect) as e:
            logger.warning("Dropping message to %s: %s", conn_id, e)


class Outbox:
    """Messages produced while handling one event, sent after state settles."""

    def __init__(self) -> None:
        self.items: List[Tuple[List[str], Message]] = []

    def to(self, targets: Iterable[str], message: Message) -> None:
        recipients = list(targets)
        if recipients:
            self.items.append((recipients, message))

    def to_one(self, target: str, message: Message) -> None:
        self.to([target], message)

    async def flush(self, hub: ConnectionHub) -> None:
        payloads: List[Tuple[str, str]] = []
        for targets, message in self.items:
            encoded = json.dumps(message)
            payloads.extend((target, encoded) for target in targets)
        self.items = []
        for conn_id, payload in payloads:
            await hub.send(conn_id, payload)


def system_message(text: str) -> Message:
    return {"type": "chat_message", "kind": "system", "text": text}


# ---------------------------------------------------------------------------
# Relay
# ---------------------------------------------------------------------------


class Relay:
    def __init__(
        self,
        rooms: RoomStore,
        hub: Optional[ConnectionHub] = None,
        scores: Optional[ScoreStore] = None,
        config: Optional[AppConfig] = None,
    ) -> None:
        self.rooms = rooms
        self.hub = hub or ConnectionHub()
        self.scores = scores
        self.config = config or AppConfig()
        self.handlers: Dict[str, Callable[[str, Message, Outbox], None]] = {
            "create_room": self.create_duel_room,
            "join_room": self.join_duel_room,
            "game_reset": self.reset_duel,
            "create_battle_room": self.create_battle_room,
            "join_battle_room": self.join_battle_room,
            "start_battle": self.start_battle,
            "reset_battle": self.reset_battle,
            "game_action": self.game_action,
            "leave_room": self.leave_room,
            "chat_message": self.chat_message,
        }

    # ------------------------- connection lifecycle -------------------------

    async def connect(self, conn_id: str, websocket: WebSocket, user_id: str, username: str) -> None:
        self.hub.register(conn_id, websocket, user_id, username)
        logger.info("User connected: %s (%s)", username, user_id)
        out = Outbox()
        out.to(self.hub.ids(), {"type": "online_users", "users": self.hub.online_users()})
        out.to_one(conn_id, self._room_list(DUEL))
        out.to_one(conn_id, self._room_list(BATTLE))
        await out.flush(self.hub)

    async def disconnect(self, conn_id: str) -> None:
        user = self.hub.users.get(conn_id, {})
        out = Outbox()
        self._leave(conn_id, out)
        self.hub.unregister(conn_id)
        logger.info("User disconnected: %s", user.get("username", conn_id))
        out.to(self.hub.ids(), {"type": "online_users", "users": self.hub.online_users()})
        await out.flush(self.hub)

    async def handle(self, conn_id: str, data: object) -> None:
        if not isinstance(data, dict):
            logger.warning("Ignoring non-object message from %s", conn_id)
            return
        message_type = data.get("type")
        handler = self.handlers.get(message_type) if isinstance(message_type, str) else None
        if handler is None:
            logger.warning("Ignoring unknown message type %r from %s", data.get("type"), conn_id)
            return
        out = Outbox()
        try:
            handler(conn_id, data, out)
        except RoomError as e:
            logger.warning("Rejected %s from %s: %s", data.get("type"), conn_id, e)
            out.to_one(conn_id, {"type": "room_error", **e.to_dict()})
        except ProtocolError as e:
            logger.warning("Malformed %s from %s: %s", data.get("type"), conn_id, e)
            return
        await out.flush(self.hub)

    # ------------------------- helpers -------------------------

    def _player(self, conn_id: str) -> PlayerInRoom:
        user = self.hub.users.get(conn_id, {})
        return PlayerInRoom(
            player_id=conn_id,
            user_id=str(user.get("user_id", "")),
            username=str(user.get("username", "")),
        )

    def _lobby(self) -> List[str]:
        return [cid for cid in self.hub.ids() if self.rooms.find_by_player(cid) is None]

    def _ready(self, message_type: str, seed: int, **extra: object) -> Message:
        return {
            "type": message_type,
            "seed": seed,
            "settings": self.config.game_settings(),
            **extra,
        }

    def _room_list(self, kind: str) -> Message:
        message_type = "room_list" if kind == DUEL else "battle_room_list"
        return {"type": message_type, "rooms": self.rooms.summaries(kind)}

    def _announce_rooms(self, kind: str, out: Outbox) -> None:
        out.to(self._lobby(), self._room_list(kind))

    def _enter(self, conn_id: str, out: Outbox) -> None:
        if self.rooms.find_by_player(conn_id) is not None:
            self._leave(conn_id, out)

    def _room_of(self, conn_id: str, kind: str) -> Room:
        room = self.rooms.find_by_player(conn_id)
        if room is None or room.kind != kind:
            raise NotInRoom()
        return room

    # ------------------------- duel rooms -------------------------

    def create_duel_room(self, conn_id: str, data: Message, out: Outbox) -> None:
        self._enter(conn_id, out)
        room = self.rooms.create_duel(self._player(conn_id))
        out.to_one(conn_id, {"type": "room_created", "room_id": room.room_id})
        self._announce_rooms(DUEL, out)

    def join_duel_room(self, conn_id: str, data: Message, out: Outbox) -> None:
        room = self.rooms.get(data.get("room_id"))
        if room.kind != DUEL:
            raise RoomNotFound()
        if conn_id in room:
            return
        room.check_joinable()
        self._enter(conn_id, out)
        player = self._player(conn_id)
        seed = self.rooms.add_player(room.room_id, player)
        members = list(room.players)
        out.to_one(conn_id, {"type": "room_joined", "room_id": room.room_id})
        out.to(
            members,
            {"type": "player_joined", "user_id": player.user_id, "username": player.username},
        )
        if seed is not None:
            out.to(members, self._ready("game_ready", seed))
        self._announce_rooms(DUEL, out)

    def reset_duel(self, conn_id: str, data: Message, out: Outbox) -> None:
        room = self._room_of(conn_id, DUEL)
        seed = room.reset()
        members = list(room.players)
        out.to(members, {"type": "game_reset"})
        out.to(members, self._ready("game_ready", seed))
        out.to(members, system_message("🔄 Game reset, a new round begins!"))
        self._announce_rooms(DUEL, out)

    def _duel_action(self, room: DuelRoom, conn_id: str, action: GameAction, out: Outbox) -> None:
        out.to([p.player_id for p in room.others(conn_id)], {"type": "game_action", **action_to_dict(action)})
        if not isinstance(action, GameOverAction):
            return
        winner = room.report_game_over(conn_id)
        if winner is None:
            return
        self._record_win(winner)
        out.to(
            list(room.players),
            system_message("🏆 %s wins! Tally: [ %s ]" % (winner.username, room.tally_text())),
        )
        self._announce_rooms(DUEL, out)

    def _record_win(self, winner: PlayerInRoom) -> None:
        if self.scores is None:
            return
        try:
            self.scores.add_wins(int(winner.user_id), self.config.duel_win_points)
        except (StoreError, ValueError) as e:
            logger.error("Score update failed for %s: %s", winner.username, e)

    # ------------------------- battle rooms -------------------------

    def create_battle_room(self, conn_id: str, data: Message, out: Outbox) -> None:
        self._enter(conn_id, out)
        room = self.rooms.create_battle(self._player(conn_id), data.get("max_players"))
        out.to_one(
            conn_id,
            {
                "type": "battle_room_created",
                "room_id": room.room_id,
                "max_players": room.capacity,
                "is_host": True,
            },
        )
        out.to_one(conn_id, {"type": "battle_player_list", "players": room.player_list()})
        self._announce_rooms(BATTLE, out)

    def join_battle_room(self, conn_id: str, data: Message, out: Outbox) -> None:
        room = self.rooms.get(data.get("room_id"))
        if not isinstance(room, BattleRoom):
            raise RoomNotFound()
        if conn_id in room:
            return
        room.check_joinable()
        self._enter(conn_id, out)
        player = self._player(conn_id)
        self.rooms.add_player(room.room_id, player)
        members = list(room.players)
        out.to_one(
            conn_id,
            {
                "type": "battle_room_joined",
                "room_id": room.room_id,
                "max_players": room.capacity,
                "is_host": False,
                "host_name": room.players[room.host_id].username,
            },
        )
        out.to(members, {"type": "battle_player_list", "players": room.player_list()})
        out.to(members, system_message("👋 %s joined the room" % player.username))
        self._announce_rooms(BATTLE, out)

    def start_battle(self, conn_id: str, data: Message, out: Outbox) -> None:
        room = self._room_of(conn_id, BATTLE)
        seed = room.start(conn_id)
        members = list(room.players)
        out.to(members, self._ready("battle_game_ready", seed, players=room.player_list()))
        out.to(members, system_message("🎮 Game on!"))
        self._announce_rooms(BATTLE, out)

    def reset_battle(self, conn_id: str, data: Message, out: Outbox) -> None:
        room = self._room_of(conn_id, BATTLE)
        room.reset(conn_id)
        members = list(room.players)
        requester = room.players[conn_id].username
        out.to(members, {"type": "battle_game_reset"})
        out.to(members, {"type": "battle_player_list", "players": room.player_list()})
        out.to(members, system_message("🔄 %s restarted the room" % requester))
        self._announce_rooms(BATTLE, out)

    def _battle_action(self, room: BattleRoom, conn_id: str, action: GameAction, out: Outbox) -> None:
        others = [p.player_id for p in room.others(conn_id)]
        if isinstance(action, BoardAction):
            room.update_board(conn_id, action.board)
            out.to(others, {"type": "battle_game_action", "player_id": conn_id, **action_to_dict(action)})
        elif isinstance(action, ScoreAction):
            room.update_score(conn_id, action.score)
            out.to(others, {"type": "battle_game_action", "player_id": conn_id, **action_to_dict(action)})
        elif isinstance(action, GarbageAction):
            self._route_attack(room, conn_id, action.lines, out)
        elif isinstance(action, GameOverAction):
            elimination = room.eliminate(conn_id, reason="game_over")
            if elimination is None:
                return
            out.to(list(room.players), {"type": "player_eliminated", **elimination.to_dict()})
            self._finish_if_over(room, room.check_end(), out)

    def _route_attack(self, room: BattleRoom, conn_id: str, lines: int, out: Outbox) -> None:
        if room.status != PLAYING:
            return
        attacker = room.players[conn_id]
        target = room.select_target(conn_id)
        if target is None:
            logger.debug("Battle %s: attack from %s had no target", room.room_id, attacker.username)
            return
        out.to_one(
            target.player_id,
            {
                "type": "receive_garbage",
                "from_player_id": conn_id,
                "from_username": attacker.username,
                "lines": lines,
            },
        )
        out.to(
            list(room.players),
            {"type": "attack_event", "from": attacker.username, "to": target.username, "lines": lines},
        )

    def _finish_if_over(
        self, room: BattleRoom, rankings: Optional[List[Dict[str, object]]], out: Outbox
    ) -> None:
        if rankings is None:
            return
        members = list(room.players)
        out.to(members, {"type": "battle_game_finished", "rankings": rankings})
        ranking_text = " | ".join("#%s %s" % (r["rank"], r["username"]) for r in rankings)
        out.to(members, system_message("🏆 Game over! Final ranking: %s" % ranking_text))
        self._announce_rooms(BATTLE, out)

    # ------------------------- shared events -------------------------

    def game_action(self, conn_id: str, data: Message, out: Outbox) -> None:
        room = self.rooms.find_by_player(conn_id)
        if room is None:
            return
        action = parse_action(data.get("action"), data.get("value"))
        if isinstance(room, DuelRoom):
            self._duel_action(room, conn_id, action, out)
        elif isinstance(room, BattleRoom):
            self._battle_action(room, conn_id, action, out)

    def chat_message(self, conn_id: str, data: Message, out: Outbox) -> None:
        room = self.rooms.find_by_player(conn_id)
        text = data.get("text")
        if room is None or not isinstance(text, str):
            return
        text = text.strip()[: self.config.chat_max_length]
        if not text:
            return
        username = self.hub.users.get(conn_id, {}).get("username", "")
        out.to(list(room.players), {"type": "chat_message", "kind": "user", "username": username, "text": text})

    def leave_room(self, conn_id: str, data: Message, out: Outbox) -> None:
        self._leave(conn_id, out)

    def _leave(self, conn_id: str, out: Outbox) -> None:
        left = self.rooms.leave(conn_id)
        if left is None:
            return
        room, result = left
        if isinstance(room, BattleRoom):
            self._after_battle_leave(room, result, out)
        else:
            self._after_duel_leave(room, result, out)

    def _after_duel_leave(self, room: Room, result: LeaveResult, out: Outbox) -> None:
        if not result.room_deleted:
            members = list(room.players)
            out.to(members, {"type": "player_left"})
            out.to(members, system_message("🚪 %s left the room" % result.player.username))
        self._announce_rooms(DUEL, out)

    def _after_battle_leave(self, room: BattleRoom, result: LeaveResult, out: Outbox) -> None:
        members = list(room.players)
        if result.elimination is not None:
            out.to(members, {"type": "player_eliminated", **result.elimination.to_dict()})
        if result.rankings is not None:
            self._finish_if_over(room, result.rankings, out)
        if not result.room_deleted:
            if result.new_host is not None:
                out.to(
                    members,
                    {
                        "type": "host_changed",
                        "player_id": result.new_host.player_id,
                        "username": result.new_host.username,
                    },
                )
            out.to(members, {"type": "battle_player_list", "players": room.player_list()})
            out.to(members, system_message("🚪 %s left the room" % result.player.username))
        self._announce_rooms(BATTLE, out)
