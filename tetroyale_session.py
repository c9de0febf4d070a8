"""Binds a local board to the actions it sends to and receives from a match."""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

from tetroyale_engine import Board, SpeedPolicy, TetrisGame, threshold_crossings
from tetroyale_protocol import (
    BoardAction,
    GameAction,
    GameOverAction,
    GarbageAction,
    ScoreAction,
)

logger = logging.getLogger(__name__)

ATTACK_THRESHOLD = 200


class ScoreAttackTracker:
    """Counts how many attack thresholds each new score report crosses."""

    def __init__(self, threshold: int = ATTACK_THRESHOLD) -> None:
        self.threshold = threshold
        self.last_score = 0

    def update(self, score: int) -> int:
        attacks = 0
        if self.threshold > 0:
            attacks = max(0, threshold_crossings(self.last_score, score, self.threshold))
        self.last_score = score
        return attacks

    def reset(self) -> None:
        self.last_score = 0


class PlayerSession:
    """A player's own board plus read-only mirrors of their opponents.

    Every local event is turned into a :class:`GameAction` and handed to
    ``send``; incoming garbage and opponent boards are applied locally.
    """

    def __init__(
        self,
        send: Callable[[GameAction], None],
        attack_threshold: int = ATTACK_THRESHOLD,
        speed: Optional[SpeedPolicy] = None,
        duel: bool = False,
    ) -> None:
        self.send = send
        self.duel = duel
        self.game = TetrisGame(speed=speed)
        self.tracker = ScoreAttackTracker(attack_threshold)
        self.opponents: Dict[str, TetrisGame] = {}
        self.next_pieces: List[List[List[int]]] = []

        self.game.on_score = self._handle_score
        self.game.on_board_update = self._handle_board
        self.game.on_game_over = self._handle_game_over
        self.game.on_next_piece = self._handle_next_piece

    @classmethod
    def from_settings(
        cls,
        send: Callable[[GameAction], None],
        settings: Dict[str, int],
        duel: bool = False,
    ) -> "PlayerSession":
        """Build a session from the ``settings`` sent with a ready message."""
        speed = SpeedPolicy(
            initial_ms=settings["drop_interval_ms"],
            step_ms=settings["speed_step_ms"],
            lines_per_step=settings["lines_per_speed_step"],
            min_ms=settings["min_drop_interval_ms"],
        )
        return cls(send, settings["attack_threshold"], speed, duel)

    def start(self, seed: int) -> None:
        self.tracker.reset()
        self.game.reset(seed)

    def cleanup(self) -> None:
        self.game.game_over = True

    def _handle_score(self, score: int) -> None:
        self.send(ScoreAction(score))
        attacks = self.tracker.update(score)
        if attacks > 0:
            logger.debug("Score %s crossed %s attack threshold(s)", score, attacks)
            self.send(GarbageAction(attacks))

    def _handle_board(self, board: Board) -> None:
        self.send(BoardAction([list(row) for row in board]))

    def _handle_game_over(self) -> None:
        self.send(GameOverAction())

    def _handle_next_piece(self, _piece: List[List[int]]) -> None:
        self.next_pieces = self.game.preview(5)

    # ------------------------- incoming -------------------------

    def receive_garbage(self, lines: int) -> None:
        if self.game.game_over:
            return
        self.game.add_garbage(lines)

    def opponent(self, player_id: str) -> TetrisGame:
        mirror = self.opponents.get(player_id)
        if mirror is None:
            mirror = TetrisGame(remote=True)
            self.opponents[player_id] = mirror
        return mirror

    def receive_action(self, player_id: str, action: GameAction) -> None:
        """Apply an action relayed from ``player_id``."""
        if isinstance(action, BoardAction):
            self.opponent(player_id).set_board_state(action.board)
        elif isinstance(action, ScoreAction):
            self.opponent(player_id).score = action.score
        elif isinstance(action, GarbageAction):
            self.receive_garbage(action.lines)
        elif isinstance(action, GameOverAction):
            self.opponent(player_id).game_over = True
            # In a duel the survivor's board stops as soon as the opponent tops out.
            if self.duel:
                self.cleanup()

    def drop_opponent(self, player_id: str) -> None:
        self.opponents.pop(player_id, None)
