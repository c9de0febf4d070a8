"""Game actions exchanged between players, and their JSON form."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Union

from tetroyale_engine import COLS, GARBAGE, ROWS


class ProtocolError(ValueError):
    """A client sent a message that does not match the wire format."""


@dataclass(frozen=True)
class BoardAction:
    board: List[List[int]]
    kind = "board"

    def value(self) -> object:
        return self.board


@dataclass(frozen=True)
class ScoreAction:
    score: int
    kind = "score"

    def value(self) -> object:
        return self.score


@dataclass(frozen=True)
class GarbageAction:
    lines: int
    kind = "garbage"

    def value(self) -> object:
        return self.lines


@dataclass(frozen=True)
class GameOverAction:
    kind = "game_over"

    def value(self) -> object:
        return None


GameAction = Union[BoardAction, ScoreAction, GarbageAction, GameOverAction]


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _parse_board(value: object) -> List[List[int]]:
    if not isinstance(value, list) or len(value) != ROWS:
        raise ProtocolError("board must have %d rows" % ROWS)
    board: List[List[int]] = []
    for row in value:
        if not isinstance(row, list) or len(row) != COLS:
            raise ProtocolError("board rows must have %d cells" % COLS)
        if not all(_is_int(cell) and 0 <= cell <= GARBAGE for cell in row):
            raise ProtocolError("board cells must be integers in [0, %d]" % GARBAGE)
        board.append(list(row))
    return board


def parse_action(kind: object, value: object = None) -> GameAction:
    if kind == "board":
        return BoardAction(_parse_board(value))
    if kind == "score":
        if not _is_int(value) or value < 0:
            raise ProtocolError("score must be a non-negative integer")
        return ScoreAction(value)
    if kind == "garbage":
        if not _is_int(value) or value <= 0:
            raise ProtocolError("garbage must be a positive integer")
        return GarbageAction(value)
    if kind == "game_over":
        return GameOverAction()
    raise ProtocolError("unknown action %r" % (kind,))


def action_to_dict(action: GameAction) -> Dict[str, object]:
    return {"action": action.kind, "value": action.value()}
