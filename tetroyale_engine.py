"""Deterministic falling-block simulation shared by every game view."""

from __future__ import annotations

import logging
import random
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Board and piece definitions
# ---------------------------------------------------------------------------

ROWS = 20
COLS = 10
EMPTY = 0
GARBAGE = 8
SPAWN_X = 3
SPAWN_Y = 0
HARD_DROP_POINTS = 2
LINE_POINTS = 10
LINE_SIGNAL_THRESHOLD = 100
MAX_SEED = 2147483647

Board = List[List[int]]
Matrix = List[List[int]]

PIECE_NAMES = ("T", "O", "S", "Z", "I", "J", "L")

PIECES: List[Matrix] = [
    [
        [0, 1, 0],
        [1, 1, 1],
        [0, 0, 0],
    ],
    [
        [2, 2],
        [2, 2],
    ],
    [
        [0, 3, 3],
        [3, 3, 0],
        [0, 0, 0],
    ],
    [
        [4, 4, 0],
        [0, 4, 4],
        [0, 0, 0],
    ],
    [
        [0, 5, 0, 0],
        [0, 5, 0, 0],
        [0, 5, 0, 0],
        [0, 5, 0, 0],
    ],
    [
        [0, 6, 0],
        [0, 6, 0],
        [6, 6, 0],
    ],
    [
        [0, 7, 0],
        [0, 7, 0],
        [0, 7, 7],
    ],
]


def create_board() -> Board:
    return [[EMPTY for _ in range(COLS)] for _ in range(ROWS)]


def copy_matrix(matrix: Matrix) -> Matrix:
    return [list(row) for row in matrix]


def rotate_matrix(matrix: Matrix, direction: int) -> Matrix:
    """Return ``matrix`` turned 90 degrees.

    A positive direction is clockwise (transpose, then reverse each row);
    anything else is counter-clockwise (transpose, then reverse row order).
    """
    transposed = [list(column) for column in zip(*matrix)]
    if direction > 0:
        return [row[::-1] for row in transposed]
    return transposed[::-1]


def collides(board: Board, piece: Matrix, x: int, y: int) -> bool:
    for dy, row in enumerate(piece):
        for dx, value in enumerate(row):
            if value == EMPTY:
                continue
            bx, by = x + dx, y + dy
            if bx < 0 or bx >= COLS or by < 0 or by >= ROWS:
                return True
            if board[by][bx] != EMPTY:
                return True
    return False


def merge(board: Board, piece: Matrix, x: int, y: int) -> None:
    for dy, row in enumerate(piece):
        for dx, value in enumerate(row):
            if value != EMPTY:
                board[y + dy][x + dx] = value


def sweep_full_rows(board: Board) -> int:
    """Remove full rows bottom to top, returning how many were cleared."""
    cleared = 0
    y = len(board) - 1
    while y >= 0:
        if all(cell != EMPTY for cell in board[y]):
            del board[y]
            board.insert(0, [EMPTY for _ in range(COLS)])
            cleared += 1
        else:
            y -= 1
    return cleared


def garbage_row(rng: random.Random) -> List[int]:
    row = [GARBAGE for _ in range(COLS)]
    row[rng.randrange(COLS)] = EMPTY
    return row


def threshold_crossings(old_score: int, new_score: int, threshold: int) -> int:
    return new_score // threshold - old_score // threshold


# ---------------------------------------------------------------------------
# Piece sequence and speed policy
# ---------------------------------------------------------------------------


class PieceGenerator:
    """Uniform shape picker; equal seeds give equal sequences."""

    def __init__(self, seed: int) -> None:
        self.seed = seed
        self._rng = random.Random(seed)

    def next_index(self) -> int:
        return self._rng.randrange(len(PIECES))

    def next_piece(self) -> Matrix:
        return copy_matrix(PIECES[self.next_index()])


@dataclass
class SpeedPolicy:
    initial_ms: int = 1000
    step_ms: int = 0
    lines_per_step: int = 10
    min_ms: int = 100

    def interval_for(self, lines_cleared: int) -> int:
        if self.step_ms <= 0 or self.lines_per_step <= 0:
            return self.initial_ms
        steps = lines_cleared // self.lines_per_step
        return max(self.min_ms, self.initial_ms - steps * self.step_ms)


# ---------------------------------------------------------------------------
# Game session
# ---------------------------------------------------------------------------


class TetrisGame:
    """One simulated board.

    Remote instances mirror an opponent: they never tick and only change
    through :meth:`set_board_state`.
    """

    def __init__(
        self,
        remote: bool = False,
        speed: Optional[SpeedPolicy] = None,
        garbage_rng: Optional[random.Random] = None,
    ) -> None:
        self.remote = remote
        self.speed = speed or SpeedPolicy()
        self.garbage_rng = garbage_rng or random.Random()
        self.board: Board = create_board()
        self.score = 0
        self.lines_cleared = 0
        self.game_over = False
        self.seed: Optional[int] = None
        self.piece: Optional[Matrix] = None
        self.next_piece: Optional[Matrix] = None
        self.x = SPAWN_X
        self.y = SPAWN_Y
        self.drop_counter = 0.0
        self.drop_interval = self.speed.initial_ms
        self._generator: Optional[PieceGenerator] = None
        self._upcoming: Deque[Matrix] = deque()

        self.on_score: Optional[Callable[[int], None]] = None
        self.on_board_update: Optional[Callable[[Board], None]] = None
        self.on_next_piece: Optional[Callable[[Matrix], None]] = None
        self.on_game_over: Optional[Callable[[], None]] = None
        self.on_lines_cleared: Optional[Callable[[int], None]] = None

    # ------------------------- lifecycle -------------------------

    def reset(self, seed: Optional[int] = None) -> None:
        if seed is None:
            seed = random.randrange(MAX_SEED)
        self.seed = seed
        self._generator = PieceGenerator(seed)
        self._upcoming.clear()
        self.board = create_board()
        self.score = 0
        self.lines_cleared = 0
        self.game_over = False
        self.drop_counter = 0.0
        self.drop_interval = self.speed.interval_for(0)
        self.next_piece = self._draw()
        self.piece = self._draw()
        self.x, self.y = SPAWN_X, SPAWN_Y
        logger.debug("Board reset with seed %s", seed)
        if self.on_score:
            self.on_score(0)
        if self.on_next_piece:
            self.on_next_piece(self.next_piece)

    def _draw(self) -> Matrix:
        if self._upcoming:
            return self._upcoming.popleft()
        if self._generator is None:
            raise RuntimeError("reset() must be called before drawing pieces")
        return self._generator.next_piece()

    def preview(self, count: int) -> List[Matrix]:
        """Return the next ``count`` pieces, starting with the queued one."""
        if self.next_piece is None or count <= 0:
            return []
        while len(self._upcoming) < count - 1:
            self._upcoming.append(self._generator.next_piece())
        upcoming = [self.next_piece] + list(self._upcoming)[: count - 1]
        return [copy_matrix(piece) for piece in upcoming]

    # ------------------------- gravity -------------------------

    def tick(self, elapsed_ms: float) -> None:
        if self.game_over or self.remote or self.piece is None:
            return
        self.drop_counter += elapsed_ms
        if self.drop_counter > self.drop_interval:
            self.soft_drop()

    def soft_drop(self) -> None:
        if self.game_over or self.piece is None:
            return
        self.y += 1
        if collides(self.board, self.piece, self.x, self.y):
            self.y -= 1
            self._lock_piece()
        self.drop_counter = 0.0

    def hard_drop(self) -> None:
        if self.game_over or self.piece is None:
            return
        while not collides(self.board, self.piece, self.x, self.y + 1):
            self.y += 1
            self.score += HARD_DROP_POINTS
        self.soft_drop()

    def _lock_piece(self) -> None:
        merge(self.board, self.piece, self.x, self.y)
        self._sweep()
        self.piece = self.next_piece
        self.next_piece = self._draw()
        self.x, self.y = SPAWN_X, SPAWN_Y
        if collides(self.board, self.piece, self.x, self.y):
            self.game_over = True
        if self.on_next_piece:
            self.on_next_piece(self.next_piece)
        if self.on_board_update:
            self.on_board_update(self.board)
        if self.game_over:
            logger.debug("Spawn blocked, game over at score %s", self.score)
            if self.on_game_over:
                self.on_game_over()

    def _sweep(self) -> None:
        cleared = sweep_full_rows(self.board)
        if not cleared:
            return
        old_score = self.score
        self.score += cleared * LINE_POINTS
        self.lines_cleared += cleared
        self.drop_interval = self.speed.interval_for(self.lines_cleared)
        if self.on_score:
            self.on_score(self.score)
        signals = threshold_crossings(old_score, self.score, LINE_SIGNAL_THRESHOLD)
        if signals > 0 and self.on_lines_cleared:
            self.on_lines_cleared(signals)

    # ------------------------- player input -------------------------

    def move(self, direction: int) -> None:
        if self.game_over or self.piece is None:
            return
        self.x += direction
        if collides(self.board, self.piece, self.x, self.y):
            self.x -= direction

    def rotate(self, direction: int = 1) -> None:
        if self.game_over or self.piece is None:
            return
        original_x = self.x
        offset = 1
        self.piece = rotate_matrix(self.piece, direction)
        while collides(self.board, self.piece, self.x, self.y):
            self.x += offset
            offset = -(offset + (1 if offset > 0 else -1))
            if offset > len(self.piece[0]):
                self.piece = rotate_matrix(self.piece, -direction)
                self.x = original_x
                return

    # ------------------------- external updates -------------------------

    def add_garbage(self, lines: int) -> None:
        for _ in range(lines):
            self.board.pop(0)
            self.board.append(garbage_row(self.garbage_rng))

    def set_board_state(self, board: Board) -> None:
        self.board = board
