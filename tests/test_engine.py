import random

import pytest

from tetroyale_engine import (
    COLS,
    GARBAGE,
    PIECES,
    ROWS,
    PieceGenerator,
    SpeedPolicy,
    TetrisGame,
    collides,
    copy_matrix,
    create_board,
    rotate_matrix,
    sweep_full_rows,
    threshold_crossings,
)

T, O, S, Z, I, J, L = range(7)


def new_game(seed=1):
    game = TetrisGame(garbage_rng=random.Random(99))
    game.reset(seed)
    return game


def fill_rows(board, rows, gap_col=None, value=GARBAGE):
    for y in rows:
        board[y] = [value for _ in range(COLS)]
        if gap_col is not None:
            board[y][gap_col] = 0


# ------------------------- garbage -------------------------


def test_add_garbage_appends_rows_with_one_hole():
    game = new_game()
    game.add_garbage(3)
    assert len(game.board) == ROWS
    assert all(len(row) == COLS for row in game.board)
    for row in game.board[-3:]:
        assert row.count(0) == 1
        assert row.count(GARBAGE) == COLS - 1
    assert all(cell == 0 for row in game.board[:-3] for cell in row)


def test_add_garbage_pushes_top_row_off_board():
    game = new_game()
    game.board[0][5] = 3
    game.add_garbage(1)
    assert all(cell == 0 for cell in game.board[0])
    assert 3 not in [cell for row in game.board for cell in row]


# ------------------------- line clears -------------------------


def test_sweep_scans_every_row_including_top():
    board = create_board()
    fill_rows(board, [0, 19])
    assert sweep_full_rows(board) == 2
    assert board == create_board()


def test_four_line_clear_is_one_score_update():
    game = new_game()
    fill_rows(game.board, range(16, 20), gap_col=4)
    scores = []
    game.on_score = scores.append
    game.piece = copy_matrix(PIECES[I])
    game.x, game.y = 3, 0

    game.hard_drop()

    # 16 rows of hard drop at 2 points, then 4 lines at 10 points
    assert scores == [72]
    assert game.score == 72
    assert game.lines_cleared == 4
    assert game.board == create_board()


def test_crossing_two_hundred_gives_one_signal_per_threshold():
    game = new_game()
    fill_rows(game.board, range(16, 20), gap_col=4)
    game.score = 180
    signals = []
    game.on_lines_cleared = signals.append
    game.piece = copy_matrix(PIECES[I])
    game.x, game.y = 3, 16

    game.soft_drop()

    assert game.score == 220
    assert signals == [1]
    assert threshold_crossings(180, 220, 200) == 1


# ------------------------- rotation -------------------------


@pytest.mark.parametrize("index", range(len(PIECES)))
@pytest.mark.parametrize("direction", [1, -1])
def test_four_rotations_restore_matrix(index, direction):
    piece = copy_matrix(PIECES[index])
    rotated = piece
    for _ in range(4):
        rotated = rotate_matrix(rotated, direction)
    assert rotated == PIECES[index]


def test_rotate_clockwise_then_back():
    piece = copy_matrix(PIECES[T])
    assert rotate_matrix(piece, 1) == [[0, 1, 0], [0, 1, 1], [0, 1, 0]]
    assert rotate_matrix(rotate_matrix(piece, 1), -1) == PIECES[T]


def test_rotation_kicks_off_the_wall():
    game = new_game()
    game.piece = copy_matrix(PIECES[I])
    game.x, game.y = -1, 5
    assert not collides(game.board, game.piece, game.x, game.y)

    game.rotate(1)

    assert game.x == 0
    assert game.piece[1] == [5, 5, 5, 5]


def test_blocked_rotation_leaves_piece_untouched():
    game = new_game()
    game.piece = copy_matrix(PIECES[T])
    game.x, game.y = 3, 0
    game.board = [[GARBAGE for _ in range(COLS)] for _ in range(ROWS)]
    for dy, row in enumerate(game.piece):
        for dx, value in enumerate(row):
            if value:
                game.board[dy][3 + dx] = 0
    before = copy_matrix(game.piece)

    game.rotate(1)

    assert game.piece == before
    assert (game.x, game.y) == (3, 0)


# ------------------------- movement and collisions -------------------------


def test_move_stops_at_walls():
    game = new_game()
    game.piece = copy_matrix(PIECES[O])
    game.x, game.y = 0, 5
    game.move(-1)
    assert game.x == 0
    game.x = COLS - 2
    game.move(1)
    assert game.x == COLS - 2
    game.move(-1)
    assert game.x == COLS - 3


def test_negative_offsets_count_as_out_of_bounds():
    board = create_board()
    assert collides(board, [[1]], -1, 0)
    assert collides(board, [[1]], 0, -1)
    assert collides(board, [[1]], COLS, 0)
    assert collides(board, [[1]], 0, ROWS)
    assert not collides(board, [[0, 1]], -1, 0)


def test_tick_drops_once_interval_is_exceeded():
    game = new_game()
    game.tick(500)
    assert game.y == 0
    game.tick(600)
    assert game.y == 1
    assert game.drop_counter == 0


def test_lock_with_blocked_spawn_ends_game_in_event_order():
    game = new_game()
    fill_rows(game.board, range(2, ROWS), gap_col=9)
    game.piece = copy_matrix(PIECES[T])
    game.x, game.y = 3, 0
    events = []
    game.on_next_piece = lambda piece: events.append("next")
    game.on_board_update = lambda board: events.append("board")
    game.on_game_over = lambda: events.append("game_over")

    game.soft_drop()

    assert game.game_over
    assert events == ["next", "board", "game_over"]
    y_before = game.y
    game.tick(5000)
    assert game.y == y_before


# ------------------------- sequences and mirrors -------------------------


def test_same_seed_gives_same_piece_sequence():
    first, second = PieceGenerator(42), PieceGenerator(42)
    assert [first.next_index() for _ in range(200)] == [
        second.next_index() for _ in range(200)
    ]

    a, b = new_game(seed=42), new_game(seed=42)
    assert a.piece == b.piece
    assert a.preview(5) == b.preview(5)


def test_preview_does_not_change_upcoming_pieces():
    peeked = new_game(seed=7)
    plain = new_game(seed=7)
    upcoming = peeked.preview(4)
    assert len(upcoming) == 4

    drawn = [plain.next_piece]
    for _ in range(3):
        drawn.append(plain._draw())
    assert upcoming == drawn


def test_remote_board_only_changes_through_set_board_state():
    mirror = TetrisGame(remote=True)
    board = create_board()
    board[19] = [GARBAGE] * COLS
    mirror.set_board_state(board)
    mirror.tick(10_000)
    assert mirror.board is board


def test_speed_policy():
    assert SpeedPolicy().interval_for(500) == 1000
    policy = SpeedPolicy(initial_ms=1000, step_ms=100, lines_per_step=10, min_ms=300)
    assert policy.interval_for(9) == 1000
    assert policy.interval_for(25) == 800
    assert policy.interval_for(100) == 300


def test_line_clears_speed_up_gravity_when_policy_enabled():
    game = TetrisGame(speed=SpeedPolicy(initial_ms=1000, step_ms=250, lines_per_step=4))
    game.reset(3)
    fill_rows(game.board, range(16, 20), gap_col=4)
    game.piece = copy_matrix(PIECES[I])
    game.x, game.y = 3, 16
    game.soft_drop()
    assert game.drop_interval == 750
