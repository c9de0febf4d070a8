import random
from collections import Counter

from tetroyale_rooms import PlayerInRoom, select_attack_target


class ScriptedRng:
    def __init__(self, values, index=0):
        self.values = list(values)
        self.index = index

    def random(self):
        return self.values.pop(0)

    def randrange(self, n):
        return self.index % n


class WeightedOnly(random.Random):
    """Always takes the score-weighted branch."""

    def __init__(self, seed):
        super().__init__(seed)
        self._branch = True

    def random(self):
        self._branch = not self._branch
        if not self._branch:
            return 0.99
        return super().random()


def roster(*specs):
    players = []
    for name, score, alive in specs:
        players.append(
            PlayerInRoom(player_id=name, user_id=name, username=name, score=score, alive=alive)
        )
    return players


def test_no_target_when_nobody_else_is_alive():
    players = roster(("A", 0, True), ("B", 50, False), ("C", 10, False))
    assert select_attack_target(players, "A", random.Random(1)) is None


def test_never_targets_attacker_or_eliminated_players():
    players = roster(("A", 0, True), ("B", 0, False), ("C", 5, True), ("D", 0, True))
    rng = random.Random(3)
    targets = {select_attack_target(players, "A", rng).player_id for _ in range(500)}
    assert targets == {"C", "D"}


def test_uniform_branch_picks_by_index():
    players = roster(("A", 0, True), ("B", 0, True), ("C", 900, True))
    target = select_attack_target(players, "A", ScriptedRng([0.1], index=0))
    assert target.player_id == "B"


def test_weighted_walk_uses_score_plus_one():
    players = roster(("A", 0, True), ("B", 0, True), ("C", 9, True))
    # total weight 11; 0.05 * 11 = 0.55 falls in B's single unit of weight
    assert select_attack_target(players, "A", ScriptedRng([0.8, 0.05])).player_id == "B"
    assert select_attack_target(players, "A", ScriptedRng([0.8, 0.5])).player_id == "C"


def test_weighted_walk_falls_back_to_last_candidate():
    players = roster(("A", 0, True), ("B", 3, True), ("C", 4, True))
    target = select_attack_target(players, "A", ScriptedRng([0.8, 1.5]))
    assert target.player_id == "C"


def test_weighted_frequency_grows_with_score():
    players = roster(
        ("A", 0, True), ("B", 0, True), ("C", 10, True), ("D", 50, True)
    )
    rng = WeightedOnly(17)
    counts = Counter(
        select_attack_target(players, "A", rng).player_id for _ in range(20000)
    )
    assert counts["B"] <= counts["C"] <= counts["D"]
    assert counts["B"] > 0
