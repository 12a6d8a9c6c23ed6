#!/usr/bin/env python3
"""
Mines engine unit tests: payout math, mine placement, views and errors.

Run: python -m unittest tests_engine
     pytest tests_engine.py
"""

import hashlib
import os
import random
import sys
import tempfile
import unittest
from collections import Counter
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))
os.environ.setdefault(
    "DATABASE_URL", f"sqlite+aiosqlite:///{Path(tempfile.mkdtemp()) / 'mines_test.db'}"
)

import mines
from errors import Conflict, InvalidParameter, NotFound, describe_validation_errors
from models import MinesGame, STATUS_ACTIVE, STATUS_LOST


# ============================================================
# Payout math
# ============================================================

class TestMultiplier(unittest.TestCase):

    def test_no_reveals_is_identity(self):
        for m in range(mines.MIN_MINES, mines.MAX_MINES + 1):
            self.assertEqual(mines.calculate_multiplier(0, m), 1.0)

    def test_strictly_increasing_in_reveals(self):
        for m in range(mines.MIN_MINES, mines.MAX_MINES + 1):
            values = [mines.calculate_multiplier(k, m) for k in range(0, mines.GRID_SIZE - m + 1)]
            for lower, higher in zip(values, values[1:]):
                self.assertLess(lower, higher, f"mines={m}")

    def test_house_edge_never_pays_more_than_fair(self):
        for m in range(mines.MIN_MINES, mines.MAX_MINES + 1):
            for k in range(0, mines.GRID_SIZE - m + 1):
                self.assertLessEqual(mines.calculate_multiplier(k, m), mines.fair_multiplier(k, m))

    def test_first_reveal_with_five_mines(self):
        # 25 cells, 20 safe: fair is 25/20, minus 3%
        self.assertAlmostEqual(mines.fair_multiplier(1, 5), 1.25)
        self.assertEqual(mines.calculate_multiplier(1, 5), 1.21)

    def test_rounds_half_up_on_the_decimal_form(self):
        # 2.5 * 0.97 is 2.4249999... as a float; the payout table shows 2.43
        self.assertEqual(mines.calculate_multiplier(1, 15), 2.43)

    def test_single_safe_cell(self):
        self.assertEqual(mines.calculate_multiplier(1, 24), 24.25)

    def test_recomputation_is_stable(self):
        first = [mines.calculate_multiplier(k, 7) for k in range(19)]
        second = [mines.calculate_multiplier(k, 7) for k in range(19)]
        self.assertEqual(first, second)

    def test_invalid_mine_counts(self):
        for bad in (0, 1, 2, 25, -3, True, 3.5, None, "5"):
            with self.assertRaises(InvalidParameter):
                mines.calculate_multiplier(1, bad)
            with self.assertRaises(InvalidParameter):
                mines.get_multiplier_table(bad)

    def test_reveal_count_out_of_range(self):
        with self.assertRaises(InvalidParameter):
            mines.calculate_multiplier(-1, 5)
        with self.assertRaises(InvalidParameter):
            mines.calculate_multiplier(21, 5)

    def test_multiplier_table(self):
        table = mines.get_multiplier_table(5)
        self.assertEqual([step.reveals for step in table], list(range(1, 21)))
        self.assertEqual(table[-1].multiplier, mines.calculate_multiplier(20, 5))
        self.assertEqual(
            [step.model_dump(by_alias=True) for step in mines.get_multiplier_table(24)],
            [{"reveals": 1, "multiplier": 24.25}],
        )

    def test_next_multipliers_preview(self):
        self.assertEqual(
            mines.next_multipliers(0, 3),
            [mines.calculate_multiplier(k, 3) for k in range(1, 6)],
        )
        self.assertEqual(len(mines.next_multipliers(0, 22)), 3)
        self.assertEqual(mines.next_multipliers(2, 22), [mines.calculate_multiplier(3, 22)])
        self.assertEqual(mines.next_multipliers(3, 22), [])

    def test_profit_is_floored_exactly(self):
        self.assertEqual(mines.calculate_profit(100, 1.15), 115)
        self.assertEqual(mines.calculate_profit(100, 1.21), 121)
        self.assertEqual(mines.calculate_profit(50, 24.25), 1212)
        self.assertEqual(mines.calculate_profit(33.5, 1.1), 36)


# ============================================================
# Mine placement
# ============================================================

class TestMinePlacement(unittest.TestCase):

    def test_positions_are_distinct_and_in_range(self):
        rng = random.Random(7)
        for m in range(mines.MIN_MINES, mines.MAX_MINES + 1):
            positions = mines.generate_mine_positions(m, rng)
            self.assertEqual(len(positions), m)
            self.assertEqual(len(set(positions)), m)
            self.assertEqual(positions, sorted(positions))
            self.assertTrue(all(0 <= p < mines.GRID_SIZE for p in positions))

    def test_seeded_source_is_deterministic(self):
        a = mines.generate_mine_positions(5, random.Random(42))
        b = mines.generate_mine_positions(5, random.Random(42))
        self.assertEqual(a, b)

    def test_default_source(self):
        self.assertEqual(len(mines.generate_mine_positions(10)), 10)

    def test_uniform_over_cells(self):
        trials = 100_000
        rng = random.Random(2024)
        counts = Counter()
        for _ in range(trials):
            counts.update(mines.generate_mine_positions(5, rng))

        self.assertEqual(sum(counts.values()), 5 * trials)
        for cell in range(mines.GRID_SIZE):
            self.assertAlmostEqual(counts[cell] / trials, 5 / 25, delta=0.01, msg=f"cell {cell}")

    def test_layout_follows_seeds(self):
        server_seed = mines.generate_server_seed()
        first = mines.mine_layout(server_seed, "client", 5)
        self.assertEqual(first, mines.mine_layout(server_seed, "client", 5))
        self.assertEqual(
            mines.seeded_rng(server_seed, "client").random(),
            mines.seeded_rng(server_seed, "client").random(),
        )

    def test_server_seed_hash(self):
        seed = mines.generate_server_seed()
        self.assertEqual(len(seed), 64)
        self.assertEqual(mines.get_server_seed_hash(seed), hashlib.sha256(seed.encode()).hexdigest())


# ============================================================
# Views
# ============================================================

def make_game(**overrides):
    fields = dict(
        id="game-1",
        user_id="user-1",
        bet_amount=100.0,
        mine_count=5,
        mine_positions=[1, 2, 3, 4, 5],
        revealed_cells=[0],
        multiplier=1.21,
        status=STATUS_ACTIVE,
        result_amount=None,
        server_seed="s" * 64,
        server_seed_hash="h" * 64,
        client_seed="client",
    )
    fields.update(overrides)
    return MinesGame(**fields)


class TestViews(unittest.TestCase):

    def test_active_view_has_no_secrets(self):
        data = mines.active_view(make_game()).model_dump(by_alias=True)
        self.assertNotIn("minePositions", data)
        self.assertNotIn("serverSeed", data)
        self.assertEqual(data["safeCellsRemaining"], 19)
        self.assertEqual(data["maxMultiplier"], mines.calculate_multiplier(20, 5))
        self.assertEqual(data["nextMultipliers"][0], mines.calculate_multiplier(2, 5))

    def test_settled_view_refuses_active_game(self):
        with self.assertRaises(RuntimeError):
            mines.settled_view(make_game())

    def test_settled_view(self):
        game = make_game(status=STATUS_LOST, result_amount=0, revealed_cells=[0, 3])
        data = mines.settled_view(game).model_dump(by_alias=True)
        self.assertEqual(data["minePositions"], [1, 2, 3, 4, 5])
        self.assertEqual(data["serverSeed"], "s" * 64)
        self.assertEqual(data["profit"], 0)


# ============================================================
# Errors
# ============================================================

class TestErrors(unittest.TestCase):

    def test_conflict_carries_game_id(self):
        err = Conflict(game_id="abc")
        self.assertEqual(err.status_code, 409)
        self.assertEqual(
            err.to_dict(),
            {"success": False, "error": "You already have an active game", "gameId": "abc"},
        )

    def test_not_found_defaults(self):
        self.assertEqual(NotFound().to_dict(), {"success": False, "error": "Active game not found"})

    def test_describe_validation_errors(self):
        self.assertEqual(describe_validation_errors([{"type": "union_tag_not_found", "loc": ()}]), "Invalid action")
        self.assertEqual(
            describe_validation_errors([{"type": "missing", "loc": ("start", "bet"), "msg": "Field required"}]),
            "Invalid bet: Field required",
        )


if __name__ == "__main__":
    unittest.main()
