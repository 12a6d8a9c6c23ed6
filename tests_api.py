#!/usr/bin/env python3
"""
Mines API integration tests, driven through FastAPI's TestClient against a
throwaway SQLite database.

Run: python -m unittest tests_api
     pytest tests_api.py
"""

import asyncio
import os
import sys
import tempfile
import unittest
import uuid
from pathlib import Path
from unittest.mock import AsyncMock, patch

PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))
os.environ.setdefault(
    "DATABASE_URL", f"sqlite+aiosqlite:///{Path(tempfile.mkdtemp()) / 'mines_test.db'}"
)

from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

import main
import mines
from config import DATABASE_URL, SECRET_KEY, ALGORITHM
from errors import NotFound
from models import Base, MinesGame

FIXED_SERVER_SEED = "5eed" * 16


def make_token(user_id, secret=SECRET_KEY):
    return jwt.encode({"sub": user_id}, secret, algorithm=ALGORITHM)


def all_keys(obj):
    if isinstance(obj, dict):
        for key, value in obj.items():
            yield key
            yield from all_keys(value)
    elif isinstance(obj, list):
        for value in obj:
            yield from all_keys(value)


class MinesApiTestCase(unittest.TestCase):
    """Starts the app once per class; every test plays as a fresh user."""

    @classmethod
    def setUpClass(cls):
        cls.seed_patch = patch("mines.generate_server_seed", return_value=FIXED_SERVER_SEED)
        cls.seed_patch.start()
        cls.client = TestClient(main.app)
        cls.client.__enter__()

    @classmethod
    def tearDownClass(cls):
        cls.client.__exit__(None, None, None)
        cls.seed_patch.stop()

    def setUp(self):
        self.user_id = str(uuid.uuid4())
        self.headers = {"Authorization": f"Bearer {make_token(self.user_id)}"}

    def post(self, headers=None, **body):
        return self.client.post("/api/mines", json=body, headers=headers or self.headers)

    def get(self, path, headers=None):
        return self.client.get(f"/api/mines{path}", headers=headers or self.headers)

    def start(self, bet=100, mine_count=5, **extra):
        resp = self.post(action="start", bet=bet, mineCount=mine_count, **extra)
        self.assertEqual(resp.status_code, 200, resp.text)
        return resp.json()["game"]

    def layout(self, game):
        return mines.mine_layout(FIXED_SERVER_SEED, game["clientSeed"], game["mineCount"])

    def safe_cells(self, game):
        mine_set = set(self.layout(game))
        return [c for c in range(mines.GRID_SIZE) if c not in mine_set]

    def reveal(self, game, cell):
        return self.post(action="reveal", gameId=game["id"], cellIndex=cell)

    def cashout(self, game):
        return self.post(action="cashout", gameId=game["id"])


# ============================================================
# Authentication and request validation
# ============================================================

class TestAuthAndValidation(MinesApiTestCase):

    def test_missing_credentials(self):
        resp = self.client.post("/api/mines", json={"action": "getMultipliers", "mineCount": 5})
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.json(), {"success": False, "error": "Unauthorized"})

    def test_invalid_tokens(self):
        for token in ("garbage", make_token(self.user_id, secret="wrong-secret"),
                      jwt.encode({"role": "x"}, SECRET_KEY, algorithm=ALGORITHM)):
            resp = self.post(headers={"Authorization": f"Bearer {token}"}, action="getMultipliers", mineCount=5)
            self.assertEqual(resp.status_code, 401)
            self.assertFalse(resp.json()["success"])

    def test_unknown_or_missing_action(self):
        for body in ({"action": "explode"}, {"bet": 100}):
            resp = self.client.post("/api/mines", json=body, headers=self.headers)
            self.assertEqual(resp.status_code, 400)
            self.assertEqual(resp.json(), {"success": False, "error": "Invalid action"})

    def test_body_must_be_an_object(self):
        resp = self.client.post("/api/mines", json=[1, 2], headers=self.headers)
        self.assertEqual(resp.status_code, 400)
        self.assertFalse(resp.json()["success"])

    def test_start_rejects_bad_bet(self):
        for bet in (5, 9.99, 1000.5, 0, -10):
            resp = self.post(action="start", bet=bet, mineCount=5)
            self.assertEqual(resp.status_code, 400, bet)
            self.assertEqual(resp.json()["error"], "Invalid bet amount (10-1000)")

    def test_start_rejects_bad_mine_count(self):
        for count in (0, 1, 2, 25):
            resp = self.post(action="start", bet=100, mineCount=count)
            self.assertEqual(resp.status_code, 400, count)
            self.assertEqual(resp.json()["error"], "Invalid mine count (3-24)")

    def test_missing_parameters(self):
        self.assertEqual(self.post(action="start", mineCount=5).status_code, 400)
        self.assertEqual(self.post(action="reveal", gameId="x").status_code, 400)
        self.assertEqual(self.post(action="cashout").status_code, 400)

    def test_reveal_rejects_bad_cell_index(self):
        game = self.start()
        for cell in (-1, 25, 100):
            resp = self.reveal(game, cell)
            self.assertEqual(resp.status_code, 400)
            self.assertEqual(resp.json()["error"], "Invalid cell index")


# ============================================================
# Start
# ============================================================

class TestStart(MinesApiTestCase):

    def test_start_shape(self):
        resp = self.post(action="start", bet=100, mineCount=5, clientSeed="lucky")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["success"])
        game = body["game"]
        self.assertEqual(game["bet"], 100)
        self.assertEqual(game["mineCount"], 5)
        self.assertEqual(game["multiplier"], 1.0)
        self.assertEqual(game["revealedCells"], [])
        self.assertEqual(game["status"], "active")
        self.assertEqual(game["safeCellsRemaining"], 20)
        self.assertEqual(game["maxMultiplier"], mines.calculate_multiplier(20, 5))
        self.assertEqual(game["nextMultipliers"], [mines.calculate_multiplier(k, 5) for k in range(1, 6)])
        self.assertEqual(game["clientSeed"], "lucky")
        self.assertEqual(game["serverSeedHash"], mines.get_server_seed_hash(FIXED_SERVER_SEED))

    def test_start_never_exposes_mines(self):
        body = self.post(action="start", bet=100, mineCount=5).json()
        keys = set(all_keys(body))
        self.assertNotIn("minePositions", keys)
        self.assertNotIn("mine_positions", keys)
        self.assertNotIn("serverSeed", keys)

    def test_client_seed_generated_when_missing(self):
        game = self.start()
        self.assertTrue(game["clientSeed"])

    def test_second_start_conflicts_with_existing_id(self):
        game = self.start()
        resp = self.post(action="start", bet=20, mineCount=3)
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json(), {
            "success": False,
            "error": "You already have an active game",
            "gameId": game["id"],
        })

    def test_concurrent_start_caught_by_unique_index(self):
        game = self.start()
        real_find = mines.find_active_game
        calls = []

        async def racing_find(db, user_id):
            calls.append(user_id)
            if len(calls) == 1:
                return None  # the pre-insert check misses the other game
            return await real_find(db, user_id)

        with patch("mines.find_active_game", racing_find):
            resp = self.post(action="start", bet=100, mineCount=5)

        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["gameId"], game["id"])

    def test_other_users_are_independent(self):
        self.start()
        other = {"Authorization": f"Bearer {make_token(str(uuid.uuid4()))}"}
        resp = self.post(headers=other, action="start", bet=100, mineCount=5)
        self.assertEqual(resp.status_code, 200)


# ============================================================
# Reveal / cashout scenarios
# ============================================================

class TestGameFlow(MinesApiTestCase):

    def test_safe_reveal_continues(self):
        game = self.start(bet=100, mine_count=5)
        cell = self.safe_cells(game)[0]

        resp = self.reveal(game, cell)
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        multiplier = mines.calculate_multiplier(1, 5)
        self.assertEqual(body, {
            "success": True,
            "result": "safe",
            "gameOver": False,
            "multiplier": multiplier,
            "nextMultiplier": mines.calculate_multiplier(2, 5),
            "profit": mines.calculate_profit(100, multiplier),
            "revealedCells": [cell],
            "safeCellsRemaining": 19,
        })
        self.assertEqual(body["profit"], 121)

    def test_single_safe_cell_jackpot(self):
        game = self.start(bet=50, mine_count=24)
        (cell,) = self.safe_cells(game)

        body = self.reveal(game, cell).json()
        self.assertTrue(body["gameOver"])
        self.assertTrue(body["won"])
        self.assertTrue(body["jackpot"])
        self.assertEqual(body["result"], "safe")
        self.assertEqual(body["multiplier"], mines.calculate_multiplier(1, 24))
        self.assertEqual(body["multiplier"], game["maxMultiplier"])
        self.assertEqual(body["profit"], 1212)
        self.assertEqual(body["minePositions"], self.layout(game))
        self.assertEqual(body["revealedCells"], [cell])
        self.assertEqual(body["safeCellsRemaining"], 0)
        self.assertEqual(body["serverSeed"], FIXED_SERVER_SEED)

        # Game is settled, a new one may start
        self.assertEqual(self.post(action="start", bet=10, mineCount=3).status_code, 200)

    def test_full_clear_matches_max_multiplier(self):
        game = self.start(bet=10, mine_count=20)
        *rest, last = self.safe_cells(game)
        for cell in rest:
            self.assertFalse(self.reveal(game, cell).json()["gameOver"])
        body = self.reveal(game, last).json()
        self.assertTrue(body["jackpot"])
        self.assertEqual(body["multiplier"], game["maxMultiplier"])

    def test_mine_hit_loses(self):
        game = self.start(bet=100, mine_count=5)
        safe = self.safe_cells(game)[0]
        mine = self.layout(game)[0]
        self.reveal(game, safe)

        resp = self.reveal(game, mine)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {
            "success": True,
            "result": "mine",
            "gameOver": True,
            "won": False,
            "minePositions": self.layout(game),
            "revealedCells": [safe, mine],
            "serverSeed": FIXED_SERVER_SEED,
        })

        history = self.get("/history").json()["games"]
        self.assertEqual(history[0]["status"], "lost")
        self.assertEqual(history[0]["profit"], 0)
        self.assertIsNotNone(history[0]["endedAt"])

        # Terminal games are no longer reachable
        self.assertEqual(self.reveal(game, self.safe_cells(game)[1]).status_code, 404)
        self.assertEqual(self.cashout(game).status_code, 404)

    def test_reveal_then_cashout(self):
        game = self.start(bet=100, mine_count=5)
        self.reveal(game, self.safe_cells(game)[0])

        resp = self.cashout(game)
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        multiplier = mines.calculate_multiplier(1, 5)
        self.assertTrue(body["success"])
        self.assertTrue(body["won"])
        self.assertEqual(body["multiplier"], multiplier)
        self.assertEqual(body["profit"], mines.calculate_profit(100, multiplier))
        self.assertEqual(body["minePositions"], self.layout(game))

        second = self.cashout(game)
        self.assertEqual(second.status_code, 404)
        self.assertEqual(second.json(), {"success": False, "error": "Active game not found"})

        history = self.get("/history").json()["games"]
        self.assertEqual(history[0]["status"], "won")
        self.assertEqual(history[0]["profit"], body["profit"])

    def test_cashout_requires_a_reveal(self):
        game = self.start()
        resp = self.cashout(game)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "Must reveal at least one cell before cashing out")
        self.assertEqual(self.get("/active").json()["game"]["status"], "active")

    def test_double_reveal_rejected(self):
        game = self.start()
        cell = self.safe_cells(game)[0]
        self.assertEqual(self.reveal(game, cell).status_code, 200)

        resp = self.reveal(game, cell)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "Cell already revealed")
        self.assertEqual(self.get("/active").json()["game"]["revealedCells"], [cell])

    def test_cannot_play_someone_elses_game(self):
        game = self.start()
        other = {"Authorization": f"Bearer {make_token(str(uuid.uuid4()))}"}
        resp = self.post(headers=other, action="reveal", gameId=game["id"], cellIndex=0)
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(self.post(headers=other, action="cashout", gameId=game["id"]).status_code, 404)

    def test_unknown_game(self):
        resp = self.post(action="reveal", gameId=str(uuid.uuid4()), cellIndex=3)
        self.assertEqual(resp.status_code, 404)

    def test_mines_stay_hidden_while_active(self):
        game = self.start(bet=10, mine_count=22)
        for cell in self.safe_cells(game)[:-1]:
            body = self.reveal(game, cell).json()
            self.assertFalse(body["gameOver"])
            keys = set(all_keys(body))
            self.assertNotIn("minePositions", keys)
            self.assertNotIn("serverSeed", keys)
        self.assertNotIn("minePositions", set(all_keys(self.get("/active").json())))

    def test_failed_write_leaves_game_untouched(self):
        game = self.start()
        cell = self.safe_cells(game)[0]
        failure = OperationalError("UPDATE mines_games", {}, Exception("disk I/O error"))

        with patch.object(AsyncSession, "commit", new=AsyncMock(side_effect=failure)):
            resp = self.reveal(game, cell)

        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json(), {"success": False, "error": "Failed to save game"})
        self.assertEqual(self.get("/active").json()["game"]["revealedCells"], [])

    def test_failed_insert_does_not_start_a_game(self):
        failure = OperationalError("INSERT INTO mines_games", {}, Exception("disk I/O error"))

        with patch.object(AsyncSession, "commit", new=AsyncMock(side_effect=failure)):
            resp = self.post(action="start", bet=100, mineCount=5)

        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json(), {"success": False, "error": "Failed to create game"})
        self.assertEqual(self.get("/active").json(), {"success": True, "game": None})

    def test_failed_cashout_keeps_game_active(self):
        game = self.start()
        cell = self.safe_cells(game)[0]
        self.reveal(game, cell)
        failure = OperationalError("UPDATE mines_games", {}, Exception("disk I/O error"))

        with patch.object(AsyncSession, "commit", new=AsyncMock(side_effect=failure)):
            resp = self.cashout(game)

        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json(), {"success": False, "error": "Failed to cash out"})
        active = self.get("/active").json()["game"]
        self.assertEqual(active["status"], "active")
        self.assertEqual(active["revealedCells"], [cell])


# ============================================================
# Multipliers, active game, history, stats, fairness
# ============================================================

class TestReadEndpoints(MinesApiTestCase):

    def test_get_multipliers(self):
        resp = self.post(action="getMultipliers", mineCount=5)
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["houseEdge"], "3%")
        self.assertEqual(len(body["multiplierTable"]), 20)
        self.assertEqual(body["multiplierTable"][0], {"reveals": 1, "multiplier": mines.calculate_multiplier(1, 5)})

    def test_get_multipliers_validates(self):
        resp = self.post(action="getMultipliers", mineCount=2)
        self.assertEqual(resp.status_code, 400)

    def test_active_game(self):
        self.assertEqual(self.get("/active").json(), {"success": True, "game": None})
        game = self.start()
        active = self.get("/active").json()["game"]
        self.assertEqual(active["id"], game["id"])

    def test_stats(self):
        won = self.start(bet=100, mine_count=5)
        self.reveal(won, self.safe_cells(won)[0])
        payout = self.cashout(won).json()["profit"]

        lost = self.start(bet=40, mine_count=5)
        self.reveal(lost, self.layout(lost)[0])

        self.start()  # active games are not counted

        stats = self.get("/stats").json()["stats"]
        self.assertEqual(stats["totalGames"], 2)
        self.assertEqual(stats["wonGames"], 1)
        self.assertEqual(stats["lostGames"], 1)
        self.assertEqual(stats["winRate"], 50.0)
        self.assertEqual(stats["totalBet"], 140)
        self.assertEqual(stats["totalWon"], payout)
        self.assertEqual(stats["profit"], payout - 140)
        self.assertEqual(stats["highestWin"], payout)

    def test_history_is_newest_first(self):
        first = self.start(mine_count=3)
        self.reveal(first, self.layout(first)[0])
        second = self.start(mine_count=4)
        self.reveal(second, self.layout(second)[0])

        ids = [g["id"] for g in self.get("/history").json()["games"]]
        self.assertEqual(ids, [second["id"], first["id"]])

    def test_verify_settled_game(self):
        game = self.start(clientSeed="verify-me")
        self.reveal(game, self.layout(game)[0])

        report = self.get(f"/verify/{game['id']}").json()["report"]
        self.assertTrue(report["isFair"])
        self.assertEqual(report["serverSeed"], FIXED_SERVER_SEED)
        self.assertEqual(report["clientSeed"], "verify-me")
        self.assertEqual(report["expectedMinePositions"], report["actualMinePositions"])

    def test_verify_refuses_active_and_foreign_games(self):
        game = self.start()
        self.assertEqual(self.get(f"/verify/{game['id']}").status_code, 400)
        other = {"Authorization": f"Bearer {make_token(str(uuid.uuid4()))}"}
        self.assertEqual(self.get(f"/verify/{game['id']}", headers=other).status_code, 404)
        self.assertEqual(self.get(f"/verify/{uuid.uuid4()}").status_code, 404)


# ============================================================
# Overlapping actions on one game
# ============================================================

class TestConcurrentActions(unittest.IsolatedAsyncioTestCase):
    """Each action runs in its own session, the way two requests would."""

    async def asyncSetUp(self):
        self.engine = create_async_engine(DATABASE_URL)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.Session = sessionmaker(bind=self.engine, class_=AsyncSession, expire_on_commit=False)

        self.user_id = str(uuid.uuid4())
        async with self.Session() as db:
            started = await mines.start_game(
                db, self.user_id, 100, 5, client_seed="overlap", server_seed=FIXED_SERVER_SEED,
            )
        self.game_id = started["game"]["id"]
        self.mine_cells = mines.mine_layout(FIXED_SERVER_SEED, "overlap", 5)
        self.safe = [c for c in range(mines.GRID_SIZE) if c not in self.mine_cells]

    async def asyncTearDown(self):
        await self.engine.dispose()

    async def reveal(self, cell):
        async with self.Session() as db:
            return await mines.reveal_cell(db, self.user_id, self.game_id, cell)

    async def cashout(self):
        async with self.Session() as db:
            return await mines.cash_out(db, self.user_id, self.game_id)

    async def stored(self):
        async with self.Session() as db:
            return await db.get(MinesGame, self.game_id)

    def split(self, results):
        succeeded = [r for r in results if not isinstance(r, BaseException)]
        failed = [r for r in results if isinstance(r, BaseException)]
        for err in failed:
            self.assertIsInstance(err, NotFound)
        return succeeded

    async def test_overlapping_reveals_never_drop_a_cell(self):
        results = await asyncio.gather(
            self.reveal(self.safe[0]), self.reveal(self.safe[1]), return_exceptions=True,
        )
        succeeded = self.split(results)
        self.assertTrue(succeeded)

        game = await self.stored()
        self.assertEqual(len(game.revealed_cells), len(succeeded))
        for body in succeeded:
            self.assertLessEqual(set(body["revealedCells"]), set(game.revealed_cells))
        self.assertEqual(game.multiplier, mines.calculate_multiplier(len(game.revealed_cells), 5))

    async def test_cashout_racing_a_mine_has_one_outcome(self):
        await self.reveal(self.safe[0])

        results = await asyncio.gather(
            self.cashout(), self.reveal(self.mine_cells[0]), return_exceptions=True,
        )
        succeeded = self.split(results)
        self.assertEqual(len(succeeded), 1)

        game = await self.stored()
        (body,) = succeeded
        if body.get("result") == "mine":
            self.assertEqual(game.status, "lost")
            self.assertEqual(game.result_amount, 0)
        else:
            self.assertTrue(body["won"])
            self.assertEqual(game.status, "won")
            self.assertEqual(game.result_amount, body["profit"])

        # Whatever happened, the game is settled
        with self.assertRaises(NotFound):
            await self.cashout()


if __name__ == "__main__":
    unittest.main()
