from fastapi import APIRouter, Body, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.future import select
from pydantic import TypeAdapter, ValidationError
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, assert_never
import hashlib
import hmac
import logging
import random
import secrets

from models import MinesGame, STATUS_ACTIVE, STATUS_WON, STATUS_LOST, utcnow
from schemas import (
    MinesRequest, StartRequest, RevealRequest, CashoutRequest, MultipliersRequest,
    ActiveGameView, SettledGameView, MultiplierStep, GameStats, FairnessReport,
)
from errors import InvalidParameter, NotFound, Conflict, InvalidOperation, PersistenceError, describe_validation_errors
from database import get_db
from dependencies import get_current_user_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/mines", tags=["Mines"])

GRID_SIZE = 25
MIN_MINES = 3
MAX_MINES = 24
MIN_BET = 10
MAX_BET = 1000
HOUSE_EDGE = 0.03  # Applied once to the whole sequence, not per reveal
PREVIEW_COUNT = 5
HISTORY_LIMIT = 50
MAX_CLIENT_SEED_LENGTH = 64

# --- Payout math ---

def _round2(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))

def validate_mine_count(mine_count: Any) -> int:
    if isinstance(mine_count, bool) or not isinstance(mine_count, int) or not MIN_MINES <= mine_count <= MAX_MINES:
        raise InvalidParameter(f"Invalid mine count ({MIN_MINES}-{MAX_MINES})")
    return mine_count

def fair_multiplier(revealed_count: int, mine_count: int) -> float:
    """Fair odds for surviving `revealed_count` draws without replacement, before house edge"""
    safe_cells = GRID_SIZE - mine_count
    cumulative = 1.0
    for i in range(revealed_count):
        remaining_total = GRID_SIZE - i
        remaining_safe = safe_cells - i
        prob_safe = remaining_safe / remaining_total
        cumulative *= 1 / prob_safe
    return cumulative

def calculate_multiplier(revealed_count: int, mine_count: int) -> float:
    """
    Payout multiplier after `revealed_count` safe reveals.

    Always computed from scratch so the stored multiplier is a pure function
    of (reveal count, mine count). The house edge is taken off the cumulative
    fair multiplier and the result rounded half-up to 2 places.
    """
    validate_mine_count(mine_count)
    if not 0 <= revealed_count <= GRID_SIZE - mine_count:
        raise InvalidParameter("Invalid reveal count")
    if revealed_count == 0:
        return 1.0
    return _round2(fair_multiplier(revealed_count, mine_count) * (1 - HOUSE_EDGE))

def get_multiplier_table(mine_count: int) -> List[MultiplierStep]:
    validate_mine_count(mine_count)
    return [
        MultiplierStep(reveals=reveals, multiplier=calculate_multiplier(reveals, mine_count))
        for reveals in range(1, GRID_SIZE - mine_count + 1)
    ]

def next_multipliers(revealed_count: int, mine_count: int, count: int = PREVIEW_COUNT) -> List[float]:
    last = min(revealed_count + count, GRID_SIZE - mine_count)
    return [calculate_multiplier(k, mine_count) for k in range(revealed_count + 1, last + 1)]

def calculate_profit(bet_amount: float, multiplier: float) -> int:
    """floor(bet * multiplier), done in Decimal so 100 * 1.15 is 115 and not 114"""
    amount = Decimal(str(bet_amount)) * Decimal(str(multiplier))
    return int(amount.to_integral_value(rounding=ROUND_FLOOR))

# --- Provably fair mine placement ---

def generate_server_seed() -> str:
    """Generate a new random server seed"""
    return secrets.token_hex(32)

def generate_client_seed() -> str:
    return secrets.token_hex(8)

def get_server_seed_hash(server_seed: str) -> str:
    """Get the hash of the server seed for pre-commitment"""
    return hashlib.sha256(server_seed.encode()).hexdigest()

def seeded_rng(server_seed: str, client_seed: str) -> random.Random:
    digest = hmac.new(server_seed.encode(), client_seed.encode(), hashlib.sha256).hexdigest()
    return random.Random(int(digest, 16))

def generate_mine_positions(mine_count: int, rng: Optional[random.Random] = None) -> List[int]:
    """Fisher-Yates shuffle of the grid, first `mine_count` cells are mines"""
    rng = rng or secrets.SystemRandom()
    cells = list(range(GRID_SIZE))
    for i in range(GRID_SIZE - 1, 0, -1):
        j = rng.randint(0, i)
        cells[i], cells[j] = cells[j], cells[i]
    return sorted(cells[:mine_count])

def mine_layout(server_seed: str, client_seed: str, mine_count: int) -> List[int]:
    return generate_mine_positions(mine_count, seeded_rng(server_seed, client_seed))

# --- Views ---

def active_view(game: MinesGame) -> ActiveGameView:
    revealed = list(game.revealed_cells)
    return ActiveGameView(
        id=game.id,
        bet=game.bet_amount,
        mine_count=game.mine_count,
        multiplier=game.multiplier,
        revealed_cells=revealed,
        status=game.status,
        safe_cells_remaining=GRID_SIZE - game.mine_count - len(revealed),
        max_multiplier=calculate_multiplier(GRID_SIZE - game.mine_count, game.mine_count),
        next_multipliers=next_multipliers(len(revealed), game.mine_count),
        server_seed_hash=game.server_seed_hash,
        client_seed=game.client_seed,
    )

def settled_view(game: MinesGame) -> SettledGameView:
    if game.status == STATUS_ACTIVE:
        raise RuntimeError(f"Game {game.id} is still active, mine positions stay hidden")
    return SettledGameView(
        id=game.id,
        bet=game.bet_amount,
        mine_count=game.mine_count,
        multiplier=game.multiplier,
        revealed_cells=list(game.revealed_cells),
        status=game.status,
        profit=game.result_amount or 0,
        mine_positions=sorted(game.mine_positions),
        server_seed=game.server_seed,
        server_seed_hash=game.server_seed_hash,
        client_seed=game.client_seed,
        created_at=game.created_at,
        ended_at=game.ended_at,
    )

# --- Game store ---

async def find_active_game(db: AsyncSession, user_id: str) -> Optional[MinesGame]:
    result = await db.execute(
        select(MinesGame)
        .where(MinesGame.user_id == user_id, MinesGame.status == STATUS_ACTIVE)
    )
    return result.scalars().first()

async def load_active_game(db: AsyncSession, user_id: str, game_id: str) -> MinesGame:
    result = await db.execute(
        select(MinesGame)
        .where(
            MinesGame.id == game_id,
            MinesGame.user_id == user_id,
            MinesGame.status == STATUS_ACTIVE,
        )
        .with_for_update()
    )
    game = result.scalar_one_or_none()
    if game is None:
        raise NotFound()
    return game

async def _commit(db: AsyncSession, failure_message: str) -> None:
    try:
        await db.commit()
    except StaleDataError:
        # Another request settled or advanced the game since we read it
        await db.rollback()
        logger.warning("Concurrent write on a mines game rejected")
        raise NotFound()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"{failure_message}: {e}")
        raise PersistenceError(failure_message) from e

def _settle(game: MinesGame, status: str, result_amount: int) -> None:
    game.status = status
    game.result_amount = result_amount
    game.ended_at = utcnow()

# --- Actions ---

async def start_game(
    db: AsyncSession,
    user_id: str,
    bet: float,
    mine_count: int,
    *,
    client_seed: Optional[str] = None,
    server_seed: Optional[str] = None,
) -> Dict[str, Any]:
    if isinstance(bet, bool) or not isinstance(bet, (int, float)) or not MIN_BET <= bet <= MAX_BET:
        raise InvalidParameter(f"Invalid bet amount ({MIN_BET}-{MAX_BET})")
    validate_mine_count(mine_count)
    if client_seed is not None and not 0 < len(client_seed) <= MAX_CLIENT_SEED_LENGTH:
        raise InvalidParameter(f"Client seed must be 1-{MAX_CLIENT_SEED_LENGTH} characters")

    existing = await find_active_game(db, user_id)
    if existing:
        raise Conflict(game_id=existing.id)

    server_seed = server_seed or generate_server_seed()
    client_seed = client_seed or generate_client_seed()
    game = MinesGame(
        user_id=user_id,
        bet_amount=float(bet),
        mine_count=mine_count,
        mine_positions=mine_layout(server_seed, client_seed, mine_count),
        revealed_cells=[],
        multiplier=1.0,
        status=STATUS_ACTIVE,
        server_seed=server_seed,
        server_seed_hash=get_server_seed_hash(server_seed),
        client_seed=client_seed,
        created_at=utcnow(),
    )
    db.add(game)
    try:
        await db.commit()
    except IntegrityError:
        # Lost a race against a concurrent start for the same user
        await db.rollback()
        existing = await find_active_game(db, user_id)
        logger.warning(f"Concurrent start rejected for user {user_id}")
        raise Conflict(game_id=existing.id if existing else None)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Create game error: {e}")
        raise PersistenceError("Failed to create game") from e

    logger.info(f"Mines game {game.id} started: user={user_id} bet={bet} mines={mine_count}")
    return {"game": active_view(game).model_dump(by_alias=True)}

async def reveal_cell(db: AsyncSession, user_id: str, game_id: str, cell_index: int) -> Dict[str, Any]:
    if isinstance(cell_index, bool) or not isinstance(cell_index, int) or not 0 <= cell_index < GRID_SIZE:
        raise InvalidParameter("Invalid cell index")

    game = await load_active_game(db, user_id, game_id)
    if cell_index in game.revealed_cells:
        raise InvalidOperation("Cell already revealed")

    revealed = [*game.revealed_cells, cell_index]
    game.revealed_cells = revealed

    if cell_index in game.mine_positions:
        _settle(game, STATUS_LOST, 0)
        await _commit(db, "Failed to save game")
        logger.info(f"Mines game {game.id} lost after {len(revealed) - 1} safe reveals")
        view = settled_view(game)
        return {
            "result": "mine",
            "gameOver": True,
            "won": False,
            "minePositions": view.mine_positions,
            "revealedCells": view.revealed_cells,
            "serverSeed": view.server_seed,
        }

    # Every revealed cell is safe here, a mine would have ended the game
    multiplier = calculate_multiplier(len(revealed), game.mine_count)
    profit = calculate_profit(game.bet_amount, multiplier)
    game.multiplier = multiplier

    if len(revealed) == GRID_SIZE - game.mine_count:
        _settle(game, STATUS_WON, profit)
        await _commit(db, "Failed to save game")
        logger.info(f"Mines game {game.id} cleared the board: {multiplier}x, payout {profit}")
        view = settled_view(game)
        return {
            "result": "safe",
            "gameOver": True,
            "won": True,
            "jackpot": True,
            "multiplier": view.multiplier,
            "profit": profit,
            "minePositions": view.mine_positions,
            "revealedCells": view.revealed_cells,
            "safeCellsRemaining": 0,
            "serverSeed": view.server_seed,
        }

    await _commit(db, "Failed to save game")
    view = active_view(game)
    return {
        "result": "safe",
        "gameOver": False,
        "multiplier": view.multiplier,
        "nextMultiplier": view.next_multipliers[0],
        "profit": profit,
        "revealedCells": view.revealed_cells,
        "safeCellsRemaining": view.safe_cells_remaining,
    }

async def cash_out(db: AsyncSession, user_id: str, game_id: str) -> Dict[str, Any]:
    game = await load_active_game(db, user_id, game_id)
    if not game.revealed_cells:
        raise InvalidOperation("Must reveal at least one cell before cashing out")

    # Never trust the stored multiplier at payout time
    multiplier = calculate_multiplier(len(game.revealed_cells), game.mine_count)
    profit = calculate_profit(game.bet_amount, multiplier)
    game.multiplier = multiplier
    _settle(game, STATUS_WON, profit)
    await _commit(db, "Failed to cash out")
    logger.info(f"Mines game {game.id} cashed out: {multiplier}x, payout {profit}")

    view = settled_view(game)
    return {
        "won": True,
        "profit": profit,
        "multiplier": view.multiplier,
        "minePositions": view.mine_positions,
        "revealedCells": view.revealed_cells,
        "serverSeed": view.server_seed,
    }

def multiplier_table(mine_count: int) -> Dict[str, Any]:
    return {
        "multiplierTable": [step.model_dump(by_alias=True) for step in get_multiplier_table(mine_count)],
        "houseEdge": f"{HOUSE_EDGE:.0%}",
    }

request_adapter = TypeAdapter(MinesRequest)

def parse_request(payload: Any):
    try:
        return request_adapter.validate_python(payload)
    except ValidationError as e:
        raise InvalidParameter(describe_validation_errors(e.errors()))

# --- Endpoints ---

@router.post("")
async def mines_action(
    payload: Dict[str, Any] = Body(...),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Single entry point for the game, dispatched on `action`"""
    request = parse_request(payload)
    if isinstance(request, StartRequest):
        body = await start_game(
            db, user_id, request.bet, request.mine_count,
            client_seed=request.client_seed,
        )
    elif isinstance(request, RevealRequest):
        body = await reveal_cell(db, user_id, request.game_id, request.cell_index)
    elif isinstance(request, CashoutRequest):
        body = await cash_out(db, user_id, request.game_id)
    elif isinstance(request, MultipliersRequest):
        body = multiplier_table(request.mine_count)
    else:
        assert_never(request)
    return {"success": True, **body}

@router.get("/active")
async def get_active_game(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    """Resume point for a client that lost track of its game"""
    game = await find_active_game(db, user_id)
    return {
        "success": True,
        "game": active_view(game).model_dump(by_alias=True) if game else None,
    }

@router.get("/history")
async def get_game_history(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    """Get user's settled mines games, newest first"""
    result = await db.execute(
        select(MinesGame)
        .where(MinesGame.user_id == user_id, MinesGame.status != STATUS_ACTIVE)
        .order_by(MinesGame.created_at.desc())
        .limit(HISTORY_LIMIT)
    )
    games = result.scalars().all()
    return {
        "success": True,
        "games": [settled_view(g).model_dump(by_alias=True, mode="json") for g in games],
    }

@router.get("/stats")
async def get_user_stats(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    """Get user's game statistics"""
    result = await db.execute(
        select(MinesGame).where(MinesGame.user_id == user_id, MinesGame.status != STATUS_ACTIVE)
    )
    games = result.scalars().all()

    total_games = len(games)
    won_games = len([g for g in games if g.status == STATUS_WON])
    total_bet = sum(g.bet_amount for g in games)
    total_won = sum(g.result_amount or 0 for g in games)

    stats = GameStats(
        total_games=total_games,
        won_games=won_games,
        lost_games=len([g for g in games if g.status == STATUS_LOST]),
        win_rate=round(won_games / total_games * 100, 2) if total_games > 0 else 0,
        total_bet=round(total_bet, 2),
        total_won=round(total_won, 2),
        profit=round(total_won - total_bet, 2),
        highest_win=max([g.result_amount or 0 for g in games if g.status == STATUS_WON], default=0),
    )
    return {"success": True, "stats": stats.model_dump(by_alias=True)}

@router.get("/verify/{game_id}")
async def verify_game_fairness(
    game_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
):
    """Recompute the mine layout of a settled game from its revealed seeds"""
    game = await db.get(MinesGame, game_id)
    if not game or game.user_id != user_id:
        raise NotFound("Game not found")
    if game.status == STATUS_ACTIVE:
        raise InvalidOperation("Game is still active")

    view = settled_view(game)
    expected = mine_layout(view.server_seed, view.client_seed, view.mine_count)
    report = FairnessReport(
        game_id=view.id,
        server_seed=view.server_seed,
        server_seed_hash=view.server_seed_hash,
        client_seed=view.client_seed,
        expected_mine_positions=expected,
        actual_mine_positions=view.mine_positions,
        is_fair=expected == view.mine_positions and get_server_seed_hash(view.server_seed) == view.server_seed_hash,
    )
    return {"success": True, "report": report.model_dump(by_alias=True)}
