from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Requests: one body per action, discriminated on "action" ---

class StartRequest(CamelModel):
    action: Literal["start"]
    bet: float
    mine_count: int
    client_seed: Optional[str] = None

class RevealRequest(CamelModel):
    action: Literal["reveal"]
    game_id: str
    cell_index: int

class CashoutRequest(CamelModel):
    action: Literal["cashout"]
    game_id: str

class MultipliersRequest(CamelModel):
    action: Literal["getMultipliers"]
    mine_count: int

MinesRequest = Annotated[
    Union[StartRequest, RevealRequest, CashoutRequest, MultipliersRequest],
    Field(discriminator="action"),
]


# --- Views ---

class ActiveGameView(CamelModel):
    """What the client may see of a game still in play. Has no mine fields."""
    id: str
    bet: float
    mine_count: int
    multiplier: float
    revealed_cells: List[int]
    status: str
    safe_cells_remaining: int
    max_multiplier: float
    next_multipliers: List[float]
    server_seed_hash: str
    client_seed: str

class SettledGameView(CamelModel):
    id: str
    bet: float
    mine_count: int
    multiplier: float
    revealed_cells: List[int]
    status: str
    profit: float
    mine_positions: List[int]
    server_seed: str
    server_seed_hash: str
    client_seed: str
    created_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

class MultiplierStep(CamelModel):
    reveals: int
    multiplier: float

class GameStats(CamelModel):
    total_games: int
    won_games: int
    lost_games: int
    win_rate: float
    total_bet: float
    total_won: float
    profit: float
    highest_win: float

class FairnessReport(CamelModel):
    game_id: str
    server_seed: str
    server_seed_hash: str
    client_seed: str
    expected_mine_positions: List[int]
    actual_mine_positions: List[int]
    is_fair: bool
