from sqlalchemy import Column, Integer, String, Float, DateTime, JSON, Index, text
from sqlalchemy.orm import declarative_base
import datetime
import uuid

Base = declarative_base()

STATUS_ACTIVE = "active"
STATUS_WON = "won"
STATUS_LOST = "lost"

def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)

class MinesGame(Base):
    __tablename__ = "mines_games"
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, index=True, nullable=False)
    bet_amount = Column(Float, nullable=False)
    mine_count = Column(Integer, nullable=False)
    mine_positions = Column(JSON, nullable=False)  # Never sent to the client while active
    revealed_cells = Column(JSON, nullable=False, default=list)  # In reveal order
    multiplier = Column(Float, nullable=False, default=1.0)
    status = Column(String(10), nullable=False, default=STATUS_ACTIVE)
    result_amount = Column(Float, nullable=True)  # Set once, on won/lost
    created_at = Column(DateTime(timezone=True), default=utcnow)
    ended_at = Column(DateTime(timezone=True), nullable=True)

    # Provably fair fields
    server_seed = Column(String, nullable=False)       # Revealed once the game is settled
    server_seed_hash = Column(String, nullable=False)  # Pre-commitment shown at start
    client_seed = Column(String, nullable=False)

    # Bumped on every write; a stale read-modify-write updates no row
    version_id = Column(Integer, nullable=False)

    __table_args__ = (
        # At most one active game per user
        Index(
            "uq_mines_games_user_active",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )
    __mapper_args__ = {"version_id_col": version_id}
