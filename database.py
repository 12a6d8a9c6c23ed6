from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from config import DATABASE_URL, SQL_ECHO

# Game rows are read fresh on every request, nothing is cached in process
engine = create_async_engine(
    DATABASE_URL,
    echo=SQL_ECHO,
    pool_pre_ping=not DATABASE_URL.startswith("sqlite"),
)

AsyncSessionLocal = sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)

async def get_db():
    """One session per request; callers commit or roll back themselves"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()
