import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from models.credit_ledger import CreditEntryType
from models.user import User
from routers import rate_limit
from services.credits import add_credits


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "roomai.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def create_user(session_maker):
    """Factory: insert a user and optionally fund it with purchased credits."""

    async def _create(user_id: str, credits: int = 0) -> str:
        async with session_maker() as db:
            db.add(User(id=user_id, email=f"{user_id}@example.com"))
            await db.commit()
            if credits:
                await add_credits(
                    user_id,
                    db,
                    amount=credits,
                    entry_type=CreditEntryType.PURCHASED,
                    description="Starting credits",
                )
        return user_id

    return _create
