from datetime import datetime, timezone
from decimal import Decimal

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from school_fees.database import Base
from school_fees.models import Payment, PaymentStatus, Student, User, UserRole


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Throwaway SQLite database per test, same session settings as the app."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'school_fees.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )

    await engine.dispose()


async def add_user(session_factory, name="Parent", email=None, role=UserRole.PARENT) -> User:
    async with session_factory() as session:
        user = User(name=name, email=email or f"{name.lower().replace(' ', '.')}@school.test", role=role)
        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user


async def add_student(session_factory, parent_id=None, first_name="Ada", grade=1) -> Student:
    async with session_factory() as session:
        student = Student(first_name=first_name, last_name="Lovelace", grade=grade, parent_id=parent_id)
        session.add(student)
        await session.commit()
        await session.refresh(student)
        return student


async def add_payment(session_factory, **overrides) -> Payment:
    values = {
        "transaction_id": "TRX-A",
        "amount": Decimal("500"),
        "status": PaymentStatus.PENDING,
    }
    values.update(overrides)
    async with session_factory() as session:
        payment = Payment(**values)
        session.add(payment)
        await session.commit()
        await session.refresh(payment)
        return payment


async def load_payment(session_factory, payment_id: int) -> Payment:
    async with session_factory() as session:
        return await session.get(Payment, payment_id)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)
