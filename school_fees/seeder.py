import asyncio
import logging

from sqlalchemy import select

from school_fees.database import get_session, init_db
from school_fees.log_config import configure_logging
from school_fees.models import FeeStructure, Student, User, UserRole

logger = logging.getLogger(__name__)


async def seed_school():
    await init_db()
    async for session in get_session():
        # Check if the default fee structure is already seeded
        existing = await session.execute(
            select(FeeStructure).where(FeeStructure.name == "Grade 1 Term Fee")
        )
        if existing.scalar_one_or_none():
            logger.info("School data already seeded.")
            return

        admin = User(name="School Admin", email="admin@school.test", role=UserRole.ADMIN)
        parent = User(name="Demo Parent", email="parent@school.test", role=UserRole.PARENT)
        fee_structure = FeeStructure(
            name="Grade 1 Term Fee",
            grade=1,
            amount=500,
            late_fee=0,
            description="Standard fee for Grade 1 students",
        )
        session.add_all([admin, parent, fee_structure])
        await session.flush()

        session.add(Student(
            first_name="Demo",
            last_name="Student",
            grade=1,
            parent_id=parent.id,
            fee_structure_id=fee_structure.id,
        ))
        await session.commit()
        logger.info("Seeded admin id=%s, parent id=%s, fee structure id=%s", admin.id, parent.id, fee_structure.id)


if __name__ == "__main__":
    configure_logging()
    asyncio.run(seed_school())
