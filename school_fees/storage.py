import logging
from typing import List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from school_fees.exceptions import DuplicateEmailError, DuplicateTransactionError, PaymentRejectedError
from school_fees.models import FeeStructure, Payment, PaymentStatus, Student, User, UserRole
from school_fees.schemas import FeeStructureCreate, PaymentCreate, StudentCreate, UserCreate

logger = logging.getLogger(__name__)


def generate_transaction_id() -> str:
    return f"TRX{uuid4().hex[:8].upper()}"


# --- Users ---

async def get_user(db: AsyncSession, user_id: int) -> Optional[User]:
    return await db.get(User, user_id)


async def list_users(db: AsyncSession, role: Optional[UserRole] = None) -> List[User]:
    query = select(User).order_by(User.id)
    if role is not None:
        query = query.where(User.role == role)
    result = await db.execute(query)
    return list(result.scalars().all())


async def list_parents_with_student_counts(db: AsyncSession) -> List[Tuple[User, int]]:
    result = await db.execute(
        select(User, func.count(Student.id))
        .outerjoin(Student, Student.parent_id == User.id)
        .where(User.role == UserRole.PARENT)
        .group_by(User.id)
        .order_by(User.id)
    )
    return [(user, count) for user, count in result.all()]


async def create_user(db: AsyncSession, data: UserCreate) -> User:
    user = User(name=data.name, email=data.email, role=data.role)
    db.add(user)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise DuplicateEmailError(data.email) from exc
    await db.refresh(user)
    return user


# --- Fee structures ---

async def get_fee_structure(db: AsyncSession, fee_structure_id: int) -> Optional[FeeStructure]:
    return await db.get(FeeStructure, fee_structure_id)


async def list_fee_structures(db: AsyncSession) -> List[FeeStructure]:
    result = await db.execute(select(FeeStructure).order_by(FeeStructure.id))
    return list(result.scalars().all())


async def create_fee_structure(db: AsyncSession, data: FeeStructureCreate) -> FeeStructure:
    fee_structure = FeeStructure(**data.model_dump())
    db.add(fee_structure)
    await db.commit()
    await db.refresh(fee_structure)
    return fee_structure


# --- Students ---

async def get_student(db: AsyncSession, student_id: int) -> Optional[Student]:
    return await db.get(Student, student_id)


async def list_students(db: AsyncSession, parent_id: Optional[int] = None) -> List[Student]:
    query = select(Student).order_by(Student.id)
    if parent_id is not None:
        query = query.where(Student.parent_id == parent_id)
    result = await db.execute(query)
    return list(result.scalars().all())


async def create_student(db: AsyncSession, data: StudentCreate) -> Student:
    student = Student(**data.model_dump())
    db.add(student)
    await db.commit()
    await db.refresh(student)
    return student


# --- Payments ---

async def get_payment(db: AsyncSession, payment_id: int) -> Optional[Payment]:
    return await db.get(Payment, payment_id)


async def list_payments(
    db: AsyncSession,
    user_id: Optional[int] = None,
    student_id: Optional[int] = None,
    status: Optional[PaymentStatus] = None,
) -> List[Payment]:
    query = select(Payment)
    if user_id is not None:
        query = query.where(Payment.user_id == user_id)
    if student_id is not None:
        query = query.where(Payment.student_id == student_id)
    if status is not None:
        query = query.where(Payment.status == status)
    result = await db.execute(query.order_by(Payment.payment_date.desc(), Payment.id.desc()))
    return list(result.scalars().all())


async def _transaction_id_taken(db: AsyncSession, transaction_id: str) -> bool:
    existing = await db.execute(select(Payment.id).where(Payment.transaction_id == transaction_id))
    return existing.scalar_one_or_none() is not None


async def create_payment(db: AsyncSession, data: PaymentCreate, user_id: Optional[int]) -> Payment:
    """
    Persist a new pending payment.

    The collision check and the insert share one transaction; the unique
    constraint on transaction_id catches a concurrent insert that slips past
    the check. Either way nothing is written and DuplicateTransactionError is raised.
    Any other constraint violation raises PaymentRejectedError.
    """
    transaction_id = data.transaction_id or generate_transaction_id()

    if await _transaction_id_taken(db, transaction_id):
        await db.rollback()
        raise DuplicateTransactionError(transaction_id)

    payment = Payment(
        transaction_id=transaction_id,
        amount=data.amount,
        status=PaymentStatus.PENDING,
        student_id=data.student_id,
        user_id=user_id,
        description=data.description,
        due_date=data.due_date,
    )
    db.add(payment)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        if await _transaction_id_taken(db, transaction_id):
            logger.warning("Insert of transaction %s hit the unique constraint", transaction_id)
            raise DuplicateTransactionError(transaction_id) from exc
        logger.warning("Insert of transaction %s violated a constraint: %s", transaction_id, exc.orig)
        raise PaymentRejectedError(transaction_id, str(exc.orig)) from exc

    await db.refresh(payment)
    logger.info("Created payment id=%s transaction=%s status=pending", payment.id, transaction_id)
    return payment
