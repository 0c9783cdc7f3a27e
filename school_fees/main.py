import logging
from typing import List, Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from school_fees import config, storage
from school_fees.database import AsyncSessionLocal, dispose_db, get_session, init_db, ping_db
from school_fees.exceptions import DuplicateEmailError, DuplicateTransactionError, PaymentRejectedError
from school_fees.log_config import configure_logging
from school_fees.models import Payment, PaymentStatus, User, UserRole
from school_fees.pipeline import PaymentPipeline
from school_fees.processor import PaymentProcessor
from school_fees.schemas import (
    FeeStructureCreate,
    FeeStructureRead,
    ParentRead,
    PaymentCreate,
    PaymentRead,
    StudentCreate,
    StudentRead,
    UserCreate,
    UserRead,
)
from school_fees.work_queue import BoundedWorkQueue

logger = logging.getLogger(__name__)

app = FastAPI(title="School Fee Service")


def build_pipeline(session_factory=AsyncSessionLocal) -> PaymentPipeline:
    queue = BoundedWorkQueue(concurrency=config.PAYMENT_QUEUE_CONCURRENCY, name="payment-queue")
    processor = PaymentProcessor(
        session_factory,
        success_rate=config.PAYMENT_SUCCESS_RATE,
        min_delay=config.PAYMENT_MIN_DELAY,
        max_delay=config.PAYMENT_MAX_DELAY,
    )
    return PaymentPipeline(session_factory, queue, processor, stale_after=config.STALE_PROCESSING_SECONDS)


@app.on_event("startup")
async def startup_event():
    configure_logging(config.LOG_LEVEL)
    await init_db()
    app.state.pipeline = build_pipeline()
    await app.state.pipeline.start()
    logger.info("Startup complete")


@app.on_event("shutdown")
async def shutdown_event():
    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is not None:
        await pipeline.shutdown(timeout=config.SHUTDOWN_TIMEOUT)
    await dispose_db()


# --- Dependencies ---

def get_pipeline(request: Request) -> PaymentPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Payment processing is not running")
    return pipeline


async def get_current_user(
    x_user_id: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_session),
) -> User:
    if x_user_id is None or not x_user_id.strip().isdigit():
        raise HTTPException(status_code=401, detail="Unauthorized")
    user = await storage.get_user(db, int(x_user_id))
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != UserRole.ADMIN:
        raise HTTPException(status_code=403, detail="Forbidden: Admin access required")
    return user


async def load_accessible_student(db: AsyncSession, student_id: int, user: User):
    student = await storage.get_student(db, student_id)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")
    if user.role == UserRole.PARENT and student.parent_id != user.id:
        raise HTTPException(status_code=403, detail="Access denied")
    return student


# --- Health ---

@app.get("/health")
async def health():
    try:
        await ping_db()
    except Exception:
        logger.exception("Health check failed")
        raise HTTPException(status_code=503, detail="Database unreachable")
    return {"status": "ok"}


# --- Users ---

@app.post("/api/users", response_model=UserRead, status_code=201)
async def create_user(user_data: UserCreate, db: AsyncSession = Depends(get_session)):
    # TODO: restrict admin creation once a login flow replaces the X-User-Id header
    try:
        return await storage.create_user(db, user_data)
    except DuplicateEmailError as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@app.get("/api/users", response_model=List[UserRead])
async def list_users(
    role: Optional[UserRole] = Query(None),
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    return await storage.list_users(db, role=role)


@app.get("/api/parents", response_model=List[ParentRead])
async def list_parents(
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    parents = await storage.list_parents_with_student_counts(db)
    return [
        ParentRead.model_validate(user).model_copy(update={"student_count": count})
        for user, count in parents
    ]


# --- Fee structures ---

@app.get("/api/fee-structures", response_model=List[FeeStructureRead])
async def list_fee_structures(
    _: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    return await storage.list_fee_structures(db)


@app.post("/api/fee-structures", response_model=FeeStructureRead, status_code=201)
async def create_fee_structure(
    fee_data: FeeStructureCreate,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    return await storage.create_fee_structure(db, fee_data)


# --- Students ---

@app.get("/api/students", response_model=List[StudentRead])
async def list_students(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    if user.role == UserRole.PARENT:
        return await storage.list_students(db, parent_id=user.id)
    return await storage.list_students(db)


@app.get("/api/students/{student_id}", response_model=StudentRead)
async def get_student(
    student_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    return await load_accessible_student(db, student_id, user)


@app.post("/api/students", response_model=StudentRead, status_code=201)
async def create_student(
    student_data: StudentCreate,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    if student_data.fee_structure_id is not None:
        if not await storage.get_fee_structure(db, student_data.fee_structure_id):
            raise HTTPException(status_code=404, detail="Fee structure not found")
    if student_data.parent_id is not None:
        if not await storage.get_user(db, student_data.parent_id):
            raise HTTPException(status_code=404, detail="Parent not found")
    return await storage.create_student(db, student_data)


# --- Payments ---

@app.get("/api/payments", response_model=List[PaymentRead])
async def list_payments(
    status: Optional[PaymentStatus] = Query(None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    if user.role == UserRole.PARENT:
        return await storage.list_payments(db, user_id=user.id, status=status)
    return await storage.list_payments(db, status=status)


@app.get("/api/payments/student/{student_id}", response_model=List[PaymentRead])
async def list_student_payments(
    student_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    await load_accessible_student(db, student_id, user)
    return await storage.list_payments(db, student_id=student_id)


@app.get("/api/payments/{payment_id}", response_model=PaymentRead)
async def get_payment(
    payment_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    payment: Optional[Payment] = await storage.get_payment(db, payment_id)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")
    if user.role == UserRole.PARENT and payment.user_id != user.id:
        raise HTTPException(status_code=403, detail="Access denied")
    return payment


@app.post("/api/payments", response_model=PaymentRead, status_code=201)
async def create_payment(
    payment_data: PaymentCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    pipeline: PaymentPipeline = Depends(get_pipeline),
):
    await load_accessible_student(db, payment_data.student_id, user)

    try:
        payment = await storage.create_payment(db, payment_data, user_id=user.id)
    except DuplicateTransactionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except PaymentRejectedError as exc:
        raise HTTPException(status_code=422, detail=str(exc))

    # Settlement runs in the background; the caller polls for the final status
    pipeline.submit_payment_for_processing(payment.id)
    return payment


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
