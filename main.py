from contextlib import asynccontextmanager
from typing import Annotated, List, Optional
import logging
import sys

from fastapi import FastAPI, APIRouter, Depends, Path, status, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.sessions import SessionMiddleware

import auth
from auth import get_storage, get_settings
from config import Settings, settings as default_settings
from errors import ServiceError, NotFoundError
from models import User, Course, Enrollment, Payment
from policy import Action, authorize, requires
from schemas import (
    MAX_ID,
    CourseCreate, CourseResponse,
    EnrollmentCreate, EnrollmentUpdate, EnrollmentResponse,
    PaymentCreate, PaymentStatusUpdate, PaymentResponse
)
from storage import Storage, build_storage

logger = logging.getLogger(__name__)

router = APIRouter()


def configure_logging(app_settings: Settings) -> None:
    handlers = [logging.StreamHandler(sys.stdout)]
    if app_settings.LOG_FILE:
        handlers.append(logging.FileHandler(app_settings.LOG_FILE))
    logging.basicConfig(
        level=app_settings.LOG_LEVEL.upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


# Global exception handlers
async def service_exception_handler(request: Request, exc: ServiceError):
    """Translate domain failures into their HTTP status"""
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report malformed input as 400 with one entry per offending field"""
    errors = [
        {
            "field": ".".join(str(part) for part in error["loc"] if part != "body"),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    logger.warning(f"Validation failed on {request.method} {request.url.path}: {errors}")
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": errors})


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError):
    """Handle database-related errors"""
    logger.error(f"Database error: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "A database error occurred. Please try again later."}
    )


async def general_exception_handler(request: Request, exc: Exception):
    """Handle all uncaught exceptions"""
    logger.error(f"Unexpected error: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "An unexpected error occurred. Please contact support."}
    )


@router.get("/", tags=["Root"])
async def read_root():
    """Root endpoint"""
    return {
        "message": "Welcome to the University Management API",
        "docs": "/docs",
        "redoc": "/redoc"
    }


# ============= COURSE ENDPOINTS =============

@router.get("/api/courses", response_model=List[CourseResponse], tags=["Courses"])
async def read_courses(
    current_user: User = Depends(requires(Action.list_courses)),
    storage: Storage = Depends(get_storage)
):
    """Get all courses"""
    courses = await storage.get_all_courses()
    logger.info(f"Retrieved {len(courses)} courses for user {current_user.id}")
    return courses


@router.get("/api/courses/instructor", response_model=List[CourseResponse], tags=["Courses"])
async def read_instructor_courses(
    current_user: User = Depends(requires(Action.list_instructor_courses)),
    storage: Storage = Depends(get_storage)
):
    """Get the courses taught by the calling faculty member"""
    courses = await storage.get_courses_by_instructor(current_user.id)
    logger.info(f"Retrieved {len(courses)} courses for instructor {current_user.id}")
    return courses


@router.post("/api/courses", response_model=CourseResponse, status_code=status.HTTP_201_CREATED, tags=["Courses"])
async def create_course(
    course: CourseCreate,
    current_user: User = Depends(requires(Action.create_course)),
    storage: Storage = Depends(get_storage)
):
    """Create a new course taught by the caller"""
    logger.info(f"Creating course {course.code} for instructor {current_user.id}")
    db_course = await storage.create_course(Course(**course.model_dump(), instructor_id=current_user.id))
    logger.info(f"Course created successfully with ID: {db_course.id}")
    return db_course


@router.get("/api/courses/{course_id}/enrollments", response_model=List[EnrollmentResponse], tags=["Enrollments"])
async def read_course_enrollments(
    course_id: Annotated[int, Path(ge=1, le=MAX_ID)],
    current_user: User = Depends(requires(Action.list_course_enrollments)),
    storage: Storage = Depends(get_storage),
    app_settings: Settings = Depends(get_settings)
):
    """Get all enrollments for a specific course"""
    course = await storage.get_course(course_id)
    if not course:
        logger.warning(f"Course not found: {course_id}")
        raise NotFoundError("Course not found")
    authorize(current_user, Action.list_course_enrollments, course, app_settings.ENFORCE_INSTRUCTOR_OWNERSHIP)

    enrollments = await storage.get_enrollments_by_course(course_id)
    logger.info(f"Retrieved {len(enrollments)} enrollments for course {course_id}")
    return enrollments


# ============= ENROLLMENT ENDPOINTS =============

@router.get("/api/enrollments", response_model=List[EnrollmentResponse], tags=["Enrollments"])
async def read_enrollments(
    current_user: User = Depends(requires(Action.list_own_enrollments)),
    storage: Storage = Depends(get_storage)
):
    """Get the caller's own enrollments"""
    enrollments = await storage.get_enrollments_by_user(current_user.id)
    logger.info(f"Retrieved {len(enrollments)} enrollments for user {current_user.id}")
    return enrollments


@router.post("/api/enrollments", response_model=EnrollmentResponse, status_code=status.HTTP_201_CREATED, tags=["Enrollments"])
async def create_enrollment(
    enrollment: EnrollmentCreate,
    current_user: User = Depends(requires(Action.create_enrollment)),
    storage: Storage = Depends(get_storage)
):
    """Enroll the calling student in a course"""
    logger.info(f"Creating enrollment for student {current_user.id} in course {enrollment.course_id}")
    db_enrollment = await storage.create_enrollment(
        Enrollment(student_id=current_user.id, course_id=enrollment.course_id)
    )
    logger.info(f"Enrollment created successfully with ID: {db_enrollment.id}")
    return db_enrollment


@router.patch("/api/enrollments/{enrollment_id}", response_model=EnrollmentResponse, tags=["Enrollments"])
async def update_enrollment(
    enrollment_id: Annotated[int, Path(ge=1, le=MAX_ID)],
    enrollment_update: EnrollmentUpdate,
    current_user: User = Depends(requires(Action.update_enrollment)),
    storage: Storage = Depends(get_storage),
    app_settings: Settings = Depends(get_settings)
):
    """Record a grade and attendance for an enrollment"""
    logger.info(f"Updating enrollment with ID: {enrollment_id}")
    db_enrollment = await storage.get_enrollment(enrollment_id)
    if not db_enrollment:
        logger.warning(f"Enrollment not found for update with ID: {enrollment_id}")
        raise NotFoundError("Enrollment not found")

    if app_settings.ENFORCE_INSTRUCTOR_OWNERSHIP:
        course = await storage.get_course(db_enrollment.course_id)
        authorize(current_user, Action.update_enrollment, course)

    updated = await storage.update_enrollment(
        enrollment_id, enrollment_update.grade, enrollment_update.attendance
    )
    if not updated:
        raise NotFoundError("Enrollment not found")
    logger.info(f"Enrollment updated successfully: {enrollment_id}")
    return updated


# ============= PAYMENT ENDPOINTS =============

@router.get("/api/payments", response_model=List[PaymentResponse], tags=["Payments"])
async def read_payments(
    current_user: User = Depends(requires(Action.list_own_payments)),
    storage: Storage = Depends(get_storage)
):
    """Get the caller's own payments"""
    payments = await storage.get_payments_by_user(current_user.id)
    logger.info(f"Retrieved {len(payments)} payments for user {current_user.id}")
    return payments


@router.post("/api/payments", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED, tags=["Payments"])
async def create_payment(
    payment: PaymentCreate,
    current_user: User = Depends(requires(Action.create_payment)),
    storage: Storage = Depends(get_storage)
):
    """Submit a tuition payment; it starts out pending"""
    logger.info(f"Creating payment for student {current_user.id}")
    db_payment = await storage.create_payment(Payment(**payment.model_dump(), student_id=current_user.id))
    logger.info(f"Payment created successfully with ID: {db_payment.id}")
    return db_payment


@router.patch("/api/payments/{payment_id}", response_model=PaymentResponse, tags=["Payments"])
async def update_payment_status(
    payment_id: Annotated[int, Path(ge=1, le=MAX_ID)],
    status_update: PaymentStatusUpdate,
    current_user: User = Depends(requires(Action.update_payment_status)),
    storage: Storage = Depends(get_storage)
):
    """Settle a pending payment as completed or failed"""
    logger.info(f"User {current_user.id} setting payment {payment_id} to {status_update.status.value}")
    db_payment = await storage.update_payment_status(payment_id, status_update.status)
    if not db_payment:
        logger.warning(f"Payment not found with ID: {payment_id}")
        raise NotFoundError("Payment not found")
    return db_payment


def create_app(app_settings: Optional[Settings] = None, storage: Optional[Storage] = None) -> FastAPI:
    """Build the application around an explicit storage handle"""
    app_settings = app_settings or default_settings
    configure_logging(app_settings)
    if storage is None:
        storage = build_storage(app_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            logger.info("Starting application...")
            await app.state.storage.setup()
        except Exception as e:
            logger.error(f"Failed to prepare storage: {str(e)}", exc_info=True)
            raise
        yield

    app = FastAPI(
        title="University Management API",
        description="Courses, enrollments, grades and tuition payments behind session authentication",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.settings = app_settings
    app.state.storage = storage

    app.add_middleware(
        SessionMiddleware,
        secret_key=app_settings.SESSION_SECRET_KEY,
        session_cookie=app_settings.SESSION_COOKIE_NAME,
        max_age=app_settings.SESSION_MAX_AGE,
        same_site="lax",
    )

    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(auth.router)
    app.include_router(router)
    return app


app = create_app()
