from fastapi import HTTPException, status
from sqlalchemy.exc import SQLAlchemyError

from teletherapy.database import SessionLocal, ensure_appointment_schema, ensure_schedule_schema
from teletherapy.scheduling.errors import ConflictKind, SchedulingError

DATABASE_UNAVAILABLE_DETAIL = 'Database unavailable. Verify DATABASE_URL and Postgres credentials.'

STATUS_BY_KIND = {
    ConflictKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ConflictKind.NOT_AVAILABLE: status.HTTP_409_CONFLICT,
    ConflictKind.DOUBLE_BOOKED: status.HTTP_409_CONFLICT,
    ConflictKind.STALE_AVAILABILITY: status.HTTP_409_CONFLICT,
    ConflictKind.STORE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def database_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=DATABASE_UNAVAILABLE_DETAIL,
    )


def ensure_database_ready() -> None:
    try:
        ensure_schedule_schema()
        ensure_appointment_schema()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def scheduling_http_error(exc: SchedulingError) -> HTTPException:
    if exc.kind == ConflictKind.STORE_UNAVAILABLE:
        return database_unavailable()
    if exc.kind == ConflictKind.VALIDATION:
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
    return HTTPException(status_code=STATUS_BY_KIND[exc.kind], detail=exc.as_detail())
