import asyncio
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from teletherapy.core import config
from teletherapy.database import Base, SessionLocal, engine, ensure_appointment_schema, ensure_schedule_schema
from teletherapy.models import appointment, availability, schedule_override, time_slot  # noqa: F401
from teletherapy.routes import availability_routes, booking_routes, override_routes, realtime_routes, time_slot_routes
from teletherapy.routes.realtime_routes import bridge, change_feed

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

logger = logging.getLogger(__name__)

_bridge_task: asyncio.Task | None = None


@app.on_event('startup')
def initialize_database() -> None:
    config.validate_runtime_config()
    try:
        Base.metadata.create_all(bind=engine)
        ensure_schedule_schema()
        ensure_appointment_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and Postgres credentials.')


@app.on_event('startup')
async def start_realtime_bridge() -> None:
    global _bridge_task

    change_feed.attach(SessionLocal)
    _bridge_task = asyncio.create_task(bridge.run(change_feed.stream))


@app.on_event('shutdown')
async def stop_realtime_bridge() -> None:
    bridge.stop()
    change_feed.detach(SessionLocal)
    if _bridge_task is not None:
        _bridge_task.cancel()


@app.get('/')
def root():
    return {'status': 'Teletherapy Scheduling API Running'}


app.include_router(time_slot_routes.router, prefix='/time-slots')
app.include_router(availability_routes.router, prefix='/availability')
app.include_router(override_routes.router, prefix='/overrides')
app.include_router(booking_routes.router, prefix='/bookings')
app.include_router(realtime_routes.router, prefix='/realtime')
