import logging
from datetime import date, datetime

import jwt
from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from teletherapy.auth import jwt_handler
from teletherapy.auth.dependencies import AuthContext, get_auth_context, require_roles
from teletherapy.scheduling.change_feed import ChangeFeed
from teletherapy.scheduling.conflicts import BookingCandidate, Verdict, find_stranded_appointments
from teletherapy.scheduling.realtime import RealtimeBridge
from teletherapy.scheduling.store import ScheduleStore

router = APIRouter(tags=['realtime'])

logger = logging.getLogger(__name__)

change_feed = ChangeFeed()
bridge = RealtimeBridge()


def report_booking_conflict(candidate: BookingCandidate, verdict: Verdict) -> None:
    bridge.report_conflict(
        verdict.kind.value,
        verdict.conflicting_appointment_ids,
        verdict.message or '',
        therapist_id=candidate.therapist_id,
    )


def report_stranded_appointments(
    store: ScheduleStore,
    therapist_id: str,
    start_date: date,
    end_date: date,
    kind: str,
    source: str,
) -> list[str]:
    """Raise a conflict for live appointments a committed schedule write left unbookable.

    Runs after the write has committed, so a failing scan is logged and
    reported as nothing stranded rather than failing the write.
    """
    try:
        snapshot = store.snapshot(therapist_id, start_date, end_date)
        stranded = find_stranded_appointments(snapshot, store.load_catalog())
    except SQLAlchemyError:
        store.db.rollback()
        logger.exception('Stranded appointment check after %s failed for therapist %s', source, therapist_id)
        return []
    if not stranded:
        return []

    appointment_ids = [appointment.id for appointment in stranded]
    logger.warning(
        '%s leaves %d appointment(s) outside availability for therapist %s',
        source,
        len(appointment_ids),
        therapist_id,
    )
    bridge.report_conflict(
        kind,
        appointment_ids,
        f'{len(appointment_ids)} appointment(s) fall outside the updated availability.',
        therapist_id=therapist_id,
    )
    return appointment_ids


class ConnectionStatusResponse(BaseModel):
    state: str
    is_online: bool
    reconnect_attempts: int
    last_seen: datetime | None = None
    subscribers: int


class ChangeEventResponse(BaseModel):
    kind: str
    action: str
    therapist_id: str | None = None
    entity_id: str | None = None
    payload: dict
    timestamp: datetime

    class Config:
        from_attributes = True


class ConflictRecordResponse(BaseModel):
    id: str
    kind: str
    involved_appointment_ids: list[str]
    detected_at: datetime
    message: str
    therapist_id: str | None = None
    resolved: bool

    class Config:
        from_attributes = True


class NotificationResponse(BaseModel):
    id: str
    type: str
    title: str
    message: str
    timestamp: datetime
    dismissed: bool
    auto_hide: bool
    duration: float | None = None
    priority: str

    class Config:
        from_attributes = True


@router.get('/status', response_model=ConnectionStatusResponse)
def get_connection_status():
    connection = bridge.status
    return ConnectionStatusResponse(
        state=connection.state.value,
        is_online=connection.is_online,
        reconnect_attempts=connection.reconnect_attempts,
        last_seen=connection.last_seen,
        subscribers=bridge.subscriber_count,
    )


@router.get('/events', response_model=list[ChangeEventResponse])
def list_recent_events(
    therapist_id: str | None = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
):
    events = bridge.recent_events()
    if therapist_id is not None:
        events = [change for change in events if change.therapist_id == therapist_id]
    return events


@router.get('/conflicts', response_model=list[ConflictRecordResponse])
def list_conflicts(
    active_only: bool = Query(default=False),
    auth: AuthContext = Depends(require_roles('therapist', 'admin')),
):
    records = bridge.active_conflicts() if active_only else bridge.conflicts()
    if auth.role == 'therapist':
        records = [record for record in records if record.therapist_id == auth.uid]
    return records


@router.post('/conflicts/{conflict_id}/resolve', response_model=ConflictRecordResponse)
def resolve_conflict(
    conflict_id: str,
    auth: AuthContext = Depends(require_roles('therapist', 'admin')),
):
    record = bridge.get_conflict(conflict_id)
    if record is None or (auth.role == 'therapist' and record.therapist_id != auth.uid):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Conflict not found.',
        )
    return bridge.resolve_conflict(conflict_id)


@router.post('/conflicts/clear-resolved', status_code=status.HTTP_204_NO_CONTENT)
def clear_resolved_conflicts(auth: AuthContext = Depends(require_roles('therapist', 'admin'))):
    bridge.clear_resolved_conflicts(therapist_id=auth.uid if auth.role == 'therapist' else None)


@router.get('/notifications', response_model=list[NotificationResponse])
def list_notifications(
    include_dismissed: bool = Query(default=False),
    auth: AuthContext = Depends(get_auth_context),
):
    return bridge.notifications(include_dismissed=include_dismissed)


@router.post('/notifications/{notification_id}/dismiss', status_code=status.HTTP_204_NO_CONTENT)
def dismiss_notification(
    notification_id: str,
    auth: AuthContext = Depends(get_auth_context),
):
    if not bridge.dismiss_notification(notification_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Notification not found.',
        )


@router.delete('/notifications', status_code=status.HTTP_204_NO_CONTENT)
def clear_notifications(auth: AuthContext = Depends(get_auth_context)):
    bridge.clear_notifications()


@router.websocket('/ws')
async def stream_changes(
    websocket: WebSocket,
    token: str = Query(...),
    therapist_id: str | None = Query(default=None),
    kinds: str | None = Query(default=None),
):
    try:
        jwt_handler.decode_access_token(token)
    except jwt.PyJWTError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    requested_kinds = [kind.strip() for kind in kinds.split(',') if kind.strip()] if kinds else None

    async with bridge.subscribe(kinds=requested_kinds, therapist_id=therapist_id) as subscription:
        try:
            async for change in subscription:
                await websocket.send_json(change.as_dict())
        except WebSocketDisconnect:
            logger.info('Realtime subscriber disconnected')
