import logging
from datetime import datetime

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cabinet_lending import config
from cabinet_lending.db.deps import get_db
from cabinet_lending.models.lending_models import AlertTracking, NotificationQueue
from cabinet_lending.schemas.requests import (
    ConfirmReturnDto,
    CreateRequestDto,
    ExtendTokenDto,
    ManageRequestDto,
    ReturnBorrowDto,
    VerifyTokenDto,
)
from cabinet_lending.services.access_service import StationAccess, parse_station_access, require_station_access
from cabinet_lending.services.alert_service import run_daily_alerts, serialize_alert
from cabinet_lending.services.borrow_service import confirm_return, list_open_borrows, return_borrow, serialize_borrow
from cabinet_lending.services.errors import LendingError
from cabinet_lending.services.notification_service import Notifier, build_notifier, serialize_notification
from cabinet_lending.services.request_service import (
    extend_token,
    list_station_requests,
    manage_request,
    serialize_request,
    submit_request,
    verify_token,
)


APP_LOGGER = logging.getLogger("cabinet_lending.app")

app = FastAPI(title="Cabinet Lending")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=config.CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)

_NOTIFIER = build_notifier()


def get_notifier() -> Notifier:
    return _NOTIFIER


def get_station_access(
    x_actor_name: str | None = Header(None, alias="X-Actor-Name"),
    x_station_access: str | None = Header(None, alias="X-Station-Access"),
) -> StationAccess:
    return parse_station_access(x_actor_name, x_station_access)


@app.exception_handler(LendingError)
async def handle_lending_error(request: Request, exc: LendingError):
    if exc.status_code >= 500:
        APP_LOGGER.warning("Request failed path=%s code=%s detail=%s", request.url.path, exc.code, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc.__class__.__name__}") from exc


@app.post("/api/requests")
def create_request(
    payload: CreateRequestDto,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    result = submit_request(
        db,
        notifier,
        payload.stationID,
        payload.requesterName,
        payload.requesterPhone,
        [(item.catalogItemID, item.quantity) for item in payload.items],
        call_identifier=payload.callIdentifier,
    )
    return {
        "success": True,
        "requestId": result.request.RequestID,
        "token": result.new_token,
        "expiresAt": result.request.ExpiresAt,
    }


@app.patch("/api/requests/manage")
def manage_request_route(
    payload: ManageRequestDto,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    access: StationAccess = Depends(get_station_access),
):
    result = manage_request(
        db,
        access,
        notifier,
        payload.requestId,
        payload.action,
        payload.stationId,
        actor_name=payload.actorName,
        reason=payload.reason,
    )
    return result.to_payload()


@app.post("/api/requests/verify")
def verify_request_token(payload: VerifyTokenDto, db: Session = Depends(get_db)):
    request = verify_token(db, payload.token)
    return {"success": True, "request": serialize_request(request)}


@app.post("/api/requests/{request_id}/extend-token")
def extend_request_token(
    request_id: int,
    payload: ExtendTokenDto,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    access: StationAccess = Depends(get_station_access),
):
    result = extend_token(
        db,
        access,
        notifier,
        request_id,
        payload.stationId,
        payload.minutesToAdd,
        actor_name=payload.actorName,
    )
    return {
        "success": True,
        "message": f"Link extended by {payload.minutesToAdd} minutes",
        "newExpiry": result.request.ExpiresAt,
    }


@app.get("/api/stations/{station_id}/requests")
def get_station_requests(
    station_id: int,
    status: list[str] | None = Query(None),
    db: Session = Depends(get_db),
    access: StationAccess = Depends(get_station_access),
):
    require_station_access(access, station_id)
    requests = list_station_requests(db, station_id, status)
    return {"success": True, "requests": [serialize_request(row, include_token=True) for row in requests]}


@app.get("/api/stations/{station_id}/borrows")
def get_station_borrows(
    station_id: int,
    db: Session = Depends(get_db),
    access: StationAccess = Depends(get_station_access),
):
    require_station_access(access, station_id)
    return [serialize_borrow(row) for row in list_open_borrows(db, station_id)]


@app.get("/api/stations/{station_id}/alerts")
def get_station_alerts(
    station_id: int,
    db: Session = Depends(get_db),
    access: StationAccess = Depends(get_station_access),
):
    require_station_access(access, station_id)
    rows = db.execute(
        select(AlertTracking)
        .where(AlertTracking.StationID == station_id, AlertTracking.ResolvedAt.is_(None))
        .order_by(AlertTracking.AlertType, AlertTracking.SubjectID)
    ).scalars().all()
    return [serialize_alert(row) for row in rows]


@app.post("/api/borrows/{borrow_id}/return")
def report_return(borrow_id: int, payload: ReturnBorrowDto, db: Session = Depends(get_db)):
    borrow = return_borrow(db, borrow_id, payload.equipmentStatus, payload.faultyNotes)
    return {"success": True, "message": "Return is waiting for manager approval", "borrow": serialize_borrow(borrow)}


@app.post("/api/borrows/{borrow_id}/confirm-return")
def confirm_borrow_return(
    borrow_id: int,
    payload: ConfirmReturnDto | None = None,
    db: Session = Depends(get_db),
    access: StationAccess = Depends(get_station_access),
):
    borrow = confirm_return(db, access, borrow_id, actor_name=payload.actorName if payload else None)
    return {"success": True, "borrow": serialize_borrow(borrow)}


@app.post("/api/alerts/run")
def run_alerts(
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    authorization: str | None = Header(None),
):
    if config.CRON_SECRET and authorization != f"Bearer {config.CRON_SECRET}":
        raise HTTPException(status_code=401, detail="Unauthorized")
    return run_daily_alerts(db, notifier, datetime.now())


@app.get("/api/notifications/pending")
def get_pending_notifications(
    db: Session = Depends(get_db),
    access: StationAccess = Depends(get_station_access),
):
    stmt = select(NotificationQueue).where(NotificationQueue.SentAt.is_(None))
    if not access.all_stations:
        stmt = stmt.where(NotificationQueue.StationID.in_(sorted(access.station_ids)))
    notifications = db.execute(stmt.order_by(NotificationQueue.NotificationID)).scalars().all()
    return [serialize_notification(row) for row in notifications]
