"""Request fulfillment lifecycle.

Approval is single-step: ``approve_request`` validates every item, takes the
stock and writes borrow records in one transaction, and moves the request
straight to ``picked_up``. No operation here produces ``approved``; rows that
already carry it can still be cancelled, regenerated or extended. A committed
pickup is reversed with ``undo_pickup`` only.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Iterator

from sqlalchemy import case, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from cabinet_lending import config
from cabinet_lending.models.lending_models import (
    BORROW_BORROWED,
    REQUEST_APPROVED,
    REQUEST_CANCELLED,
    REQUEST_EXPIRED,
    REQUEST_PENDING,
    REQUEST_PICKED_UP,
    REQUEST_REJECTED,
    REQUEST_STATUSES,
    BorrowRecord,
    EquipmentRequest,
    RequestItem,
    Station,
    StationStock,
)
from cabinet_lending.services.access_service import StationAccess, require_station_access
from cabinet_lending.services.alert_service import scan_low_stock
from cabinet_lending.services.audit_service import (
    ACTION_PICKUP_UNDONE,
    ACTION_REQUEST_APPROVED,
    ACTION_REQUEST_CANCELLED,
    ACTION_REQUEST_EXPIRED,
    ACTION_REQUEST_REJECTED,
    ACTION_REQUEST_SUBMITTED,
    ACTION_TOKEN_EXTENDED,
    ACTION_TOKEN_REGENERATED,
    record_audit,
)
from cabinet_lending.services.errors import (
    InsufficientStockError,
    InvalidTransitionError,
    LendingError,
    NotFoundError,
    RequestValidationFailed,
    StoreUnavailableError,
    TokenExpiredError,
)
from cabinet_lending.services.inventory_service import (
    check_availability,
    decrement_stock,
    get_stock,
    increment_stock,
    stock_item_name,
)
from cabinet_lending.services.notification_service import (
    CHANNEL_EMAIL,
    CHANNEL_WHATSAPP,
    Notifier,
    dispatch_pending,
    enqueue_notification,
)
from cabinet_lending.services.token_service import hash_token, is_token_expired, issue_token, tokens_match


REQUESTS_LOGGER = logging.getLogger("cabinet_lending.requests")

ACTION_APPROVE = "approve"
ACTION_REJECT = "reject"
ACTION_CANCEL = "cancel"
ACTION_REGENERATE = "regenerate"
ACTION_UNDO_PICKUP = "undo_pickup"
ACTION_EXTEND_TOKEN = "extend_token"
MANAGE_ACTIONS = (ACTION_APPROVE, ACTION_REJECT, ACTION_CANCEL, ACTION_REGENERATE, ACTION_UNDO_PICKUP)

ALLOWED_FROM = {
    ACTION_APPROVE: {REQUEST_PENDING},
    ACTION_REJECT: {REQUEST_PENDING},
    ACTION_CANCEL: {REQUEST_PENDING, REQUEST_APPROVED},
    ACTION_REGENERATE: {REQUEST_EXPIRED, REQUEST_APPROVED},
    ACTION_UNDO_PICKUP: {REQUEST_PICKED_UP},
    ACTION_EXTEND_TOKEN: {REQUEST_PENDING, REQUEST_APPROVED},
}
TERMINAL_STATES = {REQUEST_REJECTED, REQUEST_CANCELLED}
SYSTEM_ACTOR = "system"


@dataclass
class LifecycleResult:
    request: EquipmentRequest
    action: str
    new_token: str | None = None

    def to_payload(self) -> dict:
        payload = {"success": True, "action": self.action, "request": serialize_request(self.request)}
        if self.new_token:
            payload["newToken"] = self.new_token
        return payload


@contextmanager
def _store_guard(db: Session) -> Iterator[None]:
    try:
        yield
    except LendingError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        REQUESTS_LOGGER.exception("Store error during request lifecycle operation")
        raise StoreUnavailableError("The equipment store is unavailable right now. Please try again.") from exc


def _actor(actor_name: str | None, access: StationAccess | None) -> str:
    name = (actor_name or "").strip()
    if name:
        return name
    if access is not None and access.actor_name:
        return access.actor_name
    return SYSTEM_ACTOR


def request_link(token: str) -> str:
    return f"{config.APP_BASE_URL}/request/{token}"


def load_request(db: Session, request_id: int, station_id: int | None = None) -> EquipmentRequest:
    stmt = (
        select(EquipmentRequest)
        .options(
            selectinload(EquipmentRequest.Items).selectinload(RequestItem.CatalogItem),
            selectinload(EquipmentRequest.Station),
        )
        .where(EquipmentRequest.RequestID == request_id)
    )
    if station_id is not None:
        stmt = stmt.where(EquipmentRequest.StationID == station_id)
    request = db.execute(stmt).scalars().first()
    if not request:
        raise NotFoundError("Request not found.")
    return request


def list_station_requests(db: Session, station_id: int, statuses: Iterable[str] | None = None) -> list[EquipmentRequest]:
    stmt = (
        select(EquipmentRequest)
        .options(selectinload(EquipmentRequest.Items).selectinload(RequestItem.CatalogItem))
        .where(EquipmentRequest.StationID == station_id)
        .order_by(EquipmentRequest.CreatedDate.desc(), EquipmentRequest.RequestID.desc())
    )
    wanted = [status for status in (statuses or []) if status]
    unknown = sorted(set(wanted) - set(REQUEST_STATUSES))
    if unknown:
        raise RequestValidationFailed(f"Unknown request status: {', '.join(unknown)}.")
    if wanted:
        stmt = stmt.where(EquipmentRequest.Status.in_(wanted))
    return list(db.execute(stmt).scalars().all())


def _require_action(request: EquipmentRequest, action: str) -> None:
    if request.Status not in ALLOWED_FROM[action]:
        raise InvalidTransitionError(action, request.Status)


def _item_name(item: RequestItem) -> str:
    if item.CatalogItem and item.CatalogItem.ItemName:
        return item.CatalogItem.ItemName
    return f"item #{item.CatalogItemID}"


def _station_name(request: EquipmentRequest) -> str:
    if request.Station and request.Station.StationName:
        return request.Station.StationName
    return f"station #{request.StationID}"


def _queue_requester_message(db: Session, request: EquipmentRequest, notification_type: str, message: str) -> None:
    enqueue_notification(
        db,
        notification_type,
        CHANNEL_WHATSAPP,
        request.RequesterPhone,
        message,
        request_id=request.RequestID,
        station_id=request.StationID,
    )


def _after_commit(
    db: Session,
    notifier: Notifier,
    request: EquipmentRequest,
    audit_action: str,
    actor: str,
    details: dict | None = None,
) -> None:
    record_audit(
        db,
        "EquipmentRequest",
        request.RequestID,
        audit_action,
        details,
        actor_name=actor,
        station_id=request.StationID,
    )
    dispatch_pending(db, notifier, request_id=request.RequestID)


def submit_request(
    db: Session,
    notifier: Notifier,
    station_id: int,
    requester_name: str,
    requester_phone: str,
    items: Iterable[tuple[int, int]],
    call_identifier: str | None = None,
    now: datetime | None = None,
) -> LifecycleResult:
    """Create a pending request and hand back its bearer token."""
    now = now or datetime.now()
    name = (requester_name or "").strip()
    phone = (requester_phone or "").strip()
    lines = [(int(item_id), int(quantity)) for item_id, quantity in items]
    if not name or not phone:
        raise RequestValidationFailed("Requester name and phone are required.")
    if not lines:
        raise RequestValidationFailed("A request needs at least one item.")
    seen: set[int] = set()
    for item_id, quantity in lines:
        if quantity < 1:
            raise RequestValidationFailed("Requested quantity must be at least 1.")
        if item_id in seen:
            raise RequestValidationFailed(f"Item {item_id} is listed more than once.")
        seen.add(item_id)

    with _store_guard(db):
        station = db.get(Station, station_id)
        if not station or not station.IsActive:
            raise NotFoundError("Station not found.")
        for item_id, quantity in lines:
            stock = check_availability(get_stock(db, station_id, item_id), quantity, item_id)
            if not stock.IsConsumable and quantity != 1:
                raise RequestValidationFailed(f'Only one "{stock_item_name(stock)}" can be requested at a time.')

        issued = issue_token(now)
        request = EquipmentRequest(
            StationID=station_id,
            RequesterName=name,
            RequesterPhone=phone,
            CallIdentifier=(call_identifier or "").strip() or None,
            Status=REQUEST_PENDING,
            Token=issued.token,
            TokenHash=issued.token_hash,
            ExpiresAt=issued.expires_at,
            CreatedDate=now,
            UpdatedDate=now,
        )
        for item_id, quantity in lines:
            request.Items.append(RequestItem(CatalogItemID=item_id, Quantity=quantity))
        db.add(request)
        db.flush()
        if station.ManagerEmail:
            enqueue_notification(
                db,
                "NewRequest",
                CHANNEL_EMAIL,
                station.ManagerEmail,
                f"New equipment request #{request.RequestID} from {name} at {station.StationName}.",
                request_id=request.RequestID,
                station_id=station_id,
            )
        db.commit()

    REQUESTS_LOGGER.info(
        "Request submitted request_id=%s station_id=%s items=%s expires_at=%s",
        request.RequestID,
        station_id,
        len(lines),
        issued.expires_at.isoformat(),
    )
    _after_commit(db, notifier, request, ACTION_REQUEST_SUBMITTED, name, {"items_count": len(lines)})
    return LifecycleResult(request=load_request(db, request.RequestID), action="submit", new_token=issued.token)


def approve_request(
    db: Session,
    access: StationAccess,
    notifier: Notifier,
    request_id: int,
    station_id: int,
    actor_name: str | None = None,
    now: datetime | None = None,
) -> LifecycleResult:
    require_station_access(access, station_id)
    now = now or datetime.now()
    actor = _actor(actor_name, access)

    with _store_guard(db):
        request = load_request(db, request_id, station_id)
        _require_action(request, ACTION_APPROVE)

        # Every line is checked before any stock moves.
        checked = []
        for item in request.Items:
            stock = get_stock(db, request.StationID, item.CatalogItemID)
            stock = check_availability(stock, item.Quantity, item.CatalogItemID)
            if not stock.IsConsumable and item.Quantity != 1:
                raise RequestValidationFailed(
                    f'Request lists {item.Quantity} of "{_item_name(item)}"; only one can be borrowed at a time.'
                )
            checked.append((item, stock))

        for item, stock in checked:
            if not decrement_stock(db, stock.StationStockID, item.Quantity):
                raise InsufficientStockError(f'Equipment "{_item_name(item)}" was just taken by another request.')
            if not stock.IsConsumable:
                db.add(
                    BorrowRecord(
                        StationID=request.StationID,
                        CatalogItemID=item.CatalogItemID,
                        RequestID=request.RequestID,
                        BorrowerName=request.RequesterName,
                        BorrowerPhone=request.RequesterPhone,
                        Quantity=item.Quantity,
                        Status=BORROW_BORROWED,
                        BorrowDate=now,
                    )
                )

        request.Status = REQUEST_PICKED_UP
        request.ApprovedBy = actor
        request.ApprovedAt = now
        request.UpdatedDate = now
        message = f"Your equipment request #{request.RequestID} at {_station_name(request)} was approved."
        if request.Token:
            message += f" Details: {request_link(request.Token)}"
        _queue_requester_message(db, request, "RequestApproved", message)
        db.commit()

    REQUESTS_LOGGER.info(
        "Request approved request_id=%s station_id=%s actor=%s items=%s",
        request.RequestID,
        request.StationID,
        actor,
        len(checked),
    )
    _after_commit(
        db,
        notifier,
        request,
        ACTION_REQUEST_APPROVED,
        actor,
        {
            "request_id": request.RequestID,
            "requester_name": request.RequesterName,
            "requester_phone": request.RequesterPhone,
            "items_count": len(checked),
        },
    )
    scan_low_stock(db, notifier, request.StationID, now=now)
    return LifecycleResult(request=request, action=ACTION_APPROVE)


def reject_request(
    db: Session,
    access: StationAccess,
    notifier: Notifier,
    request_id: int,
    station_id: int,
    reason: str | None = None,
    actor_name: str | None = None,
    now: datetime | None = None,
) -> LifecycleResult:
    require_station_access(access, station_id)
    now = now or datetime.now()
    actor = _actor(actor_name, access)
    reason = (reason or "").strip() or None

    with _store_guard(db):
        request = load_request(db, request_id, station_id)
        _require_action(request, ACTION_REJECT)
        request.Status = REQUEST_REJECTED
        request.RejectedReason = reason
        request.UpdatedDate = now
        message = f"Your equipment request #{request.RequestID} was rejected."
        if reason:
            message += f" Reason: {reason}"
        _queue_requester_message(db, request, "RequestRejected", message)
        db.commit()

    REQUESTS_LOGGER.info("Request rejected request_id=%s actor=%s", request.RequestID, actor)
    _after_commit(
        db,
        notifier,
        request,
        ACTION_REQUEST_REJECTED,
        actor,
        {"request_id": request.RequestID, "requester_name": request.RequesterName, "reason": reason},
    )
    return LifecycleResult(request=request, action=ACTION_REJECT)


def cancel_request(
    db: Session,
    access: StationAccess,
    notifier: Notifier,
    request_id: int,
    station_id: int,
    reason: str | None = None,
    actor_name: str | None = None,
    now: datetime | None = None,
) -> LifecycleResult:
    require_station_access(access, station_id)
    now = now or datetime.now()
    actor = _actor(actor_name, access)
    reason = (reason or "").strip() or None

    with _store_guard(db):
        request = load_request(db, request_id, station_id)
        if request.Status == REQUEST_PICKED_UP:
            raise InvalidTransitionError(
                ACTION_CANCEL,
                request.Status,
                "Equipment was already handed out; undo the pickup instead.",
            )
        _require_action(request, ACTION_CANCEL)
        previous_status = request.Status
        request.Status = REQUEST_CANCELLED
        if reason:
            request.RejectedReason = reason
        request.UpdatedDate = now
        message = f"Your equipment request #{request.RequestID} was cancelled."
        if reason:
            message += f" Reason: {reason}"
        _queue_requester_message(db, request, "RequestCancelled", message)
        db.commit()

    REQUESTS_LOGGER.info("Request cancelled request_id=%s actor=%s previous=%s", request.RequestID, actor, previous_status)
    _after_commit(
        db,
        notifier,
        request,
        ACTION_REQUEST_CANCELLED,
        actor,
        {
            "request_id": request.RequestID,
            "requester_name": request.RequesterName,
            "previous_status": previous_status,
            "reason": reason,
        },
    )
    return LifecycleResult(request=request, action=ACTION_CANCEL)


def regenerate_token(
    db: Session,
    access: StationAccess,
    notifier: Notifier,
    request_id: int,
    station_id: int,
    actor_name: str | None = None,
    now: datetime | None = None,
) -> LifecycleResult:
    require_station_access(access, station_id)
    now = now or datetime.now()
    actor = _actor(actor_name, access)

    with _store_guard(db):
        request = load_request(db, request_id, station_id)
        _require_action(request, ACTION_REGENERATE)
        previous_status = request.Status
        issued = issue_token(now)
        request.Token = issued.token
        request.TokenHash = issued.token_hash
        request.ExpiresAt = issued.expires_at
        request.Status = REQUEST_PENDING if previous_status == REQUEST_EXPIRED else REQUEST_APPROVED
        request.UpdatedDate = now
        _queue_requester_message(
            db,
            request,
            "TokenRegenerated",
            f"A new link for your equipment request #{request.RequestID}: {request_link(issued.token)}",
        )
        db.commit()

    REQUESTS_LOGGER.info(
        "Token regenerated request_id=%s actor=%s previous=%s status=%s",
        request.RequestID,
        actor,
        previous_status,
        request.Status,
    )
    _after_commit(
        db,
        notifier,
        request,
        ACTION_TOKEN_REGENERATED,
        actor,
        {"request_id": request.RequestID, "requester_name": request.RequesterName, "previous_status": previous_status},
    )
    return LifecycleResult(request=request, action=ACTION_REGENERATE, new_token=issued.token)


def _is_consumable(item: RequestItem, stock: StationStock | None) -> bool:
    if item.CatalogItem is not None:
        return bool(item.CatalogItem.IsConsumable)
    return bool(stock is not None and stock.IsConsumable)


def _find_open_borrow(db: Session, request: EquipmentRequest, item: RequestItem) -> BorrowRecord | None:
    stmt = (
        select(BorrowRecord)
        .where(
            BorrowRecord.StationID == request.StationID,
            BorrowRecord.CatalogItemID == item.CatalogItemID,
            BorrowRecord.BorrowerPhone == request.RequesterPhone,
            BorrowRecord.Status == BORROW_BORROWED,
        )
        .order_by(
            case((BorrowRecord.RequestID == request.RequestID, 0), else_=1),
            BorrowRecord.BorrowDate.desc(),
            BorrowRecord.BorrowID.desc(),
        )
    )
    return db.execute(stmt).scalars().first()


def undo_pickup(
    db: Session,
    access: StationAccess,
    notifier: Notifier,
    request_id: int,
    station_id: int,
    actor_name: str | None = None,
    now: datetime | None = None,
) -> LifecycleResult:
    """Put the stock back and drop the custody records of a committed pickup.

    Current stock condition is not re-checked.
    """
    require_station_access(access, station_id)
    now = now or datetime.now()
    actor = _actor(actor_name, access)
    restored = 0
    missing_borrows = 0

    with _store_guard(db):
        request = load_request(db, request_id, station_id)
        _require_action(request, ACTION_UNDO_PICKUP)
        for item in request.Items:
            stock = get_stock(db, request.StationID, item.CatalogItemID)
            if stock is None:
                REQUESTS_LOGGER.warning(
                    "Undo pickup skipped stock restore request_id=%s item_id=%s reason=stock_row_missing",
                    request.RequestID,
                    item.CatalogItemID,
                )
            else:
                increment_stock(db, request.StationID, item.CatalogItemID, item.Quantity)
                restored += 1
            if _is_consumable(item, stock):
                continue
            borrow = _find_open_borrow(db, request, item)
            if borrow is None:
                missing_borrows += 1
                REQUESTS_LOGGER.warning(
                    "Undo pickup found no open borrow record request_id=%s item_id=%s",
                    request.RequestID,
                    item.CatalogItemID,
                )
                continue
            db.delete(borrow)

        request.Status = REQUEST_CANCELLED
        request.UpdatedDate = now
        _queue_requester_message(
            db,
            request,
            "PickupUndone",
            f"The pickup for your equipment request #{request.RequestID} was reversed by the station manager.",
        )
        db.commit()

    REQUESTS_LOGGER.info(
        "Pickup undone request_id=%s actor=%s restored=%s missing_borrows=%s",
        request.RequestID,
        actor,
        restored,
        missing_borrows,
    )
    _after_commit(
        db,
        notifier,
        request,
        ACTION_PICKUP_UNDONE,
        actor,
        {"request_id": request.RequestID, "requester_name": request.RequesterName, "restored_items": restored},
    )
    return LifecycleResult(request=request, action=ACTION_UNDO_PICKUP)


def extend_token(
    db: Session,
    access: StationAccess,
    notifier: Notifier,
    request_id: int,
    station_id: int,
    minutes: int,
    actor_name: str | None = None,
    now: datetime | None = None,
) -> LifecycleResult:
    require_station_access(access, station_id)
    if minutes < 1 or minutes > config.TOKEN_MAX_EXTENSION_MINUTES:
        raise RequestValidationFailed(
            f"Extension must be between 1 and {config.TOKEN_MAX_EXTENSION_MINUTES} minutes."
        )
    now = now or datetime.now()
    actor = _actor(actor_name, access)

    with _store_guard(db):
        request = load_request(db, request_id, station_id)
        _require_action(request, ACTION_EXTEND_TOKEN)
        base = request.ExpiresAt if request.ExpiresAt and request.ExpiresAt > now else now
        request.ExpiresAt = base + timedelta(minutes=minutes)
        request.UpdatedDate = now
        db.commit()

    REQUESTS_LOGGER.info(
        "Token extended request_id=%s actor=%s minutes=%s expires_at=%s",
        request.RequestID,
        actor,
        minutes,
        request.ExpiresAt.isoformat(),
    )
    _after_commit(
        db,
        notifier,
        request,
        ACTION_TOKEN_EXTENDED,
        actor,
        {"request_id": request.RequestID, "minutes_added": minutes, "new_expiry": request.ExpiresAt},
    )
    return LifecycleResult(request=request, action=ACTION_EXTEND_TOKEN)


def verify_token(db: Session, token: str, now: datetime | None = None) -> EquipmentRequest:
    """Resolve a presented bearer token to its request.

    A pending request whose link ran out is moved to ``expired`` before the
    error is raised, so the manager can regenerate it.
    """
    now = now or datetime.now()
    presented = (token or "").strip()
    if not presented:
        raise NotFoundError("Request not found.")

    with _store_guard(db):
        stmt = (
            select(EquipmentRequest)
            .options(
                selectinload(EquipmentRequest.Items).selectinload(RequestItem.CatalogItem),
                selectinload(EquipmentRequest.Station),
            )
            .where(EquipmentRequest.TokenHash == hash_token(presented))
        )
        request = db.execute(stmt).scalars().first()
        if not request or not tokens_match(presented, request.TokenHash):
            raise NotFoundError("Request not found.")
        if not is_token_expired(request.ExpiresAt, now):
            return request
        expired_now = False
        if request.Status == REQUEST_PENDING:
            request.Status = REQUEST_EXPIRED
            request.UpdatedDate = now
            db.commit()
            expired_now = True

    if expired_now:
        REQUESTS_LOGGER.info("Request expired request_id=%s", request.RequestID)
        record_audit(
            db,
            "EquipmentRequest",
            request.RequestID,
            ACTION_REQUEST_EXPIRED,
            {"request_id": request.RequestID, "expires_at": request.ExpiresAt},
            actor_name=SYSTEM_ACTOR,
            station_id=request.StationID,
        )
    raise TokenExpiredError()


def manage_request(
    db: Session,
    access: StationAccess,
    notifier: Notifier,
    request_id: int,
    action: str,
    station_id: int,
    actor_name: str | None = None,
    reason: str | None = None,
    now: datetime | None = None,
) -> LifecycleResult:
    if action not in MANAGE_ACTIONS:
        raise RequestValidationFailed(f"Unknown action '{action}'.")
    if action == ACTION_APPROVE:
        return approve_request(db, access, notifier, request_id, station_id, actor_name=actor_name, now=now)
    if action == ACTION_REJECT:
        return reject_request(db, access, notifier, request_id, station_id, reason=reason, actor_name=actor_name, now=now)
    if action == ACTION_CANCEL:
        return cancel_request(db, access, notifier, request_id, station_id, reason=reason, actor_name=actor_name, now=now)
    if action == ACTION_REGENERATE:
        return regenerate_token(db, access, notifier, request_id, station_id, actor_name=actor_name, now=now)
    return undo_pickup(db, access, notifier, request_id, station_id, actor_name=actor_name, now=now)


def serialize_request(request: EquipmentRequest, include_token: bool = False) -> dict:
    payload = {
        "requestID": request.RequestID,
        "stationID": request.StationID,
        "requesterName": request.RequesterName,
        "requesterPhone": request.RequesterPhone,
        "callIdentifier": request.CallIdentifier,
        "status": request.Status,
        "isTerminal": request.Status in TERMINAL_STATES,
        "expiresAt": request.ExpiresAt,
        "approvedBy": request.ApprovedBy,
        "approvedAt": request.ApprovedAt,
        "rejectedReason": request.RejectedReason,
        "createdDate": request.CreatedDate,
        "updatedDate": request.UpdatedDate,
        "items": [
            {
                "requestItemID": item.RequestItemID,
                "catalogItemID": item.CatalogItemID,
                "itemName": _item_name(item),
                "quantity": item.Quantity,
            }
            for item in request.Items
        ],
    }
    if include_token:
        payload["token"] = request.Token
    return payload
