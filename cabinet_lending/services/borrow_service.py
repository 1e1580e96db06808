from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from cabinet_lending.models.lending_models import (
    BORROW_BORROWED,
    BORROW_PENDING_APPROVAL,
    BORROW_RETURNED,
    CONDITION_FAULTY,
    CONDITION_WORKING,
    BorrowRecord,
)
from cabinet_lending.services.access_service import StationAccess, require_station_access
from cabinet_lending.services.audit_service import ACTION_RETURN_CONFIRMED, ACTION_RETURN_REPORTED, record_audit
from cabinet_lending.services.errors import (
    InvalidTransitionError,
    LendingError,
    NotFoundError,
    RequestValidationFailed,
    StoreUnavailableError,
)
from cabinet_lending.services.inventory_service import get_stock, increment_stock, mark_stock_condition


BORROW_LOGGER = logging.getLogger("cabinet_lending.borrows")


def _load_borrow(db: Session, borrow_id: int) -> BorrowRecord:
    borrow = db.execute(
        select(BorrowRecord)
        .options(selectinload(BorrowRecord.CatalogItem))
        .where(BorrowRecord.BorrowID == borrow_id)
    ).scalars().first()
    if not borrow:
        raise NotFoundError("Borrow record not found.")
    return borrow


def list_open_borrows(db: Session, station_id: int) -> list[BorrowRecord]:
    stmt = (
        select(BorrowRecord)
        .options(selectinload(BorrowRecord.CatalogItem))
        .where(
            BorrowRecord.StationID == station_id,
            BorrowRecord.Status.in_([BORROW_BORROWED, BORROW_PENDING_APPROVAL]),
        )
        .order_by(BorrowRecord.BorrowDate.desc())
    )
    return list(db.execute(stmt).scalars().all())


def return_borrow(
    db: Session,
    borrow_id: int,
    condition: str | None = None,
    faulty_notes: str | None = None,
    now: datetime | None = None,
) -> BorrowRecord:
    """Borrower hands the equipment back; the manager still has to confirm it."""
    now = now or datetime.now()
    condition = (condition or CONDITION_WORKING).strip()
    if condition not in (CONDITION_WORKING, CONDITION_FAULTY):
        raise RequestValidationFailed(f"Unknown equipment condition '{condition}'.")
    try:
        borrow = _load_borrow(db, borrow_id)
        if borrow.Status != BORROW_BORROWED:
            raise InvalidTransitionError(
                "return",
                borrow.Status,
                "This equipment was already returned or is waiting for approval.",
            )
        borrow.Status = BORROW_PENDING_APPROVAL
        borrow.ReturnDate = now
        borrow.ReturnCondition = condition
        if condition == CONDITION_FAULTY and faulty_notes:
            borrow.FaultyNotes = faulty_notes.strip()[:1000]
        db.commit()
    except LendingError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        BORROW_LOGGER.exception("Store error while reporting return borrow_id=%s", borrow_id)
        raise StoreUnavailableError("The equipment store is unavailable right now. Please try again.") from exc

    BORROW_LOGGER.info("Return reported borrow_id=%s condition=%s", borrow.BorrowID, condition)
    record_audit(
        db,
        "BorrowRecord",
        borrow.BorrowID,
        ACTION_RETURN_REPORTED,
        {"condition": condition, "borrower_name": borrow.BorrowerName},
        actor_name=borrow.BorrowerName,
        station_id=borrow.StationID,
    )
    return borrow


def confirm_return(
    db: Session,
    access: StationAccess,
    borrow_id: int,
    actor_name: str | None = None,
    now: datetime | None = None,
) -> BorrowRecord:
    now = now or datetime.now()
    try:
        borrow = _load_borrow(db, borrow_id)
        require_station_access(access, borrow.StationID)
        if borrow.Status != BORROW_PENDING_APPROVAL:
            raise InvalidTransitionError("confirm return", borrow.Status, "Only returns waiting for approval can be confirmed.")
        stock = get_stock(db, borrow.StationID, borrow.CatalogItemID)
        if stock is None:
            raise NotFoundError("Equipment item is no longer stocked at this station.")
        increment_stock(db, borrow.StationID, borrow.CatalogItemID, int(borrow.Quantity or 1))
        if borrow.ReturnCondition == CONDITION_FAULTY:
            mark_stock_condition(stock, CONDITION_FAULTY, now)
        borrow.Status = BORROW_RETURNED
        if borrow.ReturnDate is None:
            borrow.ReturnDate = now
        db.commit()
    except LendingError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        BORROW_LOGGER.exception("Store error while confirming return borrow_id=%s", borrow_id)
        raise StoreUnavailableError("The equipment store is unavailable right now. Please try again.") from exc

    actor = (actor_name or "").strip() or access.actor_name or "system"
    BORROW_LOGGER.info(
        "Return confirmed borrow_id=%s actor=%s condition=%s",
        borrow.BorrowID,
        actor,
        borrow.ReturnCondition,
    )
    record_audit(
        db,
        "BorrowRecord",
        borrow.BorrowID,
        ACTION_RETURN_CONFIRMED,
        {"condition": borrow.ReturnCondition, "quantity": borrow.Quantity},
        actor_name=actor,
        station_id=borrow.StationID,
    )
    return borrow


def serialize_borrow(borrow: BorrowRecord) -> dict:
    return {
        "borrowID": borrow.BorrowID,
        "stationID": borrow.StationID,
        "catalogItemID": borrow.CatalogItemID,
        "itemName": borrow.CatalogItem.ItemName if borrow.CatalogItem else None,
        "requestID": borrow.RequestID,
        "borrowerName": borrow.BorrowerName,
        "borrowerPhone": borrow.BorrowerPhone,
        "quantity": borrow.Quantity,
        "status": borrow.Status,
        "borrowDate": borrow.BorrowDate,
        "returnDate": borrow.ReturnDate,
        "returnCondition": borrow.ReturnCondition,
        "faultyNotes": borrow.FaultyNotes,
    }
