from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

from cabinet_lending.models.lending_models import CONDITION_FAULTY, CONDITION_WORKING, StationStock
from cabinet_lending.services.errors import (
    EquipmentUnavailableError,
    InsufficientStockError,
    NotFoundError,
    RequestValidationFailed,
)


def get_stock(db: Session, station_id: int, catalog_item_id: int) -> StationStock | None:
    stmt = (
        select(StationStock)
        .options(selectinload(StationStock.CatalogItem))
        .where(StationStock.StationID == station_id, StationStock.CatalogItemID == catalog_item_id)
    )
    return db.execute(stmt).scalars().first()


def stock_item_name(stock: StationStock) -> str:
    if stock.CatalogItem and stock.CatalogItem.ItemName:
        return stock.CatalogItem.ItemName
    return f"item #{stock.CatalogItemID}"


def check_availability(stock: StationStock | None, requested_quantity: int, catalog_item_id: int) -> StationStock:
    if stock is None:
        raise NotFoundError(f"Equipment item {catalog_item_id} is not stocked at this station.")
    name = stock_item_name(stock)
    if stock.Condition != CONDITION_WORKING:
        raise EquipmentUnavailableError(f'Equipment "{name}" is faulty and not available.')
    quantity = int(stock.Quantity or 0)
    if not stock.IsConsumable and quantity < 1:
        raise InsufficientStockError(f'Equipment "{name}" is out of stock.')
    if stock.IsConsumable and quantity < requested_quantity:
        raise InsufficientStockError(f'Not enough "{name}" in stock ({quantity} left, {requested_quantity} requested).')
    return stock


def decrement_stock(db: Session, stock_id: int, quantity: int) -> bool:
    """Take ``quantity`` units in one conditional UPDATE; False means another caller got there first."""
    if quantity < 1:
        raise RequestValidationFailed("Quantity must be at least 1.")
    result = db.execute(
        update(StationStock)
        .where(StationStock.StationStockID == stock_id, StationStock.Quantity >= quantity)
        .values(Quantity=StationStock.Quantity - quantity, UpdatedDate=datetime.now())
        .execution_options(synchronize_session="evaluate")
    )
    return result.rowcount == 1


def increment_stock(db: Session, station_id: int, catalog_item_id: int, quantity: int) -> bool:
    result = db.execute(
        update(StationStock)
        .where(StationStock.StationID == station_id, StationStock.CatalogItemID == catalog_item_id)
        .values(Quantity=StationStock.Quantity + quantity, UpdatedDate=datetime.now())
        .execution_options(synchronize_session="evaluate")
    )
    return result.rowcount == 1


def mark_stock_condition(stock: StationStock, condition: str, now: datetime | None = None) -> None:
    if condition not in (CONDITION_WORKING, CONDITION_FAULTY):
        raise RequestValidationFailed(f"Unknown equipment condition '{condition}'.")
    now = now or datetime.now()
    if condition == CONDITION_FAULTY:
        if stock.Condition != CONDITION_FAULTY or stock.FaultySince is None:
            stock.FaultySince = now
    else:
        stock.FaultySince = None
    stock.Condition = condition
    stock.UpdatedDate = now


def list_low_stock(db: Session, station_id: int, threshold: int) -> list[StationStock]:
    stmt = (
        select(StationStock)
        .options(selectinload(StationStock.CatalogItem))
        .where(StationStock.StationID == station_id, StationStock.Quantity <= threshold)
        .order_by(StationStock.CatalogItemID)
    )
    return list(db.execute(stmt).scalars().all())


def list_stuck_faulty(db: Session, station_id: int, faulty_before: datetime) -> list[StationStock]:
    stmt = (
        select(StationStock)
        .options(selectinload(StationStock.CatalogItem))
        .where(
            StationStock.StationID == station_id,
            StationStock.Condition == CONDITION_FAULTY,
            StationStock.FaultySince.is_not(None),
            StationStock.FaultySince <= faulty_before,
        )
        .order_by(StationStock.CatalogItemID)
    )
    return list(db.execute(stmt).scalars().all())

