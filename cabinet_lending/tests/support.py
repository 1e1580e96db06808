import os
from datetime import datetime

os.environ.setdefault("CABINET_LENDING_DB_URL", "sqlite+pysqlite:///:memory:")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from cabinet_lending.db.base import Base
from cabinet_lending.models.lending_models import CatalogItem, Station, StationStock
from cabinet_lending.services.access_service import StationAccess
from cabinet_lending.services.notification_service import Notifier, SendResult


T0 = datetime(2026, 3, 2, 9, 0, 0)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []

    def send(self, channel, recipient, message):
        self.sent.append((channel, recipient, message))
        return SendResult(success=True)


class FailingNotifier(Notifier):
    def __init__(self):
        self.attempts = 0

    def send(self, channel, recipient, message):
        self.attempts += 1
        return SendResult(success=False, error="gateway down")


class RaisingNotifier(Notifier):
    def send(self, channel, recipient, message):
        raise ConnectionError("socket closed")


def make_session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    return engine, sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


def manager_access(*station_ids, name="Dana Manager"):
    return StationAccess(actor_name=name, station_ids=frozenset(station_ids))


def add_station(db, name="North Cabinet", email="north@example.org", active=True):
    station = Station(StationName=name, ManagerName="Dana", ManagerEmail=email, IsActive=active)
    db.add(station)
    db.flush()
    return station


def add_stock(db, station, item_name, quantity, consumable=False, condition="working", faulty_since=None):
    item = CatalogItem(ItemName=item_name, IsConsumable=consumable)
    db.add(item)
    db.flush()
    stock = StationStock(
        StationID=station.StationID,
        CatalogItemID=item.CatalogItemID,
        Quantity=quantity,
        Condition=condition,
        IsConsumable=consumable,
        FaultySince=faulty_since,
    )
    db.add(stock)
    db.flush()
    return stock
