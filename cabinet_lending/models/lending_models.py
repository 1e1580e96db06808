from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from cabinet_lending.db.base import Base


REQUEST_PENDING = "pending"
REQUEST_APPROVED = "approved"
REQUEST_PICKED_UP = "picked_up"
REQUEST_REJECTED = "rejected"
REQUEST_CANCELLED = "cancelled"
REQUEST_EXPIRED = "expired"
REQUEST_STATUSES = (
    REQUEST_PENDING,
    REQUEST_APPROVED,
    REQUEST_PICKED_UP,
    REQUEST_REJECTED,
    REQUEST_CANCELLED,
    REQUEST_EXPIRED,
)

CONDITION_WORKING = "working"
CONDITION_FAULTY = "faulty"

BORROW_BORROWED = "borrowed"
BORROW_PENDING_APPROVAL = "pending_approval"
BORROW_RETURNED = "returned"

ALERT_LOW_STOCK = "low_stock"
ALERT_FAULTY_EQUIPMENT = "faulty_equipment"


class Station(Base):
    __tablename__ = "Stations"

    StationID = Column(Integer, primary_key=True)
    StationName = Column(String(255), nullable=False)
    ManagerName = Column(String(255))
    ManagerEmail = Column(String(255))
    ManagerPhone = Column(String(50))
    IsActive = Column(Boolean, default=True)
    CreatedDate = Column(DateTime, server_default=func.now())

    Stock = relationship("StationStock", back_populates="Station")


class CatalogItem(Base):
    __tablename__ = "CatalogItems"

    CatalogItemID = Column(Integer, primary_key=True)
    ItemName = Column(String(255), nullable=False)
    IsConsumable = Column(Boolean, default=False, nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())


class StationStock(Base):
    __tablename__ = "StationStock"
    __table_args__ = (
        UniqueConstraint("StationID", "CatalogItemID", name="uq_station_stock_item"),
        CheckConstraint("Quantity >= 0", name="ck_station_stock_quantity"),
    )

    StationStockID = Column(Integer, primary_key=True)
    StationID = Column(Integer, ForeignKey("Stations.StationID"), nullable=False)
    CatalogItemID = Column(Integer, ForeignKey("CatalogItems.CatalogItemID"), nullable=False)
    Quantity = Column(Integer, default=0, nullable=False)
    Condition = Column(String(20), default=CONDITION_WORKING, nullable=False)
    IsConsumable = Column(Boolean, default=False, nullable=False)
    FaultySince = Column(DateTime)
    UpdatedDate = Column(DateTime, server_default=func.now())

    Station = relationship("Station", back_populates="Stock")
    CatalogItem = relationship("CatalogItem")


class EquipmentRequest(Base):
    __tablename__ = "EquipmentRequests"

    RequestID = Column(Integer, primary_key=True)
    StationID = Column(Integer, ForeignKey("Stations.StationID"), nullable=False)
    RequesterName = Column(String(255), nullable=False)
    RequesterPhone = Column(String(50), nullable=False)
    CallIdentifier = Column(String(100))
    Status = Column(String(20), default=REQUEST_PENDING, nullable=False)
    Token = Column(String(100))
    TokenHash = Column(String(64), unique=True)
    ExpiresAt = Column(DateTime)
    ApprovedBy = Column(String(255))
    ApprovedAt = Column(DateTime)
    RejectedReason = Column(String(1000))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Station = relationship("Station")
    Items = relationship("RequestItem", back_populates="Request", cascade="all, delete-orphan")


class RequestItem(Base):
    __tablename__ = "RequestItems"
    __table_args__ = (CheckConstraint("Quantity >= 1", name="ck_request_item_quantity"),)

    RequestItemID = Column(Integer, primary_key=True)
    RequestID = Column(Integer, ForeignKey("EquipmentRequests.RequestID"), nullable=False)
    CatalogItemID = Column(Integer, ForeignKey("CatalogItems.CatalogItemID"), nullable=False)
    Quantity = Column(Integer, default=1, nullable=False)

    Request = relationship("EquipmentRequest", back_populates="Items")
    CatalogItem = relationship("CatalogItem")


class BorrowRecord(Base):
    __tablename__ = "BorrowRecords"
    __table_args__ = (Index("ix_borrow_open_lookup", "StationID", "CatalogItemID", "BorrowerPhone", "Status"),)

    BorrowID = Column(Integer, primary_key=True)
    StationID = Column(Integer, ForeignKey("Stations.StationID"), nullable=False)
    CatalogItemID = Column(Integer, ForeignKey("CatalogItems.CatalogItemID"), nullable=False)
    RequestID = Column(Integer, ForeignKey("EquipmentRequests.RequestID"))
    BorrowerName = Column(String(255), nullable=False)
    BorrowerPhone = Column(String(50), nullable=False)
    Quantity = Column(Integer, default=1, nullable=False)
    Status = Column(String(20), default=BORROW_BORROWED, nullable=False)
    BorrowDate = Column(DateTime, nullable=False)
    ReturnDate = Column(DateTime)
    ReturnCondition = Column(String(20))
    FaultyNotes = Column(String(1000))

    CatalogItem = relationship("CatalogItem")


class AlertTracking(Base):
    __tablename__ = "AlertTracking"
    __table_args__ = (Index("ix_alert_tracking_open", "StationID", "AlertType", "ResolvedAt"),)

    AlertID = Column(Integer, primary_key=True)
    StationID = Column(Integer, ForeignKey("Stations.StationID"), nullable=False)
    AlertType = Column(String(30), nullable=False)
    SubjectID = Column(Integer, nullable=False)
    SubjectName = Column(String(255))
    FirstAlertAt = Column(DateTime, nullable=False)
    LastAlertAt = Column(DateTime, nullable=False)
    AlertCount = Column(Integer, default=1, nullable=False)
    ResolvedAt = Column(DateTime)


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    StationID = Column(Integer)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    ActorName = Column(String(255))
    CreatedAt = Column(DateTime, server_default=func.now())


class NotificationQueue(Base):
    __tablename__ = "NotificationQueue"

    NotificationID = Column(Integer, primary_key=True)
    RequestID = Column(Integer)
    StationID = Column(Integer)
    NotificationType = Column(String(50), nullable=False)
    Channel = Column(String(20), nullable=False)
    Recipient = Column(String(255))
    Payload = Column(String(4000))
    Attempts = Column(Integer, default=0, nullable=False)
    LastError = Column(String(1000))
    CreatedAt = Column(DateTime, server_default=func.now())
    SentAt = Column(DateTime)
