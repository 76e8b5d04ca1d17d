from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from db.base import Base


class Equipment(Base):
    __tablename__ = "Equipment"

    EquipmentID = Column(Integer, primary_key=True)
    EquipmentName = Column(String(255), nullable=False)
    Code = Column(String(100))
    Category = Column(String(100))
    Location = Column(String(255))
    Unit = Column(String(50))
    Description = Column(String(1000))
    ImageUrl = Column(String(1000))
    Kind = Column(String(20), nullable=False)
    TotalQuantity = Column(Integer, nullable=False, default=0)
    AvailableQuantity = Column(Integer, nullable=False, default=0)
    MinStock = Column(Integer, nullable=False, default=0)
    Status = Column(String(30), nullable=False, default="available")
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())


class UsageRecord(Base):
    __tablename__ = "UsageRecords"

    UsageID = Column(Integer, primary_key=True)
    # Plain reference: deleting equipment leaves its history intact.
    EquipmentID = Column(Integer, nullable=False, index=True)
    EquipmentName = Column(String(255))
    EquipmentCode = Column(String(100))
    EquipmentCategory = Column(String(100))
    EquipmentLocation = Column(String(255))
    Unit = Column(String(50))
    UserID = Column(String(100), nullable=False, index=True)
    UserName = Column(String(255))
    Operation = Column(String(20), nullable=False)
    State = Column(String(20), nullable=False, index=True)
    Quantity = Column(Integer, nullable=False)
    Purpose = Column(String(1000))
    JobReference = Column(String(255))
    ExpectedReturnTime = Column(DateTime)
    ReturnedTime = Column(DateTime)
    ReturnQuantity = Column(Integer)
    ReturnNote = Column(String(1000))
    CreatedTime = Column(DateTime, nullable=False)
    UpdatedTime = Column(DateTime, nullable=False)


class StockAdjustment(Base):
    __tablename__ = "StockAdjustments"

    AdjustmentID = Column(Integer, primary_key=True)
    EquipmentID = Column(Integer, nullable=False, index=True)
    EquipmentName = Column(String(255))
    PreviousTotal = Column(Integer, nullable=False)
    NewTotal = Column(Integer, nullable=False)
    PreviousAvailable = Column(Integer, nullable=False)
    NewAvailable = Column(Integer, nullable=False)
    Note = Column(String(1000))
    CreatedTime = Column(DateTime, server_default=func.now())


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(String(100))
    CreatedAt = Column(DateTime, server_default=func.now())


class NotificationQueue(Base):
    __tablename__ = "NotificationQueue"

    NotificationID = Column(Integer, primary_key=True)
    UsageID = Column(Integer)
    EquipmentID = Column(Integer)
    NotificationType = Column(String(50), nullable=False)
    Payload = Column(String(2000))
    CreatedAt = Column(DateTime, server_default=func.now())
    SentAt = Column(DateTime)
