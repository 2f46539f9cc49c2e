from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


class Tool(Base):
    __tablename__ = "Tools"

    ToolID = Column(Integer, primary_key=True)
    ToolCode = Column(String(20), nullable=False, unique=True)
    ToolName = Column(String(255), nullable=False)
    Brand = Column(String(255))
    Category = Column(String(100), default="General")
    TotalQuantity = Column(Integer, nullable=False, default=0)
    Condition = Column(String(20), default="Good")
    MinStock = Column(Integer, nullable=False, default=0)
    Supplier = Column(String(255))
    Cost = Column(Numeric(10, 2))
    PurchaseDate = Column(Date)
    Warranty = Column(String(255))
    Notes = Column(String(4000))
    ImagePath = Column(String(500))
    Version = Column(Integer, nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Assignments = relationship("ToolAssignment", back_populates="Tool")
    DamageRecords = relationship("DamageRecord", back_populates="Tool")

    __mapper_args__ = {"version_id_col": Version}


class ServiceTicket(Base):
    __tablename__ = "ServiceTickets"

    TicketID = Column(Integer, primary_key=True)
    TicketNumber = Column(String(50), nullable=False, unique=True)
    CustomerName = Column(String(255))
    LicensePlate = Column(String(50))
    Title = Column(String(255))
    Technician = Column(String(255))
    Status = Column(String(30), nullable=False, default="open")
    CreatedAt = Column(DateTime, server_default=func.now())


class ToolAssignment(Base):
    __tablename__ = "ToolAssignments"

    AssignmentID = Column(Integer, primary_key=True)
    ToolID = Column(Integer, ForeignKey("Tools.ToolID"), nullable=False, index=True)
    TicketID = Column(Integer, ForeignKey("ServiceTickets.TicketID"), nullable=False, index=True)
    TicketNumber = Column(String(50))
    AssignedQuantity = Column(Integer, nullable=False)
    AssignedBy = Column(String(255), nullable=False)
    AssignedAt = Column(DateTime, nullable=False)
    Status = Column(String(20), nullable=False, default="Active", index=True)
    ReturnedAt = Column(DateTime)
    ReturnedBy = Column(String(255))

    Tool = relationship("Tool", back_populates="Assignments")
    Ticket = relationship("ServiceTicket")


class DamageRecord(Base):
    __tablename__ = "ToolDamageRecords"

    DamageID = Column(Integer, primary_key=True)
    ToolID = Column(Integer, ForeignKey("Tools.ToolID"), nullable=False, index=True)
    ReportedBy = Column(String(255), nullable=False)
    Notes = Column(String(1000))
    ReportedAt = Column(DateTime, nullable=False)
    Resolved = Column(Boolean, nullable=False, default=False, index=True)
    ResolvedAt = Column(DateTime)
    ResolvedBy = Column(String(255))
    ResolutionNotes = Column(String(1000))

    Tool = relationship("Tool", back_populates="DamageRecords")


class ActivityEntry(Base):
    __tablename__ = "ToolActivityLog"

    ActivityID = Column(Integer, primary_key=True)
    Type = Column(String(20), nullable=False)
    ToolID = Column(Integer, index=True)
    TicketID = Column(Integer)
    Message = Column(String(1000), nullable=False)
    Actor = Column(String(255))
    CreatedAt = Column(DateTime, nullable=False, index=True)


class IdempotencyKey(Base):
    __tablename__ = "IdempotencyKeys"
    __table_args__ = (UniqueConstraint("Scope", "Key", name="uq_idempotency_scope_key"),)

    IdempotencyID = Column(Integer, primary_key=True)
    Scope = Column(String(64), nullable=False, index=True)
    Key = Column(String(128), nullable=False)
    PayloadHash = Column(String(128), nullable=False)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer)
    EntityIDs = Column(String(2000))
    CreatedAt = Column(DateTime, server_default=func.now())
