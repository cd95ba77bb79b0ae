from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from db.base import Base


class ConsoleAuditLog(Base):
    __tablename__ = "ConsoleAuditLog"

    AuditID = Column(Integer, primary_key=True, autoincrement=True)
    Action = Column(String(50), nullable=False)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer)
    Details = Column(String(1000))
    UserEmail = Column(String(255))
    CreatedAt = Column(DateTime, server_default=func.now())
