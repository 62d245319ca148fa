from sqlalchemy import Column, String, JSON, TIMESTAMP
from sqlalchemy.sql import func
from .db import Base

class Audit(Base):
    """One row per entity write, scheduled job run or remediation command."""
    __tablename__ = "audit_log"
    id = Column(String, primary_key=True)
    ts = Column(TIMESTAMP, server_default=func.now(), index=True)
    actor = Column(String)
    action = Column(String)
    target_type = Column(String)
    target_id = Column(String, index=True)
    payload = Column(JSON)
