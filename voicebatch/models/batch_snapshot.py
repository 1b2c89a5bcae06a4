from sqlalchemy import Column, Text, JSON, BigInteger, Boolean, Float, String
from voicebatch.core.database import Base

class BatchSnapshot(Base):
    __tablename__ = "batch_snapshots"

    campaign_id = Column(String, primary_key=True, unique=True, nullable=False)
    name = Column(Text, nullable=True)
    vendor_agent_id = Column(Text, nullable=True)
    overall_state = Column(Text, nullable=False, default="running") # running, completed
    final_status = Column(Text, nullable=False) # completed, degraded, cancelled
    degraded = Column(Boolean, default=False)
    error = Column(Text, nullable=True)
    recipients = Column(JSON, nullable=False, default=[]) # Array
    computed_at = Column(Float, nullable=True)
    archived_at = Column(BigInteger, nullable=True)
