from sqlalchemy import JSON, TIMESTAMP, Column, Integer, Text

from app.database import Base


class WorkflowInstance(Base):
    __tablename__ = "workflow_instances"

    id = Column(Text, primary_key=True)
    workflow_name = Column(Text, nullable=False)
    params_json = Column(JSON, nullable=False)
    status = Column(Text, nullable=False, default="PENDING")  # PENDING, PROCESSING, COMPLETED, FAILED
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(TIMESTAMP(timezone=True))
    last_error = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False)
