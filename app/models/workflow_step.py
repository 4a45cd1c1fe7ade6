from sqlalchemy import JSON, TIMESTAMP, Column, Integer, Text, UniqueConstraint

from app.database import Base


class WorkflowStep(Base):
    """Checkpoint of one completed step, keyed by instance id and step name."""

    __tablename__ = "workflow_steps"
    __table_args__ = (UniqueConstraint("instance_id", "step_name", name="uq_workflow_steps_instance_step"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_id = Column(Text, nullable=False, index=True)
    step_name = Column(Text, nullable=False)
    result_json = Column(JSON)
    completed_at = Column(TIMESTAMP(timezone=True), nullable=False)
