"""SQLAlchemy database models for the flow engine."""

from datetime import datetime
from sqlalchemy import Boolean, Column, String, DateTime, Text, JSON, Integer, ForeignKey
from sqlalchemy.orm import relationship
from .database import Base


class FlowModel(Base):
    """Database model for flow definitions."""
    __tablename__ = "flows"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    module = Column(String, nullable=False, default="general")
    category = Column(String, nullable=False, default="automation")
    trigger_type = Column(String, nullable=False, default="manual")
    trigger_config = Column(JSON, default=dict)
    nodes = Column(JSON, nullable=False)
    edges = Column(JSON, nullable=False)
    ai_prompt = Column(Text)
    ai_model = Column(String)
    is_active = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=0)
    tags = Column(JSON, default=list)
    flow_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    executions = relationship("FlowExecutionModel", back_populates="flow", cascade="all, delete-orphan")


class FlowExecutionModel(Base):
    """Database model for flow executions."""
    __tablename__ = "flow_executions"

    id = Column(String, primary_key=True)
    flow_id = Column(String, ForeignKey("flows.id"), nullable=False)
    status = Column(String, nullable=False)  # running, completed, failed
    context_type = Column(String, nullable=False)
    context_id = Column(String)
    input_data = Column(JSON)
    current_node_id = Column(String)
    node_results = Column(JSON)
    output_data = Column(JSON)
    triggered_by = Column(String)
    triggered_by_type = Column(String, nullable=False, default="api")
    error_message = Column(Text)
    error_stack = Column(Text)
    started_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime)
    duration_ms = Column(Integer)

    flow = relationship("FlowModel", back_populates="executions")
    logs = relationship("FlowLogModel", back_populates="execution", cascade="all, delete-orphan")


class FlowLogModel(Base):
    """Database model for per-execution log entries."""
    __tablename__ = "flow_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(String, ForeignKey("flow_executions.id"), nullable=False)
    node_id = Column(String)
    log_level = Column(String, nullable=False)  # info, warning, error
    message = Column(Text, nullable=False)
    data = Column(JSON)
    created_at = Column(DateTime, default=datetime.utcnow)

    execution = relationship("FlowExecutionModel", back_populates="logs")
