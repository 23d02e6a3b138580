"""Learner state tables: ability, mastery and usage space."""
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Float, Index, Integer, JSON, String, UniqueConstraint

from core.database import Base


class AbilityProfileRecord(Base):
    """Multidimensional ability per (learner, goal)"""
    __tablename__ = "ability_profiles"

    learner_id = Column(String(100), primary_key=True)
    goal_id = Column(String(100), primary_key=True)
    dimensions = Column(JSON, nullable=False, default=dict)  # {dimension: {theta, standard_error, response_count}}
    recent_responses = Column(JSON, nullable=False, default=list)  # [[time_ms, correct], ...]
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class MasteryStateRecord(Base):
    """Stage machine and FSRS state per (learner, object)"""
    __tablename__ = "mastery_states"

    learner_id = Column(String(100), primary_key=True)
    object_id = Column(String(100), primary_key=True)
    stage = Column(Integer, nullable=False, default=0)  # 0 unknown .. 4 automatic
    stability = Column(Float, default=0.0)
    difficulty = Column(Float, default=0.0)
    due_at = Column(DateTime)
    last_reviewed_at = Column(DateTime)
    state = Column(JSON, nullable=False, default=dict)  # full MasteryState.to_dict()
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class UsageEventRecord(Base):
    """Append-only usage log; event_id makes appends idempotent"""
    __tablename__ = "usage_events"
    __table_args__ = (
        Index("ix_usage_events_learner_object", "learner_id", "object_id"),
    )

    event_id = Column(String(200), primary_key=True)
    learner_id = Column(String(100), nullable=False)
    object_id = Column(String(100), nullable=False)
    context_id = Column(String(100), nullable=False)
    success = Column(Boolean, nullable=False)
    score = Column(Float, nullable=False)
    task_type = Column(String(50))
    occurred_at = Column(DateTime, nullable=False)


class UsageSpaceRecordRow(Base):
    __tablename__ = "usage_space_records"
    __table_args__ = (
        UniqueConstraint("learner_id", "object_id", "context_id", name="uq_usage_space"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    learner_id = Column(String(100), nullable=False)
    object_id = Column(String(100), nullable=False)
    context_id = Column(String(100), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    successes = Column(Integer, nullable=False, default=0)
    score_sum = Column(Float, nullable=False, default=0.0)
    last_used_at = Column(DateTime)
