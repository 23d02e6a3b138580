"""Content tables: learning objects, their relations and goals."""
from datetime import datetime

from sqlalchemy import Column, DateTime, Float, ForeignKey, Index, JSON, String, Text

from core.database import Base


class GoalRecord(Base):
    """A learning goal; its domain picks the target usage contexts"""
    __tablename__ = "goals"

    id = Column(String(100), primary_key=True)
    domain = Column(String(50), nullable=False, default="general")  # medical, academic, professional
    l1 = Column(String(10))
    target_language = Column(String(10), nullable=False, default="en")
    created_at = Column(DateTime, default=datetime.utcnow)


class LearningObjectRecord(Base):
    __tablename__ = "learning_objects"
    __table_args__ = (
        Index("ix_learning_objects_goal", "goal_id"),
    )

    id = Column(String(100), primary_key=True)
    goal_id = Column(String(100), ForeignKey("goals.id", ondelete="CASCADE"))
    component = Column(String(10), nullable=False)  # PHON, MORPH, LEX, SYNT, PRAG
    content = Column(Text, nullable=False)
    linguistic_difficulty = Column(Float, default=0.5)  # 0-1 linguistic score
    irt_difficulty = Column(Float)  # calibrated logit, wins when present
    discrimination = Column(Float, default=1.0)
    guessing = Column(Float, default=0.0)
    priority = Column(Float, default=0.5)
    frequency = Column(Float, default=0.5)
    extra_data = Column(JSON, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow)


class ObjectRelationRecord(Base):
    """Typed edge between two objects (requires, prefers, excludes, ...)"""
    __tablename__ = "object_relations"
    __table_args__ = (
        Index("ix_object_relations_source", "source_id"),
    )

    id = Column(String(36), primary_key=True)
    kind = Column(String(20), nullable=False)
    source_id = Column(String(100), ForeignKey("learning_objects.id", ondelete="CASCADE"), nullable=False)
    target_id = Column(String(100), ForeignKey("learning_objects.id", ondelete="CASCADE"), nullable=False)
    strength = Column(Float, default=1.0)
    payload = Column(JSON, default=dict)  # condition, allowed_ids, attribute/adjustment
