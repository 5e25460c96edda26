from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from promptrefiner.core.state.base import Base


class HistoryEntry(Base):
    """
    Represents one completed refinement.

    Args:
        Base (declarative_base): The declarative base class for SQLAlchemy models.
    """

    __tablename__ = "history_entries"
    id = Column(String, primary_key=True)
    idea = Column(Text, nullable=False)
    final_prompts = Column(JSON, nullable=False, default=list)
    confidence = Column(Integer, nullable=True)
    suggested_approach = Column(String, nullable=True)
    created_at = Column(
        DateTime, default=lambda: datetime.now(timezone.utc), nullable=False
    )
    turns = relationship(
        "HistoryTurn",
        back_populates="entry",
        cascade="all, delete-orphan",
        order_by="HistoryTurn.idx",
    )


class HistoryTurn(Base):
    """
    Represents one answered question of a completed refinement.

    Args:
        Base (declarative_base): The declarative base class for SQLAlchemy models.
    """

    __tablename__ = "history_turns"
    id = Column(Integer, primary_key=True, autoincrement=True)
    entry_id = Column(String, ForeignKey("history_entries.id"), index=True)
    idx = Column(Integer, nullable=False)  # 0..N
    turn_id = Column(String, nullable=False)
    question_id = Column(String, nullable=False)
    question = Column(Text, nullable=False)
    answer = Column(Text, nullable=False)
    kind = Column(String, nullable=False)
    required = Column(Boolean, default=False, nullable=False)
    round = Column(Integer, default=1, nullable=False)
    created_at = Column(DateTime, nullable=False)
    entry = relationship("HistoryEntry", back_populates="turns")
