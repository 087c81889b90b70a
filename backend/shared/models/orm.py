"""
SQLAlchemy 2.0 ORM models for the relational storage backend.
Portable column types only, so the same models run on Postgres and SQLite.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class CompetitionORM(Base):
    __tablename__ = "competitions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(20))
    url: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class FixtureORM(Base):
    __tablename__ = "fixtures"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    competition_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    team_a: Mapped[str] = mapped_column(String(200), nullable=False)
    team_b: Mapped[str] = mapped_column(String(200), nullable=False)
    kickoff: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    # result_margin IS NULL means no result; result_winner IS NULL with a margin means a draw
    result_winner: Mapped[Optional[str]] = mapped_column(String(200))
    result_margin: Mapped[Optional[int]] = mapped_column(Integer)
    scored_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class PredictionORM(Base):
    __tablename__ = "predictions"
    __table_args__ = (UniqueConstraint("user_id", "match_id", name="uq_prediction_user_match"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    match_id: Mapped[str] = mapped_column(String(64), ForeignKey("fixtures.id"), nullable=False, index=True)
    predicted_winner: Mapped[Optional[str]] = mapped_column(String(200))
    predicted_margin: Mapped[Optional[int]] = mapped_column(Integer)
    points: Mapped[Optional[int]] = mapped_column(Integer)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
