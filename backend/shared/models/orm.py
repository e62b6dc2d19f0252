"""
SQLAlchemy 2.0 ORM models for the match thread store.
Portable column types only, so the same schema runs on SQLite and PostgreSQL.
"""
from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import JSON, BigInteger, Float, Index, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class MatchORM(Base):
    __tablename__ = "matches"

    match_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    side_a_id: Mapped[str] = mapped_column(String(100), nullable=False)
    side_a_name: Mapped[str] = mapped_column(String(200), nullable=False)
    side_b_id: Mapped[str] = mapped_column(String(100), nullable=False)
    side_b_name: Mapped[str] = mapped_column(String(200), nullable=False)
    scheduled_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="SCHEDULED")
    finished_at: Mapped[Optional[int]] = mapped_column(BigInteger)
    result: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    competition_name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    updated_at: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    __table_args__ = (Index("ix_matches_status_finished", "status", "finished_at"),)


class RsvpORM(Base):
    __tablename__ = "rsvp_status"

    match_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    response: Mapped[str] = mapped_column(String(10), nullable=False)
    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    responded_at: Mapped[float] = mapped_column(Float, nullable=False)


class ThreadAssociationORM(Base):
    __tablename__ = "match_threads"

    match_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    thread_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    thread_type: Mapped[str] = mapped_column(String(20), nullable=False, default="upcoming")
    created_at: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)


class UserMappingORM(Base):
    __tablename__ = "user_mappings"

    user_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    player_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    nickname: Mapped[str] = mapped_column(String(200), nullable=False)


class ProcessedMatchORM(Base):
    __tablename__ = "processed_matches"

    match_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    processed_at: Mapped[float] = mapped_column(Float, nullable=False)


class CacheEntryORM(Base):
    __tablename__ = "api_cache"

    key: Mapped[str] = mapped_column(String(300), primary_key=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[float] = mapped_column(Float, nullable=False, index=True)
