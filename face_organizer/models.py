"""
SQLAlchemy ORM Models for Face Organizer Database

Two tables, both partitioned by user_id:

CREATE TABLE persons (
    id INTEGER PRIMARY KEY,
    user_id TEXT NOT NULL,
    person_id TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT 'Unknown Person',
    thumbnail TEXT,
    centroid JSON,
    created_at TIMESTAMP NOT NULL,
    UNIQUE (user_id, person_id)
);

CREATE TABLE face_embeddings (
    id INTEGER PRIMARY KEY,
    user_id TEXT NOT NULL,
    person_id TEXT NOT NULL,
    embedding JSON NOT NULL,
    image_ref TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT 'local',
    created_at TIMESTAMP NOT NULL
);
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, UniqueConstraint, Index

from face_organizer.config import DEFAULT_PERSON_NAME
from face_organizer.database import Base


class PersonDB(Base):
    """
    SQLAlchemy model for the persons table.

    One row per clustered identity. `centroid` is NULL until the person has
    at least one valid embedding.
    """
    __tablename__ = "persons"
    __table_args__ = (
        UniqueConstraint("user_id", "person_id", name="uq_persons_user_person"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(128), nullable=False, index=True)
    person_id = Column(String(64), nullable=False)
    name = Column(Text, nullable=False, default=DEFAULT_PERSON_NAME)
    thumbnail = Column(Text, nullable=True)
    centroid = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<PersonDB(user_id='{self.user_id}', person_id='{self.person_id}', name='{self.name}')>"


class FaceEmbeddingDB(Base):
    """SQLAlchemy model for the face_embeddings table. Rows are never updated."""
    __tablename__ = "face_embeddings"
    __table_args__ = (
        Index("ix_face_embeddings_user_person", "user_id", "person_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(128), nullable=False, index=True)
    person_id = Column(String(64), nullable=False)
    embedding = Column(JSON, nullable=False)
    image_ref = Column(Text, nullable=False)
    source = Column(String(16), nullable=False, default="local")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<FaceEmbeddingDB(id={self.id}, user_id='{self.user_id}', person_id='{self.person_id}')>"
