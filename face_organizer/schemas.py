"""
Pydantic models for API request/response schemas
"""
from pydantic import BaseModel, Field
from typing import Optional, List, Literal
from datetime import datetime

from face_organizer.records import ConfidenceTier, PersonState


class FaceIn(BaseModel):
    """Schema for one face descriptor to be clustered"""
    vector: List[float] = Field(..., description="Face descriptor produced by the detector")
    image_ref: str = Field(..., min_length=1, description="Reference to the source image (storage key or URL)")
    source: Literal["local", "gdrive"] = Field(default="local", description="Where the image is stored")
    thumbnail: Optional[str] = Field(default=None, description="Face crop used if a new person is created")

    class Config:
        json_schema_extra = {
            "example": {
                "vector": [0.12, -0.03, 0.08],
                "image_ref": "img_1718000000000_k3j9x2a1b",
                "source": "local",
                "thumbnail": None
            }
        }


class BatchInsertRequest(BaseModel):
    """Schema for a batch import"""
    faces: List[FaceIn] = Field(..., description="Faces in arrival order")


class SearchRequest(BaseModel):
    """Schema for a search by descriptors"""
    vectors: List[List[float]] = Field(..., min_length=1, description="One descriptor per face in the query image")


class PersonRename(BaseModel):
    """Schema for renaming a person"""
    name: str = Field(..., min_length=1, max_length=255, description="New display name")


class InsertResponse(BaseModel):
    """Schema for the outcome of clustering one face"""
    person_id: str = Field(..., description="Person the face was attached to")
    created: bool = Field(..., description="Whether a new person was created for this face")
    duplicate: bool = Field(default=False, description="Whether the face was discarded as a duplicate")

    class Config:
        json_schema_extra = {
            "example": {
                "person_id": "person_6f1c2a7e9b3d4e5f8a0b1c2d3e4f5a6b",
                "created": True,
                "duplicate": False
            }
        }


class BatchInsertResponse(BaseModel):
    """Schema for the outcome of a batch import"""
    total_faces: int = Field(..., description="Number of faces clustered")
    created_persons: int = Field(..., description="Number of new persons")
    results: List[InsertResponse] = Field(..., description="One result per input face, in order")
    face_detected: bool = Field(default=True, description="Whether any face was found (image uploads)")
    processing_time_ms: float = Field(..., description="Processing time in milliseconds")


class SearchMatchResult(BaseModel):
    """Schema for a single search hit"""
    person_id: str = Field(..., description="Matched person")
    embedding_id: int = Field(..., description="Closest embedding of that person")
    image_ref: str = Field(..., description="Image the closest embedding came from")
    score: float = Field(..., description="1 - distance (higher is better)")
    distance: float = Field(..., ge=0, description="Euclidean distance (lower is better)")
    confidence: ConfidenceTier = Field(..., description="High, Medium or Low")

    class Config:
        json_schema_extra = {
            "example": {
                "person_id": "person_6f1c2a7e9b3d4e5f8a0b1c2d3e4f5a6b",
                "embedding_id": 42,
                "image_ref": "img_1718000000000_k3j9x2a1b",
                "score": 0.71,
                "distance": 0.29,
                "confidence": "High"
            }
        }


class SearchResponse(BaseModel):
    """Schema for search API response"""
    total_count: int = Field(..., description="Number of matched persons")
    matches: List[SearchMatchResult] = Field(..., description="Matches sorted by descending score")
    face_detected: bool = Field(default=True, description="Whether any face was found (image uploads)")
    processing_time_ms: float = Field(..., description="Processing time in milliseconds")


class Person(BaseModel):
    """Schema for a person response"""
    person_id: str = Field(..., description="Person identifier")
    name: str = Field(..., description="Display name")
    thumbnail: Optional[str] = Field(default=None, description="Face crop of the first member")
    state: PersonState = Field(..., description="indexed once a centroid exists")
    created_at: Optional[datetime] = Field(default=None, description="Creation timestamp")


class PersonList(BaseModel):
    """Schema for listing persons"""
    total_count: int = Field(..., description="Total number of persons")
    persons: List[Person] = Field(..., description="Persons, newest first")


class Embedding(BaseModel):
    """Schema for an embedding response"""
    embedding_id: int = Field(..., description="Embedding identifier")
    person_id: str = Field(..., description="Owning person")
    vector: List[float] = Field(..., description="Face descriptor")
    image_ref: str = Field(..., description="Source image reference")
    source: str = Field(..., description="Where the image is stored")
    created_at: Optional[datetime] = Field(default=None, description="Creation timestamp")


class EmbeddingList(BaseModel):
    """Schema for listing embeddings"""
    total_count: int = Field(..., description="Total number of embeddings")
    embeddings: List[Embedding] = Field(..., description="Embeddings in insertion order")


class DeleteResponse(BaseModel):
    """Schema for delete responses"""
    success: bool = Field(..., description="Whether the operation succeeded")
    deleted: bool = Field(..., description="Whether anything existed and was removed")
    message: str = Field(..., description="Status message")


class ResetResponse(BaseModel):
    """Schema for user reset response"""
    success: bool = Field(..., description="Whether the operation succeeded")
    deleted_persons: int = Field(..., description="Number of persons removed")
    message: str = Field(..., description="Status message")


class ErrorResponse(BaseModel):
    """Schema for error responses"""
    error: str = Field(..., description="Error type")
    detail: str = Field(..., description="Detailed error message")

    class Config:
        json_schema_extra = {
            "example": {
                "error": "PersistenceFailure",
                "detail": "insert_batch failed for user 'u1': database is locked"
            }
        }
