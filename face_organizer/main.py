"""
Face Organizer API

Clusters the faces of a user's photos into persons and searches them.

Endpoints:
- POST /users/{user_id}/faces - Cluster a single face descriptor
- POST /users/{user_id}/faces/batch - Cluster a batch of face descriptors
- POST /users/{user_id}/images - Detect faces in an image and cluster them
- POST /users/{user_id}/search - Search by face descriptors
- POST /users/{user_id}/search/image - Search by the faces of an image
- GET /users/{user_id}/persons - List persons
- PATCH /users/{user_id}/persons/{person_id} - Rename a person
- DELETE /users/{user_id}/persons/{person_id} - Delete a person
- GET /users/{user_id}/embeddings - List embeddings
- DELETE /users/{user_id}/embeddings/{embedding_id} - Remove one embedding
- DELETE /users/{user_id} - Delete everything of a user
"""
import asyncio
import time
import uuid
import logging
from typing import List, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, File, UploadFile, Form, HTTPException, Depends
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from face_organizer.config import (
    API_TITLE,
    API_DESCRIPTION,
    API_VERSION,
    SUPPORTED_FORMATS,
    REQUEST_TIMEOUT_SECONDS,
    FACE_RECOGNITION_MODEL,
    FACE_DETECTOR_BACKEND,
    DEFAULT_THRESHOLDS
)
from face_organizer.schemas import (
    FaceIn,
    BatchInsertRequest,
    BatchInsertResponse,
    SearchRequest,
    SearchResponse,
    SearchMatchResult,
    InsertResponse,
    Person,
    PersonList,
    PersonRename,
    Embedding,
    EmbeddingList,
    DeleteResponse,
    ResetResponse,
    ErrorResponse
)
from face_organizer.database import init_db, close_db
from face_organizer.exceptions import PersistenceFailure, OperationTimeout
from face_organizer.records import FaceInput, InsertResult, PersonRecord, EmbeddingRecord, SearchMatch, as_vector
from face_organizer.service import FaceOrganizerService, organizer

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def get_service() -> FaceOrganizerService:
    """Dependency to get the organizer service."""
    return organizer


def get_detector():
    """Dependency to get the face detector; DeepFace is only loaded on first upload."""
    from face_organizer.face_service import face_service
    return face_service


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting Face Organizer API...")
    logger.info(f"Model: {FACE_RECOGNITION_MODEL}")
    logger.info(f"Detector: {FACE_DETECTOR_BACKEND}")
    logger.info(f"Thresholds: {DEFAULT_THRESHOLDS}")

    await init_db()
    yield

    # Shutdown
    await close_db()
    logger.info("Shutting down Face Organizer API...")


# Create FastAPI app
app = FastAPI(
    title=API_TITLE,
    description=API_DESCRIPTION,
    version=API_VERSION,
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def validate_image_file(file: UploadFile) -> None:
    """Validate uploaded image file."""
    if not file.filename:
        raise HTTPException(
            status_code=400,
            detail="No filename provided"
        )

    # Check file extension
    ext = "." + file.filename.lower().split(".")[-1] if "." in file.filename else ""
    if ext not in SUPPORTED_FORMATS:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported file format. Supported: {', '.join(sorted(SUPPORTED_FORMATS))}"
        )

    # Check content type
    if file.content_type and not file.content_type.startswith("image/"):
        raise HTTPException(
            status_code=400,
            detail="File must be an image"
        )


async def read_image(file: UploadFile) -> bytes:
    """Validate an upload and return its bytes."""
    validate_image_file(file)

    try:
        image_bytes = await file.read()
    except Exception as e:
        raise HTTPException(status_code=400, detail=f"Failed to read image: {str(e)}")

    if len(image_bytes) == 0:
        raise HTTPException(status_code=400, detail="Empty image file")
    return image_bytes


async def detect_faces(detector, image_bytes: bytes):
    """Run the detector off the event loop, bounded by the request timeout."""
    try:
        return await asyncio.wait_for(
            run_in_threadpool(detector.detect_from_bytes, image_bytes),
            REQUEST_TIMEOUT_SECONDS
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except asyncio.TimeoutError:
        raise HTTPException(status_code=504, detail="Face detection timed out")


def new_image_ref() -> str:
    """Storage key for an uploaded image when the client supplies none."""
    return f"img_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def elapsed_ms(start_time: float) -> float:
    return round((time.time() - start_time) * 1000, 2)


def to_insert_response(result: InsertResult) -> InsertResponse:
    return InsertResponse(person_id=result.person_id, created=result.created, duplicate=result.duplicate)


def to_match_result(match: SearchMatch) -> SearchMatchResult:
    return SearchMatchResult(
        person_id=match.person_id,
        embedding_id=match.embedding_id,
        image_ref=match.image_ref,
        score=round(match.score, 4),
        distance=round(match.distance, 4),
        confidence=match.confidence
    )


def to_person(record: PersonRecord) -> Person:
    return Person(
        person_id=record.person_id,
        name=record.name,
        thumbnail=record.thumbnail,
        state=record.state,
        created_at=record.created_at
    )


def to_embedding(record: EmbeddingRecord) -> Embedding:
    return Embedding(
        embedding_id=record.embedding_id,
        person_id=record.person_id,
        vector=list(record.vector),
        image_ref=record.image_ref,
        source=record.source,
        created_at=record.created_at
    )


def batch_response(results: List[InsertResult], start_time: float, face_detected: bool = True) -> BatchInsertResponse:
    return BatchInsertResponse(
        total_faces=len(results),
        created_persons=sum(1 for r in results if r.created),
        results=[to_insert_response(r) for r in results],
        face_detected=face_detected,
        processing_time_ms=elapsed_ms(start_time)
    )


@app.get("/", include_in_schema=False)
async def root(service: FaceOrganizerService = Depends(get_service)):
    """Root endpoint with API info."""
    counts = await service.counts()
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "model": FACE_RECOGNITION_MODEL,
        "detector": FACE_DETECTOR_BACKEND,
        "total_persons": counts["persons"],
        "total_embeddings": counts["embeddings"],
        "endpoints": {
            "insert": "POST /users/{user_id}/faces",
            "batch": "POST /users/{user_id}/faces/batch",
            "upload": "POST /users/{user_id}/images",
            "search": "POST /users/{user_id}/search",
            "persons": "GET /users/{user_id}/persons",
            "reset": "DELETE /users/{user_id}"
        }
    }


@app.get("/health")
async def health_check(service: FaceOrganizerService = Depends(get_service)):
    """Health check endpoint."""
    try:
        counts = await service.counts()
        db_status = "healthy"
    except PersistenceFailure as e:
        logger.error(f"Database health check failed: {e}")
        counts = {"persons": 0, "embeddings": 0}
        db_status = "unhealthy"

    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "database_status": db_status,
        "total_persons": counts["persons"],
        "total_embeddings": counts["embeddings"]
    }


# ============================================================================
# CLUSTERING
# ============================================================================
@app.post(
    "/users/{user_id}/faces",
    response_model=InsertResponse,
    responses={503: {"model": ErrorResponse, "description": "Storage failure"}},
    summary="Cluster a single face",
    description="""
    Attach a face descriptor to the closest known person or create a new one.

    **Pipeline:**
    1. Coarse stage: keep persons whose centroid is close enough
    2. Fine stage: exact comparison against those persons' embeddings
    3. Duplicate faces are discarded, matches attached, others start a new person
    4. The person's centroid is recomputed
    """
)
async def insert_face(
    user_id: str,
    face: FaceIn,
    service: FaceOrganizerService = Depends(get_service)
):
    """Cluster and store one face."""
    result = await service.insert_face(
        user_id,
        face.vector,
        face.image_ref,
        source=face.source,
        thumbnail=face.thumbnail,
        timeout=REQUEST_TIMEOUT_SECONDS
    )
    return to_insert_response(result)


@app.post(
    "/users/{user_id}/faces/batch",
    response_model=BatchInsertResponse,
    responses={503: {"model": ErrorResponse, "description": "Storage failure"}},
    summary="Cluster a batch of faces",
    description="""
    Cluster many faces in one atomic commit. Each face is compared to the
    persisted persons first, then to the persons formed earlier in the batch.
    """
)
async def insert_batch(
    user_id: str,
    request: BatchInsertRequest,
    service: FaceOrganizerService = Depends(get_service)
):
    """Cluster and store a batch of faces."""
    start_time = time.time()

    faces = [
        FaceInput(vector=as_vector(f.vector), image_ref=f.image_ref, source=f.source, thumbnail=f.thumbnail)
        for f in request.faces
    ]
    results = await service.insert_batch(user_id, faces, timeout=REQUEST_TIMEOUT_SECONDS)

    response = batch_response(results, start_time)
    logger.info(
        f"Batch of {response.total_faces} faces for user {user_id} "
        f"created {response.created_persons} persons in {response.processing_time_ms:.1f}ms"
    )
    return response


@app.post(
    "/users/{user_id}/images",
    response_model=BatchInsertResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid input"},
        422: {"model": ErrorResponse, "description": "No face detected"}
    },
    summary="Detect and cluster the faces of an image",
    description="Run face detection on an uploaded photo and cluster every face found as one batch."
)
async def insert_image(
    user_id: str,
    image: UploadFile = File(..., description="Photo containing one or more faces"),
    image_ref: Optional[str] = Form(None, description="Storage key of the photo; generated when omitted"),
    source: str = Form("local", description="Where the photo is stored: local or gdrive"),
    service: FaceOrganizerService = Depends(get_service),
    detector=Depends(get_detector)
):
    """Detect faces in an upload and cluster them."""
    start_time = time.time()

    if source not in ("local", "gdrive"):
        raise HTTPException(status_code=400, detail="source must be 'local' or 'gdrive'")

    image_bytes = await read_image(image)
    detected = await detect_faces(detector, image_bytes)

    if not detected:
        raise HTTPException(
            status_code=422,
            detail="No face detected in the provided image."
        )

    image_ref = image_ref or new_image_ref()
    faces = [
        FaceInput(vector=face.vector, image_ref=image_ref, source=source, thumbnail=face.thumbnail)
        for face in detected
    ]
    results = await service.insert_batch(user_id, faces, timeout=REQUEST_TIMEOUT_SECONDS)

    response = batch_response(results, start_time)
    logger.info(
        f"Clustered {response.total_faces} faces from {image.filename} for user {user_id} "
        f"in {response.processing_time_ms:.1f}ms"
    )
    return response


# ============================================================================
# SEARCH
# ============================================================================
@app.post(
    "/users/{user_id}/search",
    response_model=SearchResponse,
    summary="Search persons by face descriptors",
    description="""
    Rank the user's persons against one or more descriptors from a single
    query image. Each person appears once, with its closest embedding.

    **Confidence tiers:** High (< 0.4), Medium (< 0.5), Low (< 0.6)
    """
)
async def search(
    user_id: str,
    request: SearchRequest,
    service: FaceOrganizerService = Depends(get_service)
):
    """Search by descriptors."""
    start_time = time.time()

    matches = await service.search(user_id, request.vectors, timeout=REQUEST_TIMEOUT_SECONDS)

    return SearchResponse(
        total_count=len(matches),
        matches=[to_match_result(m) for m in matches],
        processing_time_ms=elapsed_ms(start_time)
    )


@app.post(
    "/users/{user_id}/search/image",
    response_model=SearchResponse,
    responses={400: {"model": ErrorResponse, "description": "Invalid input"}},
    summary="Search persons by the faces of an image",
    description="Run face detection on an uploaded photo and search with every face found."
)
async def search_image(
    user_id: str,
    image: UploadFile = File(..., description="Query photo"),
    service: FaceOrganizerService = Depends(get_service),
    detector=Depends(get_detector)
):
    """Search by the faces in an upload."""
    start_time = time.time()

    image_bytes = await read_image(image)
    detected = await detect_faces(detector, image_bytes)

    if not detected:
        return SearchResponse(
            total_count=0,
            matches=[],
            face_detected=False,
            processing_time_ms=elapsed_ms(start_time)
        )

    matches = await service.search(
        user_id, [face.vector for face in detected], timeout=REQUEST_TIMEOUT_SECONDS
    )

    response = SearchResponse(
        total_count=len(matches),
        matches=[to_match_result(m) for m in matches],
        processing_time_ms=elapsed_ms(start_time)
    )
    if matches:
        best = matches[0]
        logger.info(
            f"Best match for user {user_id}: person {best.person_id} "
            f"(score: {best.score:.2%}, {best.confidence.value}) in {response.processing_time_ms:.1f}ms"
        )
    else:
        logger.info(f"No match found for user {user_id} in {response.processing_time_ms:.1f}ms")
    return response


# ============================================================================
# PERSONS AND EMBEDDINGS
# ============================================================================
@app.get(
    "/users/{user_id}/persons",
    response_model=PersonList,
    summary="List persons",
    description="Retrieve every person of a user, newest first."
)
async def list_persons(user_id: str, service: FaceOrganizerService = Depends(get_service)):
    """List a user's persons."""
    persons = await service.list_persons(user_id, timeout=REQUEST_TIMEOUT_SECONDS)
    return PersonList(total_count=len(persons), persons=[to_person(p) for p in persons])


@app.patch(
    "/users/{user_id}/persons/{person_id}",
    response_model=Person,
    responses={404: {"model": ErrorResponse, "description": "Person not found"}},
    summary="Rename a person"
)
async def rename_person(
    user_id: str,
    person_id: str,
    request: PersonRename,
    service: FaceOrganizerService = Depends(get_service)
):
    """Rename a person."""
    person = await service.rename_person(user_id, person_id, request.name, timeout=REQUEST_TIMEOUT_SECONDS)
    if person is None:
        raise HTTPException(
            status_code=404,
            detail=f"Person '{person_id}' not found"
        )
    return to_person(person)


@app.get(
    "/users/{user_id}/persons/{person_id}/embeddings",
    response_model=EmbeddingList,
    summary="List the embeddings of a person"
)
async def list_person_embeddings(
    user_id: str,
    person_id: str,
    service: FaceOrganizerService = Depends(get_service)
):
    """List one person's embeddings."""
    embeddings = await service.list_embeddings(user_id, person_id, timeout=REQUEST_TIMEOUT_SECONDS)
    return EmbeddingList(total_count=len(embeddings), embeddings=[to_embedding(e) for e in embeddings])


@app.delete(
    "/users/{user_id}/persons/{person_id}",
    response_model=DeleteResponse,
    summary="Delete a person",
    description="Remove a person and all of its embeddings. Unknown persons are not an error."
)
async def delete_person(
    user_id: str,
    person_id: str,
    service: FaceOrganizerService = Depends(get_service)
):
    """Delete a person by its ID."""
    deleted = await service.delete_person(user_id, person_id, timeout=REQUEST_TIMEOUT_SECONDS)
    return DeleteResponse(
        success=True,
        deleted=deleted,
        message=f"Deleted person '{person_id}'" if deleted else f"Person '{person_id}' does not exist"
    )


@app.get(
    "/users/{user_id}/embeddings",
    response_model=EmbeddingList,
    summary="List embeddings"
)
async def list_embeddings(user_id: str, service: FaceOrganizerService = Depends(get_service)):
    """List all of a user's embeddings."""
    embeddings = await service.list_embeddings(user_id, timeout=REQUEST_TIMEOUT_SECONDS)
    return EmbeddingList(total_count=len(embeddings), embeddings=[to_embedding(e) for e in embeddings])


@app.delete(
    "/users/{user_id}/embeddings/{embedding_id}",
    response_model=DeleteResponse,
    summary="Remove one embedding",
    description="Remove a single face from its person and recompute the person's centroid."
)
async def remove_embedding(
    user_id: str,
    embedding_id: int,
    service: FaceOrganizerService = Depends(get_service)
):
    """Remove an embedding by its ID."""
    deleted = await service.remove_embedding(user_id, embedding_id, timeout=REQUEST_TIMEOUT_SECONDS)
    return DeleteResponse(
        success=True,
        deleted=deleted,
        message=f"Removed embedding {embedding_id}" if deleted else f"Embedding {embedding_id} does not exist"
    )


@app.delete(
    "/users/{user_id}",
    response_model=ResetResponse,
    summary="Reset a user",
    description="Delete every person and embedding of a user."
)
async def reset_user(user_id: str, service: FaceOrganizerService = Depends(get_service)):
    """Delete all of a user's data."""
    removed = await service.reset_user(user_id, timeout=REQUEST_TIMEOUT_SECONDS)
    return ResetResponse(
        success=True,
        deleted_persons=removed,
        message=f"Removed {removed} persons"
    )


# Exception handlers
@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    """Custom HTTP exception handler."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTPException",
            "detail": exc.detail
        }
    )


@app.exception_handler(PersistenceFailure)
async def persistence_failure_handler(request, exc):
    """Storage failed; nothing from the operation was committed."""
    return JSONResponse(
        status_code=503,
        content={
            "error": "PersistenceFailure",
            "detail": str(exc)
        }
    )


@app.exception_handler(OperationTimeout)
async def operation_timeout_handler(request, exc):
    return JSONResponse(
        status_code=504,
        content={
            "error": "OperationTimeout",
            "detail": str(exc)
        }
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    """General exception handler."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "InternalServerError",
            "detail": "An unexpected error occurred"
        }
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
