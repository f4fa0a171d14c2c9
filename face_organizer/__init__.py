"""
Face Organizer

Identity resolution service that groups face embeddings into persons:
- Two-stage matching (centroid pre-filter, exact FAISS comparison)
- Incremental clustering for single faces and whole import batches
- Ranked similarity search with confidence tiers
- FastAPI for RESTful API, SQLAlchemy for per-user storage
"""

__version__ = "1.0.0"
