# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Defines request/response schemas for the API.
# These are SEPARATE from the database models (app/db/models.py), so the
# wire format never leaks embeddings or key hashes.
# =============================================================================
