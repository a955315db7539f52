"""
Playbill Backend - media upload API for the musical-theater catalog

This package provides a FastAPI-based web service that ingests poster images
for musicals and performances and profile pictures for users. It enables:

- Content-sniffed validation of uploaded images per purpose
- Normalization (resize, square crop, re-encode) with Pillow
- Storage in S3 or any S3-compatible object store
- An SQLite registry of every stored image
- A unified media upload into the caller's own library
- Ownership-checked deletion and per-entity listing

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - upload_manager: Upload state machine, delete and list paths
    - validation: Field and file validation
    - image_processor: Purpose-specific transcoding
    - s3_service: Object store client and storage key derivation
    - database: Image registry
    - catalog: Musical/performance existence checks
    - token_store: Bearer token to principal resolution
    - configuration: Config loading and the purpose policy table

Usage:
    Run the API server with:
        uvicorn playbill_backend.main:app --reload --host 0.0.0.0 --port 8000

Consistency Model:
    - No transaction spans the object store and the registry
    - Compensation runs one way only: store write, then registry write
    - Post-registration cleanup never fails the request
"""
