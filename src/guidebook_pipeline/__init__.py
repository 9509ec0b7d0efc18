"""
Guidebook Pipeline - queue-backed generation of multi-language guide books

This package turns a project (title, author, chapter count, images) into a
set of rendered documents in several formats and languages. The work is split
into independent units that run on durable queues:

- content generation for the project's chapters
- one render job per format in the base language
- one translation job per format and target language

A supervisor job drives the phases, waits for each phase's units, and keeps
the project status (DRAFT, GENERATING_CONTENT, GENERATING_DOCUMENTS,
TRANSLATING, COMPLETED, FAILED) in step with the work. Units are idempotent,
so re-triggering a project only produces what is missing.

Key Components:
    - main: FastAPI trigger and status endpoints
    - cli: worker processes and cache maintenance
    - supervisor: phase orchestration and the project state machine
    - job_queue / job_store: durable queues with retry, backoff and concurrency ceilings
    - asset_cache: TTL cache for downloaded assets
    - handlers / worker: unit-of-work consumers

Usage:
    Run the API server with:
        uvicorn guidebook_pipeline.main:app --host 0.0.0.0 --port 8000

    Run one worker process per queue:
        guidebook-pipeline worker book-generation
        guidebook-pipeline worker content-generation
        guidebook-pipeline worker document-generation
        guidebook-pipeline worker document-translation
"""
