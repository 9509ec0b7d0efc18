from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .configuration import configure_logging, make_runtime_config
from .exceptions import InvalidTransitionError, ProjectNotFoundError
from .job_queue import NOT_FOUND
from .models import (
    DocumentSummary,
    GenerationAccepted,
    GenerationParameters,
    InlineAssetReference,
    JobStatusResponse,
    ProjectCreate,
    ProjectSummary,
    QueueMetrics,
)
from .services import PipelineServices, build_services
from .utils import ensure_directory, sanitize_filename

app = FastAPI(title="Guidebook Pipeline API", version="0.1.0")

allowed_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def get_services() -> PipelineServices:
    config = make_runtime_config()
    configure_logging(config)
    return build_services(config)


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/projects", response_model=ProjectSummary, status_code=201)
def create_project(data: ProjectCreate, services: PipelineServices = Depends(get_services)) -> ProjectSummary:
    return services.projects.create_project(data).to_summary()


@app.get("/projects/{project_id}", response_model=ProjectSummary)
def get_project(project_id: str, services: PipelineServices = Depends(get_services)) -> ProjectSummary:
    project = services.projects.get_project(project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project.to_summary()


@app.get("/projects/{project_id}/documents", response_model=List[DocumentSummary])
def list_documents(project_id: str, services: PipelineServices = Depends(get_services)) -> List[DocumentSummary]:
    if not services.projects.get_project(project_id):
        raise HTTPException(status_code=404, detail="Project not found")
    return [
        record.to_summary(url=services.storage.url_for(record.storage_key))
        for record in services.projects.list_documents(project_id)
    ]


def _parse_json_form(raw: str, field: str, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {field} JSON: {exc}") from exc


async def _stage_upload(file: UploadFile, staging_root: Path) -> Path:
    upload_dir = ensure_directory(staging_root / uuid4().hex)
    destination = upload_dir / sanitize_filename(file.filename or "image", fallback_stem="image")

    with destination.open("wb") as buffer:
        while chunk := await file.read(8 * 1024 * 1024):
            buffer.write(chunk)
    await file.close()
    return destination


@app.post("/projects/{project_id}/generate", response_model=GenerationAccepted, status_code=202)
async def generate(
    project_id: str,
    images: Optional[List[UploadFile]] = File(None),
    map_image: Optional[UploadFile] = File(None),
    captions: str = Form(""),
    chapter_numbers: str = Form(""),
    map_caption: str = Form(""),
    parameters: str = Form(""),
    services: PipelineServices = Depends(get_services),
) -> GenerationAccepted:
    project = services.projects.get_project(project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")

    raw_parameters = _parse_json_form(parameters, "parameters", {})
    caption_list = _parse_json_form(captions, "captions", [])
    if not isinstance(caption_list, list) or not all(isinstance(caption, str) for caption in caption_list):
        raise HTTPException(status_code=400, detail="captions must be a JSON list of strings")
    chapter_list = _parse_json_form(chapter_numbers, "chapter_numbers", None)
    if chapter_list is not None:
        raw_parameters["image_chapter_numbers"] = chapter_list
    if map_caption:
        raw_parameters["map_caption"] = map_caption
    try:
        request_parameters = GenerationParameters.model_validate(raw_parameters)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid parameters: {exc}") from exc

    for image in images or []:
        if image.content_type and not image.content_type.startswith("image/"):
            raise HTTPException(status_code=400, detail=f"{image.filename} is not an image")

    staging_root = Path(services.config.paths.staging_dir)
    references: List[InlineAssetReference] = []
    for index, image in enumerate(images or []):
        staged = await _stage_upload(image, staging_root)
        references.append(
            InlineAssetReference(
                path=str(staged),
                original_name=image.filename or staged.name,
                mime_type=image.content_type or "application/octet-stream",
                caption=caption_list[index] if index < len(caption_list) else None,
            )
        )
    if map_image is not None:
        staged = await _stage_upload(map_image, staging_root)
        references.append(
            InlineAssetReference(
                path=str(staged),
                original_name=map_image.filename or staged.name,
                mime_type=map_image.content_type or "application/octet-stream",
                caption=map_caption or None,
                is_map=True,
            )
        )

    try:
        job_id = services.supervisor.request_generation(project_id, request_parameters, references)
    except ProjectNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail="Generation already in progress") from exc

    refreshed = services.projects.get_project(project_id)
    return GenerationAccepted(project_id=project_id, job_id=job_id, status=refreshed.status)


@app.get("/jobs/{job_id}", response_model=JobStatusResponse)
def job_status(job_id: str, services: PipelineServices = Depends(get_services)):
    status = services.queue.get_status(job_id)
    if status.status == NOT_FOUND:
        return JSONResponse(status_code=404, content=status.model_dump(mode="json"))
    return status


@app.get("/queues/{queue_name}/metrics", response_model=QueueMetrics)
def queue_metrics(queue_name: str, services: PipelineServices = Depends(get_services)) -> QueueMetrics:
    try:
        return services.queue.metrics(queue_name)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
