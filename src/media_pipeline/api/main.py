from __future__ import annotations

import asyncio
import json
import logging
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import List

from databases import Database
from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field
from sqlalchemy import insert, select, update

from media_pipeline.api.db_models import Lead
from media_pipeline.config import resolve_config
from media_pipeline.queue.filesystem import FileQueue
from media_pipeline.queue.submitter import (
    UnsupportedMediaError,
    discard_prepared,
    enqueue_prepared,
    file_extension,
    prepare_upload,
)
from media_pipeline.store import decode_attachments, init_db

logger = logging.getLogger(__name__)

# --- CONFIG ---
config = resolve_config()
database = Database(config.database.url)

UPLOAD_CHUNK_BYTES = 1024 * 1024

SERVED_MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "heic": "image/heic",
    "heif": "image/heif",
    "mp4": "video/mp4",
    "mov": "video/quicktime",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    await asyncio.to_thread(init_db, config.database.url)
    await database.connect()
    yield
    await database.disconnect()


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # For dev
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Pydantic Models for Requests/Responses ---
class LeadCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: str = Field(..., min_length=3, max_length=320)
    phone: str | None = None


class LeadResponse(BaseModel):
    id: str
    name: str
    email: str
    phone: str | None
    attachments: list


# --- HELPERS ---


async def _fetch_lead(lead_id: str):
    lead = await database.fetch_one(select(Lead).where(Lead.id == lead_id))
    if not lead:
        raise HTTPException(status_code=404, detail="Lead not found")
    return lead


async def _save_upload(file: UploadFile, temp_dir: Path, max_bytes: int) -> tuple[Path, int]:
    """Stream an upload to ``temp_dir`` in chunks, enforcing the size cap."""
    temp_dir.mkdir(parents=True, exist_ok=True)
    temp_path = temp_dir / f"upload-{uuid.uuid4()}{Path(file.filename or '').suffix.lower()}"

    total = 0
    with open(temp_path, "wb") as dst:
        while True:
            chunk = await file.read(UPLOAD_CHUNK_BYTES)
            if not chunk:
                break
            total += len(chunk)
            if total > max_bytes:
                dst.close()
                temp_path.unlink(missing_ok=True)
                raise HTTPException(
                    status_code=413, detail=f"File too large: {file.filename} (max {max_bytes} bytes)"
                )
            dst.write(chunk)

    return temp_path, total


# --- API ENDPOINTS ---


@app.get("/")
async def root():
    return {"message": "Media Pipeline API", "docs": "/docs", "health": "/health"}


@app.get("/health")
async def health_check():
    return {"status": "ok"}


@app.get("/queue/stats")
async def queue_stats():
    queue = FileQueue.from_config(config)
    return await asyncio.to_thread(queue.stats)


@app.post("/leads", status_code=201)
async def create_lead(data: LeadCreate):
    lead_id = str(uuid.uuid4())
    now = datetime.utcnow()
    query = insert(Lead).values(
        id=lead_id,
        name=data.name,
        email=data.email,
        phone=data.phone,
        attachments="[]",
        createdAt=now,
        updatedAt=now,
    )
    await database.execute(query)
    return LeadResponse(id=lead_id, name=data.name, email=data.email, phone=data.phone, attachments=[])


@app.get("/leads/{lead_id}/attachments")
async def list_attachments(lead_id: str):
    lead = await _fetch_lead(lead_id)
    return decode_attachments(lead.attachments)


@app.post("/leads/{lead_id}/attachments", status_code=201)
async def upload_attachments(lead_id: str, files: List[UploadFile] = File(...)):
    """Accept one or more media files for a lead.

    Files that need conversion come back as ``processing`` attachments and
    flip to ``ready`` once the worker finishes. Files outside the whitelist
    are reported under ``rejected``; if nothing was accepted the response
    is 415.
    """
    await _fetch_lead(lead_id)

    temp_dir = Path(config.paths.temp_dir).resolve()
    saved = []
    try:
        for file in files:
            temp_path, size = await _save_upload(file, temp_dir, config.upload.max_upload_bytes)
            saved.append((file, temp_path, size))
    except HTTPException:
        for _, temp_path, _ in saved:
            temp_path.unlink(missing_ok=True)
        raise

    prepared = []
    rejected = []
    for file, temp_path, size in saved:
        name = file.filename or temp_path.name
        try:
            upload = await asyncio.to_thread(
                prepare_upload, str(temp_path), name, size, file.content_type, lead_id, config
            )
        except UnsupportedMediaError as e:
            temp_path.unlink(missing_ok=True)
            rejected.append({"name": name, "error": str(e)})
            continue
        prepared.append(upload)

    if not prepared:
        raise HTTPException(status_code=415, detail={"message": "Unsupported media", "rejected": rejected})

    accepted = [upload.attachment.to_record() for upload in prepared]
    try:
        async with database.transaction():
            lead = await _fetch_lead(lead_id)
            attachments = decode_attachments(lead.attachments) + accepted
            await database.execute(
                update(Lead)
                .where(Lead.id == lead_id)
                .values(attachments=json.dumps(attachments), updatedAt=datetime.utcnow())
            )
    except Exception:
        for upload in prepared:
            await asyncio.to_thread(discard_prepared, upload)
        raise

    # Jobs land in pending only after the lead holds their attachments
    queue = FileQueue.from_config(config)
    for upload in prepared:
        await asyncio.to_thread(enqueue_prepared, upload, queue)

    logger.info("Accepted %d attachment(s) for lead %s", len(accepted), lead_id)
    return {"attachments": accepted, "rejected": rejected}


@app.get(f"{config.paths.public_url_prefix.rstrip('/')}/{{file_path:path}}")
async def serve_upload(file_path: str):
    """Serve a processed file. Only paths under ``<output_dir>/leads`` are reachable."""
    output_root = Path(config.paths.output_dir).resolve()
    leads_root = output_root / "leads"
    target = (output_root / file_path).resolve()

    if target != leads_root and leads_root not in target.parents:
        raise HTTPException(status_code=403, detail="Forbidden")
    if not target.is_file():
        raise HTTPException(status_code=404, detail="File not found")

    media_type = SERVED_MIME_TYPES.get(file_extension(target.name), "application/octet-stream")
    return FileResponse(target, media_type=media_type)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
