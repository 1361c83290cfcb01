from __future__ import annotations

import base64
import binascii
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from estate_photos.config import load_settings, resolve_profile
from estate_photos.errors import BatchNotFound, ParameterOutOfRange
from estate_photos.logging_config import setup_logging
from estate_photos.pipeline.stages import OPERATOR_TABLE
from estate_photos.pipeline.types import Region, SceneType
from estate_photos.schemas import BatchSnapshot, BatchSubmitRequest, HealthResponse
from estate_photos.services.batch import BatchOrchestrator
from estate_photos.services.types import ImageSubmission

load_dotenv()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    # Invalid static configuration stops the service here, not on first request.
    app.state.orchestrator = BatchOrchestrator(settings=load_settings())
    yield
    await app.state.orchestrator.shutdown()


app = FastAPI(
    title="listing photo enhancement backend",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _orchestrator() -> BatchOrchestrator:
    return app.state.orchestrator


@app.get("/api/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    orchestrator = _orchestrator()
    return HealthResponse(
        active_batches=orchestrator.active_count(),
        max_concurrent_processing=orchestrator.settings.limits.max_concurrent_processing,
    )


@app.get("/api/profiles")
async def list_profiles() -> dict:
    settings = _orchestrator().settings
    profiles = {}
    for region in Region:
        for scene in SceneType:
            profiles[f"{region.value}/{scene.value}"] = {
                "params": resolve_profile(region, scene, settings=settings).model_dump(mode="json"),
                "operators": {stage: list(names) for stage, names in OPERATOR_TABLE[(region, scene)].items()},
            }
    return {"profiles": profiles}


@app.post("/api/listings/{listing_id}/batches", response_model=BatchSnapshot, status_code=202)
async def submit_batch(listing_id: str, request: BatchSubmitRequest) -> BatchSnapshot:
    images: list[ImageSubmission] = []
    for index, payload in enumerate(request.images):
        try:
            data = base64.b64decode(payload.image_b64, validate=True)
        except (binascii.Error, ValueError) as error:
            raise HTTPException(status_code=422, detail=f"images[{index}]: invalid base64 payload") from error
        images.append(ImageSubmission(data=data, image_id=payload.image_id, filename=payload.filename))

    try:
        return await _orchestrator().submit(
            listing_id,
            images,
            region=request.region,
            scene_type=request.scene_type,
            overrides=request.overrides or None,
            batch_id=request.batch_id,
        )
    except ParameterOutOfRange as error:
        raise HTTPException(status_code=422, detail=error.reason) from error
    except ValueError as error:
        raise HTTPException(status_code=422, detail=str(error)) from error


@app.get("/api/batches/{batch_id}", response_model=BatchSnapshot)
async def get_batch(batch_id: str) -> BatchSnapshot:
    try:
        return _orchestrator().get(batch_id)
    except BatchNotFound as error:
        raise HTTPException(status_code=404, detail=str(error)) from error


@app.post("/api/batches/{batch_id}/cancel", response_model=BatchSnapshot)
async def cancel_batch(batch_id: str) -> BatchSnapshot:
    try:
        return _orchestrator().cancel(batch_id)
    except BatchNotFound as error:
        raise HTTPException(status_code=404, detail=str(error)) from error


if __name__ == "__main__":
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("estate_photos.main:app", host=host, port=port, reload=True)
