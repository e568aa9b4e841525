from fastapi import FastAPI, APIRouter, HTTPException, Depends, UploadFile, File, Form, Request
from fastapi.responses import Response
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path
from typing import List, Optional

# Load env before other imports
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from models import (
    SoundGeneration, LibrarySound, SoundUpdate, GenerateSoundRequest, LibraryStats,
    VariationRequest, VariationResult, LineageInfo, LineageDetail, LineageListResponse,
    LineageStats, EngineInfo, EngineRecommendationRequest, EngineRecommendation,
)
from soundlineage import DerivationOrchestrator, LineageDB, LineageStore, correct_audio_bpm
from soundlineage.errors import (
    LineageError, ValidationError, NotFoundError, LineageExistsError,
    SynthesisFailure, BatchExhaustedError, StoreInconsistency,
)
from services.engine_selection import ENGINES, get_engine, recommend_engine
from services.library import SoundLibrary
from services.synthesis import SynthesisClient

# Create the main app
app = FastAPI(title="Sound Studio API", version="1.0.0")

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    LineageExistsError: 409,
    SynthesisFailure: 502,
    BatchExhaustedError: 502,
    StoreInconsistency: 500,
}


def _http_error(error: LineageError) -> HTTPException:
    status = next((code for cls, code in ERROR_STATUS.items() if isinstance(error, cls)), 500)
    if status >= 500:
        logger.error(f"{type(error).__name__}: {error}")
    return HTTPException(status_code=status, detail=str(error))

# ============== Dependencies ==============

def get_library(request: Request) -> SoundLibrary:
    return request.app.state.library

def get_synthesizer(request: Request) -> SynthesisClient:
    return request.app.state.synthesizer

def get_orchestrator(request: Request) -> DerivationOrchestrator:
    return request.app.state.orchestrator

# ============== Sound Routes ==============

@api_router.post("/sounds", response_model=LibrarySound)
async def generate_sound(
    body: GenerateSoundRequest,
    library: SoundLibrary = Depends(get_library),
    synthesizer: SynthesisClient = Depends(get_synthesizer),
):
    engine = body.engine or recommend_engine(
        body.prompt,
        has_reference_audio=body.has_reference_audio,
        duration_seconds=body.parameters.length_seconds,
        available=synthesizer.available_engines(),
    )
    if not engine:
        raise HTTPException(status_code=503, detail="No synthesis engine is configured")

    try:
        result = await synthesizer.generate(engine, body.prompt, body.parameters)
    except SynthesisFailure as e:
        raise _http_error(e)

    sound = SoundGeneration(
        name=body.name or body.prompt[:40].strip(),
        prompt=body.prompt,
        parameters=body.parameters,
        audio_url=result.audio_url,
        status="ready",
        provenance_id=result.provenance_id,
    )
    return await library.save(sound)

@api_router.get("/sounds/{sound_id}", response_model=LibrarySound)
async def get_sound(sound_id: str, library: SoundLibrary = Depends(get_library)):
    sound = await library.get(sound_id)
    if not sound:
        raise HTTPException(status_code=404, detail="Sound not found")
    return sound

@api_router.patch("/sounds/{sound_id}", response_model=LibrarySound)
async def update_sound(sound_id: str, update_data: SoundUpdate, library: SoundLibrary = Depends(get_library)):
    patch = {k: v for k, v in update_data.model_dump().items() if v is not None}
    if not patch:
        raise HTTPException(status_code=400, detail="Nothing to update")
    updated = await library.update(sound_id, patch)
    if not updated:
        raise HTTPException(status_code=404, detail="Sound not found")
    return updated

@api_router.get("/sounds/{sound_id}/lineage", response_model=LineageInfo)
async def get_sound_lineage(sound_id: str, orchestrator: DerivationOrchestrator = Depends(get_orchestrator)):
    try:
        return orchestrator.describe(sound_id)
    except LineageError as e:
        raise _http_error(e)

@api_router.get("/library/stats", response_model=LibraryStats)
async def get_library_stats(library: SoundLibrary = Depends(get_library)):
    return await library.stats()

# ============== Variation Routes ==============

@api_router.post("/variations", response_model=VariationResult)
async def create_variations(body: VariationRequest, orchestrator: DerivationOrchestrator = Depends(get_orchestrator)):
    try:
        return await orchestrator.derive(body)
    except LineageError as e:
        raise _http_error(e)

@api_router.get("/lineages", response_model=LineageListResponse)
async def list_lineages(orchestrator: DerivationOrchestrator = Depends(get_orchestrator)):
    return LineageListResponse(lineages=orchestrator.store.get_all_lineages())

@api_router.get("/lineages/{lineage_id}", response_model=LineageDetail)
async def get_lineage(lineage_id: str, orchestrator: DerivationOrchestrator = Depends(get_orchestrator)):
    try:
        return orchestrator.lineage_detail(lineage_id)
    except LineageError as e:
        raise _http_error(e)

@api_router.get("/lineages/{lineage_id}/stats", response_model=LineageStats)
async def get_lineage_stats(lineage_id: str, orchestrator: DerivationOrchestrator = Depends(get_orchestrator)):
    try:
        return await orchestrator.lineage_stats(lineage_id)
    except LineageError as e:
        raise _http_error(e)

# ============== Engine Routes ==============

@api_router.get("/engines", response_model=List[EngineInfo])
async def list_engines(synthesizer: SynthesisClient = Depends(get_synthesizer)):
    available = synthesizer.available_engines()
    return [
        EngineInfo(
            id=e.id,
            name=e.name,
            description=e.description,
            strengths=list(e.strengths),
            available=e.id in available,
        )
        for e in ENGINES
    ]

@api_router.post("/engines/recommend", response_model=EngineRecommendation)
async def recommend(body: EngineRecommendationRequest, synthesizer: SynthesisClient = Depends(get_synthesizer)):
    engine_id = recommend_engine(
        body.prompt,
        has_reference_audio=body.has_reference_audio,
        duration_seconds=body.duration_seconds,
        available=synthesizer.available_engines(),
    )
    engine = get_engine(engine_id) if engine_id else None
    return EngineRecommendation(engine=engine_id, name=engine.name if engine else None)

# ============== Tempo Correction ==============

@api_router.post("/tempo/correct")
async def correct_tempo(
    audio: UploadFile = File(...),
    target_bpm: float = Form(...),
    estimated_bpm: Optional[float] = Form(None),
):
    content = await audio.read()
    if not content:
        raise HTTPException(status_code=400, detail="Empty audio upload")
    try:
        corrected = await run_in_threadpool(correct_audio_bpm, content, target_bpm, estimated_bpm)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    media_type = "audio/wav" if corrected is not content else (audio.content_type or "application/octet-stream")
    return Response(content=corrected, media_type=media_type)

# ============== Health Check ==============

@api_router.get("/")
async def root():
    return {"message": "Sound Studio API", "version": "1.0.0"}

@api_router.get("/health")
async def health_check():
    return {"status": "healthy"}

# Include the router
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def startup_services():
    # MongoDB connection
    client = AsyncIOMotorClient(os.environ.get('MONGO_URL', 'mongodb://localhost:27017'))
    db = client[os.environ.get('DB_NAME', 'soundstudio')]

    db_path = os.environ.get('LINEAGE_DB_PATH')
    if db_path:
        store = LineageDB(db_path)
        store.connect()
        store.create_schema()
    else:
        store = LineageStore()

    app.state.mongo_client = client
    app.state.library = SoundLibrary(db.sounds)
    app.state.synthesizer = SynthesisClient()
    app.state.orchestrator = DerivationOrchestrator(
        store=store,
        library=app.state.library,
        synthesizer=app.state.synthesizer,
        default_engine=os.environ.get('DEFAULT_ENGINE', 'elevenlabs'),
        max_concurrency=int(os.environ.get('VARIATION_CONCURRENCY', '3')),
    )
    logger.info(f"Lineage store: {type(store).__name__}")

@app.on_event("shutdown")
async def shutdown_services():
    app.state.orchestrator.store.close()
    app.state.mongo_client.close()
