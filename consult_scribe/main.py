"""
Consult Scribe - FastAPI Main Application
"""

import asyncio
import json
import time
import traceback
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, Callable, Dict, List, Optional

import httpx
from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from sqlalchemy.orm import Session
from starlette.responses import Response

from consult_scribe.config import settings, STTProvider
from consult_scribe.core.errors import (
    ConfigurationError,
    ConsultationStateError,
    ConsultScribeError,
    DeviceAccessDenied,
    NotFoundError,
    PersistenceError,
    RecordingStateError,
    TranscriptionFailed,
)
from consult_scribe.core.logging import audit_logger, get_logger, setup_logging
from consult_scribe.core.security import PractitionerContext, get_current_user, security_manager
from consult_scribe.db.database import SessionLocal, get_db, init_db
from consult_scribe.models.requests import (
    ConsultationCreate,
    NoteGenerationRequest,
    NoteUpdate,
    ProfileUpdate,
    RecordingChunk,
    RecordingStartRequest,
    TranscribeRequest,
    TranscriptSubmission,
)
from consult_scribe.models.responses import (
    AudioRecordingResponse,
    ConsultationDetailResponse,
    ConsultationResponse,
    DashboardStats,
    ErrorResponse,
    HealthCheckResponse,
    JobCreationResponse,
    MedicalNoteResponse,
    ProfileResponse,
    RateLimitResponse,
    RecordingStateResponse,
    SoapNote,
    TranscriptDownload,
    TranscriptHandledResponse,
    TranscriptionResponse,
)
from consult_scribe.services.audio_processor import AudioProcessor, AudioValidationError
from consult_scribe.services.cleanup import cleanup_expired_recordings
from consult_scribe.services.lifecycle import (
    TRANSCRIPTION_FAILED_RAW,
    ConsultationLifecycle,
    TranscriptOutcome,
    transcript_filename,
)
from consult_scribe.services.llm_service import NoteGenerator, get_note_generator
from consult_scribe.services.recording import (
    AudioBlob,
    ClientStreamDevice,
    RecordingRegistry,
    RecordingSession,
)
from consult_scribe.services.repository import ConsultationRepository
from consult_scribe.services.stt_service import Transcriber, decode_audio, get_transcriber

# Initialize logging
setup_logging()
logger = get_logger(__name__)

START_TIME = time.time()

# Prometheus metrics
request_count = Counter("http_requests_total", "Total HTTP requests", ["method", "endpoint", "status"])
request_duration = Histogram("http_request_duration_seconds", "HTTP request duration")
transcription_duration = Histogram("transcription_pipeline_duration_seconds", "Transcription pipeline duration")

# Rate limiter
limiter = Limiter(key_func=get_remote_address)

# SSE job queues and the practitioner each job belongs to
job_status_queues: Dict[str, asyncio.Queue] = {}
job_owners: Dict[str, uuid.UUID] = {}

# Active recording sessions
recording_registry = RecordingRegistry()

ERROR_STATUS = {
    DeviceAccessDenied: status.HTTP_403_FORBIDDEN,
    RecordingStateError: status.HTTP_409_CONFLICT,
    ConsultationStateError: status.HTTP_409_CONFLICT,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    TranscriptionFailed: status.HTTP_502_BAD_GATEWAY,
    PersistenceError: status.HTTP_503_SERVICE_UNAVAILABLE,
    ConfigurationError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


# --- Dependencies ---

def get_session_factory() -> Callable[[], Session]:
    """Session factory for work that outlives the request (background jobs)."""
    return SessionLocal


def get_audio_processor() -> AudioProcessor:
    return AudioProcessor()


def get_transcriber_dependency() -> Transcriber:
    return get_transcriber()


def get_note_generator_dependency() -> NoteGenerator:
    return get_note_generator()


def get_repository(
    db: Session = Depends(get_db),
    practitioner: PractitionerContext = Depends(get_current_user),
) -> ConsultationRepository:
    repository = ConsultationRepository(db, practitioner)
    repository.ensure_profile()
    return repository


def get_lifecycle(
    repository: ConsultationRepository = Depends(get_repository),
    transcriber: Transcriber = Depends(get_transcriber_dependency),
    audio_processor: AudioProcessor = Depends(get_audio_processor),
) -> ConsultationLifecycle:
    return ConsultationLifecycle(repository, transcriber=transcriber, audio_processor=audio_processor)


# --- Dependency Status Checks ---
async def check_stt_status() -> (str, str):
    """Checks that the configured speech-to-text vendor is reachable."""
    if settings.stt_provider == STTProvider.HUGGINGFACE:
        if not settings.hf_space_api_url:
            return "error", "HF_SPACE_API_URL is not set."
        return "ok", "Hugging Face Space configured."

    if not settings.assemblyai_api_key:
        return "error", "ASSEMBLYAI_API_KEY is not set."
    try:
        async with httpx.AsyncClient(timeout=10) as client:
            headers = {"authorization": settings.assemblyai_api_key}
            response = await client.get(f"{settings.assemblyai_base_url}/v2/transcript?limit=1", headers=headers)
        if 200 <= response.status_code < 300:
            return "ok", "AssemblyAI API is reachable."
        return "error", f"AssemblyAI API returned status {response.status_code}."
    except httpx.HTTPError as e:
        return "error", f"Failed to connect to AssemblyAI API: {e}"


async def run_periodic_cleanup(interval_seconds: int):
    """Deletes expired recordings every interval until cancelled."""
    audio_processor = AudioProcessor()

    def _run_once():
        with SessionLocal() as session:
            cleanup_expired_recordings(session, audio_processor=audio_processor)

    while True:
        try:
            await asyncio.to_thread(_run_once)
        except Exception as e:
            logger.error(f"Recording cleanup failed: {e}", exc_info=True)
        await asyncio.sleep(interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    logger.info("Consult Scribe starting...")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"API Version: {settings.api_version}")
    init_db()

    cleanup_task = None
    if settings.cleanup_interval_seconds > 0:
        cleanup_task = asyncio.create_task(run_periodic_cleanup(settings.cleanup_interval_seconds))

    yield

    if cleanup_task is not None:
        cleanup_task.cancel()
    logger.info("Consult Scribe shutting down...")


# Create FastAPI app
app = FastAPI(
    title=settings.api_title,
    description=settings.api_description,
    version=settings.api_version,
    lifespan=lifespan,
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url="/redoc" if settings.environment == "development" else None,
    debug=settings.debug,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Rate limiting
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)


# Middleware for security headers
@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)
    if "Strict-Transport-Security" not in response.headers:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    if "X-Content-Type-Options" not in response.headers:
        response.headers["X-Content-Type-Options"] = "nosniff"
    if "X-Frame-Options" not in response.headers:
        response.headers["X-Frame-Options"] = "DENY"
    return response


# Middleware for request tracking and metrics
@app.middleware("http")
async def track_requests(request: Request, call_next):
    """Request tracking and Prometheus metrics"""
    start_time = time.time()
    request_id = security_manager.generate_request_id()

    request.state.request_id = request_id
    request.state.start_time = start_time

    response = await call_next(request)

    duration = time.time() - start_time
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    request_count.labels(method=request.method, endpoint=endpoint, status=response.status_code).inc()
    request_duration.observe(duration)
    audit_logger.log_api_request(
        request_id=request_id,
        endpoint=endpoint,
        method=request.method,
        user_id=getattr(request.state, "user_id", None),
        status_code=response.status_code,
    )

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Processing-Time"] = f"{duration:.3f}s"
    return response


def _error_response(request: Request, status_code: int, error: str, message: str, details: Optional[dict] = None):
    request_id = getattr(request.state, "request_id", None)
    body = ErrorResponse(
        error=error,
        message=message,
        details=details,
        request_id=request_id,
        timestamp=datetime.now(timezone.utc),
    )
    return JSONResponse(
        status_code=status_code,
        content=json.loads(body.model_dump_json()),
        headers={"X-Request-ID": request_id} if request_id else None,
    )


@app.exception_handler(ConsultScribeError)
async def consult_scribe_error_handler(request: Request, exc: ConsultScribeError):
    """Maps domain errors to HTTP responses; each failure is scoped to one request."""
    status_code = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    if status_code >= 500:
        audit_logger.log_error(
            request_id=getattr(request.state, "request_id", "unknown"),
            error_type=exc.error_code,
            error_message=str(exc),
        )
    return _error_response(request, status_code, exc.error_code, str(exc))


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    error = "invalid_audio" if isinstance(exc, AudioValidationError) else "invalid_request"
    return _error_response(request, status.HTTP_422_UNPROCESSABLE_ENTITY, error, str(exc))


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    """Custom rate limit error handler"""
    response = RateLimitResponse(
        message="Too many requests. Please try again later.",
        limit=settings.rate_limit_requests,
        window=settings.rate_limit_window,
        timestamp=datetime.now(timezone.utc),
    )
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=json.loads(response.model_dump_json()),
        headers={"Retry-After": str(settings.rate_limit_window)},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors"""
    request_id = getattr(request.state, "request_id", "unknown")
    logger.error(f"Unhandled error in request {request_id}: {exc}")
    logger.error(f"Stacktrace: {traceback.format_exc()}")
    return _error_response(
        request, status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_server_error", "An unexpected error occurred"
    )


# --- Service endpoints ---

@app.get("/health", response_model=HealthCheckResponse)
async def health_check():
    """Service health check"""
    return HealthCheckResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        version=settings.api_version,
        uptime_seconds=int(time.time() - START_TIME),
    )


@app.get("/ready")
async def readiness_check():
    """
    Checks if the service and its dependencies are ready to accept traffic.
    Returns 200 OK if all checks pass, otherwise 503 Service Unavailable.
    """
    checks = {"stt": check_stt_status()}
    results = await asyncio.gather(*checks.values())

    details = {}
    all_ok = True
    for name, (check_status, message) in zip(checks.keys(), results):
        details[name] = {"status": check_status, "message": message}
        if check_status != "ok":
            all_ok = False

    response_data = {
        "status": "ready" if all_ok else "unavailable",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.api_version,
        "details": details,
    }
    if all_ok:
        return JSONResponse(status_code=status.HTTP_200_OK, content=response_data)
    logger.warning(f"Readiness check failed: {details}")
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=response_data)


@app.get(settings.metrics_path)
async def metrics():
    """Prometheus metrics"""
    if not settings.enable_metrics:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


# --- Profile & dashboard ---

@app.get("/v1/profile", response_model=ProfileResponse)
def get_profile(repository: ConsultationRepository = Depends(get_repository)):
    return repository.ensure_profile()


@app.patch("/v1/profile", response_model=ProfileResponse)
def update_profile(update: ProfileUpdate, repository: ConsultationRepository = Depends(get_repository)):
    return repository.update_profile(**update.model_dump(exclude_none=True))


@app.get("/v1/dashboard", response_model=DashboardStats)
def dashboard(repository: ConsultationRepository = Depends(get_repository)):
    counts = repository.count_by_status()
    return DashboardStats(total=sum(counts.values()), **counts)


# --- Consultations ---

@app.get("/v1/consultations", response_model=List[ConsultationResponse])
def list_consultations(repository: ConsultationRepository = Depends(get_repository)):
    return repository.list_consultations()


@app.post("/v1/consultations", response_model=ConsultationResponse, status_code=status.HTTP_201_CREATED)
def create_consultation(body: ConsultationCreate, lifecycle: ConsultationLifecycle = Depends(get_lifecycle)):
    return lifecycle.create_consultation(body.patient_name, body.patient_id)


@app.get("/v1/consultations/{consultation_id}", response_model=ConsultationDetailResponse)
def get_consultation(consultation_id: uuid.UUID, lifecycle: ConsultationLifecycle = Depends(get_lifecycle)):
    consultation = lifecycle.repository.get_consultation(consultation_id)
    note = lifecycle.repository.get_note(consultation_id)
    return ConsultationDetailResponse(
        consultation=ConsultationResponse.model_validate(consultation),
        note=MedicalNoteResponse.model_validate(note) if note else None,
        can_record=consultation.status == "in_progress",
        can_complete=lifecycle.can_complete(consultation),
    )


@app.post("/v1/consultations/{consultation_id}/complete", response_model=ConsultationResponse)
def complete_consultation(consultation_id: uuid.UUID, lifecycle: ConsultationLifecycle = Depends(get_lifecycle)):
    return lifecycle.complete_consultation(consultation_id)


@app.post("/v1/consultations/{consultation_id}/cancel", response_model=ConsultationResponse)
def cancel_consultation(consultation_id: uuid.UUID, lifecycle: ConsultationLifecycle = Depends(get_lifecycle)):
    recording_registry.release(consultation_id)
    return lifecycle.cancel_consultation(consultation_id)


# --- Notes ---

def _handled_response(consultation_id: uuid.UUID, outcome: TranscriptOutcome) -> TranscriptHandledResponse:
    download = None
    if outcome.download_filename:
        download = TranscriptDownload(
            filename=outcome.download_filename,
            url=f"/v1/consultations/{consultation_id}/transcript",
        )
    return TranscriptHandledResponse(
        note=MedicalNoteResponse.model_validate(outcome.note),
        transcription_failed=outcome.transcription_failed,
        transcript_download=download,
    )


@app.post("/v1/consultations/{consultation_id}/transcript", response_model=TranscriptHandledResponse)
def submit_transcript(
    consultation_id: uuid.UUID,
    body: TranscriptSubmission,
    lifecycle: ConsultationLifecycle = Depends(get_lifecycle),
):
    outcome = lifecycle.handle_transcription_complete(consultation_id, body.text)
    return _handled_response(consultation_id, outcome)


@app.get("/v1/consultations/{consultation_id}/transcript", response_class=PlainTextResponse)
def download_transcript(consultation_id: uuid.UUID, repository: ConsultationRepository = Depends(get_repository)):
    consultation = repository.get_consultation(consultation_id)
    note = repository.get_note(consultation_id)
    if note is None or not note.raw_transcript or note.raw_transcript == TRANSCRIPTION_FAILED_RAW:
        raise NotFoundError("No transcript available for this consultation")
    filename = transcript_filename(consultation.patient_name)
    return PlainTextResponse(
        note.raw_transcript,
        media_type="text/plain; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/v1/consultations/{consultation_id}/note", response_model=MedicalNoteResponse)
def get_note(consultation_id: uuid.UUID, repository: ConsultationRepository = Depends(get_repository)):
    note = repository.get_note(consultation_id)
    if note is None:
        raise NotFoundError(f"No medical note for consultation {consultation_id}")
    return note


@app.put("/v1/consultations/{consultation_id}/note", response_model=MedicalNoteResponse)
def save_note(
    consultation_id: uuid.UUID,
    body: NoteUpdate,
    lifecycle: ConsultationLifecycle = Depends(get_lifecycle),
):
    return lifecycle.save_note(consultation_id, **body.model_dump())


@app.post("/v1/consultations/{consultation_id}/note/generate", response_model=MedicalNoteResponse)
async def generate_consultation_note(
    consultation_id: uuid.UUID,
    lifecycle: ConsultationLifecycle = Depends(get_lifecycle),
    note_generator: NoteGenerator = Depends(get_note_generator_dependency),
):
    """Drafts a structured SOAP note from the stored transcript."""
    consultation = await asyncio.to_thread(lifecycle.repository.get_consultation, consultation_id)
    note = await asyncio.to_thread(lifecycle.repository.get_note, consultation_id)
    if note is None or not note.raw_transcript or note.raw_transcript == TRANSCRIPTION_FAILED_RAW:
        raise ConsultationStateError("No transcript available to generate a note from")
    generated = await note_generator.generate_note(note.raw_transcript, consultation.patient_name)
    return await asyncio.to_thread(lifecycle.store_generated_note, consultation_id, generated, note.raw_transcript)


@app.post("/v1/notes/generate", response_model=SoapNote)
async def generate_note(
    body: NoteGenerationRequest,
    user: PractitionerContext = Depends(get_current_user),
    note_generator: NoteGenerator = Depends(get_note_generator_dependency),
):
    return await note_generator.generate_note(body.transcript, body.patient_name)


# --- Recording ---

def _recording_state(consultation_id: uuid.UUID, session: RecordingSession) -> RecordingStateResponse:
    return RecordingStateResponse(
        consultation_id=consultation_id,
        state=session.state.value,
        mime_type=session.mime_type,
        elapsed_seconds=round(session.elapsed_seconds, 3),
        chunk_count=session.chunk_count,
    )


@app.post("/v1/consultations/{consultation_id}/recording/start", response_model=RecordingStateResponse)
def start_recording(
    consultation_id: uuid.UUID,
    body: RecordingStartRequest,
    lifecycle: ConsultationLifecycle = Depends(get_lifecycle),
):
    consultation = lifecycle.repository.get_consultation(consultation_id)
    lifecycle.ensure_recordable(consultation)

    session = RecordingSession(ClientStreamDevice(body.microphone_granted, body.supported_mime_types))
    session.start()
    recording_registry.open(consultation_id, session)
    return _recording_state(consultation_id, session)


@app.post("/v1/consultations/{consultation_id}/recording/chunks", response_model=RecordingStateResponse)
def add_recording_chunk(
    consultation_id: uuid.UUID,
    body: RecordingChunk,
    repository: ConsultationRepository = Depends(get_repository),
):
    repository.get_consultation(consultation_id)
    session = recording_registry.get(consultation_id)
    session.add_chunk(decode_audio(body.data))
    return _recording_state(consultation_id, session)


@app.post("/v1/consultations/{consultation_id}/recording/pause", response_model=RecordingStateResponse)
def pause_recording(consultation_id: uuid.UUID, repository: ConsultationRepository = Depends(get_repository)):
    repository.get_consultation(consultation_id)
    session = recording_registry.get(consultation_id)
    session.pause()
    return _recording_state(consultation_id, session)


@app.post("/v1/consultations/{consultation_id}/recording/resume", response_model=RecordingStateResponse)
def resume_recording(consultation_id: uuid.UUID, repository: ConsultationRepository = Depends(get_repository)):
    repository.get_consultation(consultation_id)
    session = recording_registry.get(consultation_id)
    session.resume()
    return _recording_state(consultation_id, session)


@app.get("/v1/consultations/{consultation_id}/recording", response_model=RecordingStateResponse)
def recording_state(consultation_id: uuid.UUID, repository: ConsultationRepository = Depends(get_repository)):
    repository.get_consultation(consultation_id)
    return _recording_state(consultation_id, recording_registry.get(consultation_id))


def _discard_job(job_id: str) -> None:
    if job_status_queues.pop(job_id, None) is not None:
        logger.info(f"Discarded unread job_id: {job_id}")
    job_owners.pop(job_id, None)


async def run_transcription_pipeline(
    job_id: str,
    queue: asyncio.Queue,
    consultation_id: uuid.UUID,
    practitioner: PractitionerContext,
    audio: AudioBlob,
    session_factory: Callable[[], Session],
    transcriber: Transcriber,
    audio_processor: AudioProcessor,
):
    """
    Store, transcribe and turn the recording into a note, in the background.
    Status updates are pushed to a queue for SSE.
    """
    started = time.time()

    async def push(message: str, progress: int):
        await queue.put(json.dumps({"status": "processing", "message": message, "progress": progress}))
        await asyncio.sleep(0)

    try:
        await push("Processing recorded audio...", 5)
        with session_factory() as db:
            repository = ConsultationRepository(db, practitioner)
            lifecycle = ConsultationLifecycle(repository, transcriber=transcriber, audio_processor=audio_processor)
            outcome = await lifecycle.transcribe_recording(consultation_id, audio, on_progress=push)
            result = _handled_response(consultation_id, outcome)

        final_json = json.loads(result.model_dump_json())
        await queue.put(json.dumps({"status": "complete", "data": final_json, "progress": 100}))
        logger.info(f"Job {job_id} finished for consultation {consultation_id}")

    except (ConsultScribeError, ValueError) as e:
        logger.error(f"Job {job_id} failed: {e}")
        await queue.put(json.dumps({"status": "error", "message": str(e), "progress": 100}))
    except Exception as e:
        logger.error(f"Job {job_id} failed in background pipeline: {e}", exc_info=True)
        await queue.put(json.dumps({
            "status": "error",
            "message": "Failed to generate medical note. Please try again.",
            "progress": 100,
        }))
    finally:
        transcription_duration.observe(time.time() - started)
        await queue.put("__END__")
        # a stream that is never opened must not keep the job alive
        asyncio.get_running_loop().call_later(settings.job_retention_seconds, _discard_job, job_id)


def _start_transcription_job(
    background_tasks: BackgroundTasks,
    lifecycle: ConsultationLifecycle,
    consultation_id: uuid.UUID,
    audio: AudioBlob,
    session_factory: Callable[[], Session],
) -> str:
    job_id = str(uuid.uuid4())
    job_status_queues[job_id] = asyncio.Queue()
    job_owners[job_id] = lifecycle.repository.practitioner.user_id

    background_tasks.add_task(
        run_transcription_pipeline,
        job_id=job_id,
        queue=job_status_queues[job_id],
        consultation_id=consultation_id,
        practitioner=lifecycle.repository.practitioner,
        audio=audio,
        session_factory=session_factory,
        transcriber=lifecycle.transcriber,
        audio_processor=lifecycle.audio_processor,
    )
    return job_id


@app.post(
    "/v1/consultations/{consultation_id}/recording/stop",
    response_model=JobCreationResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def stop_recording(
    consultation_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    lifecycle: ConsultationLifecycle = Depends(get_lifecycle),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
):
    consultation = lifecycle.repository.get_consultation(consultation_id)
    session = recording_registry.get(consultation_id)
    audio = session.stop()
    recording_registry.release(consultation_id)

    lifecycle.ensure_recordable(consultation)
    lifecycle.audio_processor.validate(audio)
    job_id = _start_transcription_job(background_tasks, lifecycle, consultation_id, audio, session_factory)
    return JobCreationResponse(job_id=job_id, recording=_recording_state(consultation_id, session))


@app.post(
    "/v1/consultations/{consultation_id}/recordings",
    response_model=JobCreationResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
@limiter.limit(f"{settings.rate_limit_requests}/minute")
def upload_recording(
    request: Request,
    consultation_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    audio_file: UploadFile = File(..., alias="file"),
    duration_seconds: float = Form(0.0),
    lifecycle: ConsultationLifecycle = Depends(get_lifecycle),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
):
    """Accepts a finalized recording and starts transcription in the background."""
    consultation = lifecycle.repository.get_consultation(consultation_id)
    lifecycle.ensure_recordable(consultation)

    data = audio_file.file.read()
    mime_type = audio_file.content_type
    if not mime_type or mime_type == "application/octet-stream":
        mime_type = AudioProcessor.detect_content_type(data, audio_file.filename)
    audio = AudioBlob(data=data, mime_type=mime_type, duration_seconds=duration_seconds)
    lifecycle.audio_processor.validate(audio)

    job_id = _start_transcription_job(background_tasks, lifecycle, consultation_id, audio, session_factory)
    return JobCreationResponse(job_id=job_id)


@app.get("/v1/consultations/{consultation_id}/recordings", response_model=List[AudioRecordingResponse])
def list_recordings(consultation_id: uuid.UUID, repository: ConsultationRepository = Depends(get_repository)):
    return repository.list_recordings(consultation_id)


async def sse_event_generator(request: Request, job_id: str) -> AsyncGenerator[str, None]:
    """Yields server-sent events for a given job ID."""
    queue = job_status_queues.get(job_id)
    if not queue:
        logger.warning(f"SSE generator started for non-existent job_id: {job_id}")
        return

    try:
        while True:
            if await request.is_disconnected():
                logger.info(f"Client disconnected from SSE stream for job_id: {job_id}")
                break

            try:
                message = await asyncio.wait_for(queue.get(), timeout=30)
                if message == "__END__":
                    logger.info(f"SSE stream finished for job_id: {job_id}")
                    break

                yield f"data: {message}\n\n"
                queue.task_done()
            except asyncio.TimeoutError:
                # keep-alive comment against client/proxy timeouts
                yield ": keep-alive\n\n"

    except asyncio.CancelledError:
        logger.info(f"SSE generator cancelled for job_id: {job_id}")
    finally:
        # the background job is not cancelled, only its queue is dropped
        if job_id in job_status_queues:
            while not job_status_queues[job_id].empty():
                job_status_queues[job_id].get_nowait()
                job_status_queues[job_id].task_done()
            del job_status_queues[job_id]
            job_owners.pop(job_id, None)
            logger.info(f"Cleaned up queue for job_id: {job_id}")


@app.get("/v1/jobs/{job_id}/events")
async def get_job_events(request: Request, job_id: str, user: PractitionerContext = Depends(get_current_user)):
    """
    Real-time status updates for a transcription job using SSE.
    """
    if job_id not in job_status_queues or job_owners.get(job_id) != user.user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job ID not found or already completed.")

    return StreamingResponse(
        sse_event_generator(request, job_id),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
        },
    )


# --- Proxied transcription ---

@app.post("/v1/transcribe", response_model=TranscriptionResponse)
@limiter.limit(f"{settings.rate_limit_requests}/minute")
async def transcribe(
    request: Request,
    body: TranscribeRequest,
    user: PractitionerContext = Depends(get_current_user),
    transcriber: Transcriber = Depends(get_transcriber_dependency),
    audio_processor: AudioProcessor = Depends(get_audio_processor),
):
    """Transcribes base64 audio on the server so vendor keys never reach the client."""
    audio = AudioBlob(data=decode_audio(body.audio_base64), mime_type=body.mime_type)
    audio_processor.validate(audio)
    text = await transcriber.transcribe(audio)
    return TranscriptionResponse(text=text)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "consult_scribe.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.environment == "development",
    )
