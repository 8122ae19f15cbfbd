"""
=====================================================
Dynamic AI Calling Platform - Main FastAPI Application
=====================================================
Twilio webhook surface over the conversation core:
call-start / speech / speech-partial / call-status / tts-stream
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import Depends, FastAPI, Form, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from config.settings import get_settings
from services.conversation import (
    ConversationOrchestrator,
    TurnResult,
    LAST_RESORT_REPLY,
    create_orchestrator,
)
from services.database import close_db_pool, database_configured, init_schema
from services.functions.function_store import fetch_function_configs, register_dynamic_functions
from services.llm import NoProviderConfigured
from services.security import create_signature_validator, verify_twilio_signature
from services.telephony.twilio_service import TwilioService, create_twilio_service
from services.tts import SpeechDelivery, TTSProviderError, create_speech_delivery


# Get settings
settings = get_settings()

# Configure logger
logger.remove()  # Remove default handler
logger.add(
    settings.log_file,
    rotation="500 MB",
    level=settings.log_level,
    backtrace=True,
    diagnose=settings.debug
)
logger.add(lambda msg: print(msg, end=""), level=settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""
    logger.info(f"{settings.app_name} starting up...")

    orchestrator = create_orchestrator(settings)
    speech = create_speech_delivery(settings)
    twilio = create_twilio_service(settings)

    try:
        orchestrator.gateway.validate()
        logger.info(f"LLM providers: {[p['name'] for p in orchestrator.gateway.available_providers()]}")
    except NoProviderConfigured as e:
        # Surfaced once here; calls still get the fallback line
        logger.error(f"{e} - every call will receive the fallback reply")

    if database_configured():
        await init_schema()
        register_dynamic_functions(
            orchestrator.executor.registry,
            await fetch_function_configs(),
            internal=orchestrator.calendar_chain.internal,
            calendar_timeout=settings.calendar_timeout_seconds,
            cache_ttl_seconds=settings.availability_cache_ttl_seconds,
        )

    orchestrator.store.add_sweep_hook(speech.cache.cleanup_expired)
    orchestrator.start()
    prewarm_task = asyncio.create_task(speech.prewarm()) if settings.tts_prewarm else None

    app.state.orchestrator = orchestrator
    app.state.speech = speech
    app.state.twilio = twilio
    app.state.signature_validator = create_signature_validator(settings)

    yield

    logger.info(f"{settings.app_name} shutting down...")
    if prewarm_task is not None and not prewarm_task.done():
        prewarm_task.cancel()
    await orchestrator.stop()
    await orchestrator.gateway.close()
    if orchestrator.calendar_chain and orchestrator.calendar_chain.external:
        await orchestrator.calendar_chain.external.close()
    await speech.tts.close()
    await twilio.close()
    if database_configured():
        await close_db_pool()


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Prompt-driven AI phone agents",
    version=settings.app_version,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _orchestrator(request: Request) -> ConversationOrchestrator:
    return request.app.state.orchestrator


def _twiml(request: Request, call_id: str, result: TurnResult) -> Response:
    """Render a TurnResult: pull URL when speech delivery is configured, <Say> otherwise"""
    speech: SpeechDelivery = request.app.state.speech
    twilio: TwilioService = request.app.state.twilio

    audio_url = None
    if speech.is_configured:
        audio_url = speech.audio_url(result.reply_text, _orchestrator(request).get_voice_id(call_id))

    twiml = twilio.reply_twiml(result.reply_text, result.end_call, audio_url=audio_url)
    return Response(content=twiml, media_type="application/xml")


# =====================================================
# HEALTH CHECK
# =====================================================

@app.get("/health")
async def health_check(request: Request):
    """Health check endpoint"""
    orchestrator = _orchestrator(request)
    return {
        "status": "healthy",
        "service": "dynamic-ai-calling-platform",
        "version": settings.app_version,
        "environment": settings.environment,
        "llm_providers": orchestrator.gateway.provider_status(),
        "active_calls": orchestrator.get_active_conversations_count(),
    }


# =====================================================
# TWILIO WEBHOOKS (TwiML)
# =====================================================

@app.post("/api/webhooks/call-start", dependencies=[Depends(verify_twilio_signature)])
async def call_start(
    request: Request,
    CallSid: str = Form(...),
    From: Optional[str] = Form(None),
    agentId: Optional[str] = Query(None),
    customerName: Optional[str] = Query(None),
):
    """Incoming (or answered outbound) call: greet the caller"""
    logger.info(f"Webhook: call-start {CallSid} (agent {agentId or settings.default_agent_id})")
    result = await _orchestrator(request).handle_call_start(
        CallSid, From, agentId or settings.default_agent_id, customerName
    )
    return _twiml(request, CallSid, result)


@app.post("/api/webhooks/speech", dependencies=[Depends(verify_twilio_signature)])
async def speech_result(
    request: Request,
    CallSid: str = Form(...),
    SpeechResult: Optional[str] = Form(None),
    Confidence: Optional[float] = Form(None),
    From: Optional[str] = Form(None),
):
    """Final speech result from <Gather>"""
    result = await _orchestrator(request).handle_speech(CallSid, SpeechResult or "", Confidence, From)
    return _twiml(request, CallSid, result)


@app.post("/api/webhooks/speech-partial", dependencies=[Depends(verify_twilio_signature)])
async def speech_partial(
    request: Request,
    CallSid: str = Form(...),
    UnstableSpeechResult: Optional[str] = Form(None),
):
    """Partial results are informational; Twilio only needs a 200"""
    await _orchestrator(request).handle_partial_speech(CallSid, UnstableSpeechResult or "")
    return PlainTextResponse("OK")


@app.post("/api/webhooks/call-status", dependencies=[Depends(verify_twilio_signature)])
async def call_status(
    request: Request,
    CallSid: str = Form(...),
    CallStatus: str = Form(...),
    CallDuration: Optional[int] = Form(None),
):
    await _orchestrator(request).handle_call_status(CallSid, CallStatus, CallDuration)
    return PlainTextResponse("OK")


@app.get("/api/webhooks/tts-stream")
async def tts_stream(
    request: Request,
    text: str = Query(""),
    voice_id: Optional[str] = Query(None),
    stream: bool = Query(False),
):
    """Audio for a reply (the URL inside <Play>)"""
    speech: SpeechDelivery = request.app.state.speech
    if not text.strip():
        return PlainTextResponse("Missing text parameter", status_code=400)

    voice = voice_id if voice_id and voice_id != "undefined" else None
    headers = {"Cache-Control": "public, max-age=300"}

    try:
        if stream:
            chunks = await speech.open_stream(text.strip(), voice)
            return StreamingResponse(chunks, media_type="audio/mpeg", headers=headers)
        audio = await speech.synthesize(text.strip(), voice)
    except TTSProviderError as e:
        logger.error(f"Webhook: TTS failed for '{text[:50]}': {e}")
        return PlainTextResponse("TTS error", status_code=500)

    return Response(content=audio.audio_data, media_type="audio/mpeg", headers=headers)


# =====================================================
# ADMIN API
# =====================================================

@app.get("/api/stats")
async def get_stats(request: Request):
    """Get platform statistics"""
    orchestrator = _orchestrator(request)
    speech: SpeechDelivery = request.app.state.speech
    chain = orchestrator.calendar_chain
    return {
        "active_calls": orchestrator.get_active_conversations_count(),
        "functions": orchestrator.executor.registry.names(),
        "availability_cache_entries": len(chain.cache) if chain else 0,
        "speech_cache": speech.cache.stats(),
        "environment": settings.environment,
        "version": settings.app_version,
    }


@app.get("/api/calls")
async def list_calls(request: Request):
    """Active calls"""
    return {"calls": _orchestrator(request).get_all_active_conversations()}


@app.get("/api/calls/{call_id}")
async def get_call(request: Request, call_id: str):
    orchestrator = _orchestrator(request)
    summary = orchestrator.get_conversation_summary(call_id)
    if summary is None:
        return JSONResponse(status_code=404, content={"error": f"Call {call_id} not found"})
    return {"summary": summary, "messages": orchestrator.get_conversation_history(call_id)}


# =====================================================
# ERROR HANDLERS
# =====================================================

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler: webhook callers get speakable TwiML, never an empty body"""
    logger.exception(f"Unhandled exception on {request.url.path}: {exc}")
    if request.url.path.startswith("/api/webhooks/") and request.url.path != "/api/webhooks/tts-stream":
        twilio: TwilioService = request.app.state.twilio
        return Response(content=twilio.hangup_twiml(LAST_RESORT_REPLY), media_type="application/xml")
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )


# =====================================================
# MAIN ENTRY POINT (for development)
# =====================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
