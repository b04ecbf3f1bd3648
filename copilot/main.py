"""FastAPI backend for the co-pilot: transcription, chat, persona setup and session analysis."""

import json
import logging
from typing import List, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from copilot.auth import TokenVerifier
from copilot.config import Config
from copilot.credits import CreditGate, CreditLedger, InMemoryCreditLedger, SqliteCreditLedger, cost
from copilot.errors import AllProvidersFailed, ProviderError
from copilot.models import USE_CASES, PersonaConfig
from copilot.prompt import ANALYSIS_MAX_CHARS, ANALYSIS_PROMPT, build_chat_messages, truncate_profile
from copilot.providers import (
    ChatProvider,
    any_configured,
    create_chat_providers,
    generate_with_fallback,
    open_first_stream,
)
from copilot.schema import AnalyzeRequest, ChatRequest, SetupRequest, history_dicts
from copilot.transcriber import Transcriber, create_transcriber

logger = logging.getLogger(__name__)

router = APIRouter()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _uid(request: Request) -> Optional[str]:
    verifier: TokenVerifier = request.app.state.verifier
    return verifier.verify(request.headers.get("authorization"))


@router.get("/api/copilot")
async def copilot_status(request: Request):
    """Health check: which providers are configured."""
    state = request.app.state
    return {
        "success": True,
        "message": "Copilot API is working",
        "clients": {p.name: p.configured for p in state.chat_providers},
        "transcription": state.transcriber.configured,
    }


@router.get("/api/credits")
async def credits(request: Request, plan: str = "free"):
    """Authoritative balance; creates the ledger entry on first sight."""
    uid = _uid(request)
    if uid is None:
        return _error(401, "Unauthorized")
    ledger: CreditLedger = request.app.state.ledger
    balance = await ledger.ensure_account(uid, plan)
    return {"credits": balance}


@router.post("/api/copilot")
async def copilot_endpoint(request: Request):
    """Single entry point; auth is checked per request type so `setup` works for guests."""
    content_type = request.headers.get("content-type", "")
    try:
        if "multipart/form-data" in content_type:
            form = await request.form()
            audio = form.get("audio")
            if form.get("type") == "transcribe" and audio is not None and not isinstance(audio, str):
                return await handle_transcribe(request, audio)
            return _error(400, "Invalid request type")

        try:
            body = await request.json()
        except ValueError:
            return _error(400, "Invalid JSON body")
        kind = body.get("type") if isinstance(body, dict) else None

        if kind == "setup":
            return await handle_setup(body)
        elif kind == "analyze_session":
            return await handle_analyze(request, body)
        elif kind == "chat":
            return await handle_chat(request, body)

        return _error(400, "Invalid request type")

    except Exception as e:
        logger.exception("[API] Unhandled error: %s", e)
        return _error(500, "Internal server error")


async def handle_transcribe(request: Request, audio) -> JSONResponse:
    state = request.app.state
    uid = _uid(request)
    if uid is None:
        return _error(401, "Unauthorized")

    data = await audio.read()
    is_interim = request.headers.get("x-interim") == "true"
    if is_interim and len(data) > state.max_interim_bytes:
        # Interim windows are bounded; an oversized one is billed like a final
        logger.warning("[TRANSCRIBE] %s sent a %d byte interim; billing as final", uid, len(data))
        is_interim = False

    amount = cost("transcribe")
    if not is_interim:
        balance = await state.ledger.get_balance(uid)
        if (balance or 0) < amount:
            return _error(402, "Insufficient credits")

    try:
        transcript = await state.transcriber.transcribe(
            data,
            mime_type=audio.content_type or "audio/wav",
            filename=audio.filename or "audio.wav",
        )
    except AllProvidersFailed as e:
        logger.error("[TRANSCRIBE] Transcription failed: %s", e)
        return _error(500, "Transcription failed")

    transcript = (transcript or "").strip()
    if not transcript:
        return _error(400, "No speech detected")

    remaining = None
    if not is_interim:
        deducted = await state.gate.try_debit(uid, amount)
        if not deducted.ok:
            return _error(402, "Insufficient credits")
        remaining = deducted.remaining

    return JSONResponse({"success": True, "transcript": transcript, "remainingCredits": remaining})


async def handle_setup(body: dict) -> JSONResponse:
    try:
        req = SetupRequest.model_validate(body)
    except ValidationError:
        return _error(400, "Missing useCase or userData")

    use_case = req.use_case.strip().lower()
    if use_case not in USE_CASES or not req.user_data.strip():
        return _error(400, "Missing useCase or userData")

    persona = PersonaConfig(use_case=use_case, user_data=truncate_profile(req.user_data))
    logger.info("[SETUP] Persona configured: %s (%d chars)", use_case, len(persona.user_data))
    return JSONResponse({
        "success": True,
        "message": "Persona configured successfully",
        "persona": persona.to_dict(),
    })


async def handle_analyze(request: Request, body: dict) -> JSONResponse:
    state = request.app.state
    uid = _uid(request)
    if uid is None:
        return _error(401, "Unauthorized")

    try:
        req = AnalyzeRequest.model_validate(body)
    except ValidationError:
        return _error(400, "Invalid history")

    conversation = json.dumps(history_dicts(req.history), ensure_ascii=False)[:ANALYSIS_MAX_CHARS]
    messages = [
        {"role": "system", "content": ANALYSIS_PROMPT},
        {"role": "user", "content": conversation},
    ]
    try:
        report, provider = await generate_with_fallback(
            state.chat_providers, messages, max_tokens=2000, temperature=0.4
        )
    except ProviderError as e:
        logger.error("[ANALYZE] Analysis failed for %s: %s", uid, e)
        return _error(500, "Analysis failed")

    logger.info("[ANALYZE] Report for %s generated by %s", uid, provider)
    return JSONResponse({"success": True, "report": report})


async def handle_chat(request: Request, body: dict):
    state = request.app.state
    uid = _uid(request)
    if uid is None:
        return _error(401, "Unauthorized")

    try:
        req = ChatRequest.model_validate(body)
    except ValidationError:
        return _error(400, "Invalid chat request")

    # Fail early without charging when nothing could answer
    if not any_configured(state.chat_providers):
        return _error(500, "No AI provider configured (OPENAI_API_KEY/GEMINI_API_KEY missing)")

    # Debit before any provider call; a later provider failure is not refunded
    amount = cost("chat", has_image=bool(req.image_data))
    deducted = await state.gate.try_debit(uid, amount)
    if not deducted.ok:
        return _error(402, "Insufficient credits")

    history = history_dicts(req.conversation_history)
    persona = req.persona.to_config() if req.persona else None
    messages = build_chat_messages(req.message, history, persona, req.image_data)

    if req.stream:
        stream = await open_first_stream(state.chat_providers, messages)
        if stream is not None:
            headers = {
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",  # Disable buffering for nginx
            }
            if deducted.remaining is not None:
                headers["X-Remaining-Credits"] = str(deducted.remaining)
            return StreamingResponse(stream, media_type="text/plain; charset=utf-8", headers=headers)
        # Stream could not start: answer with one complete response instead

    text_only = build_chat_messages(req.message, history, persona) if req.image_data else None
    try:
        response, provider = await generate_with_fallback(
            state.chat_providers, messages, text_only_messages=text_only
        )
    except ProviderError as e:
        logger.error("[CHAT] Chat failed for %s: %s", uid, e)
        return _error(500, "Chat failed")

    logger.info("[CHAT] Response for %s from %s", uid, provider)
    return JSONResponse({"success": True, "response": response, "remainingCredits": deducted.remaining})


def create_app(
    ledger: Optional[CreditLedger] = None,
    verifier: Optional[TokenVerifier] = None,
    chat_providers: Optional[List[ChatProvider]] = None,
    transcriber: Optional[Transcriber] = None,
    max_interim_bytes: Optional[int] = None,
) -> FastAPI:
    app = FastAPI(title="Copilot API")

    # CORS for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if ledger is None:
        ledger = SqliteCreditLedger(Config.LEDGER_PATH) if Config.LEDGER_PATH else InMemoryCreditLedger()
    app.state.ledger = ledger
    app.state.gate = CreditGate(ledger)
    app.state.verifier = verifier or TokenVerifier()
    app.state.chat_providers = chat_providers if chat_providers is not None else create_chat_providers()
    app.state.transcriber = transcriber or create_transcriber()
    app.state.max_interim_bytes = max_interim_bytes or Config.MAX_INTERIM_AUDIO_BYTES

    missing = Config.validate()
    for item in missing:
        logger.warning("[CONFIG] Missing setting: %s", item)

    app.include_router(router)
    return app


app = create_app()
