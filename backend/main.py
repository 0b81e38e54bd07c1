from __future__ import annotations

from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from diagnosis_core import (
    InputError,
    InteractionOrchestrator,
    OpenRouterStreamClient,
    PaymentError,
    PaymentGate,
    PreparedInteraction,
    Settings,
    X402PaymentGate,
    get_logger,
    setup_logging,
)
from session_log import SessionLogStore, StorageError, is_valid_identifier


def _bootstrap_local_env(candidates: tuple[Path, ...] | None = None) -> list[Path]:
    """Load ``.env`` files without overriding variables already set."""
    if candidates is None:
        repo_root = Path(__file__).resolve().parents[1]
        candidates = (repo_root / ".env", repo_root / "backend" / ".env")
    loaded: list[Path] = []
    for candidate in candidates:
        if candidate.is_file():
            load_dotenv(candidate, override=False)
            loaded.append(candidate)
    return loaded


_bootstrap_local_env()
settings = Settings.from_env()
setup_logging(settings.log_level)
logger = get_logger("diagnose.api")


class DiagnoseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    symptoms: str | None = None
    health_history: str | None = Field(default=None, alias="healthHistory")
    user_id: str | None = Field(default=None, alias="userId")


class DiagnoseApp:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.store = SessionLogStore(settings.data_dir)
        # Degraded mode: requests fail individually with StorageError.
        self.store.initialize()
        self.orchestrator = InteractionOrchestrator(
            store=self.store,
            model=OpenRouterStreamClient(
                api_key=settings.openrouter_api_key,
                model=settings.openrouter_model,
                base_url=settings.openrouter_base_url,
                timeout_seconds=settings.chat_timeout_seconds,
                site_url=settings.openrouter_site_url,
                app_name=settings.openrouter_app_name,
            ),
        )
        self.payment_gate: PaymentGate = X402PaymentGate(
            pay_to=settings.evm_address,
            price=settings.price,
            network=settings.network,
            asset=settings.asset or None,
            facilitator_url=settings.facilitator_url,
            facilitator_token=settings.facilitator_token or None,
        )


container = DiagnoseApp(settings)
app = FastAPI(title="Diagnose Relay")

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.allowed_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-PAYMENT-RESPONSE"],
)

logger.info(
    "Configured model=%s data_dir=%s network=%s price=%s",
    settings.openrouter_model,
    container.store.data_dir,
    settings.network,
    settings.price,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    logger.info("%s %s", request.method, request.url.path)
    return await call_next(request)


_STREAM_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


def _storage_error_response(exc: StorageError) -> JSONResponse:
    logger.error("Storage failure: %s", exc)
    return JSONResponse(status_code=500, content={"error": "storage_error", "message": str(exc)})


def _payment_required(reason: str, requirements: dict) -> JSONResponse:
    return JSONResponse(
        status_code=402,
        content={"x402Version": 1, "error": reason, "accepts": [requirements]},
    )


def _prepare(payload: DiagnoseRequest) -> PreparedInteraction:
    try:
        return container.orchestrator.prepare(
            payload.symptoms,
            health_context=payload.health_history,
            identifier=payload.user_id,
        )
    except InputError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _stream_response(prepared: PreparedInteraction, headers: dict[str, str] | None = None) -> StreamingResponse:
    return StreamingResponse(
        container.orchestrator.stream(prepared),
        media_type="text/event-stream",
        headers={**_STREAM_HEADERS, **(headers or {})},
    )


@app.post("/diagnose")
def diagnose(
    payload: DiagnoseRequest,
    request: Request,
    x_payment: str | None = Header(default=None),
):
    try:
        InteractionOrchestrator.validate_request(payload.symptoms, payload.user_id)
    except InputError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    gate = container.payment_gate
    requirements = gate.requirements(str(request.url))
    try:
        verification = gate.verify(x_payment, requirements)
    except PaymentError as exc:
        logger.error("Payment gate failure: %s", exc)
        return _payment_required(str(exc), requirements)
    if not verification.allowed:
        logger.info("Payment not accepted: %s", verification.code)
        return _payment_required(verification.message, requirements)

    # Funds move only once the interaction is ready to stream.
    try:
        prepared = _prepare(payload)
    except StorageError as exc:
        return _storage_error_response(exc)

    try:
        settlement = gate.settle(x_payment, requirements)
    except PaymentError as exc:
        logger.error("Payment settlement failure: %s", exc)
        return _payment_required(str(exc), requirements)
    if not settlement.allowed:
        logger.info("Payment not settled: %s", settlement.code)
        return _payment_required(settlement.message, requirements)

    extra_headers: dict[str, str] = {}
    settlement_header = settlement.settlement_header()
    if settlement_header:
        extra_headers["X-PAYMENT-RESPONSE"] = settlement_header
    return _stream_response(prepared, extra_headers)


@app.post("/diagnose-test")
def diagnose_test(payload: DiagnoseRequest):
    try:
        prepared = _prepare(payload)
    except StorageError as exc:
        return _storage_error_response(exc)
    return _stream_response(prepared)


@app.get("/history/{user_id}")
def get_history(user_id: str):
    if not is_valid_identifier(user_id):
        raise HTTPException(status_code=400, detail="Invalid userId")
    try:
        history = container.store.load(user_id)
    except StorageError as exc:
        return _storage_error_response(exc)
    return Response(content=history, media_type="text/markdown")


@app.get("/health")
def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.port)
