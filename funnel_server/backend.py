"""FastAPI application for the WhatsApp funnel server.

The application object wires the collaborating services together (storage,
Evolution client, scheduler and funnel engine) and exposes three groups of
routes: checkout/WhatsApp webhooks, the funnel admin API and the static admin
UI.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings, get_settings
from .engine import FunnelEngine, Sleep
from .events import EventLog
from .evolution import EvolutionClient
from .models import Funnel, FunnelNotFoundError
from .scheduler import TaskScheduler
from .storage import ConversationRepository, FunnelRepository, JsonFileStore, parse_funnels
from .webhooks import IncomingMessage, KirvanoEvent, process_kirvano_event, token_matches

logger = logging.getLogger(__name__)


async def _http_error_envelope(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.detail})


async def _validation_error_envelope(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": ".".join(str(loc) for loc in error["loc"] if loc != "body"), "message": error["msg"]}
        for error in exc.errors()
    ]
    return JSONResponse(status_code=422, content={"success": False, "error": errors})


def _validation_detail(exc: ValidationError) -> list:
    return [
        {"field": ".".join(str(loc) for loc in error["loc"]), "message": error["msg"]}
        for error in exc.errors()
    ]


class FunnelApplication:
    """Composes the FastAPI app and exposes the service facade."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[EvolutionClient] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self.events = EventLog(self.settings.event_capacity)
        self.funnels = FunnelRepository(JsonFileStore(self.settings.funnels_file), self.events)
        self.conversations = ConversationRepository(JsonFileStore(self.settings.conversations_file), self.events)
        self.client = client or EvolutionClient(
            self.settings.evolution_base_url,
            self.settings.evolution_api_key,
            timeout=self.settings.request_timeout,
        )
        self.scheduler = TaskScheduler(sleep=sleep)
        self.engine = FunnelEngine(
            self.funnels,
            self.conversations,
            self.client,
            self.events,
            self.scheduler,
            self.settings.instance_names,
            step_gap=self.settings.step_gap_seconds,
            pix_timeout=self.settings.pix_timeout_seconds,
            sleep=sleep,
        )

        self.app = FastAPI(title="Kirvano WhatsApp Funnels", version="1.0.0")
        self.app.add_exception_handler(StarletteHTTPException, _http_error_envelope)
        self.app.add_exception_handler(RequestValidationError, _validation_error_envelope)
        self._configure_routes()
        if self.settings.public_dir.is_dir():
            self.app.mount("/", StaticFiles(directory=str(self.settings.public_dir), html=True), name="public")

    def initialise(self) -> None:
        self.funnels.load()
        self.conversations.load()
        self.engine.rebuild_sticky()
        self.events.add(
            "SYSTEM",
            f"Servidor pronto: {len(self.settings.instance_names)} instâncias, Evolution em {self.settings.evolution_base_url}",
        )

    # ------------------------------------------------------------------
    # Route wiring
    # ------------------------------------------------------------------

    def _configure_routes(self) -> None:
        app = self.app

        @app.on_event("startup")
        async def _startup() -> None:
            await run_in_threadpool(self.initialise)

        @app.on_event("shutdown")
        async def _shutdown() -> None:
            cancelled = self.scheduler.cancel_all()
            if cancelled:
                logger.info("Cancelled %d pending funnel timers", cancelled)

        @app.get("/health")
        async def health() -> Dict[str, str]:
            return {"status": "ok"}

        # --------------------------- Webhooks --------------------------

        @app.post("/webhook/kirvano")
        async def kirvano_webhook(
            payload: Dict[str, Any] = Body(...),
            security_token: Optional[str] = Header(default=None, alias="security-token"),
        ):
            if not token_matches(self.settings.kirvano_webhook_token, security_token):
                raise HTTPException(status_code=401, detail="Token inválido")
            self.events.add("KIRVANO_WEBHOOK", "Webhook recebido", payload)
            try:
                event = KirvanoEvent.from_payload(payload)
                if event.remote_jid is None:
                    return {"success": False, "error": "Telefone não encontrado"}
                await process_kirvano_event(self.engine, event)
            except Exception as exc:  # pylint: disable=broad-except
                self.events.add("KIRVANO_ERROR", str(exc), {"body": payload})
                return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})
            return {"success": True, "message": "Processado"}

        @app.post("/webhook/evolution")
        async def evolution_webhook(payload: Dict[str, Any] = Body(...)):
            try:
                message = IncomingMessage.from_payload(payload)
                if message is None:
                    return {"success": True, "message": "Dados inválidos"}
                if message.from_me:
                    return {"success": True, "message": "Mensagem do sistema"}
                if not await self.engine.handle_reply(message.remote_jid):
                    return {"success": True, "message": "Nenhuma ação necessária"}
            except Exception as exc:  # pylint: disable=broad-except
                self.events.add("EVOLUTION_ERROR", str(exc), {"body": payload})
                return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})
            return {"success": True, "message": "Resposta processada"}

        # -------------------------- Funnel admin -----------------------

        @app.get("/api/funnels")
        async def list_funnels():
            return {"success": True, "data": [funnel.to_dict() for funnel in self.funnels.list()]}

        @app.get("/api/funnels/{funnel_id}")
        async def get_funnel(funnel_id: str):
            try:
                funnel = self.funnels.require(funnel_id)
            except FunnelNotFoundError as exc:
                raise HTTPException(status_code=404, detail="Funil não encontrado") from exc
            return {"success": True, "data": funnel.to_dict()}

        @app.put("/api/funnels/{funnel_id}")
        async def put_funnel(funnel_id: str, payload: Dict[str, Any] = Body(...)):
            try:
                funnel = Funnel.model_validate({**payload, "id": funnel_id})
            except ValidationError as exc:
                raise HTTPException(status_code=422, detail=_validation_detail(exc)) from exc
            self.funnels.upsert(funnel)
            if not await self.funnels.persist():
                raise HTTPException(status_code=500, detail="Erro ao salvar funis")
            return {"success": True, "data": funnel.to_dict()}

        @app.post("/api/funnels/export")
        async def export_funnels():
            return {"success": True, "data": self.funnels.snapshot()}

        @app.post("/api/funnels/import")
        async def import_funnels(payload: Dict[str, Any] = Body(...)):
            try:
                imported = parse_funnels(payload)
            except ValidationError as exc:
                raise HTTPException(status_code=422, detail=_validation_detail(exc)) from exc
            self.funnels.replace_all(imported)
            if not await self.funnels.persist():
                raise HTTPException(status_code=500, detail="Erro ao salvar funis")
            return {"success": True, "message": f"{len(self.funnels)} funis importados"}

        # ------------------------- Monitoring --------------------------

        @app.get("/api/conversations")
        async def list_conversations():
            return {"success": True, "data": [conv.to_dict() for conv in self.conversations.list()]}

        @app.get("/api/logs")
        async def list_logs(limit: int = 100):
            return {"success": True, "data": self.events.recent(limit)}


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Factory for ASGI servers."""
    return FunnelApplication(settings).app


# Module level instance for ``uvicorn funnel_server.main:app``
application = FunnelApplication()
app = application.app
