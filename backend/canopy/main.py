"""Canopy FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from anthropic import AsyncAnthropic
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from canopy.config import load_config
from canopy.db.connection import Database
from canopy.export.router import get_export_service
from canopy.export.router import router as export_router
from canopy.export.service import ExportService
from canopy.generation.service import GenerationService
from canopy.generation.slots import GenerationSlots
from canopy.importer.legacy import LegacyMigrator, load_legacy_dir
from canopy.importer.router import get_import_service
from canopy.importer.router import router as import_router
from canopy.importer.service import ImportService
from canopy.providers.anthropic import AnthropicProvider
from canopy.providers.base import ModelInfo, ProviderError
from canopy.providers.llamacpp import LlamaCppProvider
from canopy.providers.openai import OpenAIProvider
from canopy.providers.openrouter import OpenRouterProvider
from canopy.providers.registry import (
    ProviderNotFoundError,
    clear_providers,
    get_all_providers,
    get_provider,
    register_provider,
)
from canopy.sessions.controller import SessionController
from canopy.sessions.router import get_session_controller
from canopy.sessions.router import router as sessions_router
from canopy.trees.router import get_tree_service, presets_router
from canopy.trees.router import router as trees_router
from canopy.trees.service import TreeService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage database lifecycle and service wiring."""
    # Load .env from backend/ directory (secrets stay out of shell profile)
    load_dotenv(Path(__file__).resolve().parent.parent / ".env")
    config = load_config()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    db = await Database.connect(config.database_path)

    # Tree service; the legacy migration runs on the first conversation listing
    legacy_source = load_legacy_dir(config.legacy_dir) if config.legacy_dir else {}
    service = TreeService(db, migrator=LegacyMigrator(db, legacy_source))
    await service.seed_ids()
    app.dependency_overrides[get_tree_service] = lambda: service

    # The local server is always registered; hosted providers need a key
    register_provider(LlamaCppProvider(base_url=config.llamacpp_base_url))

    if config.anthropic_api_key:
        register_provider(AnthropicProvider(AsyncAnthropic(api_key=config.anthropic_api_key)))

    if config.openai_api_key:
        register_provider(OpenAIProvider(api_key=config.openai_api_key))

    if config.openrouter_api_key:
        register_provider(OpenRouterProvider(api_key=config.openrouter_api_key))

    # Generation and sessions
    slots = GenerationSlots()
    gen_service = GenerationService(service, slots, config=config.generation)
    controller = SessionController(service, gen_service)
    app.dependency_overrides[get_session_controller] = lambda: controller

    # Export service
    export_service = ExportService(db)
    app.dependency_overrides[get_export_service] = lambda: export_service

    # Import service
    import_svc = ImportService(db, ids=service.ids)
    app.dependency_overrides[get_import_service] = lambda: import_svc

    app.state.db = db
    app.state.config = config
    logger.info(
        "Canopy started (db=%s, providers=%s)",
        config.database_path,
        ", ".join(p.name for p in get_all_providers()),
    )
    yield

    for conv_id in slots.active():
        slots.abort(conv_id)
    clear_providers()
    await db.close()


app = FastAPI(
    title="Canopy",
    description="Local-first branching conversation store with streaming generation",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(trees_router)
app.include_router(sessions_router)
app.include_router(presets_router)
app.include_router(export_router)
app.include_router(import_router)


@app.get("/api/health")
async def health() -> dict:
    return {"status": "ok", "version": "0.1.0"}


@app.get("/api/providers")
async def providers() -> list[dict]:
    return [
        {"name": p.name, "available": True, "models": p.suggested_models}
        for p in get_all_providers()
    ]


@app.get("/api/models")
async def models(request: Request, provider: str | None = None) -> list[ModelInfo]:
    """Models served by a provider (default: the configured generation provider)."""
    name = provider or request.app.state.config.generation.provider
    try:
        return await get_provider(name).get_models()
    except ProviderNotFoundError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))
