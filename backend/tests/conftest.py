"""Shared pytest fixtures for Canopy tests."""

import pytest
from httpx import ASGITransport, AsyncClient

from canopy.config import AppConfig, GenerationConfig
from canopy.db.connection import Database
from canopy.export.router import get_export_service
from canopy.export.service import ExportService
from canopy.generation.service import GenerationService
from canopy.generation.slots import GenerationSlots
from canopy.importer.router import get_import_service
from canopy.importer.service import ImportService
from canopy.main import app
from canopy.providers.registry import clear_providers, register_provider
from canopy.sessions.controller import SessionController
from canopy.sessions.router import get_session_controller
from canopy.trees.router import get_tree_service
from canopy.trees.service import TreeService
from canopy.utils.ids import IdAllocator
from tests.fixtures import ScriptedProvider, content_chunk


@pytest.fixture
async def db():
    """In-memory database for tests."""
    database = await Database.connect(":memory:")
    yield database
    await database.close()


@pytest.fixture
def ids():
    """Fresh id allocator so tests don't share allocation state."""
    return IdAllocator()


@pytest.fixture
async def tree_service(db, ids):
    return TreeService(db, ids=ids)


@pytest.fixture
def slots():
    return GenerationSlots()


@pytest.fixture
def provider():
    """Provider that streams "Hello world" in two chunks."""
    return ScriptedProvider([content_chunk("Hello"), content_chunk(" world")])


@pytest.fixture
def generation_service(tree_service, slots, provider):
    return GenerationService(
        tree_service, slots, config=GenerationConfig(provider="fake"), provider=provider,
    )


@pytest.fixture
def controller(tree_service, generation_service):
    return SessionController(tree_service, generation_service)


@pytest.fixture
async def client(db, ids, tree_service, provider):
    """Async test client with in-memory DB and a scripted provider wired into the app."""
    config = AppConfig(generation=GenerationConfig(provider="fake"))
    register_provider(provider)
    gen_service = GenerationService(tree_service, GenerationSlots(), config=config.generation)
    controller = SessionController(tree_service, gen_service)
    export_service = ExportService(db)
    import_service = ImportService(db, ids=ids)

    app.dependency_overrides[get_tree_service] = lambda: tree_service
    app.dependency_overrides[get_session_controller] = lambda: controller
    app.dependency_overrides[get_export_service] = lambda: export_service
    app.dependency_overrides[get_import_service] = lambda: import_service
    app.state.config = config
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
    app.dependency_overrides.clear()
    clear_providers()
