import httpx
import pytest

from app.models.conversation import StructuredContent
from app.models.database import init_db
from app.services.business_settings import BusinessSettingsStore
from app.services.catalog import CatalogRepository
from app.services.dialogue import DialogueConfig, ProductDialogue
from app.services.images import ImageIngestionPipeline
from app.services.state_store import ConversationStateStore
from tests._support import FakeGenerator, FakeWooCommerce, image_handler


@pytest.fixture
async def db_path(tmp_path):
    path = str(tmp_path / "test.db")
    await init_db(path)
    return path


@pytest.fixture
def woo():
    return FakeWooCommerce()


@pytest.fixture
def generator():
    return FakeGenerator(StructuredContent(name="Premium Leather Sofa", categories=["Furniture"]))


@pytest.fixture
async def image_http():
    client = httpx.AsyncClient(transport=httpx.MockTransport(image_handler))
    yield client
    await client.aclose()


@pytest.fixture
def business_store(tmp_path):
    return BusinessSettingsStore(tmp_path / "settings.json")


@pytest.fixture
def state_store(db_path):
    return ConversationStateStore(db_path)


@pytest.fixture
def make_dialogue(state_store, woo, generator, image_http, business_store):
    def _make(config: DialogueConfig | None = None) -> ProductDialogue:
        return ProductDialogue(
            store=state_store,
            pipeline=ImageIngestionPipeline(woo, image_http),
            generator=generator,
            catalog=CatalogRepository(woo),
            business_settings=business_store,
            config=config or DialogueConfig(),
        )
    return _make


@pytest.fixture
def dialogue(make_dialogue):
    return make_dialogue()
