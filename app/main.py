import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.router import router
from app.config import settings
from app.models.database import init_db
from app.services.business_settings import BusinessSettingsStore
from app.services.catalog import CatalogRepository
from app.services.dialogue import DialogueConfig, ProductDialogue
from app.services.generator import AnthropicContentGenerator
from app.services.images import ImageIngestionPipeline
from app.services.state_store import ConversationStateStore
from app.services.telegram import TelegramClient
from app.services.woocommerce import WooCommerceClient

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    await init_db(settings.SQLITE_DB_PATH)

    woocommerce = WooCommerceClient(
        settings.WOOCOMMERCE_API_URL,
        settings.WOOCOMMERCE_CONSUMER_KEY,
        settings.WOOCOMMERCE_CONSUMER_SECRET,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )
    image_http = httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS)
    business_settings = BusinessSettingsStore(settings.BUSINESS_SETTINGS_PATH)
    state_store = ConversationStateStore(settings.SQLITE_DB_PATH)

    app.state.state_store = state_store
    app.state.business_settings = business_settings
    app.state.dialogue = ProductDialogue(
        store=state_store,
        pipeline=ImageIngestionPipeline(woocommerce, image_http),
        generator=AnthropicContentGenerator(
            api_key=settings.ANTHROPIC_API_KEY,
            model=settings.CLAUDE_MODEL,
            max_tokens=settings.AI_MAX_TOKENS,
            max_retries=settings.AI_MAX_RETRIES,
            timeout=settings.TURN_TIMEOUT_SECONDS,
            settings_store=business_settings,
        ),
        catalog=CatalogRepository(woocommerce, category_ttl=settings.CATEGORY_CACHE_TTL_SECONDS),
        business_settings=business_settings,
        config=DialogueConfig.from_settings(settings),
    )
    app.state.telegram = None
    if settings.TELEGRAM_BOT_TOKEN:
        app.state.telegram = TelegramClient(settings.TELEGRAM_BOT_TOKEN, timeout=settings.HTTP_TIMEOUT_SECONDS)
    else:
        logger.warning("TELEGRAM_BOT_TOKEN is not set. The Telegram webhook will not work.")

    yield

    await woocommerce.close()
    await image_http.aclose()
    if app.state.telegram is not None:
        await app.state.telegram.close()


app = FastAPI(
    title="Product Creation Bot",
    description="A chat assistant that drafts WooCommerce products with AI and publishes them.",
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


app.include_router(router)


@app.get("/api/health")
async def health():
    return {"status": "ok"}
