from fastapi import APIRouter
from app.api.chat import router as chat_router
from app.api.sessions import router as sessions_router
from app.api.settings import router as settings_router
from app.api.telegram import router as telegram_router

router = APIRouter()
router.include_router(chat_router)
router.include_router(sessions_router)
router.include_router(settings_router)
router.include_router(telegram_router)
