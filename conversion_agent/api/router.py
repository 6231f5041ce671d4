from fastapi import APIRouter
from conversion_agent.api.cart import router as cart_router
from conversion_agent.api.chat import router as chat_router
from conversion_agent.api.sessions import router as sessions_router

router = APIRouter()
router.include_router(sessions_router)
router.include_router(chat_router)
router.include_router(cart_router)
