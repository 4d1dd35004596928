import logging

from fastapi import APIRouter

from .proxy.route import router as proxy_router

router = APIRouter()

logger = logging.getLogger("uvicorn.error")

router.include_router(proxy_router)
logger.info("Proxy routes mounted under /api")
