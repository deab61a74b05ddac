import logging

from fastapi import APIRouter
from fastapi.responses import HTMLResponse

from relay.fetch_gateway.route import router as fetch_router
from relay.origin_proxy.route import router as proxy_router
from relay.origin_proxy.websocket import router as websocket_router
from relay.vars import ORIGIN_URL, PROXY_PREFIX

router = APIRouter()
logger = logging.getLogger("uvicorn.error")

logger.info(f"Relaying {ORIGIN_URL}{PROXY_PREFIX} under {PROXY_PREFIX}")

LANDING_PAGE = f"""<!DOCTYPE html>
<html>
  <head><meta charset="utf-8"><title>Relay</title></head>
  <body>
    <p><a href="{PROXY_PREFIX}/">Open {PROXY_PREFIX.strip("/") or "the app"}</a></p>
  </body>
</html>
"""


@router.get("/", response_class=HTMLResponse)
async def landing_page():
    return LANDING_PAGE


router.include_router(fetch_router)
router.include_router(proxy_router)
router.include_router(websocket_router)
