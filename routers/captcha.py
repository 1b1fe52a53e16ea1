from fastapi import APIRouter, HTTPException, Request, Response

from logging_config import get_logger
from schemas.captcha import CaptchaResponse

logger = get_logger(__name__)

captcha_router = APIRouter(prefix="/api", tags=["captcha"])


@captcha_router.get("/captcha", response_model=CaptchaResponse)
def get_captcha(request: Request, response: Response):
    """
    Issue a one-time CAPTCHA challenge.

    The answer never leaves the server; a join-room event later carries the id
    together with the user's answer. Rendering is CPU bound, so this runs in the
    threadpool rather than on the event loop.
    """
    client_host = request.client.host if request.client else "unknown"
    store = request.app.state.captcha_store
    try:
        challenge = store.create()
    except Exception as e:
        logger.error(f"Error generating captcha for {client_host}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to generate captcha")

    logger.info(f"Captcha {challenge.id} issued to {client_host}")
    response.headers["Cache-Control"] = "no-store"
    return CaptchaResponse(id=challenge.id, renderable=challenge.renderable)
