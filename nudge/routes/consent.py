"""
Consent landing route. Google redirects the consent surface here.
"""

import html

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import HTMLResponse

from nudge.infrastructure.observability.logging import get_logger
from nudge.models.domain.nudge_domain import ConsentSignal
from nudge.services.consent.callback_service import ConsentCallbackService, InvalidConsentState

logger = get_logger(__name__)

router = APIRouter(tags=["consent"])


def get_callback_service(request: Request) -> ConsentCallbackService:
    return request.app.state.services.callback


def _render_page(signal: ConsentSignal) -> str:
    if signal.status == "success":
        title = "Gmail connected"
        message = "You can close this window and return to your nudges."
    else:
        title = "Gmail connection failed"
        message = html.escape(signal.error or "Authentication failed")

    return (
        '<!doctype html><html><head><meta name="viewport" content="width=device-width, initial-scale=1"/>'
        f"<title>{title}</title></head>"
        '<body style="font-family:sans-serif;text-align:center;padding:40px;">'
        f"<h2>{title}</h2><p>{message}</p>"
        "<script>setTimeout(function () { window.close(); }, 1500);</script>"
        "</body></html>"
    )


@router.get("/oauth2callback", response_class=HTMLResponse)
async def oauth2callback(
    state: str = Query(..., description="State issued when consent started"),
    code: str | None = Query(None),
    error: str | None = Query(None),
    service: ConsentCallbackService = Depends(get_callback_service),
):
    """
    Complete a consent attempt.

    Raises:
        400: Unknown, expired or already used state
    """
    logger.info(
        "Consent callback received",
        state_preview=state[:8] + "...",
        has_code=bool(code),
        provider_error=error,
    )

    try:
        signal = await service.complete(state, code=code, error=error)
    except InvalidConsentState as e:
        logger.warning("Rejected consent callback", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Sign-in link expired or already used. Please start again.",
        ) from None

    return HTMLResponse(_render_page(signal))
