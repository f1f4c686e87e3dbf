"""OAuth setup routes: authorize once, then the sync refreshes on its own."""
import secrets

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse

from exchangesync.api.deps import get_token_manager
from exchangesync.practicepanther.auth import TokenManager
from exchangesync.practicepanther.errors import AuthRequired

router = APIRouter()


@router.get("/authorize")
def authorize(tokens: TokenManager = Depends(get_token_manager)):
    """Send the operator to PP's consent page."""
    return RedirectResponse(tokens.authorization_url(state=secrets.token_urlsafe(16)))


@router.get("/callback")
async def callback(
    code: str = Query(..., min_length=1),
    tokens: TokenManager = Depends(get_token_manager),
):
    """Exchange the authorization code PP redirected back with."""
    try:
        token = await tokens.exchange_authorization_code(code)
    except AuthRequired as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {
        "message": "PracticePanther connected",
        "expires_at": token.expires_at,
        "has_refresh_token": bool(token.refresh_token),
    }


@router.get("/status")
def status(tokens: TokenManager = Depends(get_token_manager)):
    return tokens.token_status()
