from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from supply_portal.auth import Claim, Role
from supply_portal.request_context import set_request_context


CLAIM_EXEMPT_PATHS = {'/health', '/docs', '/openapi.json'}

USER_ID_HEADER = 'x-user-id'
ROLE_HEADER = 'x-user-role'
NAME_HEADER = 'x-user-name'
FRANCHISE_HEADER = 'x-franchise-id'
VENDOR_HEADER = 'x-vendor-id'


def _clean(value: str | None) -> str | None:
    cleaned = (value or '').strip()
    return cleaned or None


def load_claim_from_headers(headers) -> Claim | None:
    """Builds the claim forwarded by the gateway; the token itself never reaches this service."""
    user_id = _clean(headers.get(USER_ID_HEADER))
    raw_role = _clean(headers.get(ROLE_HEADER))
    if not user_id or not raw_role:
        return None
    try:
        role = Role(raw_role.upper())
    except ValueError:
        return None
    return Claim(
        user_id=user_id,
        role=role,
        name=_clean(headers.get(NAME_HEADER)) or '',
        franchise_id=_clean(headers.get(FRANCHISE_HEADER)),
        vendor_id=_clean(headers.get(VENDOR_HEADER)),
    )


def install_claim_middleware(app: FastAPI) -> None:
    @app.middleware('http')
    async def claim_middleware(request: Request, call_next):
        claim = load_claim_from_headers(request.headers)
        request.state.claim = claim

        if request.url.path not in CLAIM_EXEMPT_PATHS and claim is None:
            return JSONResponse({'error': 'Unauthorized', 'code': 'UNAUTHORIZED'}, status_code=401)

        set_request_context(user_id=claim.user_id if claim else None)
        return await call_next(request)
