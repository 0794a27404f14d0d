import hmac
from typing import Optional

from fastapi import Header, Request

from .errors import AuthError
from .service import RequestContext


def merchant_context(request: Request, x_api_key: Optional[str] = Header(default=None)) -> RequestContext:
    if not x_api_key:
        raise AuthError("missing X-Api-Key header", field="X-Api-Key")
    keys = request.app.state.settings.merchant_api_keys
    merchant_id = keys.get(x_api_key)
    if merchant_id is None:
        raise AuthError("invalid merchant API key", field="X-Api-Key")
    return RequestContext(merchant_id=merchant_id, request_id=getattr(request.state, "request_id", "-"))


def admin_auth(request: Request, authorization: Optional[str] = Header(default=None)) -> None:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthError("missing bearer token", field="Authorization")
    token = authorization.split(" ", 1)[1]
    if not hmac.compare_digest(token, request.app.state.settings.admin_token):
        raise AuthError("invalid admin token", field="Authorization")
