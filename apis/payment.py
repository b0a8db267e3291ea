from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse

from core.auth import get_current_user
from core.db import DB
from core.gateways import available_gateways
from core.payment_service import handle_gateway_notify
from .base import success_response


router = APIRouter(prefix="/payment", tags=["支付"])


@router.get("/methods", summary="可用支付方式")
async def payment_methods(current_user: dict = Depends(get_current_user)):
    return success_response(available_gateways())


async def _notify_params(request: Request) -> dict:
    params = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        params.update({k: v for k, v in form.items() if isinstance(v, str)})
    return params


@router.api_route("/notify/{provider}", methods=["GET", "POST"], summary="支付网关异步回调", include_in_schema=False)
async def payment_notify(provider: str, request: Request):
    params = await _notify_params(request)
    session = DB.get_session()
    try:
        status_code, body = handle_gateway_notify(session, provider, params)
    finally:
        session.close()
    return PlainTextResponse(body, status_code=status_code)
