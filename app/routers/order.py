from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import FileResponse, JSONResponse, RedirectResponse
from pydantic import ValidationError

from app.dependencies import Runtime, get_runtime
from app.logging_config import get_logger
from app.schemas.order import AddressSuggestResponse, WebOrderRequest, WebOrderResponse
from app.services.order_submission import OrderValidationError, order_from_web_form, validate_web_order
from app.services.order_token import ChatOrderToken

logger = get_logger("order_router")

router = APIRouter()

STATIC_DIR = Path(__file__).resolve().parent.parent / "static"

LINK_EXPIRED = "Ссылка устарела. Пожалуйста, запросите новую."
ORDER_ACCEPTED = "Заказ успешно отправлен!"
ORDER_FAILED = "Произошла ошибка. Попробуйте позже."


def _order_error(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=WebOrderResponse(success=False, error=error).model_dump(exclude_none=True),
    )


@router.get("/order")
async def order_page(t: Optional[str] = None, runtime: Runtime = Depends(get_runtime)):
    if not runtime.tokens.verify(t):
        return RedirectResponse(url="/expired.html", status_code=302)
    return FileResponse(STATIC_DIR / "order.html", media_type="text/html")


@router.get("/expired.html")
async def expired_page():
    return FileResponse(STATIC_DIR / "expired.html", media_type="text/html")


@router.post("/api/order")
async def submit_order(request: Request, runtime: Runtime = Depends(get_runtime)):
    """Web form submission for either token kind.

    Expired or forged links get the same answer whatever the cause.
    """
    try:
        body = await request.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        body = {}

    try:
        form = WebOrderRequest.model_validate(body)
    except ValidationError as exc:
        # битый payload отвечает так же, как просроченная ссылка
        logger.warning("Malformed web order", extra={"context": {"error": str(exc)}})
        return _order_error(400, LINK_EXPIRED)

    token = runtime.tokens.verify(form.token)
    if not token:
        logger.info("Web order with invalid token", extra={"context": {"reason": token.reason}})
        return _order_error(400, LINK_EXPIRED)

    try:
        validate_web_order(form)
    except OrderValidationError as exc:
        return _order_error(400, str(exc))

    product_info = token.product_info if isinstance(token, ChatOrderToken) else None
    order = order_from_web_form(form, product_info=product_info)
    try:
        await runtime.submission.submit(order, token)
    except Exception as exc:
        logger.error("Web order processing failed", extra={"context": {"error": str(exc)}}, exc_info=True)
        return _order_error(500, ORDER_FAILED)

    return WebOrderResponse(success=True, message=ORDER_ACCEPTED).model_dump(exclude_none=True)


@router.get("/api/address-suggest", response_model=AddressSuggestResponse)
async def address_suggest(q: Optional[str] = None, runtime: Runtime = Depends(get_runtime)):
    if not q or len(q) < 3:
        return AddressSuggestResponse()
    return AddressSuggestResponse(suggestions=await runtime.dadata.suggest_address(q))
