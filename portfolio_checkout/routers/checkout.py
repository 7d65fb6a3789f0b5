from typing import Awaitable, Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from ..errors import InvalidTransition, SessionNotFound
from ..schemas import (
    CheckoutView,
    CouponIn,
    GatewayCallbackIn,
    GatewayChoiceIn,
    IdentityIn,
    PlanIn,
    SignatureCallbackIn,
    StartCheckoutIn,
)
from ..services.controller import CheckoutController, CheckoutManager
from ..utils import bearer_token, get_manager, require_bearer_token

router = APIRouter(prefix="/checkout", tags=["checkout"])


async def _controller(manager: CheckoutManager, session_id: str) -> CheckoutController:
    try:
        return await manager.get(session_id)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Checkout session not found")


async def _guard(result: Awaitable[CheckoutView]) -> CheckoutView:
    try:
        return await result
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@router.post("/sessions", response_model=CheckoutView, status_code=201)
async def start_checkout(payload: StartCheckoutIn, manager: CheckoutManager = Depends(get_manager)):
    """Open a checkout for a product and plan; the session starts at ``plan``."""
    controller = await manager.start(payload)
    return controller.view()


@router.get("/sessions/{session_id}", response_model=CheckoutView)
async def get_checkout(session_id: str, manager: CheckoutManager = Depends(get_manager)):
    controller = await _controller(manager, session_id)
    return controller.view()


@router.post("/sessions/{session_id}/plan", response_model=CheckoutView)
async def change_plan(session_id: str, payload: PlanIn, manager: CheckoutManager = Depends(get_manager)):
    controller = await _controller(manager, session_id)
    return await _guard(controller.change_plan(payload.plan_type, payload.base_amount))


@router.post("/sessions/{session_id}/coupon", response_model=CheckoutView)
async def apply_coupon(session_id: str, payload: CouponIn, manager: CheckoutManager = Depends(get_manager)):
    controller = await _controller(manager, session_id)
    return await _guard(controller.apply_coupon(payload.code))


@router.delete("/sessions/{session_id}/coupon", response_model=CheckoutView)
async def remove_coupon(session_id: str, manager: CheckoutManager = Depends(get_manager)):
    controller = await _controller(manager, session_id)
    return await _guard(controller.remove_coupon())


@router.post("/sessions/{session_id}/confirm", response_model=CheckoutView)
async def confirm(
    session_id: str,
    token: Optional[str] = Depends(bearer_token),
    manager: CheckoutManager = Depends(get_manager),
):
    """User pressed "Pay"; without a token the session waits in ``auth``."""
    controller = await _controller(manager, session_id)
    return await _guard(controller.confirm(token))


@router.post("/sessions/{session_id}/authenticated", response_model=CheckoutView)
async def authenticated(
    session_id: str,
    token: str = Depends(require_bearer_token),
    manager: CheckoutManager = Depends(get_manager),
):
    controller = await _controller(manager, session_id)
    return await _guard(controller.authenticated(token))


@router.post("/sessions/{session_id}/consent", response_model=CheckoutView)
async def accept_consent(
    session_id: str,
    token: Optional[str] = Depends(bearer_token),
    manager: CheckoutManager = Depends(get_manager),
):
    controller = await _controller(manager, session_id)
    return await _guard(controller.accept_consent(token))


@router.post("/sessions/{session_id}/identity", response_model=CheckoutView)
async def submit_identity(
    session_id: str,
    payload: IdentityIn,
    token: Optional[str] = Depends(bearer_token),
    manager: CheckoutManager = Depends(get_manager),
):
    controller = await _controller(manager, session_id)
    return await _guard(controller.submit_identity(token, payload))


@router.post("/sessions/{session_id}/gateway", response_model=CheckoutView)
async def choose_gateway(
    session_id: str,
    payload: GatewayChoiceIn,
    token: Optional[str] = Depends(bearer_token),
    manager: CheckoutManager = Depends(get_manager),
):
    controller = await _controller(manager, session_id)
    return await _guard(controller.choose_gateway(token, payload.gateway))


@router.post("/sessions/{session_id}/signature/callback", response_model=CheckoutView)
async def signature_callback(
    session_id: str,
    payload: SignatureCallbackIn,
    token: Optional[str] = Depends(bearer_token),
    manager: CheckoutManager = Depends(get_manager),
):
    """Completion hint from the signing window; the backend still has the final word."""
    controller = await _controller(manager, session_id)
    return await _guard(controller.signature_callback(token, payload.document_id))


@router.post("/sessions/{session_id}/signature/wait", response_model=CheckoutView)
async def wait_for_signature(
    session_id: str,
    token: Optional[str] = Depends(bearer_token),
    manager: CheckoutManager = Depends(get_manager),
):
    controller = await _controller(manager, session_id)
    return await _guard(controller.wait_for_signature(token))


@router.post("/sessions/{session_id}/gateway/callback", response_model=CheckoutView)
async def gateway_callback(
    session_id: str,
    payload: GatewayCallbackIn,
    token: Optional[str] = Depends(bearer_token),
    manager: CheckoutManager = Depends(get_manager),
):
    controller = await _controller(manager, session_id)
    return await _guard(controller.gateway_callback(token, payload))


@router.post("/sessions/{session_id}/cancel", response_model=CheckoutView)
async def cancel(session_id: str, manager: CheckoutManager = Depends(get_manager)):
    controller = await _controller(manager, session_id)
    return await controller.cancel()


@router.post("/sessions/{session_id}/retry", response_model=CheckoutView)
async def retry(session_id: str, manager: CheckoutManager = Depends(get_manager)):
    controller = await _controller(manager, session_id)
    return await _guard(controller.retry())


@router.delete("/sessions/{session_id}", status_code=204)
async def close_checkout(session_id: str, manager: CheckoutManager = Depends(get_manager)):
    try:
        await manager.close(session_id)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Checkout session not found")


@router.get("/resume", response_model=CheckoutView)
async def resume(
    request: Request,
    token: Optional[str] = Depends(bearer_token),
    manager: CheckoutManager = Depends(get_manager),
):
    """Return leg of a redirect checkout; the ``token`` query parameter is single use."""
    params = dict(request.query_params)
    resumption = params.pop("token", None)
    if not resumption:
        raise HTTPException(status_code=400, detail="Missing resumption token")
    try:
        return await _guard(manager.resume(resumption, token, params))
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Resumption token is invalid or has expired")
