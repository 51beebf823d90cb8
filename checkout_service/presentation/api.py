from typing import List, Optional
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse

from checkout_service.presentation.schemas import (
    AddItemRequest, CancelRequest, CartResponse, CheckoutRequest, ErrorResponse, OrderResponse,
    PaymentCallbackResponse, PaymentStatusUpdateRequest, PreviewRequest, StatusUpdateRequest,
    UpdateItemRequest, VoucherCheckResponse
)
from checkout_service.application.auditor import AuditReport, ConsistencyAuditor
from checkout_service.application.cart import CartUseCase
from checkout_service.application.checkout import (
    CheckoutDTO, CheckoutPreview, CheckoutUseCase, ShippingQuote
)
from checkout_service.application.get_order import GetOrderUseCase
from checkout_service.application.order_state import OrderStateMachine
from checkout_service.application.process_payment import (
    IngestResult, IngestStatus, ProcessPaymentCallbackUseCase
)
from checkout_service.application.stock import VariantStockManager
from checkout_service.application.vouchers import VoucherEngine
from checkout_service.domain.models import Actor, ActorRole, OrderStatus
from checkout_service.domain.exceptions import (
    AmountMismatchError, CartEmptyError, ConflictError, DomainException, ForbiddenError,
    InsufficientStockError, InvalidSignatureError, InvalidStateError, NotFoundError,
    PaymentGatewayError, VoucherIneligibleError
)
from checkout_service.infrastructure.unit_of_work import UnitOfWork

router = APIRouter()

ERRORS = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


def to_http(error: DomainException) -> HTTPException:
    """Доменная ошибка -> HTTP статус"""
    if isinstance(error, NotFoundError):
        code = 404
    elif isinstance(error, ForbiddenError):
        code = 403
    elif isinstance(error, (CartEmptyError, InvalidSignatureError, AmountMismatchError)):
        code = 400
    elif isinstance(error, (InvalidStateError, InsufficientStockError, VoucherIneligibleError, ConflictError)):
        code = 409
    elif isinstance(error, PaymentGatewayError):
        code = 503
    else:
        code = 400
    return HTTPException(status_code=code, detail=str(error))


# Идентичность приходит от слоя аутентификации
def get_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_role: ActorRole = Header(ActorRole.CUSTOMER)
) -> Actor:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Не передан X-User-Id")
    return Actor(user_id=x_user_id, role=x_user_role)


def get_admin(actor: Actor = Depends(get_actor)) -> Actor:
    if not actor.is_admin:
        raise HTTPException(status_code=403, detail="Требуется роль администратора")
    return actor


# Фабрики для создания use cases
def get_uow(request: Request) -> UnitOfWork:
    return UnitOfWork(request.app.state.session_factory)


def get_cart_use_case(uow: UnitOfWork = Depends(get_uow)):
    return CartUseCase(uow)


def get_process_payment_use_case(request: Request, uow: UnitOfWork = Depends(get_uow)):
    return ProcessPaymentCallbackUseCase(uow, request.app.state.signer)


def get_checkout_use_case(
    request: Request,
    uow: UnitOfWork = Depends(get_uow),
    reconciler: ProcessPaymentCallbackUseCase = Depends(get_process_payment_use_case)
):
    return CheckoutUseCase(
        uow,
        stock_manager=VariantStockManager(uow),
        voucher_engine=VoucherEngine(uow),
        shipping_policy=request.app.state.shipping_policy,
        payment_gateway=request.app.state.payment_gateway,
        payment_reconciler=reconciler
    )


def get_voucher_engine(uow: UnitOfWork = Depends(get_uow)):
    return VoucherEngine(uow)


def get_get_order_use_case(uow: UnitOfWork = Depends(get_uow)):
    return GetOrderUseCase(uow)


def get_state_machine(uow: UnitOfWork = Depends(get_uow)):
    return OrderStateMachine(uow)


def get_auditor(uow: UnitOfWork = Depends(get_uow)):
    return ConsistencyAuditor(uow)


# --- Корзина ---

@router.get("/cart", response_model=CartResponse)
async def get_cart(
    actor: Actor = Depends(get_actor),
    use_case: CartUseCase = Depends(get_cart_use_case)
):
    cart = await use_case.get_or_create_cart(actor.user_id)
    return CartResponse.from_domain(cart)


@router.post("/cart/items", response_model=CartResponse, responses=ERRORS)
async def add_cart_item(
    request: AddItemRequest,
    actor: Actor = Depends(get_actor),
    use_case: CartUseCase = Depends(get_cart_use_case)
):
    """Добавить вариант в корзину (цена фиксируется на момент добавления)"""
    try:
        cart = await use_case.add_item(actor.user_id, request.variant_id, request.quantity)
        return CartResponse.from_domain(cart)
    except DomainException as e:
        raise to_http(e)


@router.put("/cart/items/{variant_id}", response_model=CartResponse, responses=ERRORS)
async def update_cart_item(
    variant_id: str,
    request: UpdateItemRequest,
    actor: Actor = Depends(get_actor),
    use_case: CartUseCase = Depends(get_cart_use_case)
):
    try:
        cart = await use_case.update_item(actor.user_id, variant_id, request.quantity)
        return CartResponse.from_domain(cart)
    except DomainException as e:
        raise to_http(e)


@router.delete("/cart/items/{variant_id}", response_model=CartResponse, responses=ERRORS)
async def remove_cart_item(
    variant_id: str,
    actor: Actor = Depends(get_actor),
    use_case: CartUseCase = Depends(get_cart_use_case)
):
    try:
        cart = await use_case.remove_item(actor.user_id, variant_id)
        return CartResponse.from_domain(cart)
    except DomainException as e:
        raise to_http(e)


# --- Оформление ---

@router.post(
    "/cart/checkout",
    response_model=OrderResponse,
    responses=ERRORS,
    status_code=status.HTTP_201_CREATED
)
async def checkout(
    request: CheckoutRequest,
    actor: Actor = Depends(get_actor),
    use_case: CheckoutUseCase = Depends(get_checkout_use_case)
):
    """Оформить корзину как заказ"""
    try:
        dto = CheckoutDTO(
            user_id=actor.user_id,
            address_id=request.address_id,
            payment_method_id=request.payment_method_id,
            voucher_code=request.voucher_code,
            cart_id=request.cart_id
        )
        result = await use_case(dto)
        return OrderResponse.from_domain(result.order, payment_url=result.payment_url)
    except DomainException as e:
        raise to_http(e)


@router.post("/cart/checkout/preview", response_model=CheckoutPreview, responses=ERRORS)
async def checkout_preview(
    request: PreviewRequest,
    actor: Actor = Depends(get_actor),
    use_case: CheckoutUseCase = Depends(get_checkout_use_case)
):
    """Итоги корзины без оформления"""
    try:
        return await use_case.preview(actor.user_id, request.address_id, request.voucher_code)
    except DomainException as e:
        raise to_http(e)


@router.get("/shipping-fee", response_model=ShippingQuote, responses=ERRORS)
async def shipping_fee(
    address: str,
    actor: Actor = Depends(get_actor),
    use_case: CheckoutUseCase = Depends(get_checkout_use_case)
):
    try:
        return await use_case.shipping_fee(actor.user_id, address)
    except DomainException as e:
        raise to_http(e)


@router.get("/vouchers/{code}/check", response_model=VoucherCheckResponse, responses=ERRORS)
async def check_voucher(
    code: str,
    total: Optional[int] = None,
    actor: Actor = Depends(get_actor),
    engine: VoucherEngine = Depends(get_voucher_engine)
):
    """Предварительная проверка промокода, ничего не меняет"""
    try:
        check = await engine.check_usage(code, actor.user_id, total)
        return VoucherCheckResponse(
            code=check.code,
            eligible=True,
            discount_percent=check.discount_percent,
            maximum_discount_amount=check.maximum_discount_amount,
            discount_amount=check.discount_amount
        )
    except VoucherIneligibleError as e:
        return VoucherCheckResponse(code=code, eligible=False, reason=str(e), kind=e.kind)
    except DomainException as e:
        raise to_http(e)


# --- Заказы ---

@router.get("/orders", response_model=List[OrderResponse])
async def list_orders(
    order_status: Optional[OrderStatus] = None,
    actor: Actor = Depends(get_actor),
    use_case: GetOrderUseCase = Depends(get_get_order_use_case)
):
    orders = await use_case.list_orders(actor, order_status)
    return [OrderResponse.from_domain(order) for order in orders]


@router.get("/orders/code/{order_code}", response_model=OrderResponse, responses=ERRORS)
async def get_order_by_code(
    order_code: str,
    actor: Actor = Depends(get_actor),
    use_case: GetOrderUseCase = Depends(get_get_order_use_case)
):
    """Заказ по коду (страница возврата после оплаты)"""
    try:
        order = await use_case.by_code(order_code, actor)
        return OrderResponse.from_domain(order)
    except DomainException as e:
        raise to_http(e)


@router.get("/orders/{order_id}", response_model=OrderResponse, responses=ERRORS)
async def get_order(
    order_id: str,
    actor: Actor = Depends(get_actor),
    use_case: GetOrderUseCase = Depends(get_get_order_use_case)
):
    """Получить заказ по ID"""
    try:
        order = await use_case(order_id, actor)
        return OrderResponse.from_domain(order)
    except DomainException as e:
        raise to_http(e)


@router.put("/orders/{order_id}/cancel", response_model=OrderResponse, responses=ERRORS)
async def cancel_order(
    order_id: str,
    request: Optional[CancelRequest] = None,
    actor: Actor = Depends(get_actor),
    machine: OrderStateMachine = Depends(get_state_machine)
):
    try:
        order = await machine.cancel(order_id, actor, request.reason if request else None)
        return OrderResponse.from_domain(order)
    except DomainException as e:
        raise to_http(e)


# --- Администрирование ---

@router.put("/orders/admin/{order_id}/status", response_model=OrderResponse, responses=ERRORS)
async def update_order_status(
    order_id: str,
    request: StatusUpdateRequest,
    actor: Actor = Depends(get_admin),
    machine: OrderStateMachine = Depends(get_state_machine)
):
    """Переход на один шаг вперед или отмена"""
    try:
        order = await machine.transition(order_id, actor, request.status)
        return OrderResponse.from_domain(order)
    except DomainException as e:
        raise to_http(e)


@router.put("/orders/admin/{order_id}/payment-status", response_model=OrderResponse, responses=ERRORS)
async def update_payment_status(
    order_id: str,
    request: PaymentStatusUpdateRequest,
    actor: Actor = Depends(get_admin),
    machine: OrderStateMachine = Depends(get_state_machine)
):
    """Ручная правка статуса оплаты (пишется в историю)"""
    try:
        order = await machine.override_payment_status(order_id, actor, request.payment_status, request.note)
        return OrderResponse.from_domain(order)
    except DomainException as e:
        raise to_http(e)


@router.get("/orders/admin/{order_id}/validate", response_model=AuditReport, responses=ERRORS)
async def validate_order(
    order_id: str,
    actor: Actor = Depends(get_admin),
    auditor: ConsistencyAuditor = Depends(get_auditor)
):
    try:
        return await auditor.validate(order_id)
    except DomainException as e:
        raise to_http(e)


@router.put("/orders/admin/{order_id}/auto-fix", response_model=OrderResponse, responses=ERRORS)
async def auto_fix_order(
    order_id: str,
    actor: Actor = Depends(get_admin),
    auditor: ConsistencyAuditor = Depends(get_auditor)
):
    try:
        order = await auditor.auto_fix(order_id, actor)
        return OrderResponse.from_domain(order)
    except DomainException as e:
        raise to_http(e)


@router.get("/orders/admin/{order_id}/history", responses=ERRORS)
async def order_history(
    order_id: str,
    actor: Actor = Depends(get_admin),
    use_case: GetOrderUseCase = Depends(get_get_order_use_case)
):
    try:
        return await use_case.history(order_id, actor)
    except DomainException as e:
        raise to_http(e)


@router.delete("/orders/admin/{order_id}", status_code=status.HTTP_204_NO_CONTENT, responses=ERRORS)
async def delete_order(
    order_id: str,
    actor: Actor = Depends(get_admin),
    machine: OrderStateMachine = Depends(get_state_machine)
):
    """Удаление возможно только для отмененного заказа"""
    try:
        await machine.delete(order_id, actor)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except DomainException as e:
        raise to_http(e)


# --- Платежный шлюз ---

def _callback_response(result: IngestResult) -> JSONResponse:
    if result.status == IngestStatus.ACCEPTED:
        message = "Callback обработан"
    elif result.status == IngestStatus.DUPLICATE:
        message = "Callback уже обработан"
    else:
        message = f"Callback отклонен: {result.reason}"
    body = PaymentCallbackResponse(
        status="ok" if result.acknowledged else "rejected",
        message=message,
        order_code=result.order_code,
        payment_status=result.payment_status
    )
    return JSONResponse(
        status_code=200 if result.acknowledged else 400,
        content=body.model_dump(mode="json")
    )


@router.get("/payment/gateway/callback", response_model=PaymentCallbackResponse)
async def payment_return(
    request: Request,
    use_case: ProcessPaymentCallbackUseCase = Depends(get_process_payment_use_case)
):
    """Синхронный возврат пользователя со страницы оплаты"""
    result = await use_case(dict(request.query_params), source="return")
    return _callback_response(result)


@router.post("/payment/gateway/ipn", response_model=PaymentCallbackResponse)
async def payment_ipn(
    request: Request,
    use_case: ProcessPaymentCallbackUseCase = Depends(get_process_payment_use_case)
):
    """Асинхронное уведомление от шлюза (server-to-server)"""
    try:
        payload = await request.json()
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}
    result = await use_case(payload, source="ipn")
    return _callback_response(result)
