"""Deals service.

FastAPI application exposing the in-conversation deal lifecycle:
- Offer negotiation
- Escrow payment with a one-time delivery code
- Delivery-code verification with progressive lockout
- Settlement into the deliverer's wallet

Caller identity is taken from the X-User-Id header.
"""

from typing import Optional

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse

from src.config import config, validate_config_for_service
from src.database import Database, db
from src.errors import DealError, ForbiddenError, LockoutError, ValidationError
from src.logging_utils import CorrelationIdContext, get_correlation_id, get_logger, setup_logging
from src.models import (
    ConfirmDeliveryRequest,
    CreateConversationRequest,
    CreateListingRequest,
    FeeCalculationRequest,
    Message,
    RespondToOfferRequest,
    SubmitOfferRequest,
    TopUpRequest,
)

from .fees import calculate_platform_fee
from .service import DealService

# Validate configuration
validate_config_for_service("deals")

# Setup logging
setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)


def _dump_message(message: Message) -> dict:
    return message.model_dump(mode="json", by_alias=True)


def _require_user(user_id: Optional[str]) -> str:
    if not user_id:
        raise ValidationError("Missing X-User-Id header", field="X-User-Id")
    return user_id


def _require_owner(owner_id: str, user_id: Optional[str]) -> str:
    if _require_user(user_id) != owner_id:
        raise ForbiddenError("You can only access your own wallet")
    return user_id


def create_app(database: Optional[Database] = None, service: Optional[DealService] = None) -> FastAPI:
    """Build the FastAPI application around a database (or a prepared service)."""
    database = database or db
    deals = service or DealService(database)

    app = FastAPI(
        title="Deals",
        description="Offer negotiation, escrow and delivery confirmation",
    )
    app.state.deals = deals

    @app.on_event("startup")
    async def startup():
        """Initialize database on startup."""
        logger.info("Initializing deals service...")
        await deals.db.initialize()
        logger.info("Deals service initialized")

    @app.middleware("http")
    async def correlation_middleware(request: Request, call_next):
        with CorrelationIdContext(request.headers.get("X-Correlation-Id")) as correlation_id:
            response = await call_next(request)
            response.headers["X-Correlation-Id"] = correlation_id
            return response

    @app.exception_handler(DealError)
    async def deal_error_handler(request: Request, exc: DealError):
        if exc.http_status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        else:
            logger.warning(f"{request.method} {request.url.path} rejected: {exc.error_code} {exc.message}")
        headers = {}
        if isinstance(exc, LockoutError):
            headers["Retry-After"] = str(exc.retry_after_seconds)
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict(), headers=headers)

    @app.get("/health")
    async def health_check() -> dict:
        """Health check endpoint."""
        return {"status": "ok", "service": "deals"}

    @app.post("/listings", status_code=201)
    async def create_listing(
        request: CreateListingRequest,
        x_user_id: str = Header(None, alias="X-User-Id"),
    ):
        listing = await deals.create_listing(
            _require_user(x_user_id), request.type, request.price, request.title, request.id
        )
        return listing.model_dump(mode="json")

    @app.get("/listings/{delivery_id}")
    async def get_listing(delivery_id: str):
        listing = await deals.listings.get_listing(delivery_id)
        return listing.model_dump(mode="json")

    @app.post("/conversations", status_code=201)
    async def open_conversation(
        request: CreateConversationRequest,
        x_user_id: str = Header(None, alias="X-User-Id"),
    ):
        conversation = await deals.open_conversation(request.delivery_id, _require_user(x_user_id))
        return conversation.model_dump(mode="json")

    @app.get("/conversations/{conversation_id}/messages")
    async def list_messages(conversation_id: str, x_user_id: str = Header(None, alias="X-User-Id")):
        """List the feed as the caller may see it."""
        with CorrelationIdContext(get_correlation_id(), conversation_id):
            messages = await deals.list_messages(conversation_id, _require_user(x_user_id))
            return {"messages": [_dump_message(m) for m in messages]}

    @app.get("/conversations/{conversation_id}/deal")
    async def get_deal(conversation_id: str, x_user_id: str = Header(None, alias="X-User-Id")):
        status = await deals.get_deal_status(conversation_id, _require_user(x_user_id))
        return status.model_dump(mode="json", by_alias=True)

    @app.post("/conversations/{conversation_id}/offers", status_code=201)
    async def submit_offer(
        conversation_id: str,
        request: SubmitOfferRequest,
        x_user_id: str = Header(None, alias="X-User-Id"),
    ):
        """Propose a price for the delivery."""
        with CorrelationIdContext(get_correlation_id(), conversation_id):
            message = await deals.submit_offer(
                conversation_id, _require_user(x_user_id), request.price, request.message
            )
            return {"success": True, "message": _dump_message(message)}

    @app.post("/offers/respond")
    async def respond_to_offer(
        request: RespondToOfferRequest,
        x_user_id: str = Header(None, alias="X-User-Id"),
    ):
        """Accept or reject an offer."""
        message = await deals.respond_to_offer(request.message_id, _require_user(x_user_id), request.action)
        with CorrelationIdContext(get_correlation_id(), message.conversation_id):
            logger.info(f"Offer {request.message_id} response recorded")
        return {"success": True, "action": request.action, "message": _dump_message(message)}

    @app.post("/platform-fee/calculate")
    async def platform_fee(request: FeeCalculationRequest):
        if request.amount <= 0:
            raise ValidationError("Valid amount is required", field="amount")
        breakdown = calculate_platform_fee(request.amount, deals.escrow.fee_schedule)
        return {"success": True, **breakdown.model_dump(by_alias=True)}

    @app.post("/conversations/{conversation_id}/payment", status_code=201)
    async def pay(
        conversation_id: str,
        x_user_id: str = Header(None, alias="X-User-Id"),
        x_user_name: str = Header(None, alias="X-User-Name"),
    ):
        """Pay the agreed price into escrow."""
        with CorrelationIdContext(get_correlation_id(), conversation_id):
            message = await deals.create_escrow(conversation_id, _require_user(x_user_id), x_user_name)
            return {"success": True, "message": _dump_message(message)}

    @app.post("/conversations/{conversation_id}/confirm-delivery")
    async def confirm_delivery(
        conversation_id: str,
        request: ConfirmDeliveryRequest,
        x_user_id: str = Header(None, alias="X-User-Id"),
        x_user_name: str = Header(None, alias="X-User-Name"),
    ):
        """Verify the delivery code and release the escrow."""
        with CorrelationIdContext(get_correlation_id(), conversation_id):
            result = await deals.confirm_delivery(
                conversation_id, _require_user(x_user_id), request.code, x_user_name
            )
            return {
                "success": True,
                "message": _dump_message(result.confirmation),
                "transaction": result.transaction.model_dump(mode="json"),
                "newBalance": result.new_balance,
            }

    @app.get("/conversations/{conversation_id}/code-attempts")
    async def code_attempts(conversation_id: str, x_user_id: str = Header(None, alias="X-User-Id")):
        status = await deals.code_attempt_status(conversation_id, _require_user(x_user_id))
        return status.model_dump(mode="json", by_alias=True)

    @app.get("/wallets/{user_id}")
    async def wallet(user_id: str, x_user_id: str = Header(None, alias="X-User-Id")):
        _require_owner(user_id, x_user_id)
        balance = await deals.wallet_balance(user_id)
        transactions = await deals.ledger.list_transactions(user_id)
        return {
            "userId": user_id,
            "balance": balance,
            "currency": config.ledger_currency,
            "transactions": [t.model_dump(mode="json") for t in transactions],
        }

    @app.post("/wallets/{user_id}/credit")
    async def top_up(
        user_id: str,
        request: TopUpRequest,
        x_user_id: str = Header(None, alias="X-User-Id"),
    ):
        """Credit the caller's own wallet."""
        _require_owner(user_id, x_user_id)
        result = await deals.top_up(user_id, request.amount, request.description)
        return {
            "success": True,
            "transaction": result.transaction.model_dump(mode="json"),
            "balance": result.new_balance,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting deals service on {config.deals_host}:{config.deals_port}")
    uvicorn.run(
        app,
        host=config.deals_host,
        port=config.deals_port,
        log_level=config.log_level.lower(),
    )
