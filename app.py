import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import Config
from errors import ErrorCode, RequisitionError
from ledger import StockLedger
from mailer import FcmPushSender, MailerEmailClient, SmtpMailer, TwilioWhatsAppSender
from notifications import ApprovalRules, EmailApiClient, NotificationDispatcher
from numbering import DispatchNumberGenerator
from services import RequisitionService
from store import Directory, Store
from usage import UsageTracker
from views import notifications_router, router, usage_router

logger = logging.getLogger(__name__)


def create_app(
    config=Config,
    store: Store = None,
    mailer=None,
    email_client=None,
    whatsapp=None,
    push=None,
    executor: ThreadPoolExecutor = None,
) -> FastAPI:
    """
    Build the API with its collaborators

    Collaborators default to the configured ones; tests pass fakes for the
    mailer, email client, WhatsApp and push senders.
    """
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    store = store or Store(config.DATABASE_PATH)
    store.init_schema()

    mailer_client = MailerEmailClient(mailer or SmtpMailer.from_config(config), config.PORTAL_URL)
    if email_client is None:
        if config.EMAIL_API_BASE_URL:
            email_client = EmailApiClient(config.EMAIL_API_BASE_URL, config.EMAIL_API_TIMEOUT)
        else:
            email_client = mailer_client

    directory = Directory(store)
    rules = ApprovalRules(directory, config.FINANCE_ROLE, config.FULFILLMENT_ROLE)
    dispatcher = NotificationDispatcher(
        email_client, rules, executor=executor, max_workers=config.NOTIFICATION_WORKERS
    )
    ledger = StockLedger(store)
    numbers = DispatchNumberGenerator(store)

    # Lifecycle management
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        dispatcher.shutdown(wait=True)
        store.close()

    app = FastAPI(title="Lab Requisitions", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.config = config
    app.state.store = store
    app.state.directory = directory
    app.state.ledger = ledger
    app.state.numbers = numbers
    app.state.dispatcher = dispatcher
    app.state.mailer_client = mailer_client
    app.state.whatsapp = whatsapp or TwilioWhatsAppSender.from_config(config)
    app.state.push = push or FcmPushSender.from_config(config)
    app.state.requisitions = RequisitionService(
        store, ledger, numbers, rules, dispatcher, admin_role=config.ADMIN_ROLE
    )
    app.state.usage = UsageTracker(store, ledger.products, config.WASTAGE_THRESHOLDS)

    app.include_router(router)
    app.include_router(usage_router)
    app.include_router(notifications_router)

    @app.exception_handler(RequisitionError)
    async def handle_requisition_error(request: Request, exc: RequisitionError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "detail": {
                    "error_code": ErrorCode.VALIDATION_FAILED,
                    "message": "Request validation failed",
                    "errors": jsonable_encoder(exc.errors()),
                }
            },
        )

    @app.get("/health")
    def health_check():
        """Health check endpoint"""
        return {"status": "healthy"}

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app:create_app", factory=True, host="0.0.0.0", port=8000)
