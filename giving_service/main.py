import hmac
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
import redis

from common.error_handling import AuthorizationError, PersistenceError, add_error_handlers
from common.job_queue import JobOptions, JobQueue
from common.redis_client import create_redis, ping
from common.schemas import ChargeRequest
from common.settings import settings
from common.tracing import tracing_middleware
from .db import create_db_engine, create_session_factory
from .gateway import TapPayClient
from .models import Base
from .notifications import GivingMailer, NotificationDispatcher
from .pipeline import GivingPipeline
from .repository import DonationRepository
from .settlement_worker import WorkerPool, process_settlement

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

@dataclass
class Services:
    pipeline: GivingPipeline
    repository: DonationRepository
    queue: JobQueue
    dispatcher: NotificationDispatcher
    worker_pool: Optional[WorkerPool] = None
    admin_secret: str = ""

def build_services() -> Services:
    """Wire every collaborator once, at process start"""
    engine = create_db_engine()
    Base.metadata.create_all(bind=engine)
    repository = DonationRepository(create_session_factory(engine))

    queue = JobQueue(create_redis(), settings.queue_name, JobOptions.from_settings(settings))
    dispatcher = NotificationDispatcher(GivingMailer.from_settings(settings), settings.notification_workers)
    gateway = TapPayClient(
        api_url=settings.tappay_api,
        partner_key=settings.partner_key,
        merchant_id=settings.merchant_id,
        currency=settings.currency,
        timeout=settings.gateway_timeout_seconds,
    )
    pipeline = GivingPipeline(gateway, queue, dispatcher, currency=settings.currency,
                              timezone=settings.local_timezone)
    pool = WorkerPool(queue, process_settlement(repository), size=settings.workers,
                      poll_interval=settings.worker_poll_interval)
    return Services(pipeline=pipeline, repository=repository, queue=queue, dispatcher=dispatcher,
                    worker_pool=pool, admin_secret=settings.google_secret)

class AdminReadRequest(BaseModel):
    googleSecret: Optional[str] = None
    lastRowID: int = 0

def get_services(request: Request) -> Services:
    return request.app.state.services

def create_app(services_factory: Callable[[], Services] = build_services) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = services_factory()
        app.state.services = services
        if services.worker_pool:
            services.worker_pool.start()
        logger.info("🚀 Giving service started")
        yield
        if services.worker_pool:
            services.worker_pool.stop()
        services.dispatcher.shutdown()
        logger.info("Giving service stopped")

    app = FastAPI(title="Giving Service", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.allowed_origin],
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_credentials=True,
    )

    @app.middleware("http")
    async def trace_requests(request: Request, call_next):
        return await tracing_middleware(request, call_next)

    add_error_handlers(app)

    @app.post("/payment")
    def payment(body: ChargeRequest, services: Services = Depends(get_services)):
        """Charge the card and answer with TapPay's response as-is"""
        outcome = services.pipeline.charge(body)
        return outcome.result.raw()

    @app.post("/getall")
    def get_all(body: AdminReadRequest, services: Services = Depends(get_services)):
        if not body.googleSecret or not services.admin_secret:
            raise AuthorizationError("Missing secret")
        if not hmac.compare_digest(body.googleSecret.encode(), services.admin_secret.encode()):
            raise AuthorizationError("Missing secret")

        try:
            rows = services.repository.list_since(body.lastRowID)
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to get giving all data.", original_error=e) from e
        return {"data": [row.to_wire() for row in rows]}

    @app.get("/stats")
    def stats(services: Services = Depends(get_services)):
        try:
            totals = services.repository.campus_totals()
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to get giving stats.", original_error=e) from e
        return {"data": totals}

    @app.get("/health")
    def health(services: Services = Depends(get_services)):
        redis_ok = ping(services.queue.client)
        queue_counts = None
        if redis_ok:
            try:
                queue_counts = services.queue.counts()
            except redis.RedisError as e:
                logger.warning(f"Could not read queue counts: {e}")
        return {
            "ok": redis_ok,
            "service": "giving",
            "queue": queue_counts,
            "workers_running": bool(services.worker_pool and services.worker_pool.running),
        }

    return app

app = create_app()
