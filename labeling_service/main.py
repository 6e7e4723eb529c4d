from fastapi import FastAPI, Depends, Header, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from dataclasses import dataclass
import asyncio
import secrets
import uvicorn
import os
from typing import Any, Optional
import logging

from . import __version__
from .config import Settings
from .database.datastore import MetadataStore
from .errors import ImageServiceError, InvalidInputError, Unauthorized
from .models import ObjectCreatedNotification, StageName
from .services.access_gateway import AccessGateway
from .services.blob_store import BlobStore
from .services.derivative_generator import DerivativeGenerator
from .services.failure_ledger import FailureLedger
from .services.identity import HttpIdentityProvider, IdentityProvider, Principal
from .services.image_service import ImageService
from .services.ingestion_dispatcher import IngestionDispatcher
from .services.label_extractor import LabelExtractor
from .services.recognition import HttpRecognitionEngine, RecognitionEngine
from .services.reconciler import Reconciler
from .services.retry_handler import RetryHandler

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

CLIENT_ERROR_CODES = (400, 401, 403, 404)

@dataclass
class ServiceContainer:
    """Every component the application serves requests with"""
    metadata_store: MetadataStore
    blob_store: BlobStore
    recognition_engine: RecognitionEngine
    identity_provider: IdentityProvider
    failure_ledger: FailureLedger
    dispatcher: IngestionDispatcher
    image_service: ImageService
    reconciler: Reconciler
    retry_handler: Optional[RetryHandler] = None

    @classmethod
    def build(cls, settings: Settings) -> "ServiceContainer":
        metadata_store = MetadataStore(settings)
        blob_store = BlobStore(settings)
        recognition_engine = HttpRecognitionEngine(settings)
        retry_handler = RetryHandler(settings)
        failure_ledger = FailureLedger(metadata_store)

        derivative_generator = DerivativeGenerator(settings, blob_store, retry_handler, failure_ledger)
        label_extractor = LabelExtractor(
            settings, blob_store, metadata_store, recognition_engine, retry_handler, failure_ledger
        )
        dispatcher = IngestionDispatcher(
            settings, blob_store, derivative_generator, label_extractor, failure_ledger
        )
        image_service = ImageService(
            settings, blob_store, metadata_store, AccessGateway(settings.key_prefix), retry_handler
        )

        return cls(
            metadata_store=metadata_store,
            blob_store=blob_store,
            recognition_engine=recognition_engine,
            identity_provider=HttpIdentityProvider(settings),
            failure_ledger=failure_ledger,
            dispatcher=dispatcher,
            image_service=image_service,
            reconciler=Reconciler(
                settings, blob_store, metadata_store, dispatcher, failure_ledger, retry_handler
            ),
            retry_handler=retry_handler,
        )

    async def close(self):
        await self.dispatcher.close()
        for client in (self.recognition_engine, self.identity_provider, self.metadata_store):
            close = getattr(client, "close", None)
            if close is not None:
                await close()

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info("Starting Image Labeling Service...")

        if getattr(app.state, "services", None) is None:
            app.state.services = ServiceContainer.build(settings)
        services: ServiceContainer = app.state.services

        await services.dispatcher.start()
        reconcile_task = None
        if settings.reconcile_interval_seconds > 0:
            reconcile_task = asyncio.create_task(
                services.reconciler.run_forever(settings.reconcile_interval_seconds)
            )

        logger.info("Image Labeling Service started successfully")

        yield

        # Shutdown
        logger.info("Shutting down Image Labeling Service...")
        if reconcile_task is not None:
            reconcile_task.cancel()
            await asyncio.gather(reconcile_task, return_exceptions=True)
        await services.close()
        logger.info("Image Labeling Service shutdown complete")

    app = FastAPI(
        title=settings.app_name,
        description="Per-user image storage with automatic labeling and thumbnails",
        version=__version__,
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.services = None

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origin_list,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Next-Page-Token"],
    )

    def allow_origin_for(request: Request) -> str:
        origins = settings.allowed_origin_list
        if not origins or "*" in origins:
            return "*"
        origin = request.headers.get("origin")
        return origin if origin in origins else origins[0]

    @app.middleware("http")
    async def allow_origin_header(request: Request, call_next):
        try:
            response = await call_next(request)
        except Exception as e:
            logger.exception(f"Unhandled error on {request.method} {request.url.path}: {str(e)}")
            response = JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"error": "Internal server error"}
            )
        if "access-control-allow-origin" not in response.headers:
            response.headers["Access-Control-Allow-Origin"] = allow_origin_for(request)
        return response

    @app.exception_handler(ImageServiceError)
    async def service_error_handler(request: Request, exc: ImageServiceError):
        if exc.status_code in CLIENT_ERROR_CODES:
            return JSONResponse(
                status_code=exc.status_code,
                content={"error": exc.message, "code": exc.code}
            )
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message} {exc.details}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error"}
        )

    def get_services() -> ServiceContainer:
        return app.state.services

    async def get_principal(
        authorization: Optional[str] = Header(None),
        services: ServiceContainer = Depends(get_services)
    ) -> Principal:
        """Verify the bearer token on the request"""
        if not authorization:
            raise Unauthorized()
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise Unauthorized("Bearer token required")
        return await services.identity_provider.verify(token.strip())

    def verify_push_token(token: Optional[str] = None):
        if settings.event_push_token and not secrets.compare_digest(token or "", settings.event_push_token):
            raise Unauthorized("Invalid push token")

    def require_key(key: Optional[str]) -> str:
        if not key:
            raise InvalidInputError("Query parameter 'key' is required", field="key")
        return key

    # Health check
    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": "image-labeling-service", "version": __version__}

    # Image endpoints
    @app.get("/images")
    async def read_images(
        action: str = Query("list"),
        key: Optional[str] = None,
        page_token: Optional[str] = None,
        page_size: Optional[int] = None,
        principal: Principal = Depends(get_principal),
        services: ServiceContainer = Depends(get_services)
    ):
        """List the caller's images, or get one with action=get"""
        image_service = services.image_service

        if action == "get":
            summary = await image_service.get_image(principal.subject_id, require_key(key))
            return summary.model_dump(mode="json")

        if action != "list":
            raise InvalidInputError(f"Unsupported action: {action}", field="action")

        if page_token is None and page_size is None:
            images = await image_service.list_images(principal.subject_id)
            return [image.model_dump(mode="json") for image in images]

        pages = image_service.iter_pages(principal.subject_id, page_size, page_token)
        try:
            page = await pages.__anext__()
        finally:
            await pages.aclose()

        headers = {"X-Next-Page-Token": page.next_page_token} if page.next_page_token else None
        return JSONResponse(
            content=[image.model_dump(mode="json") for image in page.items],
            headers=headers
        )

    @app.put("/images", status_code=status.HTTP_201_CREATED)
    async def upload_image(
        request: Request,
        action: str = Query("upload"),
        key: Optional[str] = None,
        content_type: Optional[str] = Header(None),
        principal: Principal = Depends(get_principal),
        services: ServiceContainer = Depends(get_services)
    ):
        """Upload the raw request body as an image"""
        if action != "upload":
            raise InvalidInputError(f"Unsupported action: {action}", field="action")

        data = await request.body()
        summary = await services.image_service.upload_image(
            principal.subject_id, require_key(key), data, content_type
        )
        return summary.model_dump(mode="json")

    @app.delete("/images")
    async def delete_image(
        action: str = Query("delete"),
        key: Optional[str] = None,
        principal: Principal = Depends(get_principal),
        services: ServiceContainer = Depends(get_services)
    ):
        """Delete an image with its derivative and metadata"""
        if action != "delete":
            raise InvalidInputError(f"Unsupported action: {action}", field="action")

        result = await services.image_service.delete_image(principal.subject_id, require_key(key))
        return {"status": result.outcome.value, "image_id": result.image_id}

    # Storage notifications
    @app.post("/events/object-created")
    async def object_created(
        request: Request,
        _: None = Depends(verify_push_token),
        services: ServiceContainer = Depends(get_services)
    ):
        """Run the pipeline for an object-created notification"""
        try:
            payload: Any = await request.json()
        except ValueError:
            raise InvalidInputError("Notification body is not JSON")

        notification = ObjectCreatedNotification.from_payload(payload)
        if notification is None:
            return {"status": "ignored"}

        result = await services.dispatcher.dispatch(notification)
        if result.should_redeliver:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content=result.model_dump(mode="json")
            )
        return result.model_dump(mode="json")

    @app.get("/admin/pipeline")
    async def pipeline_status(
        _: None = Depends(verify_push_token),
        services: ServiceContainer = Depends(get_services)
    ):
        """Dispatcher, failure ledger, retry and reconciliation counters"""
        last_report = services.reconciler.last_report
        retry_handler = services.retry_handler
        return {
            "dispatcher": services.dispatcher.get_metrics(),
            "failures": services.failure_ledger.get_statistics(),
            "retries": retry_handler.get_retry_statistics() if retry_handler else None,
            "last_reconcile": last_report.model_dump(mode="json") if last_report else None,
        }

    @app.get("/admin/failures")
    async def list_failures(
        stage: Optional[StageName] = None,
        limit: int = Query(100, ge=1, le=1000),
        _: None = Depends(verify_push_token),
        services: ServiceContainer = Depends(get_services)
    ):
        entries = await services.failure_ledger.list_entries(stage, limit)
        return {"failures": [entry.to_dict() for entry in entries]}

    return app

app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "labeling_service.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8080)),
        reload=app.state.settings.environment == "development"
    )
