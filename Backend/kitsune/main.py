import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import auth_routes, booking_routes, business_routes, invitation_routes
from .access import AccessControl
from .availability import AvailabilityCalculator
from .bookings import BookingManager
from .catalog import CatalogService
from .core.config import Settings, get_settings
from .core.db import Store
from .core.responses import register_error_handlers
from .identity import IdentityProvider, LineIdentityProvider
from .invitations import InvitationService
from .notifications import BookingNotifier, LoggingNotifier
from .rate_limiter import RateLimiter
from .timeutils import utc_now

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def attach_components(
    app: FastAPI,
    store: Store,
    settings: Settings,
    clock: Callable[[], datetime],
    notifier: Optional[BookingNotifier] = None,
) -> None:
    """Build every component around one store handle and hang them on app.state."""
    access = AccessControl(clock)
    availability = AvailabilityCalculator(store, clock, max_range_days=settings.max_availability_range_days)
    app.state.store = store
    app.state.access = access
    app.state.availability = availability
    app.state.bookings = BookingManager(
        store,
        clock,
        notifier=notifier or LoggingNotifier(),
        access=access,
        availability=availability,
    )
    app.state.invitations = InvitationService(
        store,
        clock,
        access=access,
        ttl_days=settings.invitation_ttl_days,
        code_length=settings.invitation_code_length,
    )
    app.state.catalog = CatalogService(store, clock, access=access)


def create_app(
    store: Optional[Store] = None,
    settings: Optional[Settings] = None,
    clock: Callable[[], datetime] = utc_now,
    identity_provider: Optional[IdentityProvider] = None,
    notifier: Optional[BookingNotifier] = None,
) -> FastAPI:
    """
    Application factory.

    When ``store`` is given the caller owns its lifecycle (tests, scripts);
    otherwise one is created from settings at startup and disposed at
    shutdown.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned: Optional[Store] = None
        if getattr(app.state, "store", None) is None:
            owned = Store(settings.database_url, transaction_timeout=settings.transaction_timeout_seconds)
            await owned.create_all()
            attach_components(app, owned, settings, clock, notifier)
            logger.info("Resource store ready")
        yield
        if owned is not None:
            await owned.dispose()
            logger.info("Resource store closed")

    app = FastAPI(title="Kitsune Booking Backend", lifespan=lifespan)
    app.state.settings = settings
    app.state.clock = clock
    app.state.store = None
    app.state.identity_provider = identity_provider or LineIdentityProvider(settings)
    app.state.rate_limiter = RateLimiter(settings.public_rate_limit_per_minute, window_seconds=60)
    if store is not None:
        attach_components(app, store, settings, clock, notifier)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    app.include_router(auth_routes.router)
    app.include_router(booking_routes.router)
    app.include_router(business_routes.router)
    app.include_router(business_routes.closed_dates_router)
    app.include_router(invitation_routes.business_links_router)
    app.include_router(invitation_routes.permissions_router)
    app.include_router(invitation_routes.router)

    @app.get("/health")
    async def health():
        return {"ok": True}

    return app


app = create_app()
