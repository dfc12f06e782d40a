"""
Shared state for the RaceSteward API.

Holds the service instances every blueprint uses. ``init_state`` builds
them once per app from ``Settings``; tests pass in their own store and
push gateway.
"""

from dataclasses import dataclass
from datetime import timedelta

from config import Settings
from display_names import DisplayNameCache
from lifecycle import LifecycleEngine
from notifications import NotificationDispatcher
from protests import ProtestService
from push_gateway import PushGateway, get_push_gateway
from storage import get_storage_backend
from storage.base import DocumentStore
from sweeper import Sweeper
from users import UserService


@dataclass
class Services:
    """Everything a request handler needs."""
    settings: Settings
    store: DocumentStore
    gateway: PushGateway
    names: DisplayNameCache
    engine: LifecycleEngine
    dispatcher: NotificationDispatcher
    sweeper: Sweeper
    protests: ProtestService
    users: UserService

    def close(self) -> None:
        self.sweeper.stop()
        self.gateway.close()
        self.store.close()


def build_services(
    settings: Settings,
    store: DocumentStore | None = None,
    gateway: PushGateway | None = None,
) -> Services:
    """Wire the store, push gateway, engine, dispatcher and sweeper together."""
    store = store or get_storage_backend(settings)
    gateway = gateway or get_push_gateway(settings)
    names = DisplayNameCache(store, ttl_seconds=settings.display_name_ttl_seconds)
    engine = LifecycleEngine(store)
    dispatcher = NotificationDispatcher(
        store,
        gateway,
        names=names,
        batch_size=settings.push_batch_size,
        warning_buffer_minutes=settings.warning_buffer_minutes,
        base_url=settings.app_base_url,
        super_admin_id=settings.super_admin_id,
    )
    sweeper = Sweeper(
        store,
        engine,
        dispatcher,
        interval_seconds=settings.sweep_interval_seconds,
        grace=timedelta(hours=settings.active_event_grace_hours),
    )
    return Services(
        settings=settings,
        store=store,
        gateway=gateway,
        names=names,
        engine=engine,
        dispatcher=dispatcher,
        sweeper=sweeper,
        protests=ProtestService(store, super_admin_id=settings.super_admin_id),
        users=UserService(store, names=names, super_admin_id=settings.super_admin_id),
    )


# The services for the running app
services: Services | None = None


def init_state(
    settings: Settings,
    store: DocumentStore | None = None,
    gateway: PushGateway | None = None,
) -> Services:
    global services
    services = build_services(settings, store=store, gateway=gateway)
    return services


def get_services() -> Services:
    if services is None:
        raise RuntimeError("API state not initialized; call init_state() first")
    return services
