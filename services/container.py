"""Process-scoped service bundle.

Built once in the FastAPI lifespan and stored on ``app.state.services``;
handlers reach collaborators through :func:`get_services` instead of
module globals, and tests build their own bundle around fakes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Request

from config.settings import Settings
from services.activity_log import ActivityLog
from services.ai_responder import AIResponseGenerator
from services.analytics import DoubtAnalytics
from services.auth import PrincipalAuthenticator
from services.auto_assignment import AutoAssignmentEngine
from services.concurrency import SideEffectRunner
from services.doubt_service import DoubtLifecycleManager
from services.doubt_store import DoubtStore, InMemoryDoubtStore
from services.notification_dispatcher import NotificationDispatcher
from services.realtime import RealtimeChannel, RedisRealtimeChannel, RoomHub
from services.supabase_client import SupabaseClient
from services.supabase_store import SupabaseDoubtStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: DoubtStore
    hub: RoomHub
    channel: RealtimeChannel
    runner: SideEffectRunner
    activity: ActivityLog
    dispatcher: NotificationDispatcher
    auto_assigner: AutoAssignmentEngine
    ai: AIResponseGenerator | None
    manager: DoubtLifecycleManager
    analytics: DoubtAnalytics
    authenticator: PrincipalAuthenticator

    async def start(self) -> None:
        if isinstance(self.store, SupabaseDoubtStore):
            await self.store.start()

    async def close(self, drain_timeout: float = 10.0) -> None:
        await self.runner.drain(timeout=drain_timeout)
        if self.channel is not self.hub:
            await self.channel.close()
        await self.store.close()


def build_store(settings: Settings) -> DoubtStore:
    if settings.store_backend == "supabase":
        if not settings.supabase_url or not settings.supabase_service_key:
            raise ValueError("store_backend=supabase requires supabase_url and supabase_service_key")
        client = SupabaseClient(
            settings.supabase_url,
            settings.supabase_service_key,
            timeout=settings.supabase_timeout,
        )
        logger.info("Using SupabaseDoubtStore")
        return SupabaseDoubtStore(client)
    logger.info("Using InMemoryDoubtStore")
    return InMemoryDoubtStore()


def build_channel(settings: Settings, hub: RoomHub) -> RealtimeChannel:
    if settings.realtime_backend == "redis" and settings.redis_url:
        logger.info("Realtime fan-out via Redis (prefix=%s)", settings.realtime_channel_prefix)
        return RedisRealtimeChannel(settings.redis_url, prefix=settings.realtime_channel_prefix)
    return hub


def build_services(
    settings: Settings,
    *,
    store: DoubtStore | None = None,
    channel: RealtimeChannel | None = None,
    ai: AIResponseGenerator | None = None,
) -> Services:
    """Wire every collaborator.  Keyword overrides let tests inject fakes."""
    store = store or build_store(settings)
    hub = RoomHub()
    channel = channel or build_channel(settings, hub)
    runner = SideEffectRunner()
    activity = ActivityLog(store, runner)
    dispatcher = NotificationDispatcher(store, channel, runner)
    auto_assigner = AutoAssignmentEngine(store, activity, timeout=settings.auto_assign_timeout)
    if ai is None and settings.ai_model:
        ai = AIResponseGenerator(
            settings.get_ai_llm_config(),
            timeout=settings.ai_timeout,
            confidence=settings.ai_confidence_score,
        )
    manager = DoubtLifecycleManager(
        store, activity, dispatcher, runner, auto_assigner=auto_assigner, ai=ai
    )
    return Services(
        settings=settings,
        store=store,
        hub=hub,
        channel=channel,
        runner=runner,
        activity=activity,
        dispatcher=dispatcher,
        auto_assigner=auto_assigner,
        ai=ai,
        manager=manager,
        analytics=DoubtAnalytics(store),
        authenticator=PrincipalAuthenticator(
            store,
            settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
            cache_ttl=settings.principal_cache_ttl,
        ),
    )


def get_services(request: Request) -> Services:
    """FastAPI dependency: the process-scoped bundle."""
    return request.app.state.services
