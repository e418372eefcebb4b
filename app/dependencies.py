from dataclasses import dataclass
from functools import lru_cache

from app.bot import BotPoller
from app.config import Settings, settings
from app.database import SessionLocal
from app.services.amo_chat_service import AmoChatService
from app.services.amo_service import AmoService
from app.services.analytics_service import AnalyticsService
from app.services.background import BackgroundTaskRunner
from app.services.catalog_service import CatalogService
from app.services.command_service import CommandService
from app.services.crm_resolver import CrmResolver
from app.services.dadata_service import DadataService
from app.services.dialogue_service import DialogueService
from app.services.geocode_service import GeocodeService
from app.services.identity_registry import IdentityRegistry
from app.services.max_service import MaxService
from app.services.order_session import OrderSessionService
from app.services.order_submission import OrderSubmission
from app.services.order_token import OrderTokenCodec
from app.services.product_image_service import ProductImageService
from app.services.session_store import ChatLocks, InMemoryStore


@dataclass
class Runtime:
    """All services of one process, wired together."""

    settings: Settings
    max_service: MaxService
    amo: AmoService
    amo_chat: AmoChatService
    resolver: CrmResolver
    identities: IdentityRegistry
    tokens: OrderTokenCodec
    sessions: OrderSessionService
    submission: OrderSubmission
    dialogue: DialogueService
    commands: CommandService
    analytics: AnalyticsService
    geocode: GeocodeService
    dadata: DadataService
    background: BackgroundTaskRunner
    poller: BotPoller


def build_runtime(config: Settings = settings, session_factory=SessionLocal) -> Runtime:
    background = BackgroundTaskRunner()
    max_service = MaxService(config.max_bot_token)
    amo = AmoService(
        config.amo_base_url,
        client_id=config.amo_client_id,
        client_secret=config.amo_client_secret,
        redirect_uri=config.amo_redirect_uri,
        access_token=config.amo_access_token,
        refresh_token=config.amo_refresh_token,
        pipeline_id=config.amo_pipeline_id,
        status_id=config.amo_status_id,
    )
    identities = IdentityRegistry(InMemoryStore())
    resolver = CrmResolver(amo, identities)
    amo_chat = AmoChatService(
        channel_id=config.amo_channel_id,
        channel_secret=config.amo_channel_secret,
        scope_id=config.amo_scope_id,
        source_external_id=config.source_external_id,
        resolver=resolver,
        identities=identities,
        background=background,
    )
    tokens = OrderTokenCodec(config.web_form_secret, config.web_base_url)
    sessions = OrderSessionService(InMemoryStore())
    analytics = AnalyticsService(session_factory)
    geocode = GeocodeService(config.yandex_geocoder_api_key)
    submission = OrderSubmission(max_service, resolver, amo_chat, geocode, admin_user_id=config.admin_user_id)
    dialogue = DialogueService(
        max_service=max_service,
        sessions=sessions,
        submission=submission,
        resolver=resolver,
        amo_chat=amo_chat,
        analytics=analytics,
        catalog=CatalogService(),
        tokens=tokens,
        background=background,
        images=ProductImageService(),
    )
    commands = CommandService(max_service, analytics, admin_user_id=config.admin_user_id)
    poller = BotPoller(
        max_service,
        dialogue,
        commands,
        analytics,
        ChatLocks(),
        poll_timeout=config.poll_timeout_seconds,
        error_backoff_seconds=config.poll_error_backoff_seconds,
    )
    return Runtime(
        settings=config,
        max_service=max_service,
        amo=amo,
        amo_chat=amo_chat,
        resolver=resolver,
        identities=identities,
        tokens=tokens,
        sessions=sessions,
        submission=submission,
        dialogue=dialogue,
        commands=commands,
        analytics=analytics,
        geocode=geocode,
        dadata=DadataService(config.dadata_api_key),
        background=background,
        poller=poller,
    )


@lru_cache
def get_runtime() -> Runtime:
    return build_runtime()
