"""
Device runtime for the family call coordinator.

Wires the store, change feed, notification bridge, signaling channel and call
session for one device session, and starts/stops them in order.
"""

from typing import Optional

from family_calls.config import Settings, get_settings
from family_calls.models.call_state import SessionIdentity
from family_calls.services.call_session import CallSession
from family_calls.services.change_feed import RedisChangeFeed
from family_calls.services.database_store import SqlCallRecordStore
from family_calls.services.media_adapter import MediaTransportAdapter
from family_calls.services.memory_store import InMemoryCallRecordStore
from family_calls.services.notification_bridge import (
    LoggingNotificationBridge,
    NotificationBridge,
    WebhookNotificationBridge,
)
from family_calls.services.record_store import CallRecordStore
from family_calls.services.signaling_channel import SignalingChannel
from family_calls.utils.logger import setup_logger

logger = setup_logger()


class DeviceRuntime:
    """
    One device session: identity, backends and the call session.

    Usage:
        async with DeviceRuntime(identity, media_adapter) as runtime:
            await runtime.session.start_outgoing_call("child-42")
    """

    def __init__(
        self,
        identity: SessionIdentity,
        media: MediaTransportAdapter,
        settings: Optional[Settings] = None,
        store: Optional[CallRecordStore] = None,
        notifier: Optional[NotificationBridge] = None,
    ):
        """
        Initialize runtime.

        Args:
            identity: Stable (profile id, role) supplied by the identity provider
            media: Media/transport adapter for this device
            settings: Settings (defaults to environment)
            store: Pre-built store; built from settings when omitted
            notifier: Pre-built bridge; built from settings when omitted
        """
        self.identity = identity
        self.media = media
        self.settings = settings or get_settings()
        self.store = store
        self.notifier = notifier
        self.change_feed: Optional[RedisChangeFeed] = None
        self.channel: Optional[SignalingChannel] = None
        self.session: Optional[CallSession] = None
        self._owns_store = store is None
        self._owns_notifier = notifier is None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    async def _build_store(self) -> CallRecordStore:
        if not self.settings.database_url:
            logger.warning("DATABASE_URL not set; using in-memory call store")
            return InMemoryCallRecordStore()

        if self.settings.redis_url:
            self.change_feed = RedisChangeFeed(
                self.settings.redis_url,
                channel=self.settings.change_feed_channel,
            )
            await self.change_feed.connect()

        store = SqlCallRecordStore(self.settings.database_url, change_feed=self.change_feed)
        await store.init()
        return store

    def _build_notifier(self) -> NotificationBridge:
        if self.settings.notification_webhook_url:
            return WebhookNotificationBridge(
                self.settings.notification_webhook_url,
                timeout=self.settings.notification_timeout_seconds,
            )
        return LoggingNotificationBridge()

    async def start(self) -> None:
        """Build missing services, then start the session before the channel."""
        logger.info(
            f"Starting call runtime for {self.identity.profile_id} "
            f"({self.identity.role.value}, {self.settings.environment})"
        )

        if self.store is None:
            self.store = await self._build_store()
        if self.notifier is None:
            self.notifier = self._build_notifier()

        self.channel = SignalingChannel(self.store, self.identity, self.settings)
        self.session = CallSession(
            identity=self.identity,
            store=self.store,
            channel=self.channel,
            media=self.media,
            notifier=self.notifier,
            settings=self.settings,
        )

        # Session listens before the channel's first poll
        await self.session.start()
        await self.channel.start()
        logger.info("Call runtime started")

    async def stop(self) -> None:
        """Stop in reverse order and close what this runtime created."""
        logger.info("Shutting down call runtime...")

        if self.session:
            await self.session.stop()
        if self.channel:
            await self.channel.stop()
        if self.notifier and self._owns_notifier:
            await self.notifier.close()
        if self.store and self._owns_store:
            await self.store.close()
        if self.change_feed:
            await self.change_feed.disconnect()

        logger.info("Call runtime stopped")
