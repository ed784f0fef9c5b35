"""
DuetXMPP - minimal XMPP client used as a call signal relay.

Features:
- Call signals as <signal xmlns='urn:duet:signal:0'/> chat payloads
- XEP-0199 (XMPP Ping) keepalive
- XEP-0203 (Delayed Delivery) to drop stale offline signals
- XEP-0215 (External Service Discovery) STUN/TURN for the peer connection
- XEP-0334 (Message Processing Hints) so offline signals are stored
"""

import logging
from typing import Callable, Dict, List, Optional

from slixmpp import ClientXMPP

from .external_services import ExternalServicesMixin
from .signaling import DEFAULT_MAX_SIGNAL_AGE, SIGNAL_NS, SignalingMixin


class DuetXMPP(ClientXMPP, ExternalServicesMixin, SignalingMixin):
    """XMPP connection for one local user."""

    def __init__(
        self,
        jid: str,
        password: str,
        max_signal_age: float = DEFAULT_MAX_SIGNAL_AGE,
        keepalive_interval: int = 60,
        discover_ice_servers: bool = True,
        on_ready_callback: Optional[Callable] = None,
    ):
        """
        Args:
            jid: User JID (e.g., user@example.com)
            password: User password
            max_signal_age: Seconds after which offline-stored signals are ignored
            keepalive_interval: XEP-0199 ping interval in seconds
            discover_ice_servers: Query XEP-0215 after login
            on_ready_callback: Awaited after session start (ICE servers known)
        """
        super().__init__(jid, password)

        self.logger = logging.getLogger('duet-xmpp.client')
        self.max_signal_age = max_signal_age
        self.discover_ice = discover_ice_servers
        self.on_ready_callback = on_ready_callback
        self.ice_servers: List[Dict] = []
        self._connection_state = False

        self.register_plugin('xep_0030')  # Service Discovery
        self.register_plugin('xep_0199', {'keepalive': True, 'interval': keepalive_interval})
        self.register_plugin('xep_0203')  # Delayed Delivery
        self.register_plugin('xep_0334')  # Message Processing Hints

        self._setup_signal_handlers()

        self.add_event_handler("session_start", self._on_session_start)
        self.add_event_handler("disconnected", self._on_disconnected)
        self.add_event_handler("failed_auth", self._on_failed_auth)

    async def _on_session_start(self, event):
        """Handler for successful connection."""
        self.logger.info(f"Connected to XMPP server as {self.boundjid.bare}")
        self._connection_state = True

        self.plugin['xep_0030'].add_feature(SIGNAL_NS)
        self.send_presence()
        await self.get_roster()

        if self.discover_ice:
            self.ice_servers = await self.discover_ice_servers()
            if self.ice_servers:
                self.logger.info(f"Using {len(self.ice_servers)} ICE server(s) from the XMPP server")

        if self.on_ready_callback:
            try:
                await self.on_ready_callback()
            except Exception as e:
                self.logger.error(f"Error in on_ready callback: {e}", exc_info=True)

    async def _on_disconnected(self, event):
        """Handler for disconnection."""
        self.logger.info("Disconnected from XMPP server")
        self._connection_state = False

    async def _on_failed_auth(self, event):
        """Handler for authentication failure."""
        self.logger.critical("XMPP authentication failed! Check JID/password.")
        self.abort()

    def is_connected(self) -> bool:
        return self._connection_state and super().is_connected()
