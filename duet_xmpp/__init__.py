"""
duet_xmpp - XMPP transport for duet call signals.

- client.py: DuetXMPP connection (slixmpp)
- signaling.py: <signal/> stanzas and XmppSignalRelay
- external_services.py: XEP-0215 STUN/TURN discovery
"""

from .client import DuetXMPP
from .external_services import format_ice_servers
from .signaling import SIGNAL_NS, XmppSignalRelay, build_signal_element, parse_signal_element

__version__ = "0.1.0"
__all__ = [
    "DuetXMPP",
    "SIGNAL_NS",
    "XmppSignalRelay",
    "build_signal_element",
    "format_ice_servers",
    "parse_signal_element",
]
