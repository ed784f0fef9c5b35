"""
XEP-0215: External Service Discovery
Asks the XMPP server for STUN/TURN servers (with short-lived credentials)
and turns them into ICE server entries for the peer connection.
"""

from typing import Dict, List, Optional
from xml.etree.ElementTree import Element

from slixmpp.exceptions import IqError, IqTimeout

EXTDISCO_NAMESPACES = ('urn:xmpp:extdisco:2', 'urn:xmpp:extdisco:1')


def parse_services(services_elem) -> List[Dict]:
    """
    Parse a <services/> element into service dicts.

    Returns:
        [{"type", "host", "port", optional "transport", "username", "password", "expires"}]
    """
    services = []
    for service in services_elem:
        entry = {
            'type': service.get('type'),
            'host': service.get('host'),
            'port': int(service.get('port', 3478)),
        }
        for attr in ('transport', 'username', 'password', 'expires'):
            if service.get(attr):
                entry[attr] = service.get(attr)
        services.append(entry)
    return services


def format_ice_servers(services: List[Dict]) -> List[Dict]:
    """
    Convert discovered services to ICE server dicts.

    Returns:
        [{"urls": ["stun:host:port"]},
         {"urls": ["turn:host:port?transport=udp"], "username": ..., "credential": ...}]
    """
    ice_servers = []
    for service in services:
        kind = service.get('type')
        host = service.get('host')
        port = service.get('port', 3478)
        if not kind or not host:
            continue

        if kind == 'stun':
            ice_servers.append({'urls': [f"stun:{host}:{port}"]})
        elif kind in ('turn', 'turns'):
            transport = service.get('transport', 'udp')
            entry = {'urls': [f"{kind}:{host}:{port}?transport={transport}"]}
            if service.get('username'):
                entry['username'] = service['username']
            if service.get('password'):
                entry['credential'] = service['password']
            ice_servers.append(entry)
    return ice_servers


class ExternalServicesMixin:
    """
    XEP-0215 queries against our own server.

    Requirements (provided by DuetXMPP):
    - self.make_iq_get(), self.boundjid, self.is_connected()
    - self.logger
    """

    async def get_external_services(self, service_type: Optional[str] = None) -> List[Dict]:
        """
        Query the server for STUN/TURN services.

        Args:
            service_type: Optional filter ('stun', 'turn', 'turns')

        Returns:
            Service dicts (see parse_services); empty when unsupported or on error
        """
        if not self.is_connected():
            self.logger.warning("Cannot query external services: not connected")
            return []

        iq = self.make_iq_get()
        iq['to'] = self.boundjid.domain
        query = Element(f'{{{EXTDISCO_NAMESPACES[0]}}}services')
        if service_type:
            query.set('type', service_type)
        iq.append(query)

        self.logger.info(f"Querying server for external services (type={service_type})")
        try:
            result = await iq.send(timeout=10)
        except (IqError, IqTimeout) as e:
            self.logger.warning(f"External service discovery failed: {e}")
            return []

        for ns in EXTDISCO_NAMESPACES:
            services_elem = result.xml.find(f'{{{ns}}}services')
            if services_elem is not None:
                break
        else:
            self.logger.info("Server does not support XEP-0215 (External Service Discovery)")
            return []

        services = parse_services(services_elem)
        for service in services:
            masked = dict(service, password='***') if 'password' in service else service
            self.logger.debug(f"Discovered service: {masked}")
        self.logger.info(f"Discovered {len(services)} external service(s)")
        return services

    async def discover_ice_servers(self) -> List[Dict]:
        """STUN/TURN services from the server, already in ICE server form."""
        return format_ice_servers(await self.get_external_services())
