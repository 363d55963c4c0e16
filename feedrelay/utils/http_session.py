"""
HTTP session factory.

Builds the requests session shared by the feed fetcher, optionally routed
through a proxy.
"""
import logging
from typing import Dict, Optional

import requests
from user_agent import generate_user_agent

logger = logging.getLogger(__name__)


class ProxyConfig:
    """
    Proxy settings for outgoing feed requests.
    """

    def __init__(self, proxy_config: Optional[Dict] = None):
        """
        Initialize proxy configuration.

        Args:
            proxy_config: Proxy configuration dictionary ('networking.proxy')
        """
        proxy_config = proxy_config or {}
        self.enabled = proxy_config.get('enabled', False)
        self.host = proxy_config.get('host', 'localhost')
        self.port = proxy_config.get('port', 8081)
        self.protocol = proxy_config.get('protocol', 'http')
        self.username = proxy_config.get('username')
        self.password = proxy_config.get('password')

    @property
    def proxy_url(self) -> Optional[str]:
        if not self.enabled:
            return None
        if self.username and self.password:
            return f"{self.protocol}://{self.username}:{self.password}@{self.host}:{self.port}"
        return f"{self.protocol}://{self.host}:{self.port}"

    @property
    def proxy_dict(self) -> Optional[Dict[str, str]]:
        """Proxy dictionary for requests."""
        if not self.proxy_url:
            return None
        return {'http': self.proxy_url, 'https': self.proxy_url}


def create_session(user_agent: str = "", proxy_config: Optional[ProxyConfig] = None) -> requests.Session:
    """
    Create a requests session with default headers and proxy configuration.

    Args:
        user_agent: User-Agent header; a browser-like one is generated when empty
        proxy_config: Optional proxy configuration

    Returns:
        Configured requests session
    """
    session = requests.Session()

    if proxy_config and proxy_config.enabled:
        session.proxies.update(proxy_config.proxy_dict)
        logger.debug(f"Created proxy-aware session using {proxy_config.host}:{proxy_config.port}")
    else:
        logger.debug("Created session without proxy")

    session.headers.update({
        'User-Agent': user_agent or generate_user_agent(),
        'Accept': 'application/rss+xml, application/atom+xml, application/rdf+xml, application/xml;q=0.9, text/xml;q=0.8, */*;q=0.5',
    })

    return session
