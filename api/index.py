"""Serverless entry point: exposes the ASGI ``app``."""

from jqproxy.api import create_app
from jqproxy.config import ProxySettings, configure_logging

settings = ProxySettings.from_env()
configure_logging(settings.log_level)

app = create_app(settings)
