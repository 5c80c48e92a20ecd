from services.exchange.base import ExchangeCredential, ExchangeGateway, ExchangeOrder
from services.exchange.http_gateway import (
    HttpExchangeGateway,
    close_gateways,
    get_read_gateway,
    get_trading_gateway,
)

__all__ = [
    "ExchangeCredential",
    "ExchangeGateway",
    "ExchangeOrder",
    "HttpExchangeGateway",
    "close_gateways",
    "get_read_gateway",
    "get_trading_gateway",
]
