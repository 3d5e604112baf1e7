"""
Daily exchange rates published by the National Bank of Romania (BNR).

The feed is a single XML snapshot holding every currency quoted against RON:

    <DataSet xmlns="http://www.bnr.ro/xsd">
      <Body>
        <Cube date="2025-03-14">
          <Rate currency="EUR">4.9767</Rate>
          <Rate currency="HUF" multiplier="100">1.2456</Rate>
          ...

Rates quoted per N units carry a ``multiplier`` attribute and are normalised to
a per-unit rate. Failures never raise: callers receive an unavailable
``ExchangeRate`` and decide what to block.
"""

import logging
import xml.etree.ElementTree as ET
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Optional

import httpx

from timebill import config
from timebill.schemas import ExchangeRate

logger = logging.getLogger(__name__)

BNR_NAMESPACE = "http://www.bnr.ro/xsd"

UNAVAILABLE = ExchangeRate(rate=None, date=None)


def parse_bnr_feed(xml_text: str, currency: str) -> ExchangeRate:
    """Extract the per-unit rate for `currency` from a BNR XML document."""
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        logger.warning("Exchange rate feed is not valid XML: %s", e)
        return UNAVAILABLE

    ns = {"bnr": BNR_NAMESPACE}
    cube = root.find("bnr:Body/bnr:Cube", ns)
    if cube is None:
        # Tolerate a feed served without the namespace declaration
        cube = root.find("Body/Cube")
        ns = None
    if cube is None:
        logger.warning("Exchange rate feed has no rate cube")
        return UNAVAILABLE

    try:
        rate_date = datetime.strptime(cube.get("date", ""), "%Y-%m-%d").date()
    except ValueError:
        logger.warning("Exchange rate feed has an unreadable date: %r", cube.get("date"))
        return UNAVAILABLE

    rates = cube.findall("bnr:Rate", ns) if ns else cube.findall("Rate")
    for element in rates:
        if element.get("currency", "").upper() != currency:
            continue
        try:
            value = Decimal((element.text or "").strip())
            multiplier = Decimal(element.get("multiplier") or "1")
        except InvalidOperation:
            logger.warning("Unreadable rate for %s: %r", currency, element.text)
            return UNAVAILABLE
        if multiplier <= 0:
            return UNAVAILABLE
        return ExchangeRate(rate=value / multiplier, date=rate_date)

    logger.warning("Currency %s is not quoted in the exchange rate feed", currency)
    return UNAVAILABLE


async def get_exchange_rate(
    currency: str,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    feed_url: str = None,
    home_currency: str = None,
    timeout: float = None,
) -> ExchangeRate:
    """
    Returns the latest rate converting one unit of `currency` into the home currency.
    The home currency short-circuits to 1 without touching the network.
    """
    currency = (currency or "").strip().upper()
    home_currency = (home_currency or config.HOME_CURRENCY).upper()

    if currency == home_currency:
        return ExchangeRate(rate=Decimal("1"), date=date.today())

    feed_url = feed_url or config.EXCHANGE_RATE_FEED_URL
    timeout = timeout if timeout is not None else config.EXCHANGE_RATE_TIMEOUT

    try:
        if http_client is not None:
            response = await http_client.get(feed_url, timeout=timeout)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.get(feed_url, timeout=timeout)
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        logger.warning("Exchange rate feed returned %s", e.response.status_code)
        return UNAVAILABLE
    except httpx.RequestError as e:
        logger.warning("Exchange rate feed unreachable: %s", e)
        return UNAVAILABLE

    result = parse_bnr_feed(response.text, currency)
    if result.available:
        logger.info("Fetched exchange rate 1 %s = %s %s (%s)", currency, result.rate, home_currency, result.date)
    return result
