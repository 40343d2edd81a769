"""Stateless geolocation and user-agent lookup."""

from __future__ import annotations

from typing import Optional

import geoip2.database
from loguru import logger
from user_agents import parse as parse_user_agent

from persona_chat.services.identity import DeviceInfo


class DeviceLookupService:
    """Derive coarse device and location attributes for a request.

    Geolocation needs a MaxMind GeoLite2/GeoIP2 City database; without one only
    the user-agent attributes are populated. Lookups never raise.
    """

    def __init__(self, geoip_database_path: Optional[str] = None, *, geoip_reader=None) -> None:
        self._reader = geoip_reader
        if self._reader is None and geoip_database_path:
            try:
                self._reader = geoip2.database.Reader(geoip_database_path)
            except Exception as exc:  # pylint: disable=broad-except
                logger.warning("GeoIP database unavailable at {}: {}", geoip_database_path, exc)
                self._reader = None

    def lookup(self, network_address: str, user_agent: str) -> DeviceInfo:
        device_name, device_version, os_name = self._parse_agent(user_agent)
        country, city = self._locate(network_address)
        return DeviceInfo(
            device_name=device_name,
            device_version=device_version,
            os=os_name,
            country=country,
            city=city,
        )

    def close(self) -> None:
        if self._reader is not None:
            self._reader.close()

    @staticmethod
    def _parse_agent(user_agent: str) -> tuple[Optional[str], Optional[str], Optional[str]]:
        if not user_agent:
            return None, None, None
        try:
            agent = parse_user_agent(user_agent)
        except Exception as exc:  # pylint: disable=broad-except
            logger.debug("User-agent parsing failed: {}", exc)
            return None, None, None

        browser_name = agent.browser.family or None
        browser_version = agent.browser.version_string or None
        os_name = " ".join(part for part in (agent.os.family, agent.os.version_string) if part) or None
        return browser_name, browser_version, os_name

    def _locate(self, network_address: str) -> tuple[Optional[str], Optional[str]]:
        if self._reader is None or not network_address:
            return None, None
        try:
            response = self._reader.city(network_address)
        except Exception as exc:  # pylint: disable=broad-except
            logger.debug("GeoIP lookup failed for {}: {}", network_address, exc)
            return None, None
        return response.country.iso_code or None, response.city.name or None
