from __future__ import annotations

from types import SimpleNamespace

from geoip2.errors import AddressNotFoundError

from persona_chat.services.device_lookup import DeviceLookupService


CHROME_ON_MAC = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class FakeGeoReader:
    def __init__(self) -> None:
        self.closed = False

    def city(self, address: str):
        if address != "81.2.69.142":
            raise AddressNotFoundError(f"{address} not found")
        return SimpleNamespace(
            country=SimpleNamespace(iso_code="GB"),
            city=SimpleNamespace(name="London"),
        )

    def close(self) -> None:
        self.closed = True


def test_user_agent_is_parsed() -> None:
    device = DeviceLookupService().lookup("203.0.113.7", CHROME_ON_MAC)

    assert device.device_name == "Chrome"
    assert device.device_version.startswith("120")
    assert device.os.startswith("Mac OS X")
    assert device.country is None
    assert device.city is None


def test_empty_user_agent_yields_blank_device() -> None:
    device = DeviceLookupService().lookup("203.0.113.7", "")

    assert device.fingerprint_fields() == (None, None, None, None, None)


def test_geolocation_from_reader() -> None:
    reader = FakeGeoReader()
    service = DeviceLookupService(geoip_reader=reader)

    device = service.lookup("81.2.69.142", CHROME_ON_MAC)
    unknown = service.lookup("10.0.0.1", CHROME_ON_MAC)
    service.close()

    assert (device.country, device.city) == ("GB", "London")
    assert (unknown.country, unknown.city) == (None, None)
    assert reader.closed is True


def test_missing_database_is_tolerated(tmp_path) -> None:
    service = DeviceLookupService(str(tmp_path / "missing.mmdb"))

    device = service.lookup("81.2.69.142", CHROME_ON_MAC)

    assert device.country is None
