from datetime import datetime

import pytest
import requests

import duy_energy_monitor as dem


def ms(*args) -> float:
    """Epoch milliseconds for a naive local datetime."""
    return datetime(*args).timestamp() * 1000.0


class FakeResponse:
    def __init__(self, payload=None, status_code=200, json_error=False):
        self.payload = payload
        self.status_code = status_code
        self.json_error = json_error

    @property
    def ok(self):
        return self.status_code < 400

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"HTTP {self.status_code}")

    def json(self):
        if self.json_error:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self.payload


class FakeSession:
    """Stands in for requests.Session; replays queued responses or errors."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append({"url": url, "params": params, "timeout": timeout})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def status_payload(power):
    return {"isok": True, "data": {"device_status": {"meters": [{"power": power}]}}}


@pytest.fixture
def store(tmp_path):
    s = dem.StateStore(str(tmp_path / "duy.db"))
    s.init()
    return s


@pytest.fixture
def make_sampler(store):
    def factory(*responses, clock=None, **kwargs):
        session = FakeSession(*responses)
        sampler = dem.Sampler(
            store,
            server="https://shelly-1-eu.shelly.cloud/",
            device_id="abc123",
            auth_key="secret",
            session=session,
            window=dem.PeakWindow(17, 21),
            clamp_negative=True,
            timeout=3,
            clock=clock or (lambda: ms(2024, 6, 15, 10, 0) / 1000.0),
            **kwargs,
        )
        return sampler

    return factory
