#!/usr/bin/env python3
"""
DUY Energy monitor for a Shelly Cloud smart plug.
Single-file version.

Features:
- Poll the Shelly Cloud status endpoint every minute
- Integrate power readings into daily kWh (zero-order hold)
- Split consumption into pico (peak, 17-21h) and llano (off-peak) buckets
- Persist today's totals in SQLite, reset on day rollover
- Turn the plug on/off from the dashboard
- Simple JSON API + offline-capable HTML dashboard
"""

import os
import time
import threading
import json
import logging
import math
import sqlite3
from dataclasses import dataclass, asdict
from datetime import datetime, date
from typing import Optional, Dict, Callable

import requests
from flask import Flask, jsonify, request, Response

_LOGGER = logging.getLogger(__name__)

# ----------------- Config -----------------

SHELLY_SERVER = os.getenv("SHELLY_SERVER", "http://192.168.1.2")
SHELLY_DEVICE_ID = os.getenv("SHELLY_DEVICE_ID", "d9ab8f")
SHELLY_AUTH_KEY = os.getenv("SHELLY_AUTH_KEY", "")
DB_PATH = os.getenv("DUY_DB_PATH", "duy_energy.db")

POLL_INTERVAL_SECONDS = float(os.getenv("DUY_POLL_INTERVAL_SECONDS", "60"))
REQUEST_TIMEOUT_SECONDS = float(os.getenv("DUY_REQUEST_TIMEOUT_SECONDS", "10"))

PEAK_START_HOUR = int(os.getenv("DUY_PEAK_START_HOUR", "17"))
PEAK_END_HOUR = int(os.getenv("DUY_PEAK_END_HOUR", "21"))

# negative readings are clamped to 0 W unless disabled
CLAMP_NEGATIVE_POWER = os.getenv("DUY_CLAMP_NEGATIVE_POWER", "true").lower() in ("1", "true", "yes", "on")

HTTP_HOST = os.getenv("DUY_HOST", "0.0.0.0")
HTTP_PORT = int(os.getenv("DUY_PORT", "8000"))
LOG_LEVEL = os.getenv("DUY_LOG_LEVEL", "INFO").upper()

STATE_KEY = "duyEnergyData"
MS_PER_HOUR = 1000.0 * 60 * 60

CONTROL_TURNS = ("on", "off")


# ----------------- State -----------------

@dataclass
class AccumulatorState:
    last_timestamp: Optional[float] = None  # ms since epoch
    last_power: float = 0.0                 # W
    peak_energy: float = 0.0                # kWh, pico
    off_peak_energy: float = 0.0            # kWh, llano
    day: Optional[str] = None               # YYYY-MM-DD, local

    def to_dict(self) -> Dict:
        return {
            "lastTimestamp": self.last_timestamp,
            "lastPower": self.last_power,
            "peakEnergy": self.peak_energy,
            "offPeakEnergy": self.off_peak_energy,
            "day": self.day,
        }

    @classmethod
    def from_dict(cls, data) -> "AccumulatorState":
        """Build a state from its persisted form, raising ValueError on bad content."""
        if not isinstance(data, dict):
            raise ValueError("persisted state is not an object")

        def number(key, default):
            value = data.get(key, default)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"{key} is not a number: {value!r}")
            if not math.isfinite(value):
                raise ValueError(f"{key} is not finite: {value!r}")
            return float(value)

        peak = number("peakEnergy", 0.0)
        off_peak = number("offPeakEnergy", 0.0)
        if peak < 0 or off_peak < 0:
            raise ValueError("energy totals must be non-negative")

        last_ts = data.get("lastTimestamp")
        if last_ts is not None:
            last_ts = number("lastTimestamp", None)

        day = data.get("day")
        if day is not None:
            if not isinstance(day, str):
                raise ValueError(f"day is not a string: {day!r}")
            date.fromisoformat(day)

        return cls(
            last_timestamp=last_ts,
            last_power=number("lastPower", 0.0),
            peak_energy=peak,
            off_peak_energy=off_peak,
            day=day,
        )


# ----------------- DB helpers -----------------

class StateStore:
    """Key-value store holding the serialized AccumulatorState."""

    def __init__(self, db_path: str = DB_PATH, key: str = STATE_KEY):
        self.db_path = db_path
        self.key = key

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init(self):
        conn = self._conn()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            conn.commit()
        finally:
            conn.close()

    def load(self, today: Optional[str] = None) -> AccumulatorState:
        """Restore today's state, or a fresh one if missing, stale or unreadable."""
        if today is None:
            today = date.today().isoformat()

        try:
            conn = self._conn()
            try:
                row = conn.execute(
                    "SELECT value FROM settings WHERE key=?", (self.key,)
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            _LOGGER.warning("Failed to read stored state: %s", e)
            return AccumulatorState()

        if row is None:
            return AccumulatorState()

        try:
            state = AccumulatorState.from_dict(json.loads(row["value"]))
        except ValueError as e:
            # json.JSONDecodeError is a ValueError too
            _LOGGER.warning("Discarding malformed stored state: %s", e)
            return AccumulatorState()

        if state.day != today:
            _LOGGER.info("Stored state is for %s, starting fresh for %s", state.day, today)
            return AccumulatorState()
        return state

    def save(self, state: AccumulatorState) -> bool:
        try:
            conn = self._conn()
            try:
                conn.execute(
                    "INSERT INTO settings(key, value) VALUES(?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                    (self.key, json.dumps(state.to_dict())),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            _LOGGER.warning("Failed to save state: %s", e)
            return False
        return True


# ----------------- Tariff helpers -----------------

@dataclass(frozen=True)
class PeakWindow:
    start_hour: int = 17
    end_hour: int = 21

    def __post_init__(self):
        if not (0 <= self.start_hour < self.end_hour <= 24):
            raise ValueError(
                f"invalid peak window {self.start_hour}-{self.end_hour}"
            )


def classify_period(dt_local: datetime, window: PeakWindow) -> str:
    """Return "peak" or "off_peak" for the clock hour of dt_local."""
    if window.start_hour <= dt_local.hour < window.end_hour:
        return "peak"
    return "off_peak"


def local_dt(ts_ms: float) -> datetime:
    return datetime.fromtimestamp(ts_ms / 1000.0)


# ----------------- Energy accumulation -----------------

def record_sample(
    state: AccumulatorState,
    power_w: float,
    now_ms: float,
    window: PeakWindow = PeakWindow(),
    clamp_negative: bool = True,
) -> float:
    """
    Fold one power reading into state and return the kWh added.

    The interval since the previous sample is charged at the previous power
    and lands entirely in the bucket of its starting hour, even when it
    crosses a tariff boundary.
    """
    if clamp_negative and power_w < 0:
        power_w = 0.0

    today = local_dt(now_ms).date().isoformat()
    if state.day and state.day != today:
        state.peak_energy = 0.0
        state.off_peak_energy = 0.0
        state.last_timestamp = None
    state.day = today

    delta = 0.0
    if state.last_timestamp is not None:
        elapsed_h = max(0.0, now_ms - state.last_timestamp) / MS_PER_HOUR
        delta = max(0.0, state.last_power * elapsed_h / 1000.0)
        if classify_period(local_dt(state.last_timestamp), window) == "peak":
            state.peak_energy += delta
        else:
            state.off_peak_energy += delta

    state.last_timestamp = now_ms
    state.last_power = power_w
    return delta


def usage_ratio(state: AccumulatorState) -> float:
    """Percentage of today's energy used off-peak; 0 when nothing was used."""
    total = state.peak_energy + state.off_peak_energy
    if total <= 0:
        return 0.0
    return state.off_peak_energy / total * 100.0


def metrics_snapshot(state: AccumulatorState) -> Dict:
    total = state.peak_energy + state.off_peak_energy
    ratio = usage_ratio(state)
    last_str = None
    if state.last_timestamp is not None:
        last_str = local_dt(state.last_timestamp).strftime("%Y-%m-%d %H:%M:%S")
    return {
        "day": state.day,
        "total_kwh": round(total, 3),
        "peak_kwh": round(state.peak_energy, 3),
        "off_peak_kwh": round(state.off_peak_energy, 3),
        "usage_ratio_pct": round(ratio, 1),
        "total_str": f"{total:.3f} kWh",
        "peak_str": f"{state.peak_energy:.3f} kWh",
        "off_peak_str": f"{state.off_peak_energy:.3f} kWh",
        "usage_ratio_str": f"{ratio:.1f} %",
        "last_power_w": state.last_power,
        "last_sample_str": last_str,
    }


# ----------------- Shelly polling & control -----------------

@dataclass
class ControlResult:
    ok: bool
    message: str


class Sampler:
    """Polls the plug, feeds the accumulator and relays on/off commands."""

    def __init__(
        self,
        store: StateStore,
        state: Optional[AccumulatorState] = None,
        server: str = SHELLY_SERVER,
        device_id: str = SHELLY_DEVICE_ID,
        auth_key: str = SHELLY_AUTH_KEY,
        session=None,
        window: Optional[PeakWindow] = None,
        clamp_negative: bool = CLAMP_NEGATIVE_POWER,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        on_update: Optional[Callable[[Dict], None]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.state = state if state is not None else AccumulatorState()
        self.server = server.rstrip("/")
        self.device_id = device_id
        self.auth_key = auth_key
        self.session = session or requests.Session()
        self.window = window or PeakWindow(PEAK_START_HOUR, PEAK_END_HOUR)
        self.clamp_negative = clamp_negative
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.on_update = on_update
        self.clock = clock

        self.lock = threading.Lock()
        self._stop = threading.Event()

    def _params(self, **extra) -> Dict:
        params = {"device_id": self.device_id, "auth_key": self.auth_key}
        params.update(extra)
        return params

    def read_power_w(self) -> Optional[float]:
        try:
            resp = self.session.get(
                f"{self.server}/device/status",
                params=self._params(),
                timeout=self.timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            _LOGGER.warning("Error fetching Shelly status: %s", e)
            return None

        try:
            meters = ((data.get("data") or {}).get("device_status") or {}).get("meters")
        except AttributeError:
            _LOGGER.warning("Unexpected Shelly status payload: %r", data)
            return None

        if not isinstance(meters, list) or not meters or not isinstance(meters[0], dict):
            return 0.0

        raw = meters[0].get("power") or 0
        try:
            power_w = float(raw)
        except (TypeError, ValueError):
            _LOGGER.warning("Non-numeric power reading: %r", raw)
            return None
        if not math.isfinite(power_w):
            _LOGGER.warning("Non-finite power reading: %r", raw)
            return None
        return power_w

    def poll(self) -> Optional[Dict]:
        power_w = self.read_power_w()
        if power_w is None:
            return None

        with self.lock:
            # timestamps must be taken in the order samples are recorded
            now_ms = self.clock() * 1000.0
            delta = record_sample(
                self.state, power_w, now_ms, self.window, self.clamp_negative
            )
            self.store.save(self.state)
            snapshot = metrics_snapshot(self.state)
            _LOGGER.debug("Sample %.1f W, +%.6f kWh", power_w, delta)
            if self.on_update is not None:
                self.on_update(snapshot)
        return snapshot

    def snapshot(self) -> Dict:
        with self.lock:
            return metrics_snapshot(self.state)

    def send_control(self, turn: str) -> ControlResult:
        if turn not in CONTROL_TURNS:
            raise ValueError(f"turn must be 'on' or 'off', got {turn!r}")

        try:
            resp = self.session.get(
                f"{self.server}/device/relay/control",
                params=self._params(channel=0, turn=turn),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            _LOGGER.error("Error sending control command: %s", e)
            return ControlResult(False, "Error al enviar el comando.")

        if not resp.ok:
            _LOGGER.warning("Control command %s rejected: HTTP %s", turn, resp.status_code)
            return ControlResult(False, "No se pudo enviar el comando.")

        _LOGGER.info("Device turned %s", turn)
        return ControlResult(True, "Dispositivo encendido" if turn == "on" else "Dispositivo apagado")

    def run_forever(self):
        while not self._stop.is_set():
            start_loop = time.time()
            try:
                self.poll()
            except Exception:
                # a single bad cycle must not kill the loop
                _LOGGER.exception("Unexpected error during poll")

            elapsed = time.time() - start_loop
            self._stop.wait(max(0.0, self.poll_interval - elapsed))

    def stop(self):
        self._stop.set()


# ----------------- API routes -----------------

def create_app(sampler: Sampler) -> Flask:
    app = Flask(__name__)

    @app.route("/")
    def index():
        return Response(DASHBOARD_HTML, mimetype="text/html")

    @app.route("/api/metrics")
    def api_metrics():
        return jsonify(sampler.snapshot())

    @app.route("/api/poll", methods=["POST"])
    def api_poll():
        snapshot = sampler.poll()
        if snapshot is None:
            return jsonify({"error": "Could not read the device status"}), 503
        return jsonify(snapshot)

    @app.route("/api/control", methods=["POST"])
    def api_control():
        payload = request.get_json(silent=True)
        turn = payload.get("turn") if isinstance(payload, dict) else None
        try:
            result = sampler.send_control(turn)
        except ValueError as e:
            return jsonify({"ok": False, "message": str(e)}), 400
        return jsonify(asdict(result)), (200 if result.ok else 502)

    @app.route("/service-worker.js")
    def service_worker():
        resp = Response(SERVICE_WORKER_JS, mimetype="application/javascript")
        resp.headers["Cache-Control"] = "no-cache"
        return resp

    @app.route("/manifest.json")
    def manifest():
        return jsonify(MANIFEST)

    @app.route("/icon.svg")
    def icon():
        return Response(ICON_SVG, mimetype="image/svg+xml")

    return app


# ----------------- Offline cache -----------------

CACHE_NAME = "duy-energy-cache-v1"
ASSETS_TO_CACHE = ["/", "/manifest.json", "/icon.svg"]

MANIFEST = {
    "name": "DUY Energy",
    "short_name": "DUY Energy",
    "start_url": "/",
    "display": "standalone",
    "background_color": "#111827",
    "theme_color": "#111827",
    "icons": [
        {"src": "/icon.svg", "sizes": "any", "type": "image/svg+xml", "purpose": "any"},
    ],
}

ICON_SVG = """<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 512 512">
<rect width="512" height="512" rx="96" fill="#111827"/>
<path d="M288 48 128 288h112l-32 176 176-256H272z" fill="#facc15"/>
</svg>
"""

SERVICE_WORKER_JS = r"""
const CACHE_NAME = '%(cache_name)s';
const ASSETS_TO_CACHE = %(assets)s;

self.addEventListener('install', event => {
  event.waitUntil(
    caches.open(CACHE_NAME).then(cache => cache.addAll(ASSETS_TO_CACHE))
  );
});

self.addEventListener('activate', event => {
  event.waitUntil(
    caches.keys().then(names => Promise.all(
      names.filter(name => name !== CACHE_NAME).map(name => caches.delete(name))
    ))
  );
});

self.addEventListener('fetch', event => {
  if (new URL(event.request.url).pathname.startsWith('/api/')) {
    return;
  }
  event.respondWith(
    caches.match(event.request).then(cached => cached || fetch(event.request))
  );
});
""" % {"cache_name": CACHE_NAME, "assets": json.dumps(ASSETS_TO_CACHE)}


# ----------------- HTML dashboard -----------------
DASHBOARD_HTML = r"""
<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>DUY Energy</title>
  <link rel="manifest" href="/manifest.json">
  <style>
    :root {
      color-scheme: dark light;
    }
    body {
      margin: 0;
      font-family: system-ui, -apple-system, BlinkMacSystemFont, "Segoe UI", sans-serif;
      background-color: #111827;
      color: #e5e7eb;
    }
    .page {
      max-width: 900px;
      margin: 0 auto;
      padding: 16px;
    }
    .top-bar {
      display: flex;
      justify-content: space-between;
      align-items: center;
      gap: 12px;
      margin-bottom: 16px;
    }
    h1 {
      font-size: 1.6rem;
      margin: 0;
    }
    .clock {
      font-size: 0.9rem;
      opacity: 0.8;
    }
    .btn {
      border: 1px solid rgba(249, 250, 251, 0.1);
      padding: 6px 12px;
      border-radius: 999px;
      background: #1f2937;
      color: #e5e7eb;
      font-size: 0.85rem;
      cursor: pointer;
    }
    .btn:hover {
      filter: brightness(1.1);
    }
    .cards {
      display: grid;
      grid-template-columns: repeat(auto-fit, minmax(200px, 1fr));
      gap: 12px;
      margin-bottom: 16px;
    }
    .card {
      background: radial-gradient(circle at top left, rgba(59,130,246,0.3), transparent),
                  #020617;
      border-radius: 12px;
      padding: 12px;
      border: 1px solid rgba(148,163,184,0.3);
    }
    .card-title {
      font-size: 0.85rem;
      opacity: 0.8;
    }
    .card-value {
      font-size: 1.6rem;
      margin-top: 6px;
    }
    .card-sub {
      font-size: 0.75rem;
      opacity: 0.7;
      margin-top: 4px;
    }
  </style>
</head>
<body>
  <div class="page">
    <div class="top-bar">
      <h1>DUY Energy</h1>
      <div class="clock" id="lastSample">Sin datos</div>
    </div>

    <div class="cards">
      <div class="card">
        <div class="card-title">Consumo total hoy</div>
        <div class="card-value" id="total">0.000 kWh</div>
      </div>
      <div class="card">
        <div class="card-title">Pico (17-21h)</div>
        <div class="card-value" id="pico">0.000 kWh</div>
      </div>
      <div class="card">
        <div class="card-title">Llano</div>
        <div class="card-value" id="llano">0.000 kWh</div>
      </div>
      <div class="card">
        <div class="card-title">Indice de buen uso</div>
        <div class="card-value" id="indice">0.0 %</div>
        <div class="card-sub">Consumo en horas llano</div>
      </div>
    </div>

    <div>
      <button class="btn" id="btn-on">Encender</button>
      <button class="btn" id="btn-off">Apagar</button>
    </div>
  </div>

  <script>
    function updateMetrics(data) {
      document.getElementById('total').innerText = data.total_str;
      document.getElementById('pico').innerText = data.peak_str;
      document.getElementById('llano').innerText = data.off_peak_str;
      document.getElementById('indice').innerText = data.usage_ratio_str;
      if (data.last_sample_str) {
        document.getElementById('lastSample').innerText =
          data.last_sample_str + ' - ' + data.last_power_w.toFixed(0) + ' W';
      }
    }

    function refreshMetrics() {
      fetch('/api/metrics')
        .then(r => r.json())
        .then(updateMetrics)
        .catch(err => console.error('Error loading metrics:', err));
    }

    function controlDevice(turn) {
      fetch('/api/control', {
        method: 'POST',
        headers: {'Content-Type': 'application/json'},
        body: JSON.stringify({turn: turn})
      })
        .then(r => r.json())
        .then(data => alert(data.message))
        .catch(err => {
          console.error('Error sending control command:', err);
          alert('Error al enviar el comando.');
        });
    }

    document.addEventListener('DOMContentLoaded', () => {
      document.getElementById('btn-on').addEventListener('click', () => controlDevice('on'));
      document.getElementById('btn-off').addEventListener('click', () => controlDevice('off'));
      if ('serviceWorker' in navigator) {
        navigator.serviceWorker.register('/service-worker.js').catch(err => {
          console.warn('Service worker registration failed:', err);
        });
      }
      refreshMetrics();
      setInterval(refreshMetrics, 15 * 1000);
    });
  </script>
</body>
</html>
"""


# ----------------- Main -----------------

def main():
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    store = StateStore(DB_PATH)
    store.init()
    sampler = Sampler(store, state=store.load())
    _LOGGER.info(
        "Polling %s device %s every %.0fs", SHELLY_SERVER, SHELLY_DEVICE_ID, POLL_INTERVAL_SECONDS
    )

    t = threading.Thread(target=sampler.run_forever, daemon=True)
    t.start()

    app = create_app(sampler)
    app.run(host=HTTP_HOST, port=HTTP_PORT)


if __name__ == "__main__":
    main()
