#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
WA Long-Term Care Facility Search.

Looks up a residential care facility by license number on the public ArcGIS
feature service and shows its attributes plus a map of its location.

API:
- GET /healthz      -> liveness probe
- GET /api          -> looks up a facility and returns the result as JSON
- GET /api/geojson  -> looks up a facility and returns it as a GeoJSON file
"""

import json
import logging
import math
import os
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
from flask import Flask, Response, jsonify, render_template_string, request

# -----------------------------------------------------------------------------
# Service Meta
# -----------------------------------------------------------------------------
SERVICE_META = {
    "service_name_slug": "ltc-search",
    "page_title": "WA Long-Term Care Facility Search",
    "page_h1": "WA Long-Term Care Facility Search",
    "page_subtitle": "Find a Washington long-term care facility by its license number.",
}

# -----------------------------------------------------------------------------
# External endpoints & configuration
# -----------------------------------------------------------------------------
FEATURE_SERVICE_URL = os.getenv(
    "FEATURE_SERVICE_URL",
    "https://services2.arcgis.com/WW3T8U6q5EkZ9U3n/ArcGIS/rest/services/"
    "Long_Term_Care_Residential_Care_view/FeatureServer/1/query",
)
USER_AGENT = os.getenv("USER_AGENT", "wa-ltc-facility-search/1.0")

TILE_URL = os.getenv("TILE_URL", "https://{s}.tile.openstreetmap.org/{z}/{x}/{y}.png")
TILE_ATTRIBUTION = "&copy; OpenStreetMap contributors"
MAP_ZOOM = 15

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def _parse_timeout(raw: Optional[str]) -> Optional[float]:
    # unset or blank means requests waits for the transport to finish or fail
    if raw is None or raw.strip() == "":
        return None
    return float(raw)


HTTP_TIMEOUT = _parse_timeout(os.getenv("HTTP_TIMEOUT"))

# Spherical Web Mercator radius (EPSG:3857), meters
EARTH_RADIUS_M = 6378137.0
# largest argument math.exp accepts without OverflowError
_MAX_EXP_ARG = 709.0

NO_RESULT_MESSAGE = "No facility found for this license number."
REQUEST_FAILED_MESSAGE = "Request failed"

# (header, attribute key) in display order
TABLE_COLUMNS: List[Tuple[str, str]] = [
    ("Facility Name", "FacilityName"),
    ("License #", "LicenseNumber"),
    ("City", "LocationCity"),
    ("Zip", "LocationZipCode"),
    ("Phone", "TelephoneNmbr"),
    ("Address", "LocationAddress"),
    ("State", "LocationState"),
    ("Status", "FacilityStatus"),
    ("POC", "FacilityPOC"),
    ("Longitude", "Longitude"),
    ("Latitude", "Latitude"),
]

STATUS_IDLE = "idle"
STATUS_LOADING = "loading"
STATUS_SUCCESS = "success"
STATUS_EMPTY = "empty"
STATUS_ERROR = "error"

# -----------------------------------------------------------------------------
# Flask app & logging
# -----------------------------------------------------------------------------
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = Flask(__name__)

# -----------------------------------------------------------------------------
# Utilities
# -----------------------------------------------------------------------------


class UserFacingError(Exception):
    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.hint = hint


def parse_license(raw: Optional[str]) -> str:
    return (raw or "").strip()


def _requests_headers() -> Dict[str, str]:
    return {"User-Agent": USER_AGENT, "Accept": "application/json"}


_session = requests.Session()
_session.headers.update(_requests_headers())

# -----------------------------------------------------------------------------
# Coordinates
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class LonLat:
    lon: float
    lat: float

    def to_dict(self) -> Dict[str, float]:
        return {"lon": self.lon, "lat": self.lat}


def _as_float(value: Any) -> float:
    if value is None:
        return math.nan
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def web_mercator_to_lonlat(x: Any, y: Any) -> LonLat:
    """
    Convert EPSG:3857 meters to EPSG:4326 degrees on the spherical model.

    Missing, NaN or non-numeric input yields NaN output; callers check
    presence first. Latitude saturates at +90 instead of overflowing.
    """
    x = _as_float(x)
    y = _as_float(y)
    lon = (x / EARTH_RADIUS_M) * (180 / math.pi)
    lat = (2 * math.atan(math.exp(min(y / EARTH_RADIUS_M, _MAX_EXP_ARG))) - math.pi / 2) * (180 / math.pi)
    return LonLat(lon=lon, lat=lat)


def lonlat_to_web_mercator(lon: float, lat: float) -> Tuple[float, float]:
    x = math.radians(lon) * EARTH_RADIUS_M
    y = EARTH_RADIUS_M * math.log(math.tan(math.pi / 4 + math.radians(lat) / 2))
    return x, y


# -----------------------------------------------------------------------------
# Feature service
# -----------------------------------------------------------------------------


def build_query_params(license_number: str) -> Dict[str, str]:
    return {
        "where": f"LicenseNumber = {license_number}",
        "outFields": "*",
        "returnGeometry": "true",
        "resultRecordCount": "1",
        "f": "json",
    }


def query_feature_service(license_number: str) -> Dict[str, Any]:
    """Run the license query and return the decoded JSON body."""
    params = build_query_params(license_number)
    logger.info("Querying feature service for license %s", license_number)

    try:
        r = _session.get(FEATURE_SERVICE_URL, params=params, timeout=HTTP_TIMEOUT)
    except requests.RequestException as e:
        logger.warning("Feature service unreachable: %s", e)
        raise UserFacingError(str(e) or REQUEST_FAILED_MESSAGE, hint="Please try again later.")

    try:
        data = r.json()
    except ValueError as e:
        logger.warning("Feature service returned an unreadable body (HTTP %s): %s", r.status_code, e)
        raise UserFacingError(str(e) or REQUEST_FAILED_MESSAGE, hint=f"HTTP {r.status_code}")

    if not isinstance(data, dict):
        raise UserFacingError("Unexpected response from the feature service.", hint=f"HTTP {r.status_code}")
    return data


def normalize_feature(feature: Dict[str, Any]) -> Dict[str, Any]:
    attributes = feature.get("attributes") or {}
    geometry = feature.get("geometry")

    gps = None
    # exact 0 coordinates count as missing
    if isinstance(geometry, dict) and geometry.get("x") and geometry.get("y"):
        gps = web_mercator_to_lonlat(geometry["x"], geometry["y"]).to_dict()

    return {**attributes, "gps": gps}


# -----------------------------------------------------------------------------
# Lookup flow
# -----------------------------------------------------------------------------


@dataclass
class LookupState:
    status: str = STATUS_IDLE
    rows: List[Dict[str, Any]] = field(default_factory=list)
    error_message: str = ""
    license_number: str = ""
    generation: int = 0

    @property
    def loading(self) -> bool:
        return self.status == STATUS_LOADING

    @property
    def map_point(self) -> Optional[Dict[str, float]]:
        """Location of the first row, the only one drawn on the map."""
        if not self.rows:
            return None
        return self.rows[0].get("gps")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "license_number": self.license_number,
            "rows": self.rows,
            "error": self.error_message or None,
        }


class FacilityLookup:
    """
    Owns the state of one search form.

    Every submit bumps the generation; a resolution carrying an older
    generation is dropped so only the latest request reaches the state.
    """

    def __init__(self, fetch: Callable[[str], Dict[str, Any]] = query_feature_service):
        self._fetch = fetch
        self.state = LookupState()

    def begin(self, license_number: Optional[str]) -> Optional[int]:
        license_number = parse_license(license_number)
        if not license_number:
            return None

        generation = self.state.generation + 1
        self.state = LookupState(
            status=STATUS_LOADING,
            license_number=license_number,
            generation=generation,
        )
        return generation

    def resolve(self, generation: int, data: Dict[str, Any]) -> LookupState:
        if self._is_stale(generation):
            return self.state

        error = data.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else None
            return self.fail(generation, message or REQUEST_FAILED_MESSAGE)

        features = data.get("features") or []
        if not isinstance(features, list):
            return self.fail(generation, "Unexpected response from the feature service.")
        features = [f for f in features if isinstance(f, dict)]

        if not features:
            self._finish(STATUS_EMPTY, error_message=NO_RESULT_MESSAGE)
        else:
            self._finish(STATUS_SUCCESS, rows=[normalize_feature(f) for f in features])
        return self.state

    def fail(self, generation: int, message: Optional[str]) -> LookupState:
        if self._is_stale(generation):
            return self.state
        self._finish(STATUS_ERROR, error_message=message or REQUEST_FAILED_MESSAGE)
        return self.state

    def search(self, license_number: Optional[str]) -> LookupState:
        generation = self.begin(license_number)
        if generation is None:
            return self.state

        try:
            data = self._fetch(self.state.license_number)
        except UserFacingError as e:
            return self.fail(generation, e.message)
        return self.resolve(generation, data)

    def _is_stale(self, generation: int) -> bool:
        if generation != self.state.generation:
            logger.debug("Dropping stale result %s (current %s)", generation, self.state.generation)
            return True
        return False

    def _finish(self, status: str, rows: Optional[List[Dict[str, Any]]] = None, error_message: str = "") -> None:
        self.state = LookupState(
            status=status,
            rows=rows or [],
            error_message=error_message,
            license_number=self.state.license_number,
            generation=self.state.generation,
        )
        logger.info("License %s: %s (%d rows)", self.state.license_number, status, len(self.state.rows))


def geojson_featurecollection(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    feats = []
    for row in rows:
        gps = row.get("gps")
        if not gps:
            continue
        feats.append(
            {
                "type": "Feature",
                "properties": {k: v for k, v in row.items() if k != "gps"},
                "geometry": {"type": "Point", "coordinates": [gps["lon"], gps["lat"]]},
            }
        )

    return {"type": "FeatureCollection", "features": feats}


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------


def _required_license(raw: Optional[str]) -> str:
    license_number = parse_license(raw)
    if not license_number:
        raise UserFacingError("Please enter a license number.", hint="Example: /api?license=1234")
    return license_number


@app.get("/healthz")
def healthz() -> Response:
    return Response("ok", mimetype="text/plain")


@app.get("/api")
def api() -> Response:
    try:
        license_number = _required_license(request.args.get("license"))
        state = FacilityLookup().search(license_number)
        status_code = 502 if state.status == STATUS_ERROR else 200
        return jsonify({"ok": state.status != STATUS_ERROR, **state.to_dict()}), status_code
    except UserFacingError as e:
        return jsonify({"ok": False, "error": e.message, "hint": e.hint}), 400
    except Exception:
        logger.exception("Unexpected error in /api")
        return jsonify({"ok": False, "error": "Unexpected error.", "hint": "Please try again later."}), 500


@app.get("/api/geojson")
def api_geojson() -> Response:
    try:
        license_number = _required_license(request.args.get("license"))
        state = FacilityLookup().search(license_number)
        if state.status == STATUS_ERROR:
            return jsonify({"ok": False, "error": state.error_message, "hint": None}), 502

        fc = geojson_featurecollection(state.rows)
        filename = f"facility_{re.sub(r'[^a-zA-Z0-9_-]+', '_', license_number)[:40]}.geojson"
        return Response(
            json.dumps(fc, ensure_ascii=False),
            mimetype="application/geo+json; charset=utf-8",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )
    except UserFacingError as e:
        return jsonify({"ok": False, "error": e.message, "hint": e.hint}), 400
    except Exception:
        logger.exception("Unexpected error in /api/geojson")
        return jsonify({"ok": False, "error": "Unexpected error.", "hint": "Please try again later."}), 500


HTML = r"""
<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1" />
  <meta name="description" content="{{ meta.page_subtitle }}" />
  <title>{{ meta.page_title }}</title>

  <link
    rel="stylesheet"
    href="https://unpkg.com/leaflet@1.9.4/dist/leaflet.css"
    crossorigin=""
  />

  <style>
    :root{
      --bg:#f6f7fb;
      --card:#ffffff;
      --text:#111827;
      --muted:#4b5563;
      --border: rgba(17,24,39,.12);
      --primary:#2563eb;
      --danger:#b91c1c;
      --radius: 14px;
      --container: 1200px;
      --font: ui-sans-serif, system-ui, -apple-system, Segoe UI, Roboto, Helvetica, Arial;
    }

    *{box-sizing:border-box}
    body{margin:0; font-family:var(--font); background:var(--bg); color:var(--text)}
    .container{max-width:var(--container); margin:0 auto; padding:24px 18px}
    h2{margin:0 0 6px}
    .lead{margin:0 0 18px; color:var(--muted)}

    .search-box{display:flex; gap:10px; flex-wrap:wrap; margin-bottom:14px}
    .search-box input{
      flex:1 1 240px;
      padding:10px 12px;
      border-radius:10px;
      border:1px solid var(--border);
      font-size:15px;
    }
    .search-box button{
      padding:10px 18px;
      border-radius:10px;
      border:0;
      background:var(--primary);
      color:#fff;
      font-weight:700;
      cursor:pointer;
    }

    .error{color:var(--danger); font-weight:600}
    .muted{color:var(--muted)}

    .table-wrap{overflow-x:auto; background:var(--card); border:1px solid var(--border); border-radius:var(--radius)}
    table{border-collapse:collapse; width:100%; font-size:14px}
    th, td{padding:8px 10px; border-bottom:1px solid var(--border); text-align:left; white-space:nowrap}
    th{background:rgba(17,24,39,.04)}

    #map{
      height: 400px;
      margin-top:16px;
      border-radius: var(--radius);
      border:1px solid var(--border);
    }
    [hidden]{display:none !important}
  </style>
</head>

<body>
  <main class="container">
    <h2>{{ meta.page_h1 }}</h2>
    <p class="lead">{{ meta.page_subtitle }}</p>

    <form class="search-box" method="post" action="/" id="searchForm">
      <input type="number" name="license" placeholder="Enter License Number"
             value="{{ state.license_number }}" />
      <button type="submit">Search</button>
    </form>

    <p id="loading" class="muted" {% if not state.loading %}hidden{% endif %}>Loading...</p>

    {% if state.error_message %}
      <p class="error">{{ state.error_message }}</p>
    {% endif %}

    {% if state.rows %}
      <div class="table-wrap">
        <table>
          <thead>
            <tr>
              {% for header, _ in columns %}<th>{{ header }}</th>{% endfor %}
            </tr>
          </thead>
          <tbody>
            {% for row in state.rows %}
              <tr>
                {% for _, key in columns %}
                  <td>{{ row.get(key) if row.get(key) is not none else "" }}</td>
                {% endfor %}
              </tr>
            {% endfor %}
          </tbody>
        </table>
      </div>

      {% if state.map_point %}
        <div id="map"></div>
      {% endif %}
    {% endif %}
  </main>

  <script
    src="https://unpkg.com/leaflet@1.9.4/dist/leaflet.js"
    crossorigin=""
  ></script>

  <script>
    (function(){
      const form = document.getElementById("searchForm");
      const loading = document.getElementById("loading");
      if(!form || !loading) return;
      form.addEventListener("submit", (e) => {
        const input = form.querySelector("input[name='license']");
        if(!input || !input.value){
          e.preventDefault();
          return;
        }
        loading.hidden = false;
      });
    })();

    (function(){
      const mapEl = document.getElementById("map");
      if(!mapEl) return;

      const point = {{ state.map_point | tojson }};
      const popup = {{ popup_lines | tojson }};
      const center = [point.lat, point.lon];

      const map = L.map("map", { scrollWheelZoom: false }).setView(center, {{ zoom }});
      L.tileLayer({{ tile_url | tojson }}, {
        attribution: {{ tile_attribution | tojson }}
      }).addTo(map);

      const content = document.createElement("div");
      popup.forEach((line, i) => {
        if(i > 0) content.appendChild(document.createElement("br"));
        content.appendChild(document.createTextNode(line));
      });
      L.marker(center).addTo(map).bindPopup(content);
    })();
  </script>
</body>
</html>
"""


def popup_lines(row: Optional[Dict[str, Any]]) -> List[str]:
    if not row:
        return []

    def _s(key: str) -> str:
        value = row.get(key)
        return "" if value is None else str(value)

    return [
        _s("FacilityName"),
        _s("LocationAddress"),
        f"{_s('LocationCity')}, {_s('LocationState')} {_s('LocationZipCode')}",
    ]


@app.route("/", methods=["GET", "POST"])
def index() -> Response:
    lookup = FacilityLookup()

    if request.method == "POST":
        try:
            lookup.search(request.form.get("license"))
        except Exception:
            logger.exception("Unexpected error in /")
            generation = lookup.state.generation
            lookup.fail(generation, "Unexpected error.")

    state = lookup.state
    return render_template_string(
        HTML,
        meta=SERVICE_META,
        state=state,
        columns=TABLE_COLUMNS,
        popup_lines=popup_lines(state.rows[0] if state.rows else None),
        zoom=MAP_ZOOM,
        tile_url=TILE_URL,
        tile_attribution=TILE_ATTRIBUTION,
    )


if __name__ == "__main__":
    # Local dev only (production uses gunicorn main:app)
    port = int(os.environ.get("PORT", "8080"))
    app.run(host="0.0.0.0", port=port, debug=False)
