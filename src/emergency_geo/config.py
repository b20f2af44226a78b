import logging
import os
from pathlib import Path

DB_PATH = Path(os.getenv("ZONE_DB_PATH", "zones.db"))
ROUTING_BASE_URL = os.getenv("ROUTING_BASE_URL", "http://localhost:8002")
ROUTING_TIMEOUT_SECONDS = float(os.getenv("ROUTING_TIMEOUT_SECONDS", "9"))
ROUTING_RETRY_BACKOFF_SECONDS = float(os.getenv("ROUTING_RETRY_BACKOFF_SECONDS", "0.5"))
RECOMPUTE_DEBOUNCE_SECONDS = float(os.getenv("RECOMPUTE_DEBOUNCE_SECONDS", "0.3"))
CLUSTER_RADIUS_METERS = float(os.getenv("CLUSTER_RADIUS_METERS", "100"))
DEFAULT_SWEEP_RADIUS_METERS = float(os.getenv("DEFAULT_SWEEP_RADIUS_METERS", "5000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

CLUSTER_TYPE_COLORS = {
    "incident": "#ff0000",
    "helper": "#00ff00",
    "responder": "#0000ff",
    "hospital": "#ffff44",
}
CLUSTER_MIXED_COLOR = "#ffff00"

SWEEP_COLORS = {
    "danger": "#ff0000",
    "helper": "#00ff00",
    "neutral": "#ffff00",
}

ISOCHRONE_COLORS = ("#ff0000", "#00ff00", "#0000ff", "#ff8844")


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
