"""
MQTTWatch Configuration
"""
import os
import json
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

config_data = {}
_config_file = BASE_DIR / "data" / "config.json"
if _config_file.exists():
    try:
        with open(_config_file, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except (OSError, ValueError):
        config_data = {}


def _setting(name: str, default: str) -> str:
    """Environment first, then data/config.json, then the default."""
    return os.getenv(f"MQTTWATCH_{name}", str(config_data.get(name, default)))


# HTTP server - default to localhost only for security
HOST = _setting("HOST", "127.0.0.1")
PORT = int(_setting("PORT", "39780"))

# Broker session. An empty BROKER_URL means: do not connect at startup.
BROKER_URL = _setting("BROKER_URL", "")
SUBSCRIBE_TOPIC = _setting("SUBSCRIBE_TOPIC", "#")
SUBSCRIBE_QOS = int(_setting("SUBSCRIBE_QOS", "0"))
MQTT_VERSION = _setting("MQTT_VERSION", "3")  # "3" (3.1.1) | "5"
MQTT_USERNAME = _setting("MQTT_USERNAME", "")
MQTT_PASSWORD = os.getenv("MQTTWATCH_MQTT_PASSWORD", "")
MQTT_KEEPALIVE = int(_setting("MQTT_KEEPALIVE", "30"))

# Samples kept per topic for charting
SERIES_CAPACITY = int(_setting("SERIES_CAPACITY", "100"))
# Characters of body shown in the message list (and searched by the filter)
PREVIEW_LENGTH = int(_setting("PREVIEW_LENGTH", "100"))
# Max entries kept in the message log (0 = unbounded)
MESSAGE_LOG_LIMIT = int(_setting("MESSAGE_LOG_LIMIT", "0"))

# State change events kept in memory for the SSE pump
EVENT_BUFFER_SIZE = int(_setting("EVENT_BUFFER_SIZE", "1000"))
# How often the SSE pump polls for new events (seconds)
SSE_POLL_INTERVAL = float(_setting("SSE_POLL_INTERVAL", "0.5"))

APP_VERSION = "0.1.0"


def get_config_dict():
    return {
        "HOST": HOST,
        "PORT": PORT,
        "BROKER_URL": BROKER_URL,
        "SUBSCRIBE_TOPIC": SUBSCRIBE_TOPIC,
        "SUBSCRIBE_QOS": SUBSCRIBE_QOS,
        "MQTT_VERSION": MQTT_VERSION,
        "MQTT_USERNAME": MQTT_USERNAME,
        "SERIES_CAPACITY": SERIES_CAPACITY,
        "PREVIEW_LENGTH": PREVIEW_LENGTH,
        "MESSAGE_LOG_LIMIT": MESSAGE_LOG_LIMIT,
    }


def save_config_dict(new_data: dict):
    config_file = BASE_DIR / "data" / "config.json"
    config_file.parent.mkdir(parents=True, exist_ok=True)

    current = {}
    if config_file.exists():
        with open(config_file, "r", encoding="utf-8") as f:
            current = json.load(f)

    # Credentials stay in the environment
    new_data = {k: v for k, v in new_data.items() if k != "MQTT_PASSWORD"}
    current.update(new_data)
    with open(config_file, "w", encoding="utf-8") as f:
        json.dump(current, f, indent=2)
