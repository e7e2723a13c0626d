from __future__ import annotations

MAX_STRING_LEN = 4096
MAX_STATUS_ERROR_LEN = 200
MAX_EXTERNAL_ID_LEN = 128

TOPIC_ROOT = "greenbro"
TOPIC_SUFFIX = "telemetry"

STATUS_MQTT_INGEST = "mqtt_ingest"
STATUS_HTTP_INGEST = "http_ingest"
STATUS_CONTROL_CHANNEL = "control_channel"
STATUS_ALERTS_WORKER = "alerts_worker"
STATUS_PUSH = "push"
STATUS_HEAT_PUMP_HISTORY = "heat_pump_history"

# sensor field -> canonical metric name
SENSOR_METRIC_MAP = {
    "supply_temperature_c": "supply_temp",
    "return_temperature_c": "return_temp",
    "power_w": "power_kw",
    "flow_lps": "flow_rate",
    "cop": "cop",
}
CANONICAL_METRICS = tuple(SENSOR_METRIC_MAP.values())
