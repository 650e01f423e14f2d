import argparse
import os

import uvicorn

from mqttwatch import config
from mqttwatch.config import HOST, PORT, BROKER_URL, SUBSCRIBE_TOPIC, SUBSCRIBE_QOS, MQTT_VERSION


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the MQTTWatch telemetry API")
    parser.add_argument("--host", default=HOST, help="Bind host")
    parser.add_argument("--port", type=int, default=PORT, help="Bind port")
    parser.add_argument("--broker", default=BROKER_URL,
                        help="Broker URL to connect at startup, e.g. mqtt://localhost:1883")
    parser.add_argument("--topic", default=SUBSCRIBE_TOPIC, help="Topic filter to subscribe to")
    parser.add_argument("--qos", type=int, choices=(0, 1, 2), default=SUBSCRIBE_QOS,
                        help="Subscription QoS")
    parser.add_argument("--mqtt-version", choices=("3", "5"), default=MQTT_VERSION,
                        help="MQTT protocol version")
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development",
    )
    return parser


def main() -> None:
    args = build_parser().parse_args()

    # In-process runs read the module attributes; --reload workers re-import
    # config and pick the values up from the environment.
    config.BROKER_URL = args.broker
    config.SUBSCRIBE_TOPIC = args.topic
    config.SUBSCRIBE_QOS = args.qos
    config.MQTT_VERSION = args.mqtt_version
    os.environ["MQTTWATCH_BROKER_URL"] = args.broker
    os.environ["MQTTWATCH_SUBSCRIBE_TOPIC"] = args.topic
    os.environ["MQTTWATCH_SUBSCRIBE_QOS"] = str(args.qos)
    os.environ["MQTTWATCH_MQTT_VERSION"] = args.mqtt_version

    uvicorn.run(
        "mqttwatch.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
        timeout_graceful_shutdown=3,
    )


if __name__ == "__main__":
    main()
