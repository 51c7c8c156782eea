import os
from pathlib import Path
from dotenv import load_dotenv

"""Load environment variables from a local .env file if present.

Order of precedence:
- ENV_FILE env var path, if set
- .env.dev in project root, if exists
- .env in project root, if exists
"""

_env_file = os.getenv("ENV_FILE")
if _env_file:
    load_dotenv(_env_file)
else:
    if Path(".env.dev").exists():
        load_dotenv(".env.dev")
    elif Path(".env").exists():
        load_dotenv(".env")


class Mqtt2FileConfig:
    """mqtt2file configuration settings"""

    # MQTT Broker settings
    BROKER_URI = os.getenv('MQTT_BROKER_URI', 'tcp://localhost:1883')
    USERNAME = os.getenv('MQTT_USERNAME', None)
    PASSWORD = os.getenv('MQTT_PASSWORD', None)
    KEEPALIVE = int(os.getenv('MQTT_KEEPALIVE', 60))
    CONNECT_TIMEOUT = float(os.getenv('MQTT_CONNECT_TIMEOUT', 10))

    # Subscriptions are at-least-once
    QOS = int(os.getenv('MQTT_QOS', 1))

    # Session settings. A client id suffix turns on a persistent session
    # that the broker keeps for SESSION_EXPIRY seconds (100 hours).
    CLIENT_ID_PREFIX = os.getenv('MQTT2FILE_CLIENT_ID_PREFIX', 'mqtt2file')
    SESSION_EXPIRY = int(os.getenv('MQTT2FILE_SESSION_EXPIRY', 360000))

    # Reconnection settings
    RECONNECT_ATTEMPTS = int(os.getenv('MQTT2FILE_RECONNECT_ATTEMPTS', 12))
    RECONNECT_INTERVAL = float(os.getenv('MQTT2FILE_RECONNECT_INTERVAL', 5))

    # Consumption settings
    IDLE_TIMEOUT_MINUTES = float(os.getenv('MQTT2FILE_TIMEOUT', 5))
    QUEUE_SIZE = int(os.getenv('MQTT2FILE_QUEUE_SIZE', 1000))

    # Name of the user property carrying the target file name
    FILENAME_PROPERTY = os.getenv('MQTT2FILE_FILENAME_PROPERTY', 'filename')
